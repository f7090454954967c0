import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nexo_backend.config import CORS_ALLOWED_ORIGINS
from nexo_backend.conversations_api import router as conversations_router
from nexo_backend.issues_api import router as issues_router
from nexo_backend.middleware import configure_request_limits
from nexo_backend.refresh_api import router as refresh_router
from nexo_backend.services.llm_config import get_env_llm_defaults

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    llm_defaults = get_env_llm_defaults()
    logger.info(
        "[STARTUP] LLM mode=%s matcher=%s reflection=%s",
        llm_defaults["mode"],
        llm_defaults["matcher"],
        llm_defaults["reflection_enabled"],
    )
    yield
    from nexo_backend.db_session import async_engine
    await async_engine.dispose()
    logger.info("[SHUTDOWN] Database engine disposed")


nexo_app = FastAPI(title="Nexo", lifespan=lifespan)

# Body/rate limits first so CORS stays outermost
configure_request_limits(nexo_app)

nexo_app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

nexo_app.include_router(conversations_router)
nexo_app.include_router(refresh_router)
nexo_app.include_router(issues_router)


@nexo_app.get("/health")
async def health():
    return {"status": "ok"}
