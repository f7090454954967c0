"""Refresh API: analyze the caller's new messages and update the shared map."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from nexo_backend.auth import get_current_user_id
from nexo_backend.db_session import get_async_session
from nexo_backend.schemas import RefreshResponse
from nexo_backend.services.aggregation_engine import AggregationEngine
from nexo_backend.services.errors import AuthFailure
from nexo_backend.services.issue_matching import build_issue_matcher
from nexo_backend.services.issue_resolver import IssueResolver
from nexo_backend.services.issue_store import SqlAlchemyIssueStore
from nexo_backend.services.llm_client import get_llm_client
from nexo_backend.services.llm_config import get_env_llm_defaults
from nexo_backend.services.refresh_orchestrator import RefreshOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["refresh"])


def get_refresh_orchestrator(db: AsyncSession = Depends(get_async_session)) -> RefreshOrchestrator:
    config = get_env_llm_defaults()
    llm_client = get_llm_client(config)
    store = SqlAlchemyIssueStore(db)
    matcher = build_issue_matcher(config, llm_client)
    return RefreshOrchestrator(
        store=store,
        llm_client=llm_client,
        resolver=IssueResolver(store, matcher),
        aggregation=AggregationEngine(store, config["aggregate_max_retries"]),
        reflection_enabled=config["reflection_enabled"],
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    user_id: str = Depends(get_current_user_id),
    orchestrator: RefreshOrchestrator = Depends(get_refresh_orchestrator),
):
    try:
        result = await orchestrator.run(user_id)
    except AuthFailure:
        raise HTTPException(status_code=401, detail="Unauthorized")
    except Exception:
        logger.exception("[REFRESH] Unexpected failure for user %s", user_id)
        raise HTTPException(status_code=500, detail="Refresh failed. Please try again later.")

    if not result.success:
        return JSONResponse(status_code=502, content=result.to_dict())
    return result.to_dict()
