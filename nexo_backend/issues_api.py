"""Read endpoints: the caller's issues, the shared map, and constellation payloads."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from nexo_backend.auth import get_current_user_id
from nexo_backend.db_session import get_async_session
from nexo_backend.schemas import ConstellationResponse, MyIssuesResponse, SharedIssuesResponse
from nexo_backend.services.constellation import build_personal_constellation, build_shared_constellation
from nexo_backend.services.issue_queries import (
    aggregate_connection_to_payload,
    aggregate_issue_to_payload,
    load_aggregate_connections,
    load_aggregate_issues,
    load_causal_pairs,
    load_last_refresh_at,
    load_user_connections,
    load_user_issues,
    serialize_rows,
    user_connection_to_payload,
    user_issue_to_payload,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["issues"])


@router.get("/issues/mine", response_model=MyIssuesResponse)
async def get_my_issues(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    issues = serialize_rows(await load_user_issues(db, user_id), user_issue_to_payload)
    connections = serialize_rows(await load_user_connections(db, user_id), user_connection_to_payload)
    last_refresh_at = await load_last_refresh_at(db, user_id)
    return {"issues": issues, "connections": connections, "last_refresh_at": last_refresh_at}


@router.get("/issues/shared", response_model=SharedIssuesResponse)
async def get_shared_issues(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    issues = serialize_rows(await load_aggregate_issues(db), aggregate_issue_to_payload)
    connections = serialize_rows(await load_aggregate_connections(db), aggregate_connection_to_payload)
    total_users = max((issue["total_users"] for issue in issues), default=0)
    return {"issues": issues, "connections": connections, "total_users": total_users}


@router.get("/constellation", response_model=ConstellationResponse)
async def get_constellation(
    scope: str = Query("shared"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    if scope == "shared":
        issues = serialize_rows(await load_aggregate_issues(db), aggregate_issue_to_payload)
        connections = serialize_rows(await load_aggregate_connections(db), aggregate_connection_to_payload)
        payload = build_shared_constellation(issues, connections, await load_causal_pairs(db))
    elif scope == "mine":
        issues = serialize_rows(await load_user_issues(db, user_id), user_issue_to_payload)
        connections = serialize_rows(await load_user_connections(db, user_id), user_connection_to_payload)
        payload = build_personal_constellation(issues, connections)
    else:
        raise HTTPException(status_code=400, detail="scope must be 'shared' or 'mine'")

    logger.info(
        "[CONSTELLATION] scope=%s nodes=%s links=%s",
        scope,
        len(payload["nodes"]),
        len(payload["links"]),
    )
    return {"scope": scope, **payload}
