"""Admin token management router."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_admin_context
from routers.rate_limit import rate_limit
from services.token_ledger import (
    admin_grant_tokens,
    admin_revoke_tokens,
    get_balance_summary,
    get_ledger_history,
    reconcile_user,
)
from services.token_sweepers import expire_pools

router = APIRouter()
logger = logging.getLogger(__name__)


class AdminGrantRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int = Field(ge=1, le=1_000_000)
    reason: str = Field(min_length=1, max_length=500)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=3650)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class AdminRevokeRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int = Field(ge=1, le=1_000_000)
    reason: str = Field(min_length=1, max_length=500)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


@router.post("/grant")
async def grant_tokens(
    request: AdminGrantRequest,
    _rate_limit: None = Depends(rate_limit("admin_tokens", limit=120, window_seconds=60)),
    admin: AuthContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    expires_at = None
    if request.expires_in_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=request.expires_in_days)

    result = await admin_grant_tokens(
        request.user_id,
        db,
        amount=request.amount,
        admin_id=admin.user_id,
        reason=request.reason,
        expires_at=expires_at,
        idempotency_key=request.idempotency_key,
    )
    logger.info("Admin %s granted %s tokens to %s", admin.user_id, request.amount, request.user_id)
    return result.to_dict()


@router.post("/revoke")
async def revoke_tokens(
    request: AdminRevokeRequest,
    _rate_limit: None = Depends(rate_limit("admin_tokens", limit=120, window_seconds=60)),
    admin: AuthContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    result = await admin_revoke_tokens(
        request.user_id,
        db,
        amount=request.amount,
        admin_id=admin.user_id,
        reason=request.reason,
        idempotency_key=request.idempotency_key,
    )
    logger.info("Admin %s revoked %s tokens from %s", admin.user_id, result.cost, request.user_id)
    return result.to_dict()


@router.post("/sweeps/expire")
async def run_expiration_sweep(
    admin: AuthContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    report = await expire_pools(db)
    logger.info("Admin %s ran expiration sweep: %s", admin.user_id, report.to_dict())
    return report.to_dict()


@router.get("/{user_id}")
async def user_token_detail(
    user_id: str,
    admin: AuthContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    return {
        "summary": await get_balance_summary(user_id, db),
        "history": await get_ledger_history(user_id, db, limit=20, offset=0),
        "reconciliation": await reconcile_user(user_id, db),
    }
