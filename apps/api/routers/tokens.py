"""User-facing token balance and spending router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.token_ledger import (
    check_balance,
    debit_tokens,
    get_balance_summary,
    get_ledger_history,
    grant_free_daily,
)
from services.token_policy import action_costs

router = APIRouter()
logger = logging.getLogger(__name__)


class UseTokensRequest(BaseModel):
    action: str = Field(min_length=1, max_length=64)
    reference_id: Optional[str] = Field(default=None, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    metadata: Optional[Dict[str, Any]] = None


@router.get("/balance")
async def token_balance(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await grant_free_daily(auth.user_id, db)
    return await get_balance_summary(auth.user_id, db)


@router.get("/transactions")
async def token_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_ledger_history(auth.user_id, db, limit=limit, offset=offset)


@router.get("/costs")
async def token_costs():
    return {"costs": action_costs()}


@router.get("/check")
async def token_check(
    action: str = Query(min_length=1),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await check_balance(auth.user_id, db, action=action)
    return result.to_dict()


@router.post("/use")
async def use_tokens(
    request: UseTokensRequest,
    _rate_limit: None = Depends(rate_limit("tokens_use", limit=600, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await debit_tokens(
        auth.user_id,
        db,
        action=request.action,
        reference_id=request.reference_id,
        idempotency_key=request.idempotency_key,
        metadata=request.metadata,
    )
    return result.to_dict()
