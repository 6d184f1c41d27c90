"""Billing router: the billing service credits purchases and subscription cycles.

Callers are billing back-office identities listed in ADMIN_USER_IDS; end users
never credit their own accounts.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_admin_context
from routers.rate_limit import rate_limit
from services.token_ledger import credit_tokens, grant_subscription_tokens
from services.token_policy import SOURCE_PURCHASE, current_period_key, period_bounds, previous_period_key
from services.token_sweepers import rollover_pools

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    user_id: str = Field(min_length=1)
    credits: int = Field(ge=1, le=100000)
    billing_reference: str = Field(min_length=1, max_length=255)


class SubscriptionCycleRequest(BaseModel):
    user_id: str = Field(min_length=1)
    plan: str = Field(min_length=1, max_length=64)
    subscription_id: Optional[str] = Field(default=None, max_length=255)
    period: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")


@router.post("/purchase")
async def purchase_tokens(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("billing_purchase", limit=30, window_seconds=3600)),
    service: AuthContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = request.user_id
    result = await credit_tokens(
        scoped_user_id,
        db,
        amount=request.credits,
        source_type=SOURCE_PURCHASE,
        reference_id=request.billing_reference,
        metadata={"billing_reference": request.billing_reference, "recorded_by": service.user_id},
    )
    return {
        "ok": True,
        "credits_added": 0 if result.idempotent else request.credits,
        "balance_after": result.new_balance,
        "idempotent": result.idempotent,
    }


@router.post("/subscription/cycle")
async def subscription_cycle(
    request: SubscriptionCycleRequest,
    _rate_limit: None = Depends(rate_limit("billing_cycle", limit=30, window_seconds=3600)),
    service: AuthContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = request.user_id
    if request.plan not in settings.SUBSCRIPTION_PLAN_TOKENS:
        raise HTTPException(status_code=422, detail=f"Unknown plan: {request.plan}")

    period = request.period or current_period_key()
    try:
        period_bounds(period)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    rollover = await rollover_pools(
        scoped_user_id,
        db,
        from_period=previous_period_key(period),
        to_period=period,
    )
    grant = await grant_subscription_tokens(
        scoped_user_id,
        db,
        plan=request.plan,
        subscription_id=request.subscription_id,
        period=period,
    )
    logger.info(
        "Subscription cycle by %s for user %s plan=%s period=%s rolled_over=%s",
        service.user_id,
        scoped_user_id,
        request.plan,
        period,
        rollover.rolled_over,
    )
    return {
        "period": period,
        "rollover": rollover.to_dict(),
        "grant": grant.to_dict(),
    }
