"""Token pool store: grant buckets and their conditional decrements."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.token_pool import TokenPool
from services.token_policy import non_expiring_source_types, pool_priority


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _spendable_clause(now: datetime):
    """Pools that still count toward the spendable balance."""
    return and_(
        TokenPool.remaining > 0,
        or_(
            TokenPool.expires_at.is_(None),
            TokenPool.expires_at > now,
            TokenPool.source_type.in_(non_expiring_source_types()),
        ),
    )


def _priority_rank():
    priority = pool_priority()
    return case(
        {source_type: rank for rank, source_type in enumerate(priority)},
        value=TokenPool.source_type,
        else_=len(priority),
    )


def create_pool(
    db: AsyncSession,
    *,
    user_id: str,
    source_type: str,
    amount: int,
    expires_at: Optional[datetime] = None,
    rollover_eligible: bool = False,
    reference_id: Optional[str] = None,
) -> TokenPool:
    pool = TokenPool(
        user_id=user_id,
        source_type=source_type,
        amount=int(amount),
        remaining=int(amount),
        expires_at=expires_at,
        rollover_eligible=bool(rollover_eligible),
        reference_id=reference_id,
    )
    db.add(pool)
    return pool


async def list_spendable_pools(
    db: AsyncSession,
    user_id: str,
    now: Optional[datetime] = None,
) -> List[TokenPool]:
    """Spendable pools in consumption order.

    Source-type priority first, then soonest expiry, pools without expiry last.
    """
    current = now or _utcnow()
    result = await db.execute(
        select(TokenPool)
        .where(TokenPool.user_id == user_id, _spendable_clause(current))
        .order_by(
            _priority_rank(),
            TokenPool.expires_at.is_(None),
            TokenPool.expires_at.asc(),
            TokenPool.created_at.asc(),
            TokenPool.id.asc(),
        )
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def decrement_pool(db: AsyncSession, pool_id: str, amount: int) -> bool:
    """Take ``amount`` from a pool only if it still holds at least that much."""
    result = await db.execute(
        update(TokenPool)
        .where(TokenPool.id == pool_id, TokenPool.remaining >= int(amount))
        .values(remaining=TokenPool.remaining - int(amount), updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def zero_pool(db: AsyncSession, pool_id: str, expected_remaining: int) -> bool:
    """Set a pool's remaining to 0 only if nobody touched it since it was read."""
    result = await db.execute(
        update(TokenPool)
        .where(TokenPool.id == pool_id, TokenPool.remaining == int(expected_remaining))
        .values(remaining=0, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_pool(db: AsyncSession, pool_id: str) -> Optional[TokenPool]:
    result = await db.execute(
        select(TokenPool).where(TokenPool.id == pool_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _lapsed_clause(now: datetime):
    """Pools past their expiry that still hold tokens and no longer count as spendable."""
    return and_(
        TokenPool.remaining > 0,
        TokenPool.expires_at.is_not(None),
        TokenPool.expires_at <= now,
        TokenPool.source_type.not_in(non_expiring_source_types()),
    )


def _expirable_clause(now: datetime):
    """Lapsed pools the sweeper may zero; rollover pools wait out the grace window."""
    grace_cutoff = now - timedelta(hours=max(int(settings.ROLLOVER_GRACE_HOURS), 0))
    return and_(
        _lapsed_clause(now),
        or_(
            TokenPool.rollover_eligible.is_(False),
            TokenPool.expires_at <= grace_cutoff,
        ),
    )


async def list_expirable_pools(
    db: AsyncSession,
    *,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    exclude_ids: Optional[Iterable[str]] = None,
) -> List[TokenPool]:
    query = select(TokenPool).where(_expirable_clause(now or _utcnow()))
    if user_id is not None:
        query = query.where(TokenPool.user_id == user_id)
    excluded = list(exclude_ids or ())
    if excluded:
        query = query.where(TokenPool.id.not_in(excluded))
    query = query.order_by(TokenPool.expires_at.asc(), TokenPool.id.asc())
    if limit:
        query = query.limit(int(limit))
    result = await db.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def get_expirable_pool(db: AsyncSession, pool_id: str, now: Optional[datetime] = None) -> Optional[TokenPool]:
    result = await db.execute(
        select(TokenPool)
        .where(TokenPool.id == pool_id, _expirable_clause(now or _utcnow()))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def sum_lapsed_remaining(db: AsyncSession, user_id: str, now: Optional[datetime] = None) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(TokenPool.remaining), 0)).where(
            TokenPool.user_id == user_id,
            _lapsed_clause(now or _utcnow()),
        )
    )
    return int(result.scalar() or 0)


async def list_rollover_pools(db: AsyncSession, user_id: str, period_start: datetime) -> List[TokenPool]:
    """Rollover-eligible pools with tokens left that belong to periods before ``period_start``."""
    result = await db.execute(
        select(TokenPool)
        .where(
            TokenPool.user_id == user_id,
            TokenPool.rollover_eligible.is_(True),
            TokenPool.remaining > 0,
            TokenPool.expires_at.is_not(None),
            TokenPool.expires_at <= period_start,
        )
        .order_by(TokenPool.created_at.asc(), TokenPool.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def spendable_totals_by_source(
    db: AsyncSession,
    user_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    current = now or _utcnow()
    result = await db.execute(
        select(TokenPool.source_type, func.coalesce(func.sum(TokenPool.remaining), 0))
        .where(TokenPool.user_id == user_id, _spendable_clause(current))
        .group_by(TokenPool.source_type)
    )
    return {str(source_type): int(total or 0) for source_type, total in result.all()}


async def sum_remaining(db: AsyncSession, user_id: str) -> int:
    """Sum of remaining across all of the user's pools, lapsed or not."""
    result = await db.execute(
        select(func.coalesce(func.sum(TokenPool.remaining), 0)).where(TokenPool.user_id == user_id)
    )
    return int(result.scalar() or 0)


def serialize_pool(pool: TokenPool) -> Dict[str, Any]:
    return {
        "id": pool.id,
        "user_id": pool.user_id,
        "source_type": pool.source_type,
        "amount": pool.amount,
        "remaining": pool.remaining,
        "expires_at": pool.expires_at.isoformat() if pool.expires_at else None,
        "rollover_eligible": bool(pool.rollover_eligible),
        "reference_id": pool.reference_id,
        "created_at": pool.created_at.isoformat() if pool.created_at else None,
        "updated_at": pool.updated_at.isoformat() if pool.updated_at else None,
    }
