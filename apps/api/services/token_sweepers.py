"""Lifecycle sweepers: pool expiration and billing-period rollover."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session_maker
from models.token_ledger_entry import TokenLedgerEntry
from models.token_pool import TokenPool
from services.idempotency import find_entry_by_key
from services.ledger_errors import ConcurrencyExhausted, LedgerError, StoreError
from services.ledger_store import (
    LIFETIME_EXPIRED,
    AppendConflict,
    append_entry,
    ensure_account,
    read_account_head,
    serialize_entry,
)
from services.pool_store import (
    create_pool,
    get_expirable_pool,
    get_pool,
    list_expirable_pools,
    list_rollover_pools,
    serialize_pool,
    zero_pool,
)
from services.token_policy import (
    ACTION_EXPIRE,
    ACTION_ROLLOVER,
    SOURCE_EXPIRATION,
    SOURCE_ROLLOVER,
    period_bounds,
)

logger = logging.getLogger(__name__)


class ExpiryAnomaly(Exception):
    """Expiring a pool would push the ledger balance below zero."""


@dataclass
class SweepReport:
    processed: int = 0
    expired_tokens: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "expired_tokens": self.expired_tokens,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class RolloverResult:
    rolled_over: int = 0
    expired: int = 0
    pool: Optional[TokenPool] = None
    entry: Optional[TokenLedgerEntry] = None
    idempotent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rolled_over": self.rolled_over,
            "expired": self.expired,
            "pool": serialize_pool(self.pool) if self.pool is not None else None,
            "entry": serialize_entry(self.entry) if self.entry is not None else None,
            "idempotent": self.idempotent,
        }


def _max_attempts() -> int:
    return max(int(settings.DEBIT_MAX_ATTEMPTS), 1)


async def expire_pool(db: AsyncSession, pool_id: str, now: Optional[datetime] = None) -> int:
    """Zero one lapsed pool and record the expiration. Returns tokens expired."""
    for attempt in range(1, _max_attempts() + 1):
        pool = await get_expirable_pool(db, pool_id, now)
        if pool is None:
            # Spent, expired or rolled over by someone else in the meantime.
            await db.rollback()
            return 0

        expiring = int(pool.remaining)
        head = await read_account_head(db, pool.user_id)
        if head.balance - expiring < 0:
            await db.rollback()
            raise ExpiryAnomaly(
                f"Cannot expire pool {pool.id}: ledger balance {head.balance} is below its remaining {expiring}"
            )

        try:
            if not await zero_pool(db, pool.id, expiring):
                raise AppendConflict(pool.user_id)
            await append_entry(
                db,
                head,
                amount=-expiring,
                source_type=SOURCE_EXPIRATION,
                action_type=ACTION_EXPIRE,
                pool_id=pool.id,
                reference_id=pool.reference_id,
                idempotency_key=f"expire:{pool.id}",
                metadata={
                    "expired_pool": pool.id,
                    "pool_source_type": pool.source_type,
                    "original_amount": pool.amount,
                },
                lifetime_field=LIFETIME_EXPIRED,
            )
            await db.commit()
        except AppendConflict:
            await db.rollback()
            logger.warning("Lost race expiring pool %s (attempt %s)", pool_id, attempt)
            continue
        except IntegrityError:
            await db.rollback()
            if await find_entry_by_key(db, f"expire:{pool_id}"):
                return 0
            logger.warning("Ledger sequence conflict expiring pool %s (attempt %s)", pool_id, attempt)
            continue
        except LedgerError:
            await db.rollback()
            raise

        logger.info("Expired pool %s for user %s: %s tokens", pool_id, head.user_id, expiring)
        return expiring

    raise ConcurrencyExhausted(pool_id, _max_attempts())


async def _sweep(
    db: AsyncSession,
    pool_ids: List[str],
    now: Optional[datetime],
    report: Optional[SweepReport] = None,
    failed: Optional[Set[str]] = None,
) -> SweepReport:
    report = report or SweepReport()
    failed = failed if failed is not None else set()
    for pool_id in pool_ids:
        try:
            expired = await expire_pool(db, pool_id, now)
        except ExpiryAnomaly as exc:
            failed.add(pool_id)
            report.skipped += 1
            report.errors.append(str(exc))
            logger.error("Expiry anomaly: %s", exc)
            continue
        except LedgerError as exc:
            failed.add(pool_id)
            report.errors.append(f"Pool {pool_id}: {exc.message}")
            logger.warning("Failed to expire pool %s: %s", pool_id, exc.message)
            continue
        except SQLAlchemyError as exc:
            failed.add(pool_id)
            await db.rollback()
            report.errors.append(f"Pool {pool_id}: {exc}")
            logger.warning("Store error expiring pool %s: %s", pool_id, exc)
            continue

        if expired > 0:
            report.processed += 1
            report.expired_tokens += expired
    return report


async def expire_pools(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> SweepReport:
    """Expire every lapsed, expiry-eligible pool across all users.

    Works in batches of ``batch_size``. Pools that fail are left out of later
    batches so they cannot starve the rest of the backlog.
    """
    limit = int(batch_size or settings.EXPIRY_SWEEP_BATCH_SIZE)
    report = SweepReport()
    failed: Set[str] = set()
    seen = 0
    while True:
        pools = await list_expirable_pools(db, now=now, limit=limit, exclude_ids=failed)
        pool_ids = [pool.id for pool in pools]
        await db.rollback()
        if not pool_ids:
            break
        seen += len(pool_ids)
        await _sweep(db, pool_ids, now, report, failed)
        if len(pool_ids) < limit:
            break

    if seen:
        logger.info(
            "Pool expiration sweep: processed=%s expired_tokens=%s skipped=%s errors=%s",
            report.processed,
            report.expired_tokens,
            report.skipped,
            len(report.errors),
        )
    return report


async def expire_user_pools(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> SweepReport:
    """Expire one user's lapsed pools; used inline before debits."""
    pools = await list_expirable_pools(db, user_id=user_id, now=now)
    pool_ids = [pool.id for pool in pools]
    if not pool_ids:
        return SweepReport()
    await db.rollback()
    return await _sweep(db, pool_ids, now)


async def _rollover_replay(db: AsyncSession, base_key: str) -> Optional[RolloverResult]:
    credit_entry = await find_entry_by_key(db, base_key)
    expire_entry = await find_entry_by_key(db, f"{base_key}:expire")
    if credit_entry is None and expire_entry is None:
        return None

    pool = await get_pool(db, credit_entry.pool_id) if credit_entry is not None and credit_entry.pool_id else None
    return RolloverResult(
        rolled_over=credit_entry.amount if credit_entry is not None else 0,
        expired=-expire_entry.amount if expire_entry is not None else 0,
        pool=pool,
        entry=credit_entry,
        idempotent=True,
    )


async def rollover_pools(
    user_id: str,
    db: AsyncSession,
    *,
    from_period: str,
    to_period: str,
    cap: Optional[int] = None,
    expires_at: Optional[datetime] = None,
) -> RolloverResult:
    """Carry up to ``cap`` unused rollover-eligible tokens into ``to_period``.

    All eligible pools are zeroed. Tokens above the cap are expired, the rest
    move into one new rollover pool that expires at the end of ``to_period``.
    """
    carry_cap = max(int(settings.ROLLOVER_CAP if cap is None else cap), 0)
    period_start, period_end = period_bounds(to_period)
    new_expiry = expires_at or period_end
    base_key = f"rollover:{user_id}:{from_period}:{to_period}"

    replay = await _rollover_replay(db, base_key)
    if replay is not None:
        return replay

    await ensure_account(db, user_id)
    for attempt in range(1, _max_attempts() + 1):
        try:
            pools = await list_rollover_pools(db, user_id, period_start)
            total = sum(int(pool.remaining) for pool in pools)
            if total == 0:
                await db.rollback()
                # Nothing left to carry, possibly because a concurrent call already did.
                return await _rollover_replay(db, base_key) or RolloverResult()

            carried = min(total, carry_cap)
            excess = total - carried
            head = await read_account_head(db, user_id)
            breakdown = []
            for pool in pools:
                if not await zero_pool(db, pool.id, pool.remaining):
                    raise AppendConflict(user_id)
                breakdown.append({"pool_id": pool.id, "amount": int(pool.remaining)})

            period_meta = {"from_period": from_period, "to_period": to_period}
            if excess:
                await append_entry(
                    db,
                    head,
                    amount=-excess,
                    source_type=SOURCE_EXPIRATION,
                    action_type=ACTION_EXPIRE,
                    idempotency_key=f"{base_key}:expire",
                    metadata={"reason": "rollover_cap_exceeded", "cap": carry_cap, **period_meta},
                    lifetime_field=LIFETIME_EXPIRED,
                )

            new_pool = None
            credit_entry = None
            if carried:
                await append_entry(
                    db,
                    head,
                    amount=-carried,
                    source_type=SOURCE_ROLLOVER,
                    action_type=ACTION_ROLLOVER,
                    idempotency_key=f"{base_key}:out",
                    metadata={"pool_deductions": breakdown, **period_meta},
                )
                new_pool = create_pool(
                    db,
                    user_id=user_id,
                    source_type=SOURCE_ROLLOVER,
                    amount=carried,
                    expires_at=new_expiry,
                    rollover_eligible=True,
                )
                await db.flush()
                credit_entry = await append_entry(
                    db,
                    head,
                    amount=carried,
                    source_type=SOURCE_ROLLOVER,
                    action_type=ACTION_ROLLOVER,
                    pool_id=new_pool.id,
                    idempotency_key=base_key,
                    metadata={"source_pools": [item["pool_id"] for item in breakdown], **period_meta},
                )
            await db.commit()
        except AppendConflict:
            await db.rollback()
            replay = await _rollover_replay(db, base_key)
            if replay is not None:
                return replay
            logger.warning("Lost race during rollover for user %s (attempt %s)", user_id, attempt)
            continue
        except IntegrityError:
            await db.rollback()
            replay = await _rollover_replay(db, base_key)
            if replay is not None:
                return replay
            logger.warning("Ledger sequence conflict during rollover for user %s (attempt %s)", user_id, attempt)
            continue
        except LedgerError:
            await db.rollback()
            raise
        except SQLAlchemyError as exc:
            await db.rollback()
            raise StoreError(f"Rollover failed for user {user_id}: {exc}") from exc

        logger.info(
            "Rollover for user %s %s->%s: carried=%s expired=%s",
            user_id,
            from_period,
            to_period,
            carried,
            excess,
        )
        return RolloverResult(rolled_over=carried, expired=excess, pool=new_pool, entry=credit_entry)

    replay = await _rollover_replay(db, base_key)
    if replay is not None:
        return replay
    raise ConcurrencyExhausted(user_id, _max_attempts())


async def run_expiration_sweep_async() -> Dict[str, Any]:
    async with async_session_maker() as db:
        report = await expire_pools(db)
    return report.to_dict()


async def run_rollover_async(user_id: str, from_period: str, to_period: str) -> Dict[str, Any]:
    async with async_session_maker() as db:
        result = await rollover_pools(user_id, db, from_period=from_period, to_period=to_period)
    return result.to_dict()


def run_expiration_sweep_job() -> Dict[str, Any]:
    """RQ worker entrypoint for the expiration sweep."""
    return asyncio.run(run_expiration_sweep_async())


def run_rollover_job(user_id: str, from_period: str, to_period: str) -> Dict[str, Any]:
    """RQ worker entrypoint for a user's period rollover."""
    return asyncio.run(run_rollover_async(user_id, from_period, to_period))
