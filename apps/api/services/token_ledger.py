"""Token balance accounting: balances, debits, credits and grants."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.token_ledger_entry import TokenLedgerEntry
from models.token_pool import TokenPool
from services.idempotency import find_entry_by_key, resolve_idempotency_key
from services.ledger_errors import (
    ConcurrencyExhausted,
    IdempotencyConflict,
    InsufficientBalance,
    InvalidAmount,
    LedgerError,
    LedgerInconsistency,
    MissingReason,
    StoreError,
    UnknownSourceType,
)
from services.ledger_store import (
    LIFETIME_EARNED,
    LIFETIME_SPENT,
    AppendConflict,
    append_entry,
    ensure_account,
    get_account,
    get_ledger_balance,
    list_entries,
    read_account_head,
    serialize_entry,
    sum_ledger_amounts,
)
from services.pool_store import (
    create_pool,
    decrement_pool,
    get_pool,
    list_spendable_pools,
    serialize_pool,
    spendable_totals_by_source,
    sum_lapsed_remaining,
    sum_remaining,
)
from services.token_policy import (
    ACTION_GRANT,
    ACTION_REVOKE,
    GRANT_SOURCE_TYPES,
    SOURCE_ADMIN,
    SOURCE_FREE,
    SOURCE_SUBSCRIPTION,
    action_costs,
    current_period_key,
    day_bounds,
    period_bounds,
    plan_is_rollover_eligible,
    plan_token_grant,
    resolve_action_cost,
)
from services.token_sweepers import expire_user_pools

logger = logging.getLogger(__name__)


class _Retry(Exception):
    """State moved under the attempt; start over."""


@dataclass
class DebitResult:
    entry: Optional[TokenLedgerEntry]
    new_balance: int
    cost: int = 0
    idempotent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": serialize_entry(self.entry) if self.entry is not None else None,
            "new_balance": self.new_balance,
            "cost": self.cost,
            "idempotent": self.idempotent,
        }


@dataclass
class CreditResult:
    pool: Optional[TokenPool]
    entry: Optional[TokenLedgerEntry]
    new_balance: int
    idempotent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool": serialize_pool(self.pool) if self.pool is not None else None,
            "entry": serialize_entry(self.entry) if self.entry is not None else None,
            "new_balance": self.new_balance,
            "idempotent": self.idempotent,
        }


@dataclass
class BalanceCheck:
    can_afford: bool
    balance: int
    cost: int
    shortfall: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_afford": self.can_afford,
            "balance": self.balance,
            "cost": self.cost,
            "shortfall": self.shortfall,
        }


def _max_attempts() -> int:
    return max(int(settings.DEBIT_MAX_ATTEMPTS), 1)


def _require_reason(reason: Optional[str]) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise MissingReason()
    return cleaned


def _replay_guard(entry: TokenLedgerEntry, user_id: str, idempotency_key: str) -> TokenLedgerEntry:
    if entry.user_id != user_id:
        raise IdempotencyConflict(idempotency_key)
    return entry


async def _replay_debit(db: AsyncSession, user_id: str, idempotency_key: str) -> Optional[DebitResult]:
    """Result of the call that already committed under this key, if any."""
    existing = await find_entry_by_key(db, idempotency_key)
    if existing is None:
        return None
    _replay_guard(existing, user_id, idempotency_key)
    return DebitResult(entry=existing, new_balance=existing.balance_after, cost=-existing.amount, idempotent=True)


async def get_balance(user_id: str, db: AsyncSession) -> int:
    """Canonical balance: ``balance_after`` of the latest ledger entry."""
    return await get_ledger_balance(db, user_id)


async def get_spendable_balance(user_id: str, db: AsyncSession) -> int:
    """Ledger balance minus tokens in pools that lapsed but were not swept yet."""
    balance = await get_ledger_balance(db, user_id)
    lapsed = await sum_lapsed_remaining(db, user_id)
    return max(balance - lapsed, 0)


async def check_balance(
    user_id: str,
    db: AsyncSession,
    *,
    action: str,
    cost: Optional[int] = None,
) -> BalanceCheck:
    """Read-only affordability check for an action."""
    resolved_cost = resolve_action_cost(action, cost)
    balance = await get_spendable_balance(user_id, db)
    can_afford = balance >= resolved_cost
    return BalanceCheck(
        can_afford=can_afford,
        balance=balance,
        cost=resolved_cost,
        shortfall=0 if can_afford else resolved_cost - balance,
    )


async def _attempt_debit(
    user_id: str,
    db: AsyncSession,
    *,
    action: str,
    cost: int,
    idempotency_key: str,
    reference_id: Optional[str],
    metadata: Optional[Dict[str, Any]],
    source_type: Optional[str],
) -> DebitResult:
    now = datetime.now(timezone.utc)
    head = await read_account_head(db, user_id)
    lapsed = await sum_lapsed_remaining(db, user_id, now)
    available = head.balance - lapsed
    if available < cost:
        raise InsufficientBalance(max(available, 0), cost)

    pools = await list_spendable_pools(db, user_id, now)
    plan: List[Tuple[TokenPool, int]] = []
    outstanding = cost
    for pool in pools:
        if outstanding <= 0:
            break
        take = min(outstanding, int(pool.remaining))
        if take <= 0:
            continue
        plan.append((pool, take))
        outstanding -= take

    if outstanding > 0:
        latest = await read_account_head(db, user_id)
        if latest.entry_count != head.entry_count:
            raise _Retry("balance moved while selecting pools")
        pool_balance = sum(int(pool.remaining) for pool in pools)
        logger.critical(
            "Ledger drift for user %s: spendable ledger balance %s, spendable pools %s, debit of %s refused",
            user_id,
            available,
            pool_balance,
            cost,
        )
        raise LedgerInconsistency(user_id, available, pool_balance, cost)

    for pool, take in plan:
        if not await decrement_pool(db, pool.id, take):
            raise _Retry(f"pool {pool.id} changed")

    deductions = [{"pool_id": pool.id, "amount": take} for pool, take in plan]
    entry = await append_entry(
        db,
        head,
        amount=-cost,
        source_type=source_type or plan[0][0].source_type,
        action_type=action,
        pool_id=plan[0][0].id,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        metadata={**(metadata or {}), "pool_deductions": deductions},
        lifetime_field=LIFETIME_SPENT,
    )
    await db.commit()
    return DebitResult(entry=entry, new_balance=entry.balance_after, cost=cost)


async def debit_tokens(
    user_id: str,
    db: AsyncSession,
    *,
    action: str,
    cost: Optional[int] = None,
    reference_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    source_type: Optional[str] = None,
) -> DebitResult:
    """Charge ``action`` against the user's pools in priority order.

    Safe to retry: a call whose idempotency key is already recorded returns
    the recorded entry with ``idempotent=True`` and charges nothing.
    """
    resolved_cost = resolve_action_cost(action, cost)
    key = resolve_idempotency_key(
        user_id,
        action,
        idempotency_key=idempotency_key,
        reference_id=reference_id,
    )

    replay = await _replay_debit(db, user_id, key)
    if replay is not None:
        return replay

    await expire_user_pools(user_id, db)

    for attempt in range(1, _max_attempts() + 1):
        try:
            result = await _attempt_debit(
                user_id,
                db,
                action=action,
                cost=resolved_cost,
                idempotency_key=key,
                reference_id=reference_id,
                metadata=metadata,
                source_type=source_type,
            )
        except (_Retry, AppendConflict) as exc:
            await db.rollback()
            replay = await _replay_debit(db, user_id, key)
            if replay is not None:
                return replay
            logger.warning("Debit retry for user %s action=%s attempt=%s: %s", user_id, action, attempt, exc)
            continue
        except IntegrityError:
            await db.rollback()
            replay = await _replay_debit(db, user_id, key)
            if replay is not None:
                return replay
            logger.warning("Ledger sequence conflict for user %s attempt=%s", user_id, attempt)
            continue
        except LedgerError:
            await db.rollback()
            raise
        except SQLAlchemyError as exc:
            await db.rollback()
            raise StoreError(f"Debit failed for user {user_id}: {exc}") from exc

        logger.info(
            "Debited %s tokens from user %s action=%s balance_after=%s",
            resolved_cost,
            user_id,
            action,
            result.new_balance,
        )
        return result

    replay = await _replay_debit(db, user_id, key)
    if replay is not None:
        return replay
    raise ConcurrencyExhausted(user_id, _max_attempts())


async def _replay_credit(db: AsyncSession, user_id: str, idempotency_key: str) -> Optional[CreditResult]:
    existing = await find_entry_by_key(db, idempotency_key)
    if existing is None:
        return None
    _replay_guard(existing, user_id, idempotency_key)
    pool = await get_pool(db, existing.pool_id) if existing.pool_id else None
    return CreditResult(pool=pool, entry=existing, new_balance=existing.balance_after, idempotent=True)


async def credit_tokens(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    source_type: str,
    expires_at: Optional[datetime] = None,
    rollover_eligible: bool = False,
    reference_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    action_type: str = ACTION_GRANT,
    metadata: Optional[Dict[str, Any]] = None,
) -> CreditResult:
    """Grant ``amount`` tokens as a new pool and record the ledger entry."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount)
    if source_type not in GRANT_SOURCE_TYPES:
        raise UnknownSourceType(source_type)

    key = resolve_idempotency_key(
        user_id,
        f"credit_{source_type}",
        idempotency_key=idempotency_key,
        reference_id=reference_id,
    )
    replay = await _replay_credit(db, user_id, key)
    if replay is not None:
        return replay

    await ensure_account(db, user_id)
    for attempt in range(1, _max_attempts() + 1):
        try:
            head = await read_account_head(db, user_id)
            pool = create_pool(
                db,
                user_id=user_id,
                source_type=source_type,
                amount=amount,
                expires_at=expires_at,
                rollover_eligible=rollover_eligible,
                reference_id=reference_id,
            )
            await db.flush()
            entry = await append_entry(
                db,
                head,
                amount=amount,
                source_type=source_type,
                action_type=action_type,
                pool_id=pool.id,
                reference_id=reference_id,
                idempotency_key=key,
                metadata=metadata,
                lifetime_field=LIFETIME_EARNED,
            )
            await db.commit()
        except AppendConflict:
            await db.rollback()
            replay = await _replay_credit(db, user_id, key)
            if replay is not None:
                return replay
            logger.warning("Credit retry for user %s source=%s attempt=%s", user_id, source_type, attempt)
            continue
        except IntegrityError:
            await db.rollback()
            replay = await _replay_credit(db, user_id, key)
            if replay is not None:
                return replay
            logger.warning("Ledger sequence conflict crediting user %s attempt=%s", user_id, attempt)
            continue
        except LedgerError:
            await db.rollback()
            raise
        except SQLAlchemyError as exc:
            await db.rollback()
            raise StoreError(f"Credit failed for user {user_id}: {exc}") from exc

        logger.info(
            "Credited %s %s tokens to user %s pool=%s balance_after=%s",
            amount,
            source_type,
            user_id,
            pool.id,
            entry.balance_after,
        )
        return CreditResult(pool=pool, entry=entry, new_balance=entry.balance_after)

    replay = await _replay_credit(db, user_id, key)
    if replay is not None:
        return replay
    raise ConcurrencyExhausted(user_id, _max_attempts())


async def grant_free_daily(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> CreditResult:
    """Grant today's free allowance once per UTC day; it lapses at midnight."""
    amount = max(int(settings.FREE_DAILY_TOKENS), 0)
    day_start, day_end = day_bounds(now)
    if amount <= 0:
        return CreditResult(pool=None, entry=None, new_balance=await get_balance(user_id, db))

    return await credit_tokens(
        user_id,
        db,
        amount=amount,
        source_type=SOURCE_FREE,
        expires_at=day_end,
        idempotency_key=f"free_daily:{user_id}:{day_start.date().isoformat()}",
        metadata={"type": "daily_grant"},
    )


async def grant_subscription_tokens(
    user_id: str,
    db: AsyncSession,
    *,
    plan: str,
    subscription_id: Optional[str] = None,
    period: Optional[str] = None,
) -> CreditResult:
    """Grant a plan's tokens for one billing period (once per period)."""
    period_key = period or current_period_key()
    _, period_end = period_bounds(period_key)
    amount = plan_token_grant(plan)
    if amount <= 0:
        return CreditResult(pool=None, entry=None, new_balance=await get_balance(user_id, db))

    return await credit_tokens(
        user_id,
        db,
        amount=amount,
        source_type=SOURCE_SUBSCRIPTION,
        expires_at=period_end,
        rollover_eligible=plan_is_rollover_eligible(plan),
        reference_id=subscription_id,
        idempotency_key=f"subscription:{user_id}:{period_key}",
        metadata={"plan": plan, "period": period_key},
    )


async def admin_grant_tokens(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    admin_id: str,
    reason: str,
    expires_at: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> CreditResult:
    cleaned_reason = _require_reason(reason)
    return await credit_tokens(
        user_id,
        db,
        amount=amount,
        source_type=SOURCE_ADMIN,
        expires_at=expires_at,
        reference_id=admin_id,
        idempotency_key=idempotency_key or f"admin_grant:{admin_id}:{user_id}:{uuid.uuid4().hex}",
        action_type=ACTION_GRANT,
        metadata={"admin_id": admin_id, "reason": cleaned_reason},
    )


async def admin_revoke_tokens(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    admin_id: str,
    reason: str,
    idempotency_key: Optional[str] = None,
) -> DebitResult:
    """Remove up to ``amount`` tokens; never more than the spendable balance."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount)
    cleaned_reason = _require_reason(reason)

    if idempotency_key:
        replay = await _replay_debit(db, user_id, idempotency_key)
        if replay is not None:
            return replay

    await expire_user_pools(user_id, db)
    spendable = await get_spendable_balance(user_id, db)
    revoke_amount = min(amount, spendable)
    if revoke_amount <= 0:
        return DebitResult(entry=None, new_balance=await get_balance(user_id, db))

    return await debit_tokens(
        user_id,
        db,
        action=ACTION_REVOKE,
        cost=revoke_amount,
        reference_id=admin_id,
        idempotency_key=idempotency_key or f"admin_revoke:{admin_id}:{user_id}:{uuid.uuid4().hex}",
        metadata={"admin_id": admin_id, "reason": cleaned_reason, "requested_amount": amount},
        source_type=SOURCE_ADMIN,
    )


async def get_balance_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_balance(user_id, db)
    by_source = await spendable_totals_by_source(db, user_id)
    account = await get_account(db, user_id)
    return {
        "user_id": user_id,
        "balance": balance,
        "spendable": sum(by_source.values()),
        "by_source": {source_type: by_source.get(source_type, 0) for source_type in GRANT_SOURCE_TYPES},
        "lifetime_earned": int(account.lifetime_earned) if account else 0,
        "lifetime_spent": int(account.lifetime_spent) if account else 0,
        "lifetime_expired": int(account.lifetime_expired) if account else 0,
        "costs": action_costs(),
    }


async def get_ledger_history(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    entries, total = await list_entries(db, user_id, limit=limit, offset=offset)
    return {
        "entries": [serialize_entry(entry) for entry in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


async def reconcile_user(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Cross-check the ledger against the pools for audit display."""
    ledger_balance = await get_balance(user_id, db)
    entries_sum = await sum_ledger_amounts(db, user_id)
    pool_remaining = await sum_remaining(db, user_id)
    lapsed = await sum_lapsed_remaining(db, user_id)
    consistent = ledger_balance == entries_sum == pool_remaining
    if not consistent:
        logger.critical(
            "Reconciliation failed for user %s: balance=%s entries=%s pools=%s",
            user_id,
            ledger_balance,
            entries_sum,
            pool_remaining,
        )
    return {
        "user_id": user_id,
        "ledger_balance": ledger_balance,
        "entries_sum": entries_sum,
        "pool_remaining": pool_remaining,
        "lapsed_unswept": lapsed,
        "consistent": consistent,
    }
