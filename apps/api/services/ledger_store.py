"""Append-only ledger store and per-user balance head."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.token_account import TokenAccount
from models.token_ledger_entry import TokenLedgerEntry
from services.ledger_errors import InsufficientBalance

LIFETIME_EARNED = "lifetime_earned"
LIFETIME_SPENT = "lifetime_spent"
LIFETIME_EXPIRED = "lifetime_expired"


class AppendConflict(Exception):
    """The account head moved between read and append."""


@dataclass
class AccountHead:
    user_id: str
    balance: int = 0
    entry_count: int = 0


async def ensure_account(db: AsyncSession, user_id: str) -> None:
    """Create the user's account row on first use."""
    result = await db.execute(select(TokenAccount.user_id).where(TokenAccount.user_id == user_id))
    if result.scalar_one_or_none():
        return

    db.add(TokenAccount(user_id=user_id))
    try:
        await db.commit()
    except IntegrityError:
        # Created concurrently by another request.
        await db.rollback()


async def read_account_head(db: AsyncSession, user_id: str) -> AccountHead:
    result = await db.execute(
        select(TokenAccount.balance, TokenAccount.entry_count).where(TokenAccount.user_id == user_id)
    )
    row = result.first()
    if row is None:
        return AccountHead(user_id=user_id)
    return AccountHead(user_id=user_id, balance=int(row.balance), entry_count=int(row.entry_count))


async def append_entry(
    db: AsyncSession,
    head: AccountHead,
    *,
    amount: int,
    source_type: str,
    action_type: Optional[str],
    pool_id: Optional[str] = None,
    reference_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    lifetime_field: Optional[str] = None,
) -> TokenLedgerEntry:
    """Advance the account head and insert the matching ledger entry.

    Must run inside the caller's transaction. Raises ``AppendConflict`` when the
    head was moved by a concurrent writer; ``IntegrityError`` from the flush is
    left to the caller (duplicate idempotency key or sequence).
    """
    next_balance = head.balance + int(amount)
    if next_balance < 0:
        raise InsufficientBalance(head.balance, -int(amount))

    values: Dict[str, Any] = {
        "balance": next_balance,
        "entry_count": head.entry_count + 1,
        "updated_at": datetime.now(timezone.utc),
    }
    if lifetime_field:
        values[lifetime_field] = getattr(TokenAccount, lifetime_field) + abs(int(amount))

    result = await db.execute(
        update(TokenAccount)
        .where(TokenAccount.user_id == head.user_id, TokenAccount.entry_count == head.entry_count)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AppendConflict(head.user_id)

    entry = TokenLedgerEntry(
        user_id=head.user_id,
        sequence=head.entry_count + 1,
        amount=int(amount),
        balance_after=next_balance,
        source_type=source_type,
        action_type=action_type,
        pool_id=pool_id,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        metadata_json=metadata or {},
    )
    db.add(entry)
    await db.flush()

    head.balance = next_balance
    head.entry_count += 1
    return entry


async def get_ledger_balance(db: AsyncSession, user_id: str) -> int:
    """Balance after the user's most recent ledger entry (0 when none)."""
    result = await db.execute(
        select(TokenLedgerEntry.balance_after)
        .where(TokenLedgerEntry.user_id == user_id)
        .order_by(TokenLedgerEntry.sequence.desc())
        .limit(1)
    )
    value = result.scalar_one_or_none()
    return int(value or 0)


async def sum_ledger_amounts(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(TokenLedgerEntry.amount), 0)).where(TokenLedgerEntry.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def list_entries(
    db: AsyncSession,
    user_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[TokenLedgerEntry], int]:
    """Newest-first page of ledger entries plus the user's total entry count."""
    total_result = await db.execute(
        select(func.count(TokenLedgerEntry.id)).where(TokenLedgerEntry.user_id == user_id)
    )
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(TokenLedgerEntry)
        .where(TokenLedgerEntry.user_id == user_id)
        .order_by(TokenLedgerEntry.sequence.desc())
        .offset(max(int(offset), 0))
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all()), total


async def get_account(db: AsyncSession, user_id: str) -> Optional[TokenAccount]:
    result = await db.execute(
        select(TokenAccount)
        .where(TokenAccount.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def serialize_entry(entry: TokenLedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "sequence": entry.sequence,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "source_type": entry.source_type,
        "action_type": entry.action_type,
        "pool_id": entry.pool_id,
        "reference_id": entry.reference_id,
        "idempotency_key": entry.idempotency_key,
        "metadata": entry.metadata_json or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
