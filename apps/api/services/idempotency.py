"""Idempotency guard for ledger mutations."""

from __future__ import annotations

import hashlib
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.token_ledger_entry import TokenLedgerEntry


def derive_idempotency_key(user_id: str, action: str, reference_id: Optional[str]) -> str:
    """Deterministic key for ``user + action + reference``.

    Without a reference id there is nothing to correlate retries on, so every
    call gets a fresh key.
    """
    if not reference_id:
        return f"auto:{uuid.uuid4().hex}"
    digest = hashlib.sha256(f"{user_id}:{action}:{reference_id}".encode("utf-8")).hexdigest()
    return digest[:32]


def resolve_idempotency_key(
    user_id: str,
    action: str,
    *,
    idempotency_key: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> str:
    explicit = (idempotency_key or "").strip()
    if explicit:
        return explicit
    return derive_idempotency_key(user_id, action, reference_id)


async def find_entry_by_key(db: AsyncSession, idempotency_key: str) -> Optional[TokenLedgerEntry]:
    """Return the ledger entry already recorded under this key, if any."""
    result = await db.execute(
        select(TokenLedgerEntry)
        .where(TokenLedgerEntry.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
