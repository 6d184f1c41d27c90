"""TokenAccount model: per-user balance head for the token ledger."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenAccount(Base):
    """Materialized balance and sequence head for one user's ledger."""

    __tablename__ = "token_accounts"

    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    # Number of ledger entries appended so far; the next entry gets entry_count + 1.
    entry_count = Column(Integer, nullable=False, default=0)
    lifetime_earned = Column(Integer, nullable=False, default=0)
    lifetime_spent = Column(Integer, nullable=False, default=0)
    lifetime_expired = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    ledger_entries = relationship("TokenLedgerEntry", back_populates="account")
    pools = relationship("TokenPool", back_populates="account")
