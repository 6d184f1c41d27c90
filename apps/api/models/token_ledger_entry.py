"""TokenLedgerEntry model for the append-only token ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.token_account import _utcnow


class TokenLedgerEntry(Base):
    """Immutable, signed record of one balance change."""

    __tablename__ = "token_ledger"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_token_ledger_user_sequence"),
        UniqueConstraint("idempotency_key", name="uq_token_ledger_idempotency_key"),
        Index("ix_token_ledger_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("token_accounts.user_id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source_type = Column(String, nullable=False)
    action_type = Column(String, nullable=True)
    pool_id = Column(String, ForeignKey("token_pools.id"), nullable=True)
    reference_id = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    account = relationship("TokenAccount", back_populates="ledger_entries")
