"""TokenPool model: one traceable grant of tokens."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from database import Base
from models.token_account import _utcnow


class TokenPool(Base):
    """Mutable bucket of tokens created by a single credit."""

    __tablename__ = "token_pools"
    __table_args__ = (
        CheckConstraint("remaining >= 0 AND remaining <= amount", name="ck_token_pools_remaining_bounds"),
        Index("ix_token_pools_user_remaining_expires", "user_id", "remaining", "expires_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("token_accounts.user_id"), nullable=False)
    source_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    remaining = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    rollover_eligible = Column(Boolean, nullable=False, default=False)
    reference_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    account = relationship("TokenAccount", back_populates="pools")
