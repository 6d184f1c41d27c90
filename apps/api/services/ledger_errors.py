"""Error kinds raised by the token ledger."""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for ledger failures rendered as API errors."""

    status_code = 400
    error_code = "LEDGER_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "detail": self.message, **self.context}


class UnknownAction(LedgerError):
    status_code = 422
    error_code = "UNKNOWN_ACTION"

    def __init__(self, action: str):
        super().__init__(f"Unknown action: {action}", action=action)


class InvalidAmount(LedgerError):
    status_code = 422
    error_code = "INVALID_AMOUNT"

    def __init__(self, amount: Any):
        super().__init__(f"Amount must be a positive integer, got {amount!r}", amount=amount)


class MissingReason(LedgerError):
    status_code = 422
    error_code = "MISSING_REASON"

    def __init__(self):
        super().__init__("Administrative ledger changes require a reason.")


class InsufficientBalance(LedgerError):
    status_code = 402
    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, balance: int, cost: int):
        shortfall = max(cost - balance, 0)
        super().__init__(
            f"Insufficient balance. Need {cost}, have {balance}.",
            balance=balance,
            cost=cost,
            shortfall=shortfall,
        )
        self.balance = balance
        self.cost = cost
        self.shortfall = shortfall


class LedgerInconsistency(LedgerError):
    status_code = 500
    error_code = "LEDGER_INCONSISTENCY"

    def __init__(self, user_id: str, ledger_balance: int, pool_balance: int, cost: Optional[int] = None):
        super().__init__(
            f"Pools for user {user_id} hold {pool_balance} tokens but the ledger balance is {ledger_balance}.",
            ledger_balance=ledger_balance,
            pool_balance=pool_balance,
        )
        self.user_id = user_id
        self.ledger_balance = ledger_balance
        self.pool_balance = pool_balance
        self.cost = cost


class ConcurrencyExhausted(LedgerError):
    status_code = 409
    error_code = "CONCURRENCY_EXHAUSTED"

    def __init__(self, user_id: str, attempts: int):
        super().__init__(
            f"Gave up after {attempts} conflicting attempts. Retry the request.",
            attempts=attempts,
        )
        self.user_id = user_id
        self.attempts = attempts


class StoreError(LedgerError):
    status_code = 500
    error_code = "STORE_ERROR"

    def __init__(self, message: str = "Token store is unavailable."):
        super().__init__(message)


class UnknownSourceType(LedgerError):
    status_code = 422
    error_code = "UNKNOWN_SOURCE_TYPE"

    def __init__(self, source_type: str):
        super().__init__(f"Unknown token source type: {source_type}", source_type=source_type)


class IdempotencyConflict(LedgerError):
    status_code = 409
    error_code = "IDEMPOTENCY_CONFLICT"

    def __init__(self, idempotency_key: str):
        super().__init__("Idempotency key is already bound to another account.", idempotency_key=idempotency_key)
