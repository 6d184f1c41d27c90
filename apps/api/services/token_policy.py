"""Token economy policy: action costs, pool priority and period arithmetic."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from config import settings
from services.ledger_errors import InvalidAmount, UnknownAction

SOURCE_FREE = "free"
SOURCE_SUBSCRIPTION = "subscription"
SOURCE_PURCHASE = "purchase"
SOURCE_ADMIN = "admin"
SOURCE_ROLLOVER = "rollover"
SOURCE_EXPIRATION = "expiration"

GRANT_SOURCE_TYPES = (SOURCE_FREE, SOURCE_SUBSCRIPTION, SOURCE_PURCHASE, SOURCE_ADMIN, SOURCE_ROLLOVER)

ACTION_GRANT = "grant"
ACTION_REVOKE = "revoke"
ACTION_EXPIRE = "expire"
ACTION_ROLLOVER = "rollover"

# Actions whose cost is supplied by the caller instead of the cost table.
VARIABLE_COST_ACTIONS = frozenset({ACTION_REVOKE})


def action_costs() -> Dict[str, int]:
    return {action: int(cost) for action, cost in settings.TOKEN_ACTION_COSTS.items()}


def resolve_action_cost(action: str, cost: Optional[int] = None) -> int:
    """Return the positive token cost of an action or raise."""
    if action in VARIABLE_COST_ACTIONS:
        if cost is None or int(cost) <= 0:
            raise InvalidAmount(cost)
        return int(cost)

    table = action_costs()
    if action not in table:
        raise UnknownAction(action)
    resolved = table[action]
    if resolved <= 0:
        raise InvalidAmount(resolved)
    return resolved


def pool_priority() -> List[str]:
    return list(settings.TOKEN_POOL_PRIORITY)


def non_expiring_source_types() -> List[str]:
    return list(settings.NON_EXPIRING_SOURCE_TYPES)


def plan_token_grant(plan: str) -> int:
    return max(int(settings.SUBSCRIPTION_PLAN_TOKENS.get(plan, 0)), 0)


def plan_is_rollover_eligible(plan: str) -> bool:
    return plan in settings.ROLLOVER_ELIGIBLE_PLANS


def current_period_key(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    return current.strftime("%Y-%m")


def period_bounds(period_key: str) -> Tuple[datetime, datetime]:
    """Return the UTC [start, end) of a ``YYYY-MM`` billing period."""
    try:
        year_text, month_text = period_key.split("-", 1)
        year, month = int(year_text), int(month_text)
        start = datetime(year, month, 1, tzinfo=timezone.utc)
    except ValueError as exc:
        raise ValueError(f"Invalid billing period {period_key!r}; expected YYYY-MM.") from exc

    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def day_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    current = now or datetime.now(timezone.utc)
    start = current.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def previous_period_key(period_key: str) -> str:
    start, _ = period_bounds(period_key)
    return current_period_key(start - timedelta(days=1))
