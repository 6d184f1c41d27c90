import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

import services.token_ledger as token_ledger
from config import settings
from models.token_ledger_entry import TokenLedgerEntry
from models.token_pool import TokenPool
from services.ledger_errors import (
    ConcurrencyExhausted,
    IdempotencyConflict,
    InsufficientBalance,
    InvalidAmount,
    LedgerInconsistency,
    MissingReason,
    UnknownAction,
    UnknownSourceType,
)
from services.ledger_store import AppendConflict, get_account, sum_ledger_amounts
from services.pool_store import sum_remaining
from services.token_ledger import (
    admin_grant_tokens,
    admin_revoke_tokens,
    check_balance,
    credit_tokens,
    debit_tokens,
    get_balance,
    get_balance_summary,
    get_ledger_history,
    grant_free_daily,
    grant_subscription_tokens,
    reconcile_user,
)


USER_ID = "ledger-user"
OTHER_USER_ID = "ledger-other"


def _now():
    return datetime.now(timezone.utc)


async def _pools_by_source(db, user_id):
    result = await db.execute(
        select(TokenPool).where(TokenPool.user_id == user_id).execution_options(populate_existing=True)
    )
    return {pool.source_type: pool for pool in result.scalars().all()}


async def _entries(db, user_id):
    result = await db.execute(
        select(TokenLedgerEntry)
        .where(TokenLedgerEntry.user_id == user_id)
        .order_by(TokenLedgerEntry.sequence.asc())
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_balance_is_zero_without_history(db):
    assert await get_balance(USER_ID, db) == 0
    check = await check_balance(USER_ID, db, action="chat_message")
    assert check.can_afford is False
    assert check.balance == 0
    assert check.cost == 1
    assert check.shortfall == 1


@pytest.mark.asyncio
async def test_credit_creates_pool_and_entry(db):
    result = await credit_tokens(USER_ID, db, amount=100, source_type="purchase", reference_id="order-1")

    assert result.new_balance == 100
    assert result.idempotent is False
    assert result.pool.remaining == 100
    assert result.entry.amount == 100
    assert result.entry.sequence == 1
    assert result.entry.pool_id == result.pool.id
    assert await get_balance(USER_ID, db) == 100


@pytest.mark.asyncio
async def test_hundred_chat_messages_drain_balance_then_refuse(db):
    await credit_tokens(USER_ID, db, amount=100, source_type="free", reference_id="order-1")

    for index in range(100):
        result = await debit_tokens(USER_ID, db, action="chat_message", reference_id=f"msg-{index}")
        assert result.new_balance == 99 - index

    with pytest.raises(InsufficientBalance) as exc_info:
        await debit_tokens(USER_ID, db, action="chat_message", reference_id="msg-100")

    assert exc_info.value.status_code == 402
    assert exc_info.value.context["shortfall"] == 1
    assert await get_balance(USER_ID, db) == 0
    entries = await _entries(db, USER_ID)
    assert len(entries) == 101
    assert all(entry.balance_after >= 0 for entry in entries)


@pytest.mark.asyncio
async def test_debit_consumes_pools_in_priority_order(db):
    now = _now()
    await credit_tokens(USER_ID, db, amount=20, source_type="purchase", reference_id="order-1")
    await credit_tokens(
        USER_ID, db, amount=10, source_type="subscription", expires_at=now + timedelta(days=30), reference_id="sub-1"
    )
    await credit_tokens(USER_ID, db, amount=5, source_type="free", expires_at=now + timedelta(days=1), reference_id="day-1")

    result = await debit_tokens(USER_ID, db, action="revoke", cost=8, reference_id="bulk-1")

    assert result.new_balance == 27
    pools = await _pools_by_source(db, USER_ID)
    assert pools["free"].remaining == 0
    assert pools["subscription"].remaining == 7
    assert pools["purchase"].remaining == 20
    deductions = result.entry.metadata_json["pool_deductions"]
    assert [item["amount"] for item in deductions] == [5, 3]


@pytest.mark.asyncio
async def test_debit_prefers_soonest_expiring_pool_within_source(db):
    now = _now()
    late = await credit_tokens(
        USER_ID, db, amount=10, source_type="admin", expires_at=now + timedelta(days=20), reference_id="a-late"
    )
    soon = await credit_tokens(
        USER_ID, db, amount=10, source_type="admin", expires_at=now + timedelta(days=2), reference_id="a-soon"
    )
    open_ended = await credit_tokens(USER_ID, db, amount=10, source_type="admin", reference_id="a-open")

    await debit_tokens(USER_ID, db, action="revoke", cost=15, reference_id="bulk-1")

    result = await db.execute(select(TokenPool).execution_options(populate_existing=True))
    remaining = {pool.id: pool.remaining for pool in result.scalars().all()}
    assert remaining[soon.pool.id] == 0
    assert remaining[late.pool.id] == 5
    assert remaining[open_ended.pool.id] == 10


@pytest.mark.asyncio
async def test_debit_with_same_reference_is_charged_once(db):
    await credit_tokens(USER_ID, db, amount=50, source_type="purchase", reference_id="order-1")

    first = await debit_tokens(USER_ID, db, action="dna_edit", reference_id="edit-42")
    second = await debit_tokens(USER_ID, db, action="dna_edit", reference_id="edit-42")

    assert first.idempotent is False
    assert second.idempotent is True
    assert second.entry.id == first.entry.id
    assert second.new_balance == 45
    assert await get_balance(USER_ID, db) == 45
    assert len(await _entries(db, USER_ID)) == 2


@pytest.mark.asyncio
async def test_debit_without_reference_is_never_deduplicated(db):
    await credit_tokens(USER_ID, db, amount=10, source_type="purchase", reference_id="order-1")

    await debit_tokens(USER_ID, db, action="chat_message")
    await debit_tokens(USER_ID, db, action="chat_message")

    assert await get_balance(USER_ID, db) == 8


@pytest.mark.asyncio
async def test_losing_writer_replays_the_winning_entry(db, monkeypatch):
    await credit_tokens(USER_ID, db, amount=30, source_type="purchase", reference_id="order-1")
    winner = await debit_tokens(USER_ID, db, action="character_edit", idempotency_key="client-key-1")

    real_find = token_ledger.find_entry_by_key
    calls = {"count": 0}

    async def _blind_first_lookup(session, key):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return await real_find(session, key)

    monkeypatch.setattr(token_ledger, "find_entry_by_key", _blind_first_lookup)

    replay = await debit_tokens(USER_ID, db, action="character_edit", idempotency_key="client-key-1")

    assert replay.idempotent is True
    assert replay.entry.id == winner.entry.id
    assert await get_balance(USER_ID, db) == 20
    pools = await _pools_by_source(db, USER_ID)
    assert pools["purchase"].remaining == 20


@pytest.mark.asyncio
async def test_idempotency_key_of_another_user_conflicts(db):
    await credit_tokens(USER_ID, db, amount=10, source_type="purchase", reference_id="order-1")
    await credit_tokens(OTHER_USER_ID, db, amount=10, source_type="purchase", reference_id="order-2")
    await debit_tokens(USER_ID, db, action="chat_message", idempotency_key="shared-key")

    with pytest.raises(IdempotencyConflict):
        await debit_tokens(OTHER_USER_ID, db, action="chat_message", idempotency_key="shared-key")

    assert await get_balance(OTHER_USER_ID, db) == 10


@pytest.mark.asyncio
async def test_unknown_action_and_bad_amounts_are_rejected_before_writes(db):
    with pytest.raises(UnknownAction):
        await debit_tokens(USER_ID, db, action="teleport")
    with pytest.raises(InvalidAmount):
        await credit_tokens(USER_ID, db, amount=0, source_type="purchase")
    with pytest.raises(InvalidAmount):
        await credit_tokens(USER_ID, db, amount=-5, source_type="purchase")
    with pytest.raises(UnknownSourceType):
        await credit_tokens(USER_ID, db, amount=5, source_type="expiration")

    assert await _entries(db, USER_ID) == []


@pytest.mark.asyncio
async def test_lost_pool_races_exhaust_attempts(db, monkeypatch):
    await credit_tokens(USER_ID, db, amount=10, source_type="purchase", reference_id="order-1")

    async def _always_lose(session, pool_id, amount):
        return False

    monkeypatch.setattr(token_ledger, "decrement_pool", _always_lose)

    with pytest.raises(ConcurrencyExhausted) as exc_info:
        await debit_tokens(USER_ID, db, action="chat_message", reference_id="msg-1")

    assert exc_info.value.status_code == 409
    assert await get_balance(USER_ID, db) == 10
    assert len(await _entries(db, USER_ID)) == 1


@pytest.mark.asyncio
async def test_pool_drift_is_reported_not_papered_over(db):
    credit = await credit_tokens(USER_ID, db, amount=10, source_type="purchase", reference_id="order-1")
    await db.execute(update(TokenPool).where(TokenPool.id == credit.pool.id).values(remaining=5))
    await db.commit()

    with pytest.raises(LedgerInconsistency) as exc_info:
        await debit_tokens(USER_ID, db, action="character_edit", reference_id="edit-1")

    assert exc_info.value.status_code == 500
    assert await get_balance(USER_ID, db) == 10
    report = await reconcile_user(USER_ID, db)
    assert report["consistent"] is False
    assert report["pool_remaining"] == 5


@pytest.mark.asyncio
async def test_lapsed_pool_is_expired_before_debit(db):
    await credit_tokens(USER_ID, db, amount=5, source_type="purchase", reference_id="order-1")
    await credit_tokens(
        USER_ID, db, amount=7, source_type="subscription", expires_at=_now() - timedelta(hours=1), reference_id="sub-old"
    )

    check = await check_balance(USER_ID, db, action="dna_edit")
    assert check.balance == 5
    assert check.can_afford is True

    result = await debit_tokens(USER_ID, db, action="dna_edit", reference_id="edit-1")

    assert result.new_balance == 0
    entries = await _entries(db, USER_ID)
    assert [entry.amount for entry in entries] == [5, 7, -7, -5]
    assert entries[2].source_type == "expiration"


@pytest.mark.asyncio
async def test_ledger_matches_pools_after_mixed_activity(db):
    now = _now()
    await credit_tokens(USER_ID, db, amount=40, source_type="purchase", reference_id="order-1")
    await credit_tokens(
        USER_ID, db, amount=25, source_type="subscription", expires_at=now + timedelta(days=10), reference_id="sub-1"
    )
    await debit_tokens(USER_ID, db, action="simulation_basic", reference_id="sim-1")
    await debit_tokens(USER_ID, db, action="dna_edit_advanced", reference_id="dna-1")
    await admin_revoke_tokens(USER_ID, db, amount=3, admin_id="admin-1", reason="abuse")

    entries = await _entries(db, USER_ID)
    assert [entry.sequence for entry in entries] == list(range(1, len(entries) + 1))
    running = 0
    for entry in entries:
        running += entry.amount
        assert entry.balance_after == running

    balance = await get_balance(USER_ID, db)
    assert balance == 65 - 20 - 15 - 3
    assert await sum_ledger_amounts(db, USER_ID) == balance
    assert await sum_remaining(db, USER_ID) == balance
    assert (await reconcile_user(USER_ID, db))["consistent"] is True


@pytest.mark.asyncio
async def test_free_daily_grant_once_per_day(db):
    first = await grant_free_daily(USER_ID, db)
    second = await grant_free_daily(USER_ID, db)

    assert first.new_balance == 10
    assert second.idempotent is True
    assert await get_balance(USER_ID, db) == 10
    pools = await _pools_by_source(db, USER_ID)
    assert pools["free"].expires_at is not None


@pytest.mark.asyncio
async def test_subscription_grant_once_per_period(db):
    first = await grant_subscription_tokens(USER_ID, db, plan="pro", subscription_id="sub_123", period="2030-05")
    again = await grant_subscription_tokens(USER_ID, db, plan="pro", subscription_id="sub_123", period="2030-05")
    free_plan = await grant_subscription_tokens(USER_ID, db, plan="free", period="2030-05")

    assert first.new_balance == 2500
    assert first.pool.rollover_eligible is True
    assert first.entry.idempotency_key == f"subscription:{USER_ID}:2030-05"
    assert again.idempotent is True
    assert free_plan.entry is None
    assert free_plan.new_balance == 2500


@pytest.mark.asyncio
async def test_admin_grant_requires_reason(db):
    with pytest.raises(MissingReason):
        await admin_grant_tokens(USER_ID, db, amount=10, admin_id="admin-1", reason="  ")

    result = await admin_grant_tokens(USER_ID, db, amount=10, admin_id="admin-1", reason="support credit")

    assert result.entry.source_type == "admin"
    assert result.entry.reference_id == "admin-1"
    assert result.entry.metadata_json["reason"] == "support credit"


@pytest.mark.asyncio
async def test_admin_revoke_caps_at_balance_and_noops_on_empty(db):
    await credit_tokens(USER_ID, db, amount=12, source_type="purchase", reference_id="order-1")

    revoked = await admin_revoke_tokens(USER_ID, db, amount=50, admin_id="admin-1", reason="chargeback")
    empty = await admin_revoke_tokens(USER_ID, db, amount=5, admin_id="admin-1", reason="chargeback")

    assert revoked.cost == 12
    assert revoked.new_balance == 0
    assert revoked.entry.source_type == "admin"
    assert revoked.entry.action_type == "revoke"
    assert empty.entry is None
    assert empty.new_balance == 0
    assert await sum_remaining(db, USER_ID) == 0


@pytest.mark.asyncio
async def test_summary_and_history(db):
    await credit_tokens(USER_ID, db, amount=30, source_type="purchase", reference_id="order-1")
    await debit_tokens(USER_ID, db, action="character_edit", reference_id="edit-1")

    summary = await get_balance_summary(USER_ID, db)
    assert summary["balance"] == 20
    assert summary["spendable"] == 20
    assert summary["by_source"]["purchase"] == 20
    assert summary["by_source"]["free"] == 0
    assert summary["lifetime_earned"] == 30
    assert summary["lifetime_spent"] == 10

    history = await get_ledger_history(USER_ID, db, limit=1, offset=0)
    assert history["total"] == 2
    assert len(history["entries"]) == 1
    assert history["entries"][0]["amount"] == -10

    account = await get_account(db, USER_ID)
    assert account.entry_count == 2


def _blind_lookups(monkeypatch, misses):
    """Hide recorded entries from the first ``misses`` key lookups."""
    real_find = token_ledger.find_entry_by_key
    calls = {"count": 0}

    async def _lookup(session, key):
        calls["count"] += 1
        if calls["count"] <= misses:
            return None
        return await real_find(session, key)

    monkeypatch.setattr(token_ledger, "find_entry_by_key", _lookup)
    return calls


def _head_always_moves(monkeypatch):
    async def _conflict(session, head, **kwargs):
        raise AppendConflict(head.user_id)

    monkeypatch.setattr(token_ledger, "append_entry", _conflict)


@pytest.mark.asyncio
async def test_debit_replays_winner_after_losing_the_head(db, monkeypatch):
    await credit_tokens(USER_ID, db, amount=30, source_type="purchase", reference_id="order-1")
    winner = await debit_tokens(USER_ID, db, action="character_edit", idempotency_key="client-key-2")

    _blind_lookups(monkeypatch, misses=1)
    _head_always_moves(monkeypatch)

    replay = await debit_tokens(USER_ID, db, action="character_edit", idempotency_key="client-key-2")

    assert replay.idempotent is True
    assert replay.entry.id == winner.entry.id
    assert await get_balance(USER_ID, db) == 20
    pools = await _pools_by_source(db, USER_ID)
    assert pools["purchase"].remaining == 20


@pytest.mark.asyncio
async def test_debit_checks_for_winner_before_giving_up(db, monkeypatch):
    monkeypatch.setattr(settings, "DEBIT_MAX_ATTEMPTS", 2)
    await credit_tokens(USER_ID, db, amount=30, source_type="purchase", reference_id="order-1")
    winner = await debit_tokens(USER_ID, db, action="character_edit", idempotency_key="client-key-3")

    # Pre-check plus one lookup after each failed attempt.
    calls = _blind_lookups(monkeypatch, misses=3)
    _head_always_moves(monkeypatch)

    replay = await debit_tokens(USER_ID, db, action="character_edit", idempotency_key="client-key-3")

    assert calls["count"] == 4
    assert replay.idempotent is True
    assert replay.entry.id == winner.entry.id
    assert await get_balance(USER_ID, db) == 20


@pytest.mark.asyncio
async def test_credit_replays_winner_after_losing_the_head(db, monkeypatch):
    winner = await credit_tokens(USER_ID, db, amount=12, source_type="purchase", reference_id="order-9")

    _blind_lookups(monkeypatch, misses=1)
    _head_always_moves(monkeypatch)

    replay = await credit_tokens(USER_ID, db, amount=12, source_type="purchase", reference_id="order-9")

    assert replay.idempotent is True
    assert replay.entry.id == winner.entry.id
    assert replay.pool.id == winner.pool.id
    assert await sum_remaining(db, USER_ID) == 12
    assert len(await _entries(db, USER_ID)) == 1


async def _debit_in_own_session(session_maker, **kwargs):
    async with session_maker() as session:
        result = await debit_tokens(USER_ID, session, **kwargs)
        return result.idempotent, result.entry.id


@pytest.mark.asyncio
async def test_concurrent_debits_with_one_key_charge_once(db, session_maker):
    await credit_tokens(USER_ID, db, amount=50, source_type="purchase", reference_id="order-1")

    outcomes = await asyncio.gather(
        *[
            _debit_in_own_session(session_maker, action="character_edit", idempotency_key="double-click")
            for _ in range(5)
        ]
    )

    entry_ids = {entry_id for _, entry_id in outcomes}
    assert len(entry_ids) == 1
    assert [idempotent for idempotent, _ in outcomes].count(False) == 1

    entries = await _entries(db, USER_ID)
    assert len([entry for entry in entries if entry.idempotency_key == "double-click"]) == 1
    assert await get_balance(USER_ID, db) == 40
    assert (await reconcile_user(USER_ID, db))["consistent"] is True


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(db, session_maker, monkeypatch):
    # Every lost attempt means another debit committed, so this bound is never reached.
    monkeypatch.setattr(settings, "DEBIT_MAX_ATTEMPTS", 25)
    await credit_tokens(USER_ID, db, amount=10, source_type="free", reference_id="day-1")

    outcomes = await asyncio.gather(
        *[
            _debit_in_own_session(session_maker, action="chat_message", reference_id=f"msg-{index}")
            for index in range(12)
        ],
        return_exceptions=True,
    )

    charged = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
    refused = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
    assert len(charged) == 10
    assert len(refused) == 2
    assert all(isinstance(error, InsufficientBalance) for error in refused)

    assert await get_balance(USER_ID, db) == 0
    assert await sum_remaining(db, USER_ID) == 0
    entries = await _entries(db, USER_ID)
    assert [entry.sequence for entry in entries] == list(range(1, 12))
    assert (await reconcile_user(USER_ID, db))["consistent"] is True
