"""Card spend counters, lifecycle calls and card-transaction ingestion."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from kalypso_api.db.models import BridgeCard, CardTransaction, Notification
from kalypso_api.errors import ClientInputError
from kalypso_api.services.cards import (
    CardService,
    SpendCounters,
    apply_spend,
    counts_toward_spend,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_spend_accumulates_inside_window() -> None:
    counters = SpendCounters(
        daily=Decimal("40"),
        monthly=Decimal("400"),
        last_daily_reset=NOW - timedelta(hours=23),
        last_monthly_reset=NOW - timedelta(days=10),
    )

    result = apply_spend(counters, Decimal("10"), NOW)

    assert result.daily == Decimal("50")
    assert result.monthly == Decimal("410")
    assert result.last_daily_reset == counters.last_daily_reset


def test_spend_restarts_expired_window() -> None:
    counters = SpendCounters(
        daily=Decimal("40"),
        monthly=Decimal("400"),
        last_daily_reset=NOW - timedelta(hours=25),
        last_monthly_reset=NOW - timedelta(days=31),
    )

    result = apply_spend(counters, Decimal("10"), NOW)

    assert result.daily == Decimal("10")
    assert result.monthly == Decimal("10")
    assert result.last_daily_reset == NOW
    assert result.last_monthly_reset == NOW


def test_spend_accepts_naive_reset_times() -> None:
    counters = SpendCounters(Decimal("5"), Decimal("5"), datetime(2026, 3, 1, 6, 0), datetime(2026, 2, 20))
    assert apply_spend(counters, Decimal("1"), NOW).daily == Decimal("6")


@pytest.mark.parametrize(
    "previous,status,kind,expected",
    [
        (None, "approved", "purchase", True),
        (None, "settled", "purchase", True),
        ("pending", "approved", "purchase", True),
        ("approved", "settled", "purchase", False),
        ("approved", "approved", "purchase", False),
        (None, "declined", "purchase", False),
        (None, "approved", "refund", False),
    ],
)
def test_counts_toward_spend(previous, status, kind, expected) -> None:
    assert counts_toward_spend(previous, status, kind) is expected


@pytest.fixture
def card(db_session, user) -> BridgeCard:
    row = BridgeCard(user_id=user.id, bridge_card_id="card_1", status="active", last_four="4242")
    db_session.add(row)
    db_session.commit()
    return row


def _purchase(status="approved", amount="40", **extra):
    return {
        "id": "ctx_1",
        "card_id": "card_1",
        "amount": amount,
        "currency": "USD",
        "status": status,
        "type": "purchase",
        "merchant": {"name": "Corner Cafe", "category": "5814"},
        **extra,
    }


def _notification_titles(db_session):
    return [n.title for n in db_session.execute(select(Notification)).scalars()]


def test_replayed_transaction_is_stored_and_counted_once(db_session, service_factory, card) -> None:
    service = service_factory(CardService)

    first = service.record_card_transaction(_purchase())
    replay = service.record_card_transaction(_purchase())

    assert first.created and not replay.created
    assert len(db_session.execute(select(CardTransaction)).all()) == 1
    db_session.refresh(card)
    assert card.current_daily_spend == Decimal("40")
    assert card.current_monthly_spend == Decimal("40")
    assert _notification_titles(db_session) == ["Card Purchase"]


def test_racing_duplicate_delivery_is_counted_once(db_session, service_factory, card, monkeypatch) -> None:
    service = service_factory(CardService)
    service.record_card_transaction(_purchase())

    # A concurrent worker read the table before the first insert was visible
    real_get_by_key = service.transactions.get_by_key
    stale_reads = [None, None]

    def get_by_key(key):
        if stale_reads:
            return stale_reads.pop()
        return real_get_by_key(key)

    monkeypatch.setattr(service.transactions, "get_by_key", get_by_key)

    replay = service.record_card_transaction(_purchase())

    assert not replay.created
    assert len(db_session.execute(select(CardTransaction)).all()) == 1
    db_session.refresh(card)
    assert card.current_daily_spend == Decimal("40")
    assert card.current_monthly_spend == Decimal("40")
    assert _notification_titles(db_session) == ["Card Purchase"]


def test_settlement_after_approval_is_not_counted_again(db_session, service_factory, card) -> None:
    service = service_factory(CardService)

    service.record_card_transaction(_purchase())
    service.record_card_transaction(_purchase(status="settled", settled_at="2026-03-02T10:00:00Z"))

    db_session.refresh(card)
    assert card.current_daily_spend == Decimal("40")
    row = db_session.execute(select(CardTransaction)).scalar_one()
    assert row.status == "settled"
    assert row.settled_at is not None


def test_settled_transaction_is_immutable(db_session, service_factory, card, caplog) -> None:
    service = service_factory(CardService)
    service.record_card_transaction(_purchase(status="settled"))

    result = service.record_card_transaction(_purchase(status="reversed", amount="99"))

    assert result.row.status == "settled"
    assert result.row.amount == Decimal("40")
    assert "CARD_TRANSACTION_SETTLED_IMMUTABLE" in caplog.text


def test_declined_purchase_notifies_without_spend(db_session, service_factory, card) -> None:
    service_factory(CardService).record_card_transaction(
        _purchase(status="declined", decline_reason="insufficient_funds")
    )

    db_session.refresh(card)
    assert card.current_daily_spend == Decimal("0")
    notification = db_session.execute(select(Notification)).scalar_one()
    assert notification.title == "Card Declined"
    assert notification.priority == "high"
    assert "insufficient_funds" in notification.message


def test_transaction_for_unknown_card_is_skipped(db_session, service_factory, caplog) -> None:
    result = service_factory(CardService).record_card_transaction({**_purchase(), "card_id": "card_missing"})

    assert result is None
    assert "CARD_NOT_FOUND" in caplog.text
    assert db_session.execute(select(CardTransaction)).first() is None


@pytest.mark.asyncio
async def test_freeze_card_updates_mirror_and_notifies(db_session, service_factory, bridge_stub, card) -> None:
    bridge_stub.add("POST", "/cards/card_1/freeze", {"id": "card_1", "status": "frozen"})

    frozen = await service_factory(CardService).freeze_card(card.user_id, card.id, reason="lost")

    assert frozen.status == "frozen"
    assert frozen.is_frozen
    assert frozen.frozen_reason == "lost"
    notification = db_session.execute(select(Notification)).scalar_one()
    assert notification.category == "security"


@pytest.mark.asyncio
async def test_cancelled_card_rejects_lifecycle_calls(db_session, service_factory, bridge_stub, card) -> None:
    card.status = "cancelled"
    db_session.commit()

    with pytest.raises(ClientInputError, match="cancelled"):
        await service_factory(CardService).freeze_card(card.user_id, card.id)
    assert bridge_stub.requests == []


@pytest.mark.asyncio
async def test_update_spending_limits_sends_bridge_keys(db_session, service_factory, bridge_stub, card) -> None:
    bridge_stub.add("PUT", "/cards/card_1/limits", {"id": "card_1"})

    updated = await service_factory(CardService).update_spending_limits(
        card.user_id, card.id, {"daily_spend_limit": "250", "single_transaction_limit": None}
    )

    assert updated.daily_spend_limit == Decimal("250")
    sent = bridge_stub.calls("PUT", "/cards/card_1/limits")[0]
    assert json.loads(sent.content) == {"daily_limit": "250"}


@pytest.mark.asyncio
async def test_update_spending_limits_requires_a_limit(service_factory, card) -> None:
    with pytest.raises(ClientInputError, match="At least one spending limit"):
        await service_factory(CardService).update_spending_limits(card.user_id, card.id, {})


@pytest.mark.asyncio
async def test_create_card_mirrors_bridge_card(db_session, service_factory, bridge_stub, user) -> None:
    bridge_stub.add(
        "POST",
        "/cards",
        {"id": "card_new", "type": "virtual", "brand": "visa", "last4": "1111", "status": "active",
         "controls": {"atm": False}},
    )

    card = await service_factory(CardService).create_card(user.id)

    assert card.bridge_card_id == "card_new"
    assert card.last_four == "1111"
    assert card.allow_atm_withdrawals is False
    assert card.allow_online is True
    assert card.daily_spend_limit == Decimal("1000")
    assert _notification_titles(db_session) == ["Card Created"]
