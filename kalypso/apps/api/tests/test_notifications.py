"""Notification preference filtering and inbox management."""

import logging
from decimal import Decimal

import pytest
from sqlalchemy import select

from kalypso_api.db.models import Notification, NotificationPreference
from kalypso_api.errors import ClientInputError, NotFoundLocal
from kalypso_api.services.notifications import (
    NotificationDraft,
    NotificationService,
    priority_level,
    should_deliver,
)


def _draft(category="transaction", priority="normal", title="Hello"):
    return NotificationDraft(type="info", title=title, message="msg", category=category, priority=priority)


def test_priority_levels_are_ordered() -> None:
    assert priority_level("low") < priority_level("normal") < priority_level("high") < priority_level("urgent")
    assert priority_level("bogus") == priority_level("normal")


def test_no_preferences_delivers_everything() -> None:
    assert should_deliver(None, "card", "low")


def test_disabled_category_is_suppressed() -> None:
    prefs = NotificationPreference(enable_card_notifications=False, min_priority_level="low")
    assert not should_deliver(prefs, "card", "urgent")
    assert should_deliver(prefs, "transaction", "low")
    assert should_deliver(prefs, "general", "low")


def test_priority_below_minimum_is_suppressed() -> None:
    prefs = NotificationPreference(
        enable_transaction_notifications=True, min_priority_level="high"
    )
    assert not should_deliver(prefs, "transaction", "normal")
    assert should_deliver(prefs, "transaction", "high")
    assert should_deliver(prefs, "transaction", "urgent")


def test_notify_respects_stored_preferences(db_session, user, caplog) -> None:
    caplog.set_level(logging.INFO)
    service = NotificationService(db_session)
    service.update_preferences(user.id, {"enable_wallet_notifications": False, "min_priority_level": "normal"})

    assert service.notify(user.id, _draft(category="wallet")) is None
    assert service.notify(user.id, _draft(priority="low")) is None
    delivered = service.notify(user.id, _draft(priority="high", title="Kept"))

    assert delivered is not None
    assert [n.title for n in db_session.execute(select(Notification)).scalars()] == ["Kept"]
    assert "NOTIFICATION_SUPPRESSED" in caplog.text


def test_notify_stores_json_safe_data(db_session, user) -> None:
    notification = NotificationService(db_session).notify(
        user.id,
        NotificationDraft(type="success", title="Deposit", message="m", data={"amount": Decimal("1.50")}),
    )
    db_session.expire_all()
    assert db_session.get(Notification, notification.id).data == {"amount": "1.50"}


def test_update_preferences_rejects_unknown_fields(db_session, user) -> None:
    service = NotificationService(db_session)
    with pytest.raises(ClientInputError, match="Unknown preference fields"):
        service.update_preferences(user.id, {"enable_sms": True})
    with pytest.raises(ClientInputError, match="min_priority_level"):
        service.update_preferences(user.id, {"min_priority_level": "critical"})


def test_update_preferences_creates_then_updates_one_row(db_session, user) -> None:
    service = NotificationService(db_session)

    service.update_preferences(user.id, {"enable_card_notifications": False})
    prefs = service.update_preferences(user.id, {"min_priority_level": "high", "enable_push_notifications": None})

    assert prefs.enable_card_notifications is False
    assert prefs.min_priority_level == "high"
    assert prefs.enable_push_notifications is True
    assert len(db_session.execute(select(NotificationPreference)).all()) == 1


def test_inbox_read_and_clear(db_session, user) -> None:
    service = NotificationService(db_session)
    first = service.notify(user.id, _draft(title="one"))
    service.notify(user.id, _draft(title="two", category="card"))
    service.notify(user.id, _draft(title="three"))

    assert service.unread_count(user.id) == 3
    service.mark_read(user.id, first.id)
    assert service.unread_count(user.id) == 2
    assert [n.title for n in service.list_notifications(user.id, category="card")] == ["two"]
    assert {n.title for n in service.list_notifications(user.id, unread_only=True)} == {"two", "three"}

    assert service.clear_read(user.id) == 1
    assert service.mark_all_read(user.id) == 2
    assert service.unread_count(user.id) == 0


def test_mark_read_of_another_users_notification(db_session, user) -> None:
    service = NotificationService(db_session)
    with pytest.raises(NotFoundLocal):
        service.mark_read(user.id, "00000000-0000-0000-0000-000000000000")
    with pytest.raises(NotFoundLocal):
        service.delete_notification(user.id, "00000000-0000-0000-0000-000000000000")
