"""Customer / KYC status mapping and sync."""

import uuid

import pytest
from sqlalchemy import select

from kalypso_api.db.models import Notification, User
from kalypso_api.errors import PreconditionFailed
from kalypso_api.services.customers import (
    CustomerService,
    derive_tier,
    kyc_notification,
    map_customer_status,
)

ACH_APPROVED = [{"name": "ach", "status": "approved"}]


@pytest.mark.parametrize(
    "bridge_status,endorsements,expected",
    [
        ("active", ACH_APPROVED, ("approved", 2)),
        ("active", [{"name": "ach", "status": "incomplete"}], ("approved", 1)),
        ("active", [{"name": "base", "status": "approved"}], ("approved", 2)),
        ("active", [{"name": "sepa", "status": "approved"}], ("approved", 1)),
        ("paused", [], ("under_review", 1)),
        ("offboarded", ACH_APPROVED, ("rejected", 1)),
        ("not_started", None, ("pending", 1)),
        (None, None, ("pending", 1)),
    ],
)
def test_map_customer_status(bridge_status, endorsements, expected) -> None:
    mapping = map_customer_status(bridge_status, endorsements)
    assert (mapping.status, mapping.tier) == expected


def test_derive_tier_without_endorsements() -> None:
    assert derive_tier(None) == 1
    assert derive_tier([]) == 1


def test_kyc_notification_themes() -> None:
    approved = kyc_notification("approved", 2, "cust_1")
    assert approved.title == "KYC Verification Complete"
    assert "Tier 2" in approved.message
    assert approved.priority == "high"
    assert approved.category == "kyc"
    assert kyc_notification("rejected", 1, "cust_1").type == "error"
    assert kyc_notification("not_started", 1, None) is None


def _notifications(db_session, user_id):
    return list(db_session.execute(select(Notification).where(Notification.user_id == user_id)).scalars())


def test_sync_notifies_only_on_status_change(db_session, service_factory, user, audit_sink) -> None:
    service = service_factory(CustomerService)
    user.kyc_status = "pending"
    user.kyc_tier = 1
    db_session.commit()

    first = service.sync_to_mirror({"id": "cust_123", "status": "active", "endorsements": ACH_APPROVED}, user.id)
    second = service.sync_to_mirror({"id": "cust_123", "status": "active", "endorsements": ACH_APPROVED}, user.id)

    assert first.status_changed and first.tier == 2
    assert not second.status_changed
    notifications = _notifications(db_session, user.id)
    assert [n.title for n in notifications] == ["KYC Verification Complete"]
    assert len(audit_sink.of_type("kyc_status_updated")) == 2
    db_session.refresh(user)
    assert (user.kyc_status, user.kyc_tier) == ("approved", 2)


def test_customer_update_for_unlinked_customer_is_skipped(db_session, service_factory, user) -> None:
    service = service_factory(CustomerService)

    result = service.apply_customer_update({"id": "cust_unknown", "status": "active"})

    assert result is None
    assert _notifications(db_session, user.id) == []


@pytest.mark.asyncio
async def test_initiate_kyc_creates_customer_once(db_session, service_factory, bridge_stub) -> None:
    fresh = User(id=str(uuid.uuid4()), email="grace@example.com", name="Grace Hopper")
    db_session.add(fresh)
    db_session.commit()
    bridge_stub.add("POST", "/customers", {"id": "cust_new", "status": "not_started"})
    bridge_stub.add("GET", "/customers/cust_new/kyc_link", {"kyc_link": "https://kyc.bridge.test/abc"})
    service = service_factory(CustomerService)

    result = await service.initiate_kyc(fresh.id)

    assert result == {"bridge_customer_id": "cust_new", "kyc_link": "https://kyc.bridge.test/abc"}
    create = bridge_stub.calls("POST", "/customers")[0]
    assert create.headers["Idempotency-Key"] == f"kalypso-customer-{fresh.id}"
    db_session.refresh(fresh)
    assert fresh.bridge_customer_id == "cust_new"
    assert fresh.kyc_status == "pending"
    assert [n.title for n in _notifications(db_session, fresh.id)] == ["KYC Verification Started"]


@pytest.mark.asyncio
async def test_kyc_status_requires_customer(db_session, service_factory) -> None:
    fresh = User(id=str(uuid.uuid4()), email="no-kyc@example.com")
    db_session.add(fresh)
    db_session.commit()

    with pytest.raises(PreconditionFailed):
        await service_factory(CustomerService).get_kyc_status(fresh.id)
