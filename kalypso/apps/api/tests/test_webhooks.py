"""Bridge webhook endpoint: acknowledgement policy, dedup and signature checks."""

import hashlib
import hmac
import json
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from kalypso_api.db.models import (
    BridgeCard,
    BridgeTransfer,
    BridgeVirtualAccount,
    BridgeWallet,
    CardTransaction,
    Notification,
    WalletBalance,
    WebhookEvent,
)
from kalypso_api.routers.webhooks import verify_signature
from kalypso_api.webhooks.events import WebhookEventType, parse_event
from kalypso_api.utils.time import utc_now
from kalypso_api.webhooks.dedup import try_acquire_dedup
from kalypso_api.webhooks.handlers import HANDLERS

WEBHOOK_URL = "/webhooks/bridge"


@pytest.fixture
def transfer(db_session, user) -> BridgeTransfer:
    row = BridgeTransfer(
        user_id=user.id,
        bridge_transfer_id="tr_77",
        transfer_type="external",
        amount=Decimal("12"),
        fee=Decimal("0"),
        total_amount=Decimal("12"),
        currency="usdc",
        status="processing",
    )
    db_session.add(row)
    db_session.commit()
    return row


def _completed_event(event_id="evt_1"):
    return {"id": event_id, "type": "transfer.updated", "data": {"id": "tr_77", "state": "payment_processed"}}


def _dedup_status(db_session, key):
    return db_session.execute(
        select(WebhookEvent.status).where(WebhookEvent.dedup_key == key)
    ).scalar_one()


def test_parse_event_maps_unknown_types() -> None:
    event = parse_event({"id": 7, "type": "card.account.updated", "data": []})
    assert event.kind is WebhookEventType.UNKNOWN
    assert event.id == "7"
    assert event.data == {}


def test_invalid_json_is_acknowledged(test_client, audit_sink) -> None:
    response = test_client.post(WEBHOOK_URL, content=b"{not json")

    assert response.status_code == 200
    assert response.json() == {"received": True, "error": "Request body is not valid JSON"}
    assert len(audit_sink.of_type("bridge_webhook_error")) == 1


def test_missing_type_is_acknowledged(test_client) -> None:
    response = test_client.post(WEBHOOK_URL, json={"id": "evt_x", "data": {}})

    assert response.status_code == 200
    assert response.json()["error"] == "Webhook body is missing 'type'"


def test_unknown_event_type_is_acknowledged(test_client, audit_sink, db_session) -> None:
    response = test_client.post(WEBHOOK_URL, json={"id": "evt_u", "type": "bridge.new_thing", "data": {}})

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert len(audit_sink.of_type("bridge_webhook_received")) == 1
    assert db_session.execute(select(WebhookEvent)).first() is None


def test_transfer_webhook_updates_mirror(test_client, db_session, transfer) -> None:
    response = test_client.post(WEBHOOK_URL, json=_completed_event())

    assert response.status_code == 200
    assert response.json() == {"received": True}
    db_session.refresh(transfer)
    assert transfer.status == "completed"
    assert _dedup_status(db_session, "evt_1") == "done"


def test_duplicate_delivery_is_processed_once(test_client, db_session, transfer) -> None:
    first = test_client.post(WEBHOOK_URL, json=_completed_event())
    second = test_client.post(WEBHOOK_URL, json=_completed_event())

    assert first.json() == {"received": True}
    assert second.json() == {"received": True, "duplicate": True}
    titles = [n.title for n in db_session.execute(select(Notification)).scalars()]
    assert titles == ["Transfer Completed"]


def test_handler_failure_is_acknowledged_and_reclaimable(
    test_client, db_session, audit_sink, transfer, monkeypatch
) -> None:
    real_handler = HANDLERS[WebhookEventType.TRANSFER_UPDATED]
    calls = []

    async def flaky(ctx, event):
        calls.append(event.id)
        if len(calls) == 1:
            raise RuntimeError("mirror offline")
        await real_handler(ctx, event)

    monkeypatch.setitem(HANDLERS, WebhookEventType.TRANSFER_UPDATED, flaky)

    failed = test_client.post(WEBHOOK_URL, json=_completed_event("evt_f"))

    assert failed.status_code == 200
    assert failed.json() == {"received": True, "error": "mirror offline"}
    assert _dedup_status(db_session, "evt_f") == "failed"
    errors = audit_sink.of_type("bridge_webhook_error")
    assert len(errors) == 1
    assert errors[0].data["event"]["id"] == "evt_f"

    retried = test_client.post(WEBHOOK_URL, json=_completed_event("evt_f"))

    assert retried.json() == {"received": True}
    assert calls == ["evt_f", "evt_f"]
    assert _dedup_status(db_session, "evt_f") == "done"
    db_session.refresh(transfer)
    assert transfer.status == "completed"


def test_event_for_unknown_object_is_acknowledged(test_client, db_session) -> None:
    response = test_client.post(
        WEBHOOK_URL,
        json={"id": "evt_c", "type": "card.transaction.created", "data": {"id": "ctx_9", "card_id": "card_none", "amount": "1"}},
    )

    assert response.json() == {"received": True}
    assert _dedup_status(db_session, "evt_c") == "done"


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_verify_signature_accepts_prefixed_digest() -> None:
    body = b'{"type":"x"}'
    assert verify_signature("whsec", body, _sign("whsec", body))
    assert verify_signature("whsec", body, "sha256=" + _sign("whsec", body))
    assert not verify_signature("whsec", body, _sign("other", body))
    assert not verify_signature("whsec", body, None)


def test_bad_signature_is_rejected(test_client, audit_sink, monkeypatch) -> None:
    monkeypatch.setenv("BRIDGE_WEBHOOK_SECRET", "whsec_test")

    response = test_client.post(
        WEBHOOK_URL,
        content=json.dumps(_completed_event()).encode(),
        headers={"X-Webhook-Signature": "deadbeef"},
    )

    assert response.status_code == 401
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert audit_sink.records == []


def test_valid_signature_is_accepted(test_client, db_session, transfer, monkeypatch) -> None:
    monkeypatch.setenv("BRIDGE_WEBHOOK_SECRET", "whsec_test")
    body = json.dumps(_completed_event()).encode()

    response = test_client.post(
        WEBHOOK_URL,
        content=body,
        headers={"X-Webhook-Signature": _sign("whsec_test", body), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    db_session.refresh(transfer)
    assert transfer.status == "completed"


def _titles(db_session):
    return [n.title for n in db_session.execute(select(Notification).order_by(Notification.created_at)).scalars()]


def _deliver_twice(test_client, event_type, data, prefix):
    responses = [
        test_client.post(WEBHOOK_URL, json={"id": f"{prefix}_{n}", "type": event_type, "data": data})
        for n in (1, 2)
    ]
    assert [r.status_code for r in responses] == [200, 200]
    assert [r.json() for r in responses] == [{"received": True}, {"received": True}]


ACH_APPROVED = [{"name": "ach", "status": "approved"}]


def test_customer_update_with_unchanged_status_does_not_notify(test_client, db_session, user) -> None:
    _deliver_twice(
        test_client,
        "customer.updated",
        {"id": "cust_123", "status": "active", "endorsements": ACH_APPROVED},
        "evt_cust_same",
    )

    assert _titles(db_session) == []

    _deliver_twice(
        test_client,
        "customer.updated",
        {"id": "cust_123", "status": "offboarded", "endorsements": ACH_APPROVED},
        "evt_cust_off",
    )

    assert _titles(db_session) == ["KYC Verification Failed"]
    db_session.refresh(user)
    assert (user.kyc_status, user.kyc_tier) == ("rejected", 1)


def test_card_transaction_redelivery_is_stored_and_counted_once(test_client, db_session, user) -> None:
    db_session.add(BridgeCard(user_id=user.id, bridge_card_id="card_1", status="active", last_four="4242"))
    db_session.commit()

    _deliver_twice(
        test_client,
        "card.transaction.created",
        {
            "id": "ctx_1",
            "card_id": "card_1",
            "amount": "40",
            "currency": "usd",
            "status": "approved",
            "type": "purchase",
            "merchant": {"name": "Corner Cafe"},
        },
        "evt_card",
    )

    assert len(db_session.execute(select(CardTransaction)).all()) == 1
    assert _titles(db_session) == ["Card Purchase"]
    card = db_session.execute(select(BridgeCard)).scalar_one()
    db_session.refresh(card)
    assert card.current_daily_spend == Decimal("40")


def test_deposit_redelivery_mirrors_one_transfer(test_client, db_session, user) -> None:
    db_session.add(BridgeVirtualAccount(user_id=user.id, bridge_account_id="ea_1", status="active"))
    db_session.commit()

    _deliver_twice(
        test_client,
        "virtual_account.deposit.created",
        {"id": "dep_1", "external_account_id": "ea_1", "amount": "15000", "currency": "usd", "status": "completed"},
        "evt_dep",
    )

    row = db_session.execute(select(BridgeTransfer)).scalar_one()
    assert (row.bridge_transfer_id, row.transfer_type, row.status) == ("dep_1", "ach", "completed")
    notification = db_session.execute(select(Notification)).scalar_one()
    assert notification.title == "Deposit Received"
    assert notification.priority == "high"


def test_wallet_transaction_redelivery_notifies_once(test_client, db_session, bridge_stub, user) -> None:
    wallet = BridgeWallet(user_id=user.id, bridge_wallet_id="wal_1", bridge_customer_id="cust_123", chain="ethereum")
    db_session.add(wallet)
    db_session.commit()
    transaction = {
        "id": "wtx_1",
        "amount": "25",
        "source": {"payment_rail": "ethereum", "currency": "usdc", "bridge_wallet_id": "wal_other"},
        "destination": {"payment_rail": "ethereum", "currency": "usdc", "bridge_wallet_id": "wal_1"},
    }
    bridge_stub.add("GET", "/wallets/wal_1/history", {"data": [transaction]})

    _deliver_twice(test_client, "wallet.transaction.created", transaction, "evt_wtx_created")
    _deliver_twice(test_client, "wallet.transaction.confirmed", transaction, "evt_wtx_confirmed")

    assert _titles(db_session) == ["Incoming Transaction", "Transaction Received"]
    balance = db_session.execute(select(WalletBalance)).scalar_one()
    assert (balance.currency, balance.chain, balance.balance) == ("usdc", "ethereum", Decimal("25"))


def test_stale_processing_event_is_reclaimed(test_client, db_session, transfer, caplog) -> None:
    db_session.add(
        WebhookEvent(
            provider="bridge",
            dedup_key="evt_stuck",
            event_type="transfer.updated",
            status="processing",
            first_seen_at=utc_now() - timedelta(hours=1),
        )
    )
    db_session.commit()

    response = test_client.post(WEBHOOK_URL, json=_completed_event("evt_stuck"))

    assert response.json() == {"received": True}
    assert _dedup_status(db_session, "evt_stuck") == "done"
    assert "WEBHOOK_DEDUP_STALE_RECLAIMED" in caplog.text
    db_session.refresh(transfer)
    assert transfer.status == "completed"


def test_in_flight_processing_event_is_a_duplicate(db_session) -> None:
    assert try_acquire_dedup(db_session, "evt_live", lease_seconds=300)
    assert not try_acquire_dedup(db_session, "evt_live", lease_seconds=300)
