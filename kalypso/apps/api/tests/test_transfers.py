"""Transfer validation, payload building, status reconciliation and cancellation."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from kalypso_api.db.models import BridgeTransfer, Notification
from kalypso_api.errors import ClientInputError, NotFoundLocal, ProviderTerminalError
from kalypso_api.services.transfers import (
    TransferService,
    build_transfer_payload,
    map_transfer_state,
    next_transfer_status,
    validate_transfer_request,
)

INTERNAL = {
    "type": "internal",
    "amount": "25.50",
    "currency": "USDC",
    "source_wallet_id": "wal_src",
    "destination": {"wallet_id": "wal_dst"},
}
EXTERNAL = {
    "type": "external",
    "amount": "10",
    "currency": "usdc",
    "source_wallet_id": "wal_src",
    "destination": {"chain": "polygon", "address": "0xdead"},
}
ACH = {
    "type": "ach",
    "amount": 100,
    "destination": {
        "account_number": "123456789",
        "routing_number": "021000021",
        "account_owner_name": "Ada Lovelace",
    },
}


@pytest.mark.parametrize(
    "state,expected",
    [
        ("pending", "pending"),
        ("processing", "processing"),
        ("payment_processed", "completed"),
        ("failed", "failed"),
        ("cancelled", "cancelled"),
        ("awaiting_funds", "processing"),
        (None, "processing"),
    ],
)
def test_map_transfer_state(state, expected) -> None:
    assert map_transfer_state(state) == expected


def test_terminal_status_never_regresses() -> None:
    assert next_transfer_status("completed", "processing") == "completed"
    assert next_transfer_status("failed", "pending") == "failed"
    assert next_transfer_status("completed", "failed") == "completed"
    assert next_transfer_status("completed", "cancelled") == "completed"
    assert next_transfer_status("failed", "cancelled") == "failed"
    assert next_transfer_status("processing", "completed") == "completed"
    assert next_transfer_status(None, "pending") == "pending"


@pytest.mark.parametrize(
    "body,message",
    [
        ({**INTERNAL, "type": "wire"}, "Transfer type"),
        ({**INTERNAL, "amount": "0"}, "positive"),
        ({**INTERNAL, "amount": "ten"}, "Invalid amount"),
        ({**INTERNAL, "destination": {}}, "wallet_id"),
        ({**EXTERNAL, "destination": {"chain": "polygon"}}, "address"),
        ({**EXTERNAL, "source_wallet_id": None}, "source_wallet_id"),
        ({**ACH, "destination": {"account_number": "1"}}, "routing_number"),
        ({**INTERNAL, "currency": None}, "currency"),
    ],
)
def test_validate_rejects_bad_requests(body, message) -> None:
    with pytest.raises(ClientInputError) as exc_info:
        validate_transfer_request(body)
    assert message in exc_info.value.message


def test_ach_currency_is_always_usd() -> None:
    request = validate_transfer_request({**ACH, "currency": "eur"})
    assert request.currency == "usd"
    assert request.source_wallet_id is None


def test_internal_payload_shape() -> None:
    payload = build_transfer_payload(validate_transfer_request(INTERNAL), "cust_123")
    assert payload["amount"] == "25.5"
    assert payload["on_behalf_of"] == "cust_123"
    assert payload["source"] == {
        "payment_rail": "ethereum",
        "currency": "usdc",
        "from_bridge_wallet_id": "wal_src",
    }
    assert payload["destination"]["to_bridge_wallet_id"] == "wal_dst"


def test_external_payload_shape() -> None:
    payload = build_transfer_payload(validate_transfer_request(EXTERNAL), "cust_123")
    assert payload["source"]["payment_rail"] == "polygon"
    assert "from_address" not in payload["source"]
    assert payload["destination"] == {"payment_rail": "polygon", "currency": "usdc", "to_address": "0xdead"}


def test_ach_payload_shape() -> None:
    payload = build_transfer_payload(validate_transfer_request(ACH), "cust_123")
    assert payload["amount"] == "100"
    assert payload["source"] == {"payment_rail": "ach", "currency": "usd"}
    assert payload["destination"]["external_account_details"]["routing_number"] == "021000021"


def _titles(db_session):
    return [n.title for n in db_session.execute(select(Notification).order_by(Notification.created_at)).scalars()]


@pytest.mark.asyncio
async def test_create_transfer_mirrors_and_notifies(db_session, service_factory, bridge_stub, user, audit_sink) -> None:
    bridge_stub.add(
        "POST",
        "/transfers",
        {
            "id": "tr_1",
            "state": "awaiting_funds",
            "amount": "25.5",
            "developer_fee": "0.5",
            "source": {"currency": "usdc", "from_bridge_wallet_id": "wal_src"},
            "destination": {"currency": "usdc", "to_bridge_wallet_id": "wal_dst"},
        },
    )
    service = service_factory(TransferService)

    row = await service.create_transfer(user.id, INTERNAL, idempotency_key="client-key-1")

    assert row.bridge_transfer_id == "tr_1"
    assert row.transfer_type == "internal"
    assert row.status == "processing"
    assert row.total_amount == Decimal("26")
    assert row.bridge_destination_wallet_id == "wal_dst"
    assert bridge_stub.requests[0].headers["Idempotency-Key"] == "client-key-1"
    assert _titles(db_session) == ["Transfer Initiated"]
    assert len(audit_sink.of_type("transfer_created")) == 1


@pytest.mark.asyncio
async def test_create_transfer_provider_failure_notifies_and_raises(
    db_session, service_factory, bridge_stub, user
) -> None:
    bridge_stub.add("POST", "/transfers", {"message": "Insufficient funds"}, status=400)
    service = service_factory(TransferService)

    with pytest.raises(ProviderTerminalError):
        await service.create_transfer(user.id, EXTERNAL)

    assert _titles(db_session) == ["Transfer Failed"]
    assert db_session.execute(select(BridgeTransfer)).first() is None


@pytest.mark.asyncio
async def test_invalid_transfer_never_reaches_bridge(service_factory, bridge_stub, user) -> None:
    with pytest.raises(ClientInputError):
        await service_factory(TransferService).create_transfer(user.id, {**INTERNAL, "amount": "-1"})
    assert bridge_stub.requests == []


def _seed(db_session, user, *, status="pending", bridge_transfer_id="tr_9"):
    row = BridgeTransfer(
        user_id=user.id,
        bridge_transfer_id=bridge_transfer_id,
        transfer_type="internal",
        amount=Decimal("10"),
        fee=Decimal("0"),
        total_amount=Decimal("10"),
        currency="usdc",
        status=status,
    )
    db_session.add(row)
    db_session.commit()
    return row


def test_cancel_pending_transfer(db_session, service_factory, user, audit_sink) -> None:
    _seed(db_session, user)

    row = service_factory(TransferService).cancel_transfer(user.id, "tr_9")

    assert row.status == "cancelled"
    assert row.cancelled_at is not None
    assert _titles(db_session) == ["Transfer Cancelled"]
    assert len(audit_sink.of_type("transfer_cancelled")) == 1


def test_cancel_non_pending_transfer_is_rejected(db_session, service_factory, user) -> None:
    _seed(db_session, user, status="processing")

    with pytest.raises(ClientInputError, match="Can only cancel pending transfers"):
        service_factory(TransferService).cancel_transfer(user.id, "tr_9")


def test_cancel_unknown_transfer(service_factory, user) -> None:
    with pytest.raises(NotFoundLocal):
        service_factory(TransferService).cancel_transfer(user.id, "tr_missing")


def test_webhook_update_completes_then_ignores_late_processing(db_session, service_factory, user) -> None:
    _seed(db_session, user, status="processing")
    service = service_factory(TransferService)

    assert service.record_transfer_update({"id": "tr_9", "state": "payment_processed"}) == ("processing", "completed")
    assert service.record_transfer_update({"id": "tr_9", "state": "processing"}) == ("completed", "completed")
    assert service.record_transfer_update({"id": "tr_9", "state": "payment_processed"}) == ("completed", "completed")

    row = service.find_by_bridge_id("tr_9")
    assert row.status == "completed"
    assert row.completed_at is not None
    assert _titles(db_session) == ["Transfer Completed"]


def test_webhook_cannot_replace_one_terminal_status_with_another(db_session, service_factory, user, caplog) -> None:
    _seed(db_session, user, status="processing")
    service = service_factory(TransferService)

    assert service.record_transfer_update({"id": "tr_9", "state": "payment_processed"}) == ("processing", "completed")
    assert service.record_transfer_update({"id": "tr_9", "state": "failed"}) == ("completed", "completed")
    assert service.record_transfer_update({"id": "tr_9", "state": "cancelled"}) == ("completed", "completed")

    row = service.find_by_bridge_id("tr_9")
    assert row.status == "completed"
    assert row.failed_at is None
    assert row.cancelled_at is None
    assert _titles(db_session) == ["Transfer Completed"]
    assert "TRANSFER_STATUS_REGRESSION_IGNORED" in caplog.text


def test_webhook_failure_records_error(db_session, service_factory, user) -> None:
    _seed(db_session, user)

    service_factory(TransferService).record_transfer_update(
        {"id": "tr_9", "state": "failed", "error_message": "Bank rejected"}
    )

    row = db_session.execute(select(BridgeTransfer)).scalar_one()
    assert row.status == "failed"
    assert row.failed_at is not None
    assert row.error_message == "Bank rejected"
    notification = db_session.execute(select(Notification)).scalar_one()
    assert notification.title == "Transfer Failed"
    assert notification.priority == "high"


def test_webhook_for_unknown_transfer_is_skipped(db_session, service_factory) -> None:
    assert service_factory(TransferService).record_transfer_update({"id": "tr_404", "state": "failed"}) is None


@pytest.mark.asyncio
async def test_get_transfer_status_stamps_processing(db_session, service_factory, bridge_stub, user) -> None:
    _seed(db_session, user)
    bridge_stub.add(
        "GET",
        "/transfers/tr_9",
        {"id": "tr_9", "state": "processing", "receipt": {"destination_tx_hash": "0xfeed"}},
    )

    row = await service_factory(TransferService).get_transfer_status(user.id, "tr_9")

    assert row.status == "processing"
    assert row.processing_started_at is not None
    assert row.transaction_hash == "0xfeed"


def test_list_transfers_filters(db_session, service_factory, user) -> None:
    _seed(db_session, user, bridge_transfer_id="tr_a")
    _seed(db_session, user, status="completed", bridge_transfer_id="tr_b")
    service = service_factory(TransferService)

    assert [t.bridge_transfer_id for t in service.list_transfers(user.id, status="completed")] == ["tr_b"]
    assert len(service.list_transfers(user.id, kind="internal")) == 2
    assert service.list_transfers(user.id, kind="ach") == []


def test_sync_to_mirror_twice_changes_nothing(db_session, service_factory, user) -> None:
    bridge_transfer = {
        "id": "tr_sync",
        "state": "processing",
        "amount": "25.5",
        "source": {"currency": "usdc", "from_bridge_wallet_id": "wal_src"},
    }
    service = service_factory(TransferService)

    first = service.sync_to_mirror(bridge_transfer, user.id, kind="external")
    second = service.sync_to_mirror(bridge_transfer, user.id, kind="internal")

    assert first.created
    assert not second.changed
    assert second.row.transfer_type == "external"
