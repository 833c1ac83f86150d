"""Virtual-account deposits and liquidation addresses."""

import json
from decimal import Decimal

import pytest
from sqlalchemy import select

from kalypso_api.db.models import BridgeTransfer, BridgeVirtualAccount, Notification
from kalypso_api.errors import ClientInputError, PreconditionFailed
from kalypso_api.services.liquidation import LiquidationService, validate_liquidation_target
from kalypso_api.services.virtual_accounts import (
    VirtualAccountService,
    deposit_notification,
    deposit_priority,
    map_deposit_status,
)


@pytest.mark.parametrize(
    "status,amount,expected",
    [
        ("failed", Decimal("5"), "urgent"),
        ("completed", Decimal("10000"), "high"),
        ("completed", Decimal("9999.99"), "normal"),
        ("pending", Decimal("50000"), "normal"),
    ],
)
def test_deposit_priority(status, amount, expected) -> None:
    assert deposit_priority(status, amount) == expected


def test_unknown_deposit_status_is_pending() -> None:
    assert map_deposit_status("funds_received") == "pending"
    assert map_deposit_status("completed") == "completed"


def test_failed_deposit_notification_includes_reason() -> None:
    draft = deposit_notification({"id": "dep_1", "failure_reason": "R01"}, Decimal("12"), "usd", "failed")
    assert draft.title == "Deposit Failed"
    assert draft.message == "Deposit of 12 USD failed: R01"
    assert draft.type == "error"


@pytest.fixture
def account(db_session, user) -> BridgeVirtualAccount:
    row = BridgeVirtualAccount(user_id=user.id, bridge_account_id="ea_1", status="active")
    db_session.add(row)
    db_session.commit()
    return row


def _deposit(status, amount="15000", **extra):
    return {"id": "dep_1", "external_account_id": "ea_1", "amount": amount, "currency": "usd", "status": status, **extra}


def test_deposit_lifecycle_is_mirrored_as_incoming_ach(db_session, service_factory, account) -> None:
    service = service_factory(VirtualAccountService)

    service.record_deposit(_deposit("pending"))
    service.record_deposit(_deposit("completed"))
    service.record_deposit(_deposit("completed"))

    row = db_session.execute(select(BridgeTransfer)).scalar_one()
    assert row.bridge_transfer_id == "dep_1"
    assert row.transfer_type == "ach"
    assert row.status == "completed"
    assert row.completed_at is not None
    assert row.total_amount == Decimal("15000")
    notifications = list(db_session.execute(select(Notification).order_by(Notification.created_at)).scalars())
    assert [n.title for n in notifications] == ["Deposit Pending", "Deposit Received"]
    assert notifications[1].priority == "high"


def test_completed_deposit_does_not_regress(db_session, service_factory, account) -> None:
    service = service_factory(VirtualAccountService)

    service.record_deposit(_deposit("completed"))
    service.record_deposit(_deposit("pending"))

    service.record_deposit(_deposit("failed", failure_reason="R01"))

    row = db_session.execute(select(BridgeTransfer)).scalar_one()
    assert row.status == "completed"
    assert row.error_message is None


def test_deposit_for_unknown_account_is_skipped(db_session, service_factory, caplog) -> None:
    assert service_factory(VirtualAccountService).record_deposit(_deposit("completed")) is None
    assert "VIRTUAL_ACCOUNT_NOT_FOUND" in caplog.text


@pytest.mark.asyncio
async def test_create_virtual_account(db_session, service_factory, bridge_stub, user) -> None:
    bridge_stub.add(
        "POST",
        "/external_accounts",
        {
            "id": "ea_new",
            "status": "active",
            "account_owner_name": "Ada Lovelace",
            "ach": {"account_number": "900012345678", "routing_number": "101019644"},
        },
    )

    account = await service_factory(VirtualAccountService).create_virtual_account(user.id)

    assert account.bridge_account_id == "ea_new"
    assert account.routing_number == "101019644"
    notification = db_session.execute(select(Notification)).scalar_one()
    assert notification.title == "Virtual Account Created"
    assert "****5678" in notification.message
    assert "900012345678" not in notification.message
    assert notification.data["account_ending"] == "****5678"


@pytest.mark.parametrize(
    "currency,chain,expected",
    [
        ("USDC", "Ethereum", ("usdc", "ethereum")),
        ("btc", "bitcoin", ("btc", "bitcoin")),
        ("sol", "solana", ("sol", "solana")),
    ],
)
def test_validate_liquidation_target_accepts(currency, chain, expected) -> None:
    assert validate_liquidation_target(currency, chain) == expected


@pytest.mark.parametrize(
    "currency,chain,message",
    [
        ("usdc", "tron", "Unsupported chain"),
        ("btc", "ethereum", "not supported on ethereum"),
        ("", "polygon", "<missing>"),
    ],
)
def test_validate_liquidation_target_rejects(currency, chain, message) -> None:
    with pytest.raises(ClientInputError) as exc_info:
        validate_liquidation_target(currency, chain)
    assert message in exc_info.value.message


@pytest.mark.asyncio
async def test_create_liquidation_address_payload(db_session, service_factory, bridge_stub, user) -> None:
    bridge_stub.add(
        "POST",
        "/liquidation_addresses",
        {
            "id": "la_1",
            "chain": "polygon",
            "currency": "usdc",
            "address": "0xliquid",
            "destination_payment_rail": "ach",
            "destination_currency": "usd",
            "external_account_id": "ea_1",
        },
    )

    address = await service_factory(LiquidationService).create_liquidation_address(
        user.id, "USDC", "polygon", external_account_id="ea_1"
    )

    sent = json.loads(bridge_stub.calls("POST", "/liquidation_addresses")[0].content)
    assert sent == {
        "customer_id": "cust_123",
        "currency": "usdc",
        "chain": "polygon",
        "destination_payment_rail": "ach",
        "destination_currency": "usd",
        "external_account_id": "ea_1",
    }
    assert address.address == "0xliquid"
    assert address.status == "active"
    notification = db_session.execute(select(Notification)).scalar_one()
    assert notification.category == "wallet"


@pytest.mark.asyncio
async def test_liquidation_requires_kyc(db_session, service_factory, bridge_stub, user) -> None:
    user.bridge_customer_id = None
    db_session.commit()

    with pytest.raises(PreconditionFailed):
        await service_factory(LiquidationService).create_liquidation_address(user.id, "usdc", "ethereum")
    assert bridge_stub.requests == []
