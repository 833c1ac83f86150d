"""Virtual bank accounts (Bridge external accounts) and fiat deposits.

A deposit into a virtual account is mirrored as an incoming ``ach`` row in
``bridge_transfers`` keyed on the Bridge deposit ID.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from kalypso_api.db.models import BridgeTransfer, BridgeVirtualAccount
from kalypso_api.db.repository import MirrorRepository, UpsertResult
from kalypso_api.errors import ClientInputError, NotFoundLocal
from kalypso_api.services.base import BridgeService
from kalypso_api.services.notifications import NotificationDraft
from kalypso_api.services.transfers import next_transfer_status
from kalypso_api.utils.money import format_amount, parse_amount
from kalypso_api.utils.sanitize import mask_account_number
from kalypso_api.utils.time import parse_provider_timestamp, utc_now

logger = logging.getLogger(__name__)

ACCOUNT_STATUSES = frozenset({"pending", "active", "inactive", "closed"})
DEPOSIT_STATUSES = frozenset({"pending", "completed", "failed"})
LARGE_DEPOSIT_THRESHOLD = Decimal("10000")


def map_deposit_status(status: Optional[str]) -> str:
    return status if status in DEPOSIT_STATUSES else "pending"


def deposit_priority(status: str, amount: Decimal) -> str:
    if status == "failed":
        return "urgent"
    if status == "completed" and amount >= LARGE_DEPOSIT_THRESHOLD:
        return "high"
    return "normal"


def deposit_notification(deposit: dict[str, Any], amount: Decimal, currency: str, status: str) -> NotificationDraft:
    shown = f"{format_amount(amount)} {currency.upper()}"
    if status == "completed":
        kind, title, message = "success", "Deposit Received", f"{shown} has been deposited to your virtual account"
    elif status == "pending":
        kind, title, message = "info", "Deposit Pending", f"Deposit of {shown} is being processed"
    elif status == "failed":
        reason = deposit.get("failure_reason")
        kind, title = "error", "Deposit Failed"
        message = f"Deposit of {shown} failed" + (f": {reason}" if reason else "")
    else:
        kind, title, message = "info", "Deposit Update", f"Deposit of {shown} status: {status}"

    return NotificationDraft(
        type=kind,
        title=title,
        message=message,
        data={
            "deposit_id": deposit.get("id"),
            "amount": amount,
            "currency": currency,
            "status": status,
        },
        priority=deposit_priority(status, amount),
        category="transaction",
    )


class VirtualAccountService(BridgeService):
    @property
    def accounts(self) -> MirrorRepository[BridgeVirtualAccount]:
        return MirrorRepository(self.db, BridgeVirtualAccount, "bridge_account_id")

    async def create_virtual_account(self, user_id: str) -> BridgeVirtualAccount:
        user = self.require_customer(user_id)
        bridge_account = await self.client.post(
            "/external_accounts",
            {
                "customer_id": user.bridge_customer_id,
                "currency": "usd",
                "account_owner_name": user.name,
            },
        )
        account = self.sync_to_mirror(bridge_account, user_id).row

        self.record_audit(
            "virtual_account_created",
            "Virtual account created",
            {"bridge_account_id": account.bridge_account_id},
            user_id=user_id,
        )
        masked = mask_account_number(account.account_number)
        message = "Your US virtual bank account has been created."
        if masked:
            message = f"Your US virtual bank account {masked} has been created."
        self.notify(
            user_id,
            NotificationDraft(
                type="success",
                title="Virtual Account Created",
                message=f"{message} You can now receive USD deposits.",
                data={"bridge_account_id": account.bridge_account_id, "account_ending": masked},
                category="transaction",
            ),
        )
        return account

    async def get_virtual_account(self, user_id: str, bridge_account_id: str) -> BridgeVirtualAccount:
        """Refresh one account from Bridge."""
        self.get_owned(user_id, bridge_account_id)
        bridge_account = await self.client.get(f"/external_accounts/{bridge_account_id}")
        return self.sync_to_mirror(bridge_account, user_id).row

    def get_owned(self, user_id: str, bridge_account_id: str) -> BridgeVirtualAccount:
        account = self.accounts.get_owned_by_key(bridge_account_id, user_id)
        if account is None:
            raise NotFoundLocal(f"Virtual account {bridge_account_id} not found")
        return account

    def list_virtual_accounts(self, user_id: str) -> list[BridgeVirtualAccount]:
        return self.accounts.list_for_user(user_id)

    def get_by_bridge_id(self, bridge_account_id: str) -> Optional[BridgeVirtualAccount]:
        return self.accounts.get_by_key(bridge_account_id)

    def update_status(self, bridge_account_id: str, status: str) -> BridgeVirtualAccount:
        """Set the local status of an account (Bridge is not called)."""
        if status not in ACCOUNT_STATUSES:
            raise ClientInputError(f"Unknown virtual account status: {status}")
        account = self.get_by_bridge_id(bridge_account_id)
        if account is None:
            raise NotFoundLocal(f"Virtual account {bridge_account_id} not found")
        self.accounts.apply(account, {"status": status})
        self.commit()
        return account

    def sync_to_mirror(self, bridge_account: dict[str, Any], user_id: str) -> UpsertResult[BridgeVirtualAccount]:
        ach = bridge_account.get("ach") or {}
        destination = bridge_account.get("destination") or {}
        values: dict[str, Any] = {
            "user_id": user_id,
            "bridge_customer_id": bridge_account.get("customer_id"),
            "account_name": bridge_account.get("account_owner_name"),
            "account_number": ach.get("account_number") or bridge_account.get("account_number"),
            "routing_number": ach.get("routing_number") or bridge_account.get("routing_number"),
            "bank_name": bridge_account.get("bank_name"),
            "currency": (bridge_account.get("currency") or "usd").lower(),
            "status": bridge_account.get("status") or "pending",
            "destination_wallet_id": destination.get("bridge_wallet_id"),
            "destination_currency": destination.get("currency"),
            "destination_payment_rail": destination.get("payment_rail"),
        }
        result = self.accounts.upsert(bridge_account["id"], values)
        self.commit()
        return result

    # ------------------------------------------------------------------
    # Webhook ingestion
    # ------------------------------------------------------------------

    def record_deposit(
        self,
        deposit: dict[str, Any],
        *,
        bridge_event_id: Optional[str] = None,
        bridge_event_type: Optional[str] = None,
    ) -> Optional[UpsertResult[BridgeTransfer]]:
        """Mirror a virtual-account deposit as an incoming ach transfer.

        Returns:
            The upsert result, or None when the account is unknown locally
        """
        account_id = deposit.get("external_account_id") or deposit.get("virtual_account_id")
        if not account_id:
            logger.warning("DEPOSIT_MISSING_ACCOUNT", extra={"deposit_id": deposit.get("id")})
            return None
        account = self.get_by_bridge_id(account_id)
        if account is None:
            logger.warning(
                "VIRTUAL_ACCOUNT_NOT_FOUND",
                extra={"bridge_account_id": account_id, "deposit_id": deposit.get("id")},
            )
            return None

        amount = parse_amount(deposit.get("amount"))
        currency = (deposit.get("currency") or "usd").lower()
        incoming = map_deposit_status(deposit.get("status"))

        transfers = MirrorRepository(self.db, BridgeTransfer, "bridge_transfer_id")
        existing = transfers.get_by_key(deposit["id"])
        status = next_transfer_status(existing.status, incoming) if existing else incoming

        values: dict[str, Any] = {
            "user_id": account.user_id,
            "amount": amount,
            "fee": Decimal("0"),
            "total_amount": amount,
            "currency": currency,
            "status": status,
            "bridge_state": deposit.get("status"),
            "description": f"ACH deposit of {format_amount(amount)} {currency.upper()}",
        }
        if existing is None:
            values["transfer_type"] = "ach"
            values["created_at"] = parse_provider_timestamp(deposit.get("created_at")) or utc_now()
        if status == "completed" and (existing is None or existing.completed_at is None):
            values["completed_at"] = parse_provider_timestamp(deposit.get("completed_at")) or utc_now()
        if status == "failed":
            values["error_message"] = deposit.get("failure_reason")

        result = transfers.upsert(deposit["id"], values)
        self.commit()

        self.record_audit(
            "virtual_account_deposit_created",
            f"Virtual account deposit {status}: {format_amount(amount)} {currency.upper()}",
            {
                "deposit_id": deposit["id"],
                "bridge_account_id": account_id,
                "amount": amount,
                "currency": currency,
                "status": status,
            },
            user_id=account.user_id,
            bridge_event_id=bridge_event_id,
            bridge_event_type=bridge_event_type,
        )
        if result.created or result.changed_field("status"):
            self.notify(account.user_id, deposit_notification(deposit, amount, currency, status))
        return result
