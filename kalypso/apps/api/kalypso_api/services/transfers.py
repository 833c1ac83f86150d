"""Transfers: validation, creation, status reconciliation, cancellation.

Local status lifecycle: pending → processing → completed | failed | cancelled.
Terminal statuses are final: a late ``processing`` or ``failed`` webhook
cannot undo a ``completed`` one.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from kalypso_api.db.models import BridgeTransfer
from kalypso_api.db.repository import MirrorRepository, UpsertResult
from kalypso_api.errors import ClientInputError, NotFoundLocal, ProviderError
from kalypso_api.services.base import BridgeService
from kalypso_api.services.notifications import NotificationDraft
from kalypso_api.utils.money import MoneyError, format_amount, parse_amount, parse_positive_amount
from kalypso_api.utils.time import utc_now

logger = logging.getLogger(__name__)

TRANSFER_KINDS = ("internal", "external", "ach")

# payment_processed is Bridge's name for a settled transfer
TRANSFER_STATE_MAP: dict[str, str] = {
    "pending": "pending",
    "processing": "processing",
    "payment_processed": "completed",
    "failed": "failed",
    "cancelled": "cancelled",
}

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


def map_transfer_state(state: Optional[str]) -> str:
    """Map a Bridge transfer state to the local status (unknown → processing)."""
    return TRANSFER_STATE_MAP.get(state or "", "processing")


def next_transfer_status(current: Optional[str], incoming: str) -> str:
    """Status to store when ``incoming`` arrives for a row currently ``current``."""
    if current in TERMINAL_STATUSES:
        return current
    return incoming


@dataclass(frozen=True)
class TransferRequest:
    kind: str
    amount: Decimal
    currency: str
    source_wallet_id: Optional[str]
    destination: dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    memo: Optional[str] = None


def validate_transfer_request(data: dict[str, Any]) -> TransferRequest:
    """Validate a transfer request body.

    - internal: destination.wallet_id
    - external: destination.chain and destination.address
    - ach: destination.account_number, routing_number, account_owner_name

    Raises:
        ClientInputError: Missing or invalid fields
    """
    kind = data.get("type")
    if kind not in TRANSFER_KINDS:
        raise ClientInputError(f"Transfer type must be one of {', '.join(TRANSFER_KINDS)}")

    try:
        amount = parse_positive_amount(data.get("amount"))
    except MoneyError as exc:
        raise ClientInputError(str(exc)) from exc

    destination = data.get("destination") or {}
    if not isinstance(destination, dict):
        raise ClientInputError("destination must be an object")

    required: tuple[str, ...]
    if kind == "internal":
        required = ("wallet_id",)
    elif kind == "external":
        required = ("chain", "address")
    else:
        required = ("account_number", "routing_number", "account_owner_name")
    missing = [name for name in required if not destination.get(name)]
    if missing:
        raise ClientInputError(
            f"{kind} transfers require destination fields: {', '.join(missing)}"
        )

    source_wallet_id = data.get("source_wallet_id")
    if kind in ("internal", "external") and not source_wallet_id:
        raise ClientInputError(f"{kind} transfers require source_wallet_id")

    currency = "usd" if kind == "ach" else (data.get("currency") or "").lower()
    if not currency:
        raise ClientInputError("currency is required")

    return TransferRequest(
        kind=kind,
        amount=amount,
        currency=currency,
        source_wallet_id=source_wallet_id,
        destination=destination,
        description=data.get("description") or destination.get("description"),
        memo=data.get("memo") or destination.get("memo"),
    )


def build_transfer_payload(request: TransferRequest, bridge_customer_id: str) -> dict[str, Any]:
    """Bridge ``POST /transfers`` body for a validated request."""
    destination = request.destination
    amount = format_amount(request.amount)

    if request.kind == "internal":
        rail = destination.get("chain") or "ethereum"
        return {
            "amount": amount,
            "on_behalf_of": bridge_customer_id,
            "source": {
                "payment_rail": rail,
                "currency": request.currency,
                "from_bridge_wallet_id": request.source_wallet_id,
            },
            "destination": {
                "payment_rail": rail,
                "currency": request.currency,
                "to_bridge_wallet_id": destination["wallet_id"],
            },
        }

    if request.kind == "external":
        source: dict[str, Any] = {
            "payment_rail": destination["chain"],
            "currency": request.currency,
            "from_bridge_wallet_id": request.source_wallet_id,
        }
        if destination.get("from_address"):
            source["from_address"] = destination["from_address"]
        return {
            "amount": amount,
            "on_behalf_of": bridge_customer_id,
            "source": source,
            "destination": {
                "payment_rail": destination["chain"],
                "currency": request.currency,
                "to_address": destination["address"],
            },
        }

    source = {"payment_rail": "ach", "currency": "usd"}
    if request.source_wallet_id:
        source["external_account_id"] = request.source_wallet_id
    return {
        "amount": amount,
        "on_behalf_of": bridge_customer_id,
        "source": source,
        "destination": {
            "payment_rail": "ach",
            "currency": "usd",
            "external_account_details": {
                "account_owner_name": destination["account_owner_name"],
                "account_number": destination["account_number"],
                "routing_number": destination["routing_number"],
            },
        },
    }


def transfer_outcome_notification(row: BridgeTransfer, status: str) -> NotificationDraft:
    shown = f"{format_amount(row.amount)} {(row.currency or '').upper()}"
    if status == "completed":
        return NotificationDraft(
            type="success",
            title="Transfer Completed",
            message=f"Your transfer of {shown} has completed.",
            data={"bridge_transfer_id": row.bridge_transfer_id},
            category="transaction",
        )
    return NotificationDraft(
        type="error",
        title="Transfer Failed",
        message=f"Your transfer of {shown} failed" + (f": {row.error_message}" if row.error_message else "."),
        data={"bridge_transfer_id": row.bridge_transfer_id},
        priority="high",
        category="transaction",
    )


def _transfer_currency(bridge_transfer: dict[str, Any]) -> Optional[str]:
    source = bridge_transfer.get("source") or {}
    destination = bridge_transfer.get("destination") or {}
    return source.get("currency") or destination.get("currency") or bridge_transfer.get("currency")


class TransferService(BridgeService):
    """Transfers against Bridge ``/transfers`` mirrored into ``bridge_transfers``."""

    @property
    def transfers(self) -> MirrorRepository[BridgeTransfer]:
        return MirrorRepository(self.db, BridgeTransfer, "bridge_transfer_id")

    async def create_transfer(
        self,
        user_id: str,
        data: dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> BridgeTransfer:
        """Validate, send to Bridge and mirror a new transfer.

        Args:
            user_id: Owning local user
            data: Request body (type, amount, currency, source_wallet_id, destination)
            idempotency_key: Client key; pass the same key when retrying the same transfer

        Raises:
            ClientInputError: Invalid request
            PreconditionFailed: KYC not complete
            ProviderError: Bridge rejected or could not be reached
        """
        request = validate_transfer_request(data)
        user = self.require_customer(user_id)
        payload = build_transfer_payload(request, user.bridge_customer_id)

        try:
            bridge_transfer = await self.client.post(
                "/transfers", payload, idempotency_key=idempotency_key
            )
        except ProviderError as exc:
            self.notify(
                user_id,
                NotificationDraft(
                    type="error",
                    title="Transfer Failed",
                    message=f"Failed to initiate transfer: {exc.message}",
                    data={"transfer_type": request.kind, "correlation_id": exc.correlation_id},
                    priority="high",
                    category="transaction",
                ),
            )
            raise

        row = self.sync_to_mirror(bridge_transfer, user_id, kind=request.kind, request=request).row
        self.record_audit(
            "transfer_created",
            f"{request.kind} transfer {row.bridge_transfer_id} created",
            {
                "bridge_transfer_id": row.bridge_transfer_id,
                "transfer_type": request.kind,
                "amount": request.amount,
                "currency": request.currency,
            },
            user_id=user_id,
        )
        self.notify(
            user_id,
            NotificationDraft(
                type="info",
                title="Transfer Initiated",
                message=(
                    f"Your {request.kind} transfer of {format_amount(request.amount)} "
                    f"{request.currency.upper()} has been initiated."
                ),
                data={"bridge_transfer_id": row.bridge_transfer_id},
                category="transaction",
            ),
        )
        return row

    def sync_to_mirror(
        self,
        bridge_transfer: dict[str, Any],
        user_id: str,
        *,
        kind: str,
        request: Optional[TransferRequest] = None,
    ) -> UpsertResult[BridgeTransfer]:
        """Upsert a Bridge transfer object keyed on its Bridge ID.

        The kind is written only on insert; an existing row keeps its kind.
        """
        destination = request.destination if request else {}
        amount = parse_amount(bridge_transfer.get("amount"), default=Decimal("0"))
        fee = parse_amount(bridge_transfer.get("developer_fee") or bridge_transfer.get("fee"), default=Decimal("0"))
        existing = self.transfers.get_by_key(bridge_transfer["id"])

        status = map_transfer_state(bridge_transfer.get("state") or "pending")
        if existing is not None:
            status = next_transfer_status(existing.status, status)

        values: dict[str, Any] = {
            "user_id": user_id,
            "amount": amount,
            "fee": fee,
            "total_amount": amount + fee,
            "currency": (_transfer_currency(bridge_transfer) or "usdc").lower(),
            "status": status,
            "bridge_state": bridge_transfer.get("state"),
            "bridge_source_wallet_id": (bridge_transfer.get("source") or {}).get("from_bridge_wallet_id"),
            "bridge_destination_wallet_id": (bridge_transfer.get("destination") or {}).get("to_bridge_wallet_id"),
            "destination_address": destination.get("address"),
            "destination_chain": destination.get("chain"),
            "destination_account_number": destination.get("account_number"),
            "destination_routing_number": destination.get("routing_number"),
            "destination_user_id": destination.get("user_id"),
            "description": request.description if request else None,
            "memo": request.memo if request else None,
        }
        if existing is None:
            values["transfer_type"] = kind
        else:
            # Do not wipe destination details learned at creation time
            values = {k: v for k, v in values.items() if v is not None}

        result = self.transfers.upsert(bridge_transfer["id"], values)
        self.commit()
        return result

    def apply_transfer_update(self, row: BridgeTransfer, bridge_transfer: dict[str, Any]) -> tuple[str, str]:
        """Apply a Bridge transfer object's state to ``row`` (no commit).

        Returns:
            (previous local status, new local status)
        """
        previous = row.status
        state = bridge_transfer.get("state")
        incoming = map_transfer_state(state)
        status = next_transfer_status(previous, incoming)
        if status != incoming:
            logger.warning(
                "TRANSFER_STATUS_REGRESSION_IGNORED",
                extra={
                    "bridge_transfer_id": row.bridge_transfer_id,
                    "current_status": previous,
                    "bridge_state": state,
                },
            )
        if state not in TRANSFER_STATE_MAP:
            logger.warning(
                "TRANSFER_STATE_UNRECOGNIZED",
                extra={"bridge_transfer_id": row.bridge_transfer_id, "bridge_state": state},
            )

        now = utc_now()
        row.status = status
        row.bridge_state = state
        receipt = bridge_transfer.get("receipt")
        if receipt:
            row.receipt = receipt
            tx_hash = receipt.get("destination_tx_hash") if isinstance(receipt, dict) else None
            if tx_hash:
                row.transaction_hash = tx_hash
        if bridge_transfer.get("transaction_hash"):
            row.transaction_hash = bridge_transfer["transaction_hash"]

        if status == "processing" and row.processing_started_at is None:
            row.processing_started_at = now
        if status == "completed" and previous != "completed":
            row.completed_at = now
        if status == "failed" and previous != "failed":
            row.failed_at = now
            row.error_code = bridge_transfer.get("error_code")
            row.error_message = bridge_transfer.get("error_message") or bridge_transfer.get("failure_reason")
        row.updated_at = now
        return previous, status

    def find_by_bridge_id(self, bridge_transfer_id: str) -> Optional[BridgeTransfer]:
        return self.transfers.get_by_key(bridge_transfer_id)

    def get_transfer(self, user_id: str, bridge_transfer_id: str) -> BridgeTransfer:
        row = self.transfers.get_owned_by_key(bridge_transfer_id, user_id)
        if row is None:
            raise NotFoundLocal(f"Transfer {bridge_transfer_id} not found")
        return row

    async def get_transfer_status(self, user_id: str, bridge_transfer_id: str) -> BridgeTransfer:
        """Refresh a transfer from Bridge and return the updated mirror row."""
        row = self.get_transfer(user_id, bridge_transfer_id)
        bridge_transfer = await self.client.get(f"/transfers/{bridge_transfer_id}")
        self.apply_transfer_update(row, bridge_transfer)
        self.commit()
        return row

    def list_transfers(
        self,
        user_id: str,
        *,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BridgeTransfer]:
        return self.transfers.list_for_user(
            user_id,
            filters={"transfer_type": kind, "status": status},
            limit=limit,
            offset=offset,
        )

    def cancel_transfer(self, user_id: str, bridge_transfer_id: str) -> BridgeTransfer:
        """Mark a pending transfer cancelled locally.

        Bridge is not asked to cancel; only the mirror row changes.

        Raises:
            NotFoundLocal: Transfer not found for this user
            ClientInputError: Transfer is not pending
        """
        row = self.get_transfer(user_id, bridge_transfer_id)
        if row.status != "pending":
            raise ClientInputError(
                f"Can only cancel pending transfers (transfer is {row.status})"
            )

        now = utc_now()
        row.status = "cancelled"
        row.cancelled_at = now
        row.updated_at = now
        self.commit()

        self.record_audit(
            "transfer_cancelled",
            f"Transfer {bridge_transfer_id} cancelled",
            {"bridge_transfer_id": bridge_transfer_id},
            user_id=user_id,
        )
        self.notify(
            user_id,
            NotificationDraft(
                type="info",
                title="Transfer Cancelled",
                message="Your transfer has been cancelled.",
                data={"bridge_transfer_id": bridge_transfer_id},
                category="transaction",
            ),
        )
        return row

    def record_transfer_update(
        self,
        bridge_transfer: dict[str, Any],
        *,
        bridge_event_id: Optional[str] = None,
        bridge_event_type: Optional[str] = None,
    ) -> Optional[tuple[str, str]]:
        """Webhook path: apply a ``transfer.updated`` payload to the mirror.

        A transfer unknown to the mirror is skipped with a warning; webhooks
        never create transfer rows.

        Returns:
            (previous status, new status), or None when skipped
        """
        row = self.find_by_bridge_id(bridge_transfer.get("id") or "")
        if row is None:
            logger.warning("TRANSFER_NOT_FOUND", extra={"bridge_transfer_id": bridge_transfer.get("id")})
            return None

        previous, status = self.apply_transfer_update(row, bridge_transfer)
        self.commit()

        self.record_audit(
            "transfer_status_updated",
            f"Transfer {row.bridge_transfer_id} is {status}",
            {
                "bridge_transfer_id": row.bridge_transfer_id,
                "previous_status": previous,
                "status": status,
                "bridge_state": bridge_transfer.get("state"),
            },
            user_id=row.user_id,
            bridge_event_id=bridge_event_id,
            bridge_event_type=bridge_event_type,
        )
        if previous != status and status in ("completed", "failed"):
            self.notify(row.user_id, transfer_outcome_notification(row, status))
        return previous, status
