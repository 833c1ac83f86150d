"""Bridge webhook event envelope: ``{"id": str, "type": str, "data": object}``."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from kalypso_api.errors import ClientInputError


class WebhookEventType(str, Enum):
    """Event kinds with a handler. Anything else parses as UNKNOWN."""

    CUSTOMER_UPDATED = "customer.updated"
    TRANSFER_UPDATED = "transfer.updated"
    WALLET_TRANSACTION_CREATED = "wallet.transaction.created"
    WALLET_TRANSACTION_CONFIRMED = "wallet.transaction.confirmed"
    CARD_TRANSACTION_CREATED = "card.transaction.created"
    VIRTUAL_ACCOUNT_DEPOSIT_CREATED = "virtual_account.deposit.created"
    UNKNOWN = "unknown"

    @classmethod
    def from_wire(cls, value: Optional[str]) -> "WebhookEventType":
        try:
            kind = cls(value)
        except ValueError:
            return cls.UNKNOWN
        return kind


@dataclass(frozen=True)
class BridgeEvent:
    id: Optional[str]
    type: str
    kind: WebhookEventType
    data: dict[str, Any] = field(default_factory=dict)


def parse_event(body: Any) -> BridgeEvent:
    """Validate the envelope of a decoded webhook body.

    Raises:
        ClientInputError: Body is not an object or has no ``type``
    """
    if not isinstance(body, dict):
        raise ClientInputError("Webhook body must be a JSON object")
    event_type = body.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ClientInputError("Webhook body is missing 'type'")
    data = body.get("data")
    if not isinstance(data, dict):
        data = {}
    event_id = body.get("id")
    return BridgeEvent(
        id=str(event_id) if event_id else None,
        type=event_type,
        kind=WebhookEventType.from_wire(event_type),
        data=data,
    )
