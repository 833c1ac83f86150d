"""Per-event handlers.

Each handler is idempotent against redelivery: it looks rows up by the Bridge
object ID and applies transitions from current stored state, so processing
the same event twice ends in the same state. Objects missing from the mirror
are logged and skipped.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from kalypso_api.audit.sinks import AuditSink
from kalypso_api.bridge.client import BridgeClient
from kalypso_api.services.cards import CardService
from kalypso_api.services.customers import CustomerService
from kalypso_api.services.notifications import NotificationService
from kalypso_api.services.transfers import TransferService
from kalypso_api.services.virtual_accounts import VirtualAccountService
from kalypso_api.services.wallets import WalletService
from kalypso_api.webhooks.events import BridgeEvent, WebhookEventType

logger = logging.getLogger(__name__)


@dataclass
class WebhookContext:
    """Collaborators shared by every handler of one delivery."""

    client: BridgeClient
    db: Session
    audit: Optional[AuditSink] = None

    def __post_init__(self) -> None:
        self.notifier = NotificationService(self.db)

    def service(self, cls):
        return cls(self.client, self.db, notifier=self.notifier, audit=self.audit)


Handler = Callable[[WebhookContext, BridgeEvent], Awaitable[None]]


async def handle_customer_updated(ctx: WebhookContext, event: BridgeEvent) -> None:
    result = ctx.service(CustomerService).apply_customer_update(
        event.data, bridge_event_id=event.id, bridge_event_type=event.type
    )
    if result is not None and not result.status_changed:
        logger.info("KYC_STATUS_UNCHANGED", extra={"kyc_status": result.status})


async def handle_transfer_updated(ctx: WebhookContext, event: BridgeEvent) -> None:
    ctx.service(TransferService).record_transfer_update(
        event.data, bridge_event_id=event.id, bridge_event_type=event.type
    )


async def handle_wallet_transaction_created(ctx: WebhookContext, event: BridgeEvent) -> None:
    await ctx.service(WalletService).record_wallet_transaction(
        event.data, confirmed=False, bridge_event_id=event.id, bridge_event_type=event.type
    )


async def handle_wallet_transaction_confirmed(ctx: WebhookContext, event: BridgeEvent) -> None:
    await ctx.service(WalletService).record_wallet_transaction(
        event.data, confirmed=True, bridge_event_id=event.id, bridge_event_type=event.type
    )


async def handle_card_transaction_created(ctx: WebhookContext, event: BridgeEvent) -> None:
    ctx.service(CardService).record_card_transaction(
        event.data, bridge_event_id=event.id, bridge_event_type=event.type
    )


async def handle_virtual_account_deposit_created(ctx: WebhookContext, event: BridgeEvent) -> None:
    ctx.service(VirtualAccountService).record_deposit(
        event.data, bridge_event_id=event.id, bridge_event_type=event.type
    )


HANDLERS: dict[WebhookEventType, Handler] = {
    WebhookEventType.CUSTOMER_UPDATED: handle_customer_updated,
    WebhookEventType.TRANSFER_UPDATED: handle_transfer_updated,
    WebhookEventType.WALLET_TRANSACTION_CREATED: handle_wallet_transaction_created,
    WebhookEventType.WALLET_TRANSACTION_CONFIRMED: handle_wallet_transaction_confirmed,
    WebhookEventType.CARD_TRANSACTION_CREATED: handle_card_transaction_created,
    WebhookEventType.VIRTUAL_ACCOUNT_DEPOSIT_CREATED: handle_virtual_account_deposit_created,
}


def missing_handlers() -> set[WebhookEventType]:
    return {kind for kind in WebhookEventType if kind is not WebhookEventType.UNKNOWN} - set(HANDLERS)


if missing_handlers():
    raise RuntimeError(f"Webhook event kinds without a handler: {sorted(k.value for k in missing_handlers())}")
