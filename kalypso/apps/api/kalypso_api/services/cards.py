"""Card lifecycle and card-transaction ingestion.

Spend counters are reset lazily: the first counted purchase after a window
has elapsed (24h daily, 30d monthly) restarts that counter at the purchase
amount. Counters are never decremented.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from kalypso_api.db.models import BridgeCard, CardTransaction
from kalypso_api.db.repository import MirrorRepository, UpsertResult
from kalypso_api.errors import ClientInputError, NotFoundLocal
from kalypso_api.services.base import BridgeService
from kalypso_api.services.notifications import NotificationDraft
from kalypso_api.utils.money import MoneyError, format_amount, parse_amount, parse_positive_amount
from kalypso_api.utils.time import ensure_utc, parse_provider_timestamp, utc_now

logger = logging.getLogger(__name__)

CARD_TYPES = ("virtual", "physical")
CARD_BRANDS = ("visa", "mastercard")

DAILY_WINDOW = timedelta(hours=24)
MONTHLY_WINDOW = timedelta(days=30)

DEFAULT_DAILY_LIMIT = Decimal("1000")
DEFAULT_MONTHLY_LIMIT = Decimal("10000")
DEFAULT_SINGLE_TRANSACTION_LIMIT = Decimal("500")

CARD_TRANSACTION_STATUSES = frozenset({"pending", "approved", "declined", "settled", "reversed"})
SPEND_STATUSES = frozenset({"approved", "settled"})

# Local column -> Bridge controls key
CONTROL_FIELDS: dict[str, str] = {
    "allow_international": "international",
    "allow_online": "online",
    "allow_contactless": "contactless",
    "allow_atm_withdrawals": "atm",
}

# Local column -> Bridge limits key
LIMIT_FIELDS: dict[str, str] = {
    "daily_spend_limit": "daily_limit",
    "monthly_spend_limit": "monthly_limit",
    "single_transaction_limit": "single_transaction_limit",
}


@dataclass(frozen=True)
class SpendCounters:
    daily: Decimal
    monthly: Decimal
    last_daily_reset: Optional[datetime]
    last_monthly_reset: Optional[datetime]


def apply_spend(counters: SpendCounters, amount: Decimal, now: datetime) -> SpendCounters:
    """Add ``amount`` to the counters, restarting any window that has elapsed.

    With 40 spent and the daily window opened 23h ago, a purchase of 10 gives
    50; opened 25h ago, it gives 10 and a fresh reset time.
    """
    last_daily = ensure_utc(counters.last_daily_reset)
    last_monthly = ensure_utc(counters.last_monthly_reset)

    if last_daily is None or now - last_daily >= DAILY_WINDOW:
        daily, last_daily = amount, now
    else:
        daily = counters.daily + amount

    if last_monthly is None or now - last_monthly >= MONTHLY_WINDOW:
        monthly, last_monthly = amount, now
    else:
        monthly = counters.monthly + amount

    return SpendCounters(daily, monthly, last_daily, last_monthly)


def counts_toward_spend(previous_status: Optional[str], status: str, transaction_type: str) -> bool:
    """True when a purchase first enters an approved or settled status.

    An approved purchase that later settles is counted once, and replaying
    the same event never counts again.
    """
    if transaction_type != "purchase":
        return False
    return status in SPEND_STATUSES and previous_status not in SPEND_STATUSES


def card_transaction_notification(
    transaction: dict[str, Any], amount: Decimal, currency: str, status: str
) -> NotificationDraft:
    merchant = (transaction.get("merchant") or {}).get("name")
    shown = f"{format_amount(amount)} {currency.upper()}"
    data = {
        "bridge_transaction_id": transaction.get("id"),
        "amount": amount,
        "currency": currency,
        "merchant_name": merchant,
        "type": transaction.get("type") or "purchase",
        "status": status,
    }

    if status == "declined":
        reason = transaction.get("decline_reason")
        return NotificationDraft(
            type="warning",
            title="Card Declined",
            message=f"Transaction of {shown} was declined" + (f": {reason}" if reason else ""),
            data=data,
            priority="high",
            category="card",
        )
    if status in SPEND_STATUSES:
        return NotificationDraft(
            type="info",
            title="Card Purchase",
            message=shown + (f" at {merchant}" if merchant else ""),
            data=data,
            category="card",
        )
    return NotificationDraft(
        type="info",
        title="Card Transaction",
        message=f"Transaction of {shown} is {status}",
        data=data,
        category="card",
    )


class CardService(BridgeService):
    """Cards against Bridge ``/cards`` mirrored into ``bridge_cards``."""

    @property
    def cards(self) -> MirrorRepository[BridgeCard]:
        return MirrorRepository(self.db, BridgeCard, "bridge_card_id")

    @property
    def transactions(self) -> MirrorRepository[CardTransaction]:
        return MirrorRepository(self.db, CardTransaction, "bridge_transaction_id")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_card(self, user_id: str, card_id: str) -> BridgeCard:
        card = self.cards.get_owned(card_id, user_id)
        if card is None:
            raise NotFoundLocal(f"Card {card_id} not found")
        return card

    def _open_card(self, user_id: str, card_id: str) -> BridgeCard:
        card = self.get_card(user_id, card_id)
        if card.status == "cancelled":
            raise ClientInputError("Card has been cancelled")
        return card

    def list_cards(self, user_id: str, *, status: Optional[str] = None) -> list[BridgeCard]:
        return self.cards.list_for_user(user_id, filters={"status": status})

    def find_by_bridge_id(self, bridge_card_id: str) -> Optional[BridgeCard]:
        return self.cards.get_by_key(bridge_card_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_card(
        self,
        user_id: str,
        card_type: str = "virtual",
        cardholder_name: Optional[str] = None,
        brand: str = "visa",
    ) -> BridgeCard:
        if card_type not in CARD_TYPES:
            raise ClientInputError(f"card_type must be one of {', '.join(CARD_TYPES)}")
        if brand not in CARD_BRANDS:
            raise ClientInputError(f"brand must be one of {', '.join(CARD_BRANDS)}")
        user = self.require_customer(user_id)

        bridge_card = await self.client.post(
            "/cards",
            {
                "customer_id": user.bridge_customer_id,
                "type": card_type,
                "cardholder_name": cardholder_name or user.name,
                "currency": "usd",
                "brand": brand,
            },
        )
        card = self.sync_to_mirror(bridge_card, user_id).row

        self.record_audit(
            "card_created",
            f"{card_type} card created",
            {"bridge_card_id": card.bridge_card_id, "card_type": card_type},
            user_id=user_id,
        )
        self.notify(
            user_id,
            NotificationDraft(
                type="card",
                title="Card Created",
                message=f"Your {card_type} card has been created.",
                data={"card_id": card.id},
                category="card",
            ),
        )
        return card

    async def refresh_card(self, user_id: str, card_id: str) -> BridgeCard:
        card = self.get_card(user_id, card_id)
        bridge_card = await self.client.get(f"/cards/{card.bridge_card_id}")
        return self.sync_to_mirror(bridge_card, user_id).row

    async def activate_card(
        self, user_id: str, card_id: str, activation_code: Optional[str] = None
    ) -> BridgeCard:
        card = self._open_card(user_id, card_id)
        body = {"activation_code": activation_code} if activation_code else {}
        await self.client.post(f"/cards/{card.bridge_card_id}/activate", body)

        card.status = "active"
        card.activation_status = "activated"
        card.activated_at = utc_now()
        self.commit()

        self.record_audit("card_activated", "Card activated", {"card_id": card.id}, user_id=user_id)
        self.notify(
            user_id,
            NotificationDraft(
                type="success",
                title="Card Activated",
                message=f"Your card ending in {card.last_four or '****'} is ready to use.",
                data={"card_id": card.id},
                category="card",
            ),
        )
        return card

    async def freeze_card(self, user_id: str, card_id: str, reason: str = "user_requested") -> BridgeCard:
        card = self._open_card(user_id, card_id)
        await self.client.post(f"/cards/{card.bridge_card_id}/freeze", {"reason": reason})

        card.status = "frozen"
        card.is_frozen = True
        card.frozen_at = utc_now()
        card.frozen_reason = reason
        self.commit()

        self.record_audit(
            "card_frozen", "Card frozen", {"card_id": card.id, "reason": reason}, user_id=user_id
        )
        self.notify(
            user_id,
            NotificationDraft(
                type="warning",
                title="Card Frozen",
                message="Your card has been frozen. No new transactions will be approved.",
                data={"card_id": card.id, "reason": reason},
                priority="high",
                category="security",
            ),
        )
        return card

    async def unfreeze_card(self, user_id: str, card_id: str) -> BridgeCard:
        card = self._open_card(user_id, card_id)
        await self.client.post(f"/cards/{card.bridge_card_id}/unfreeze")

        card.status = "active"
        card.is_frozen = False
        card.frozen_at = None
        card.frozen_reason = None
        self.commit()

        self.record_audit("card_unfrozen", "Card unfrozen", {"card_id": card.id}, user_id=user_id)
        self.notify(
            user_id,
            NotificationDraft(
                type="info",
                title="Card Unfrozen",
                message="Your card is active again.",
                data={"card_id": card.id},
                category="security",
            ),
        )
        return card

    async def update_spending_limits(
        self, user_id: str, card_id: str, limits: dict[str, Any]
    ) -> BridgeCard:
        """Change any of daily, monthly and single-transaction limits.

        Raises:
            ClientInputError: No limit given, or a limit is not a positive amount
        """
        parsed: dict[str, Decimal] = {}
        for column in LIMIT_FIELDS:
            if limits.get(column) is None:
                continue
            try:
                parsed[column] = parse_positive_amount(limits[column])
            except MoneyError as exc:
                raise ClientInputError(f"{column}: {exc}") from exc
        if not parsed:
            raise ClientInputError("At least one spending limit is required")

        card = self._open_card(user_id, card_id)
        await self.client.put(
            f"/cards/{card.bridge_card_id}/limits",
            {LIMIT_FIELDS[column]: format_amount(value) for column, value in parsed.items()},
        )
        for column, value in parsed.items():
            setattr(card, column, value)
        self.commit()

        self.record_audit(
            "card_limits_updated", "Card spending limits updated", {"card_id": card.id, **parsed}, user_id=user_id
        )
        return card

    async def update_card_controls(
        self, user_id: str, card_id: str, controls: dict[str, Any]
    ) -> BridgeCard:
        updates = {column: bool(controls[column]) for column in CONTROL_FIELDS if controls.get(column) is not None}
        if not updates:
            raise ClientInputError("At least one card control is required")

        card = self._open_card(user_id, card_id)
        await self.client.put(
            f"/cards/{card.bridge_card_id}/controls",
            {CONTROL_FIELDS[column]: value for column, value in updates.items()},
        )
        for column, value in updates.items():
            setattr(card, column, value)
        self.commit()

        self.record_audit(
            "card_controls_updated", "Card controls updated", {"card_id": card.id, **updates}, user_id=user_id
        )
        return card

    async def cancel_card(self, user_id: str, card_id: str, reason: str = "user_requested") -> BridgeCard:
        card = self._open_card(user_id, card_id)
        await self.client.post(f"/cards/{card.bridge_card_id}/cancel", {"reason": reason})

        card.status = "cancelled"
        card.cancelled_at = utc_now()
        self.commit()

        self.record_audit(
            "card_cancelled", "Card cancelled", {"card_id": card.id, "reason": reason}, user_id=user_id
        )
        self.notify(
            user_id,
            NotificationDraft(
                type="info",
                title="Card Cancelled",
                message="Your card has been cancelled.",
                data={"card_id": card.id},
                category="card",
            ),
        )
        return card

    async def get_sensitive_data(self, user_id: str, card_id: str) -> dict[str, Any]:
        """Fetch PAN/CVV from Bridge. The response is passed through and never stored."""
        card = self._open_card(user_id, card_id)
        data = await self.client.get(f"/cards/{card.bridge_card_id}/sensitive")
        self.record_audit(
            "card_sensitive_data_accessed", "Card sensitive data viewed", {"card_id": card.id}, user_id=user_id
        )
        return data

    def get_card_transactions(
        self, user_id: str, card_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[CardTransaction]:
        card = self.get_card(user_id, card_id)
        return self.transactions.list_for_user(
            user_id, filters={"card_id": card.id}, limit=limit, offset=offset
        )

    def sync_to_mirror(self, bridge_card: dict[str, Any], user_id: str) -> UpsertResult[BridgeCard]:
        limits = bridge_card.get("limits") or {}
        controls = bridge_card.get("controls") or {}
        values: dict[str, Any] = {
            "user_id": user_id,
            "bridge_customer_id": bridge_card.get("customer_id"),
            "card_type": bridge_card.get("type") or "virtual",
            "card_brand": bridge_card.get("brand") or "visa",
            "last_four": bridge_card.get("last4") or bridge_card.get("last_four"),
            "expiry_month": bridge_card.get("exp_month"),
            "expiry_year": bridge_card.get("exp_year"),
            "cardholder_name": bridge_card.get("cardholder_name"),
            "status": bridge_card.get("status") or "pending",
            "activation_status": bridge_card.get("activation_status") or "not_activated",
            "is_frozen": bool(bridge_card.get("is_frozen")),
            "daily_spend_limit": parse_amount(limits.get("daily"), default=DEFAULT_DAILY_LIMIT),
            "monthly_spend_limit": parse_amount(limits.get("monthly"), default=DEFAULT_MONTHLY_LIMIT),
            "single_transaction_limit": parse_amount(
                limits.get("single_transaction"), default=DEFAULT_SINGLE_TRANSACTION_LIMIT
            ),
        }
        for column, key in CONTROL_FIELDS.items():
            values[column] = controls.get(key) is not False
        if bridge_card.get("shipping_address"):
            values["shipping_address"] = bridge_card["shipping_address"]

        result = self.cards.upsert(bridge_card["id"], values)
        self.commit()
        return result

    # ------------------------------------------------------------------
    # Webhook ingestion
    # ------------------------------------------------------------------

    def record_card_transaction(
        self,
        transaction: dict[str, Any],
        *,
        bridge_event_id: Optional[str] = None,
        bridge_event_type: Optional[str] = None,
    ) -> Optional[UpsertResult[CardTransaction]]:
        """Upsert a card transaction delivered by webhook and update spend counters.

        Returns:
            The upsert result, or None when the card is not in the mirror
        """
        bridge_card_id = transaction.get("card_id")
        if not bridge_card_id:
            logger.warning("CARD_TRANSACTION_MISSING_CARD", extra={"bridge_transaction_id": transaction.get("id")})
            return None
        card = self.find_by_bridge_id(bridge_card_id)
        if card is None:
            logger.warning(
                "CARD_NOT_FOUND",
                extra={"bridge_card_id": bridge_card_id, "bridge_transaction_id": transaction.get("id")},
            )
            return None

        amount = parse_amount(transaction.get("amount"))
        currency = (transaction.get("currency") or "usd").lower()
        status = transaction.get("status") or "pending"
        transaction_type = transaction.get("type") or "purchase"
        if status not in CARD_TRANSACTION_STATUSES:
            logger.warning(
                "CARD_TRANSACTION_STATUS_UNRECOGNIZED",
                extra={"bridge_transaction_id": transaction["id"], "status": status},
            )

        existing = self.transactions.get_by_key(transaction["id"])
        previous_status = existing.status if existing is not None else None
        settled_at = parse_provider_timestamp(transaction.get("settled_at"))

        if previous_status == "settled":
            # Settled rows are frozen apart from the settlement timestamp
            if status != "settled":
                logger.warning(
                    "CARD_TRANSACTION_SETTLED_IMMUTABLE",
                    extra={"bridge_transaction_id": transaction["id"], "status": status},
                )
            values: dict[str, Any] = {"settled_at": settled_at} if settled_at else {}
        else:
            merchant = transaction.get("merchant") or {}
            values = {
                "user_id": card.user_id,
                "card_id": card.id,
                "amount": amount,
                "currency": currency,
                "merchant_name": merchant.get("name"),
                "merchant_category": merchant.get("category"),
                "merchant_city": merchant.get("city"),
                "merchant_country": merchant.get("country"),
                "transaction_type": transaction_type,
                "status": status,
                "decline_reason": transaction.get("decline_reason"),
                "description": transaction.get("description"),
                "is_international": bool(transaction.get("is_international")),
                "is_online": bool(transaction.get("is_online")),
                "settled_at": settled_at,
            }
            if existing is None:
                values["created_at"] = parse_provider_timestamp(transaction.get("created_at")) or utc_now()

        result = self.transactions.upsert(transaction["id"], values)

        # The row may have been written concurrently since ``existing`` was read
        if counts_toward_spend(result.value_before("status"), result.row.status, transaction_type):
            self._apply_card_spend(card, amount)

        self.commit()

        self.record_audit(
            "card_transaction_created" if result.created else "card_transaction_updated",
            f"Card {transaction_type} {result.row.status}: {format_amount(amount)} {currency.upper()}",
            {
                "bridge_transaction_id": transaction["id"],
                "card_id": card.id,
                "amount": amount,
                "currency": currency,
                "status": result.row.status,
            },
            user_id=card.user_id,
            bridge_event_id=bridge_event_id,
            bridge_event_type=bridge_event_type,
        )
        if result.created or result.changed_field("status"):
            self.notify(
                card.user_id,
                card_transaction_notification(transaction, amount, currency, result.row.status),
            )
        return result

    def _apply_card_spend(self, card: BridgeCard, amount: Decimal) -> None:
        counters = apply_spend(
            SpendCounters(
                daily=card.current_daily_spend or Decimal("0"),
                monthly=card.current_monthly_spend or Decimal("0"),
                last_daily_reset=card.last_daily_reset,
                last_monthly_reset=card.last_monthly_reset,
            ),
            amount,
            utc_now(),
        )
        card.current_daily_spend = counters.daily
        card.current_monthly_spend = counters.monthly
        card.last_daily_reset = counters.last_daily_reset
        card.last_monthly_reset = counters.last_monthly_reset

        if counters.daily > card.daily_spend_limit:
            logger.warning(
                "CARD_DAILY_LIMIT_EXCEEDED",
                extra={"card_id": card.id, "current_daily_spend": counters.daily},
            )
        if counters.monthly > card.monthly_spend_limit:
            logger.warning(
                "CARD_MONTHLY_LIMIT_EXCEEDED",
                extra={"card_id": card.id, "current_monthly_spend": counters.monthly},
            )
