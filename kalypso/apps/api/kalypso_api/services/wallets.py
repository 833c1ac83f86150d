"""Wallet sync and balance recomputation.

Balances are never patched incrementally. ``refresh_balance`` replays the
wallet's Bridge history and rewrites every (currency, chain) row, so running
it twice, or after a partial failure, always converges on the same numbers.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Iterable, Literal, Optional

from sqlalchemy import select

from kalypso_api.config import env
from kalypso_api.db.models import BridgeWallet, WalletBalance
from kalypso_api.db.repository import MirrorRepository, UpsertResult
from kalypso_api.errors import NotFoundLocal
from kalypso_api.services.base import BridgeService
from kalypso_api.services.notifications import NotificationDraft
from kalypso_api.utils.money import MoneyError, format_amount, parse_amount
from kalypso_api.utils.time import utc_now

logger = logging.getLogger(__name__)

Direction = Literal["incoming", "outgoing"]
BalanceKey = tuple[str, str]  # (currency, chain)

LARGE_INCOMING_THRESHOLD = Decimal("1000")


# ---------------------------------------------------------------------------
# Pure transaction helpers
# ---------------------------------------------------------------------------


def source_wallet_id(transaction: dict[str, Any]) -> Optional[str]:
    source = transaction.get("source") or {}
    return source.get("from_bridge_wallet_id") or source.get("bridge_wallet_id")


def destination_wallet_id(transaction: dict[str, Any]) -> Optional[str]:
    destination = transaction.get("destination") or {}
    return destination.get("to_bridge_wallet_id") or destination.get("bridge_wallet_id")


def candidate_wallet_ids(transaction: dict[str, Any]) -> list[str]:
    """Wallet IDs named by a transaction, source side first."""
    ids: list[str] = []
    for wallet_id in (source_wallet_id(transaction), destination_wallet_id(transaction)):
        if wallet_id and wallet_id not in ids:
            ids.append(wallet_id)
    return ids


def transaction_direction(transaction: dict[str, Any], wallet_id: str) -> Optional[Direction]:
    """Direction of ``transaction`` relative to ``wallet_id``.

    Returns:
        "incoming" if the wallet is the destination, "outgoing" if it is the
        source, None if it appears on neither side
    """
    if destination_wallet_id(transaction) == wallet_id:
        return "incoming"
    if source_wallet_id(transaction) == wallet_id:
        return "outgoing"
    return None


def transaction_currency(transaction: dict[str, Any], direction: Optional[Direction]) -> str:
    side = transaction.get("destination" if direction == "incoming" else "source") or {}
    currency = side.get("currency") or transaction.get("currency") or ""
    return currency.upper()


def _side_key(side: dict[str, Any]) -> BalanceKey:
    return ((side.get("currency") or "").lower(), (side.get("payment_rail") or "").lower())


def calculate_balances(history: Iterable[dict[str, Any]], wallet_id: str) -> dict[BalanceKey, Decimal]:
    """Sum signed amounts per (currency, chain) for one wallet.

    A transaction credits its destination key when the wallet is the
    destination and debits its source key when the wallet is the source.
    History entries are already scoped to the wallet, so an entry whose
    source side names no wallet and whose destination is not this wallet is a
    debit. Summation makes the result independent of history order.
    """
    totals: dict[BalanceKey, Decimal] = defaultdict(lambda: Decimal("0"))

    for transaction in history:
        try:
            amount = parse_amount(transaction.get("amount"))
        except MoneyError:
            logger.warning(
                "WALLET_HISTORY_BAD_AMOUNT",
                extra={"bridge_wallet_id": wallet_id, "transaction_id": transaction.get("id")},
            )
            continue

        is_destination = destination_wallet_id(transaction) == wallet_id
        src_id = source_wallet_id(transaction)
        is_source = src_id == wallet_id or (src_id is None and not is_destination)

        if is_destination:
            totals[_side_key(transaction.get("destination") or {})] += amount
        if is_source:
            totals[_side_key(transaction.get("source") or {})] -= amount

    return dict(totals)


def _history_items(response: Any) -> list[dict[str, Any]]:
    if isinstance(response, list):
        return response
    return list(response.get("data") or [])


class WalletService(BridgeService):
    """Custodial wallets (``/wallets``) and their mirrored balances."""

    @property
    def wallets(self) -> MirrorRepository[BridgeWallet]:
        return MirrorRepository(self.db, BridgeWallet, "bridge_wallet_id")

    async def create_wallet(self, user_id: str, wallet_type: str = "user", chain: Optional[str] = None) -> BridgeWallet:
        user = self.require_customer(user_id)
        payload: dict[str, Any] = {"type": wallet_type, "customer_id": user.bridge_customer_id}
        if chain:
            payload["chain"] = chain
        bridge_wallet = await self.client.post("/wallets", payload)

        wallet = self.sync_to_mirror(bridge_wallet, user_id).row
        self.record_audit(
            "wallet_created",
            f"Wallet {wallet.bridge_wallet_id} created",
            {"bridge_wallet_id": wallet.bridge_wallet_id, "wallet_type": wallet.wallet_type},
            user_id=user_id,
        )
        self.notify(
            user_id,
            NotificationDraft(
                type="success",
                title="Wallet Created",
                message=f"Your {wallet_type} wallet has been created successfully.",
                data={"bridge_wallet_id": wallet.bridge_wallet_id},
                category="wallet",
            ),
        )
        return wallet

    def get_wallet(self, user_id: str, bridge_wallet_id: str) -> BridgeWallet:
        wallet = self.wallets.get_owned_by_key(bridge_wallet_id, user_id)
        if wallet is None:
            raise NotFoundLocal(f"Wallet {bridge_wallet_id} not found")
        return wallet

    def list_wallets(self, user_id: str, *, status: Optional[str] = None) -> list[BridgeWallet]:
        return self.wallets.list_for_user(user_id, filters={"status": status})

    def find_by_bridge_id(self, bridge_wallet_id: str) -> Optional[BridgeWallet]:
        return self.wallets.get_by_key(bridge_wallet_id)

    def list_balances(self, user_id: str, bridge_wallet_id: str) -> list[WalletBalance]:
        wallet = self.get_wallet(user_id, bridge_wallet_id)
        stmt = (
            select(WalletBalance)
            .where(WalletBalance.wallet_id == wallet.id)
            .order_by(WalletBalance.currency, WalletBalance.chain)
        )
        return list(self.db.execute(stmt).scalars())

    def resolve_transaction_wallet(self, transaction: dict[str, Any]) -> Optional[BridgeWallet]:
        """First wallet named by ``transaction`` that exists in the mirror."""
        for wallet_id in candidate_wallet_ids(transaction):
            wallet = self.find_by_bridge_id(wallet_id)
            if wallet is not None:
                return wallet
        return None

    def sync_to_mirror(self, bridge_wallet: dict[str, Any], user_id: str) -> UpsertResult[BridgeWallet]:
        values: dict[str, Any] = {
            "user_id": user_id,
            "wallet_type": bridge_wallet.get("type") or "user",
            "status": bridge_wallet.get("status") or "active",
        }
        for column, field in (
            ("bridge_customer_id", "customer_id"),
            ("chain", "chain"),
            ("address", "address"),
        ):
            if bridge_wallet.get(field) is not None:
                values[column] = bridge_wallet[field]
        result = self.wallets.upsert(bridge_wallet["id"], values)
        self.commit()
        return result

    async def get_wallet_history(
        self,
        bridge_wallet_id: str,
        *,
        limit: Optional[int] = None,
        updated_after_ms: Optional[int] = None,
        updated_before_ms: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        response = await self.client.get(
            f"/wallets/{bridge_wallet_id}/history",
            params={
                "limit": limit,
                "updated_after_ms": updated_after_ms,
                "updated_before_ms": updated_before_ms,
            },
        )
        return _history_items(response)

    async def get_total_balances(self) -> list[dict[str, Any]]:
        response = await self.client.get("/wallets/total_balances")
        return _history_items(response)

    async def refresh_balance(self, bridge_wallet_id: str) -> list[WalletBalance]:
        """Rebuild every balance row of a wallet from its Bridge history.

        Raises:
            NotFoundLocal: Wallet is not in the mirror
        """
        wallet = self.find_by_bridge_id(bridge_wallet_id)
        if wallet is None:
            raise NotFoundLocal(f"Wallet {bridge_wallet_id} not found")

        limit = env.get_wallet_history_limit()
        history = await self.get_wallet_history(bridge_wallet_id, limit=limit)
        if len(history) >= limit:
            # TODO: page through history once Bridge exposes a cursor for wallet history
            logger.warning(
                "WALLET_HISTORY_POSSIBLY_TRUNCATED",
                extra={"bridge_wallet_id": bridge_wallet_id, "limit": limit},
            )

        totals = calculate_balances(history, bridge_wallet_id)
        now = utc_now()

        existing = {
            (row.currency, row.chain): row
            for row in self.db.execute(
                select(WalletBalance).where(WalletBalance.wallet_id == wallet.id)
            ).scalars()
        }
        for key in existing:
            totals.setdefault(key, Decimal("0"))

        rows: list[WalletBalance] = []
        for (currency, chain), amount in sorted(totals.items()):
            if amount < 0:
                logger.warning(
                    "WALLET_BALANCE_NEGATIVE_CLAMPED",
                    extra={
                        "bridge_wallet_id": bridge_wallet_id,
                        "currency": currency,
                        "chain": chain,
                        "computed": str(amount),
                    },
                )
                amount = Decimal("0")
            row = existing.get((currency, chain))
            if row is None:
                row = WalletBalance(
                    user_id=wallet.user_id,
                    wallet_id=wallet.id,
                    currency=currency,
                    chain=chain,
                )
                self.db.add(row)
            row.balance = amount
            row.last_updated = now
            rows.append(row)

        self.commit()
        logger.info(
            "WALLET_BALANCE_REFRESHED",
            extra={"bridge_wallet_id": bridge_wallet_id, "keys": len(rows), "history_size": len(history)},
        )
        return rows

    # ------------------------------------------------------------------
    # Webhook ingestion
    # ------------------------------------------------------------------

    async def record_wallet_transaction(
        self,
        transaction: dict[str, Any],
        *,
        confirmed: bool,
        bridge_event_id: Optional[str] = None,
        bridge_event_type: Optional[str] = None,
    ) -> Optional[Direction]:
        """Handle ``wallet.transaction.created`` / ``wallet.transaction.confirmed``.

        A confirmed transaction refreshes the wallet's balances before the
        user is notified; a refresh failure is logged and does not stop the
        notification.

        Returns:
            Direction relative to the resolved wallet, or None when no wallet
            named by the transaction is in the mirror
        """
        wallet = self.resolve_transaction_wallet(transaction)
        if wallet is None:
            logger.warning(
                "WALLET_NOT_FOUND",
                extra={"transaction_id": transaction.get("id"), "candidates": candidate_wallet_ids(transaction)},
            )
            return None

        direction = transaction_direction(transaction, wallet.bridge_wallet_id) or "incoming"
        currency = transaction_currency(transaction, direction)
        try:
            amount = parse_amount(transaction.get("amount"), default=Decimal("0"))
        except MoneyError:
            logger.warning(
                "WALLET_TRANSACTION_AMOUNT_INVALID",
                extra={"transaction_id": transaction.get("id"), "amount": transaction.get("amount")},
            )
            amount = Decimal("0")
        shown = f"{format_amount(amount)} {currency}".strip()
        incoming = direction == "incoming"

        if confirmed:
            try:
                await self.refresh_balance(wallet.bridge_wallet_id)
            except Exception as exc:
                # A failed refresh never blocks the transaction notification
                self.db.rollback()
                logger.error(
                    "WALLET_BALANCE_REFRESH_FAILED",
                    extra={
                        "bridge_wallet_id": wallet.bridge_wallet_id,
                        "error_type": type(exc).__name__,
                        "error_msg": str(exc),
                    },
                    exc_info=True,
                )

        self.record_audit(
            "wallet_transaction_confirmed" if confirmed else "wallet_transaction_created",
            f"Wallet transaction {'confirmed' if confirmed else 'created'}: {direction} {shown}",
            {
                "transaction_id": transaction.get("id"),
                "bridge_wallet_id": wallet.bridge_wallet_id,
                "direction": direction,
                "amount": amount,
                "currency": currency,
            },
            user_id=wallet.user_id,
            bridge_event_id=bridge_event_id,
            bridge_event_type=bridge_event_type,
        )

        data = {
            "transaction_id": transaction.get("id"),
            "bridge_wallet_id": wallet.bridge_wallet_id,
            "direction": direction,
            "amount": amount,
            "currency": currency,
        }
        if confirmed:
            data["tx_hash"] = transaction.get("transaction_hash") or transaction.get("external_identifier")
            draft = NotificationDraft(
                type="success",
                title="Transaction Received" if incoming else "Transaction Sent",
                message=f"{'Received' if incoming else 'Sent'} {shown}",
                data=data,
                priority="high" if incoming and amount > LARGE_INCOMING_THRESHOLD else "normal",
                category="wallet",
            )
        else:
            draft = NotificationDraft(
                type="info",
                title="Incoming Transaction" if incoming else "Outgoing Transaction",
                message=f"{'Receiving' if incoming else 'Sending'} {shown}",
                data=data,
                category="wallet",
            )
        transaction_id = transaction.get("id")
        # Redelivered under a new event id: balances converge, the user is told once
        if transaction_id and self.notifier.has_notified(
            wallet.user_id, draft.title, "transaction_id", str(transaction_id)
        ):
            logger.info(
                "WALLET_TRANSACTION_ALREADY_NOTIFIED",
                extra={"transaction_id": transaction_id, "title": draft.title},
            )
            return direction
        self.notify(wallet.user_id, draft)
        return direction
