"""Liquidation addresses: crypto deposit addresses that auto-convert to USD."""

import logging
from typing import Any, Optional

from kalypso_api.db.models import LiquidationAddress
from kalypso_api.db.repository import MirrorRepository, UpsertResult
from kalypso_api.errors import ClientInputError, NotFoundLocal
from kalypso_api.services.base import BridgeService
from kalypso_api.services.notifications import NotificationDraft
from kalypso_api.utils.money import parse_amount

logger = logging.getLogger(__name__)

SUPPORTED_OPTIONS: dict[str, tuple[str, ...]] = {
    "ethereum": ("usdc", "usdt", "eth"),
    "polygon": ("usdc", "usdt", "matic"),
    "bitcoin": ("btc",),
    "solana": ("usdc", "sol"),
}

ADDRESS_STATUSES = frozenset({"active", "inactive"})


def supported_options() -> dict[str, list[str]]:
    """Currencies accepted per chain."""
    return {chain: list(currencies) for chain, currencies in SUPPORTED_OPTIONS.items()}


def validate_liquidation_target(currency: str, chain: str) -> tuple[str, str]:
    currency, chain = (currency or "").lower(), (chain or "").lower()
    if chain not in SUPPORTED_OPTIONS:
        raise ClientInputError(f"Unsupported chain: {chain or '<missing>'}")
    if currency not in SUPPORTED_OPTIONS[chain]:
        raise ClientInputError(f"{currency or '<missing>'} is not supported on {chain}")
    return currency, chain


class LiquidationService(BridgeService):
    @property
    def addresses(self) -> MirrorRepository[LiquidationAddress]:
        return MirrorRepository(self.db, LiquidationAddress, "bridge_liquidation_address_id")

    async def create_liquidation_address(
        self,
        user_id: str,
        currency: str,
        chain: str,
        *,
        external_account_id: Optional[str] = None,
    ) -> LiquidationAddress:
        currency, chain = validate_liquidation_target(currency, chain)
        user = self.require_customer(user_id)

        payload: dict[str, Any] = {
            "customer_id": user.bridge_customer_id,
            "currency": currency,
            "chain": chain,
            "destination_payment_rail": "ach",
            "destination_currency": "usd",
        }
        if external_account_id:
            payload["external_account_id"] = external_account_id
        bridge_address = await self.client.post("/liquidation_addresses", payload)
        address = self.sync_to_mirror(bridge_address, user_id).row

        self.record_audit(
            "liquidation_address_created",
            f"Liquidation address created for {currency} on {chain}",
            {"bridge_liquidation_address_id": address.bridge_liquidation_address_id},
            user_id=user_id,
        )
        self.notify(
            user_id,
            NotificationDraft(
                type="success",
                title="Liquidation Address Created",
                message=(
                    f"Your {currency.upper()} liquidation address on {chain} has been created. "
                    "Deposits will auto-convert to USD."
                ),
                data={
                    "bridge_liquidation_address_id": address.bridge_liquidation_address_id,
                    "address": address.address,
                },
                category="wallet",
            ),
        )
        return address

    async def get_liquidation_address(self, user_id: str, bridge_address_id: str) -> LiquidationAddress:
        self.get_owned(user_id, bridge_address_id)
        bridge_address = await self.client.get(f"/liquidation_addresses/{bridge_address_id}")
        return self.sync_to_mirror(bridge_address, user_id).row

    def get_owned(self, user_id: str, bridge_address_id: str) -> LiquidationAddress:
        address = self.addresses.get_owned_by_key(bridge_address_id, user_id)
        if address is None:
            raise NotFoundLocal(f"Liquidation address {bridge_address_id} not found")
        return address

    def list_liquidation_addresses(self, user_id: str) -> list[LiquidationAddress]:
        return self.addresses.list_for_user(user_id)

    def get_by_bridge_id(self, bridge_address_id: str) -> Optional[LiquidationAddress]:
        return self.addresses.get_by_key(bridge_address_id)

    def update_status(self, bridge_address_id: str, status: str) -> LiquidationAddress:
        """Set the local status of an address (Bridge is not called)."""
        if status not in ADDRESS_STATUSES:
            raise ClientInputError(f"Unknown liquidation address status: {status}")
        address = self.get_by_bridge_id(bridge_address_id)
        if address is None:
            raise NotFoundLocal(f"Liquidation address {bridge_address_id} not found")
        self.addresses.apply(address, {"status": status})
        self.commit()
        return address

    def sync_to_mirror(self, bridge_address: dict[str, Any], user_id: str) -> UpsertResult[LiquidationAddress]:
        fee = bridge_address.get("custom_developer_fee_percent")
        values: dict[str, Any] = {
            "user_id": user_id,
            "bridge_customer_id": bridge_address.get("customer_id"),
            "currency": (bridge_address.get("currency") or "").lower(),
            "chain": (bridge_address.get("chain") or "").lower(),
            "address": bridge_address.get("address"),
            "destination_payment_rail": bridge_address.get("destination_payment_rail") or "ach",
            "destination_currency": bridge_address.get("destination_currency") or "usd",
            "external_account_id": bridge_address.get("external_account_id"),
            "custom_developer_fee_percent": parse_amount(fee) if fee not in (None, "") else None,
            "status": bridge_address.get("status") or "active",
        }
        result = self.addresses.upsert(bridge_address["id"], values)
        self.commit()
        return result
