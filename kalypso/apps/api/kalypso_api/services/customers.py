"""Customer / KYC sync.

Owns the link between a local user and a Bridge customer and the mapping of
Bridge customer status onto the local KYC status and tier. This is the only
service allowed to create Bridge customers; every other service requires the
link to already exist.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import select

from kalypso_api.db.models import User
from kalypso_api.errors import ProviderTerminalError
from kalypso_api.services.base import BridgeService
from kalypso_api.services.notifications import NotificationDraft

logger = logging.getLogger(__name__)

CUSTOMER_STATUS_MAP: dict[str, str] = {
    "active": "approved",
    "paused": "under_review",
    "offboarded": "rejected",
}

QUALIFYING_ENDORSEMENTS = frozenset({"ach", "base"})

KYC_STATUSES = ("not_started", "pending", "under_review", "approved", "rejected")


@dataclass(frozen=True)
class KycMapping:
    status: str
    tier: int


@dataclass(frozen=True)
class CustomerSyncResult:
    previous_status: str
    status: str
    previous_tier: int
    tier: int

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.status


def derive_tier(endorsements: Optional[Iterable[dict[str, Any]]]) -> int:
    """Tier 2 iff an ``ach`` or ``base`` endorsement is approved."""
    for endorsement in endorsements or ():
        if endorsement.get("name") in QUALIFYING_ENDORSEMENTS and endorsement.get("status") == "approved":
            return 2
    return 1


def map_customer_status(
    bridge_status: Optional[str], endorsements: Optional[Iterable[dict[str, Any]]] = None
) -> KycMapping:
    """Map a Bridge customer status (+ endorsements) to local KYC status and tier.

    Unrecognized statuses map to ``pending``. A rejected customer is always
    tier 1 whatever its endorsements say.
    """
    status = CUSTOMER_STATUS_MAP.get(bridge_status or "", "pending")
    tier = 1 if status == "rejected" else derive_tier(endorsements)
    return KycMapping(status=status, tier=tier)


def kyc_notification(status: str, tier: int, bridge_customer_id: Optional[str]) -> Optional[NotificationDraft]:
    """Notification themed to a KYC status (None for statuses with no theme)."""
    data = {"kyc_status": status, "kyc_tier": tier, "bridge_customer_id": bridge_customer_id}
    themes = {
        "approved": (
            "success",
            "KYC Verification Complete",
            f"Your identity verification has been approved! You now have Tier {tier} access.",
        ),
        "pending": (
            "info",
            "KYC Verification Pending",
            "Your identity verification is being reviewed. We'll notify you once it's complete.",
        ),
        "under_review": (
            "warning",
            "KYC Under Review",
            "Your identity verification requires additional review. This may take a few business days.",
        ),
        "rejected": (
            "error",
            "KYC Verification Failed",
            "We were unable to verify your identity. Please contact support for assistance.",
        ),
    }
    theme = themes.get(status)
    if theme is None:
        return None
    type_, title, message = theme
    return NotificationDraft(
        type=type_,
        title=title,
        message=message,
        data=data,
        priority="high",
        category="kyc",
    )


def _split_name(name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not name:
        return None, None
    parts = name.strip().split(None, 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)


class CustomerService(BridgeService):
    """KYC lifecycle against Bridge ``/customers``."""

    def find_by_customer_id(self, bridge_customer_id: str) -> Optional[User]:
        stmt = select(User).where(User.bridge_customer_id == bridge_customer_id)
        return self.db.execute(stmt).scalar_one_or_none()

    async def create_customer(self, user_id: str, profile: Optional[dict[str, Any]] = None) -> dict:
        """Create the Bridge customer for ``user_id`` (or fetch the existing one).

        The idempotency key is derived from the user ID so a retried or
        concurrent initiation can never create a second customer.
        """
        user = self.get_user(user_id)
        if user.bridge_customer_id:
            return await self.client.get(f"/customers/{user.bridge_customer_id}")

        first_name, last_name = _split_name(user.name)
        payload: dict[str, Any] = {
            "type": "individual",
            "first_name": first_name,
            "last_name": last_name,
            "email": user.email,
            "phone": user.phone,
        }
        payload.update(profile or {})
        payload = {k: v for k, v in payload.items() if v is not None}

        customer = await self.client.post(
            "/customers", payload, idempotency_key=f"kalypso-customer-{user_id}"
        )
        customer_id = customer.get("id")
        if not customer_id:
            raise ProviderTerminalError("Bridge did not return a customer id", provider_error=customer)

        user.bridge_customer_id = customer_id
        if user.kyc_status == "not_started":
            user.kyc_status = "pending"
        self.commit()

        logger.info("BRIDGE_CUSTOMER_CREATED", extra={"bridge_customer_id": customer_id})
        self.record_audit(
            "bridge_customer_created",
            f"Bridge customer {customer_id} created",
            {"bridge_customer_id": customer_id},
            user_id=user_id,
        )
        return customer

    async def get_customer(self, user_id: str) -> dict:
        user = self.require_customer(user_id)
        return await self.client.get(f"/customers/{user.bridge_customer_id}")

    async def update_customer(self, user_id: str, updates: dict[str, Any]) -> dict:
        user = self.require_customer(user_id)
        customer = await self.client.put(f"/customers/{user.bridge_customer_id}", updates)
        self.sync_to_mirror(customer, user_id)
        return customer

    async def initiate_kyc(self, user_id: str, profile: Optional[dict[str, Any]] = None) -> dict:
        """Ensure a Bridge customer exists and return its hosted KYC link."""
        customer = await self.create_customer(user_id, profile)
        customer_id = customer.get("id") or self.get_user(user_id).bridge_customer_id

        link_response = await self.client.get(f"/customers/{customer_id}/kyc_link")
        kyc_link = (
            link_response.get("kyc_link")
            or link_response.get("kycLink")
            or link_response.get("url")
        )

        self.notify(
            user_id,
            NotificationDraft(
                type="kyc",
                title="KYC Verification Started",
                message="Complete your identity verification to unlock full platform features.",
                data={"bridge_customer_id": customer_id, "kyc_link": kyc_link},
                category="kyc",
            ),
        )
        return {"bridge_customer_id": customer_id, "kyc_link": kyc_link}

    async def get_kyc_status(self, user_id: str) -> dict:
        """Bridge's view of the customer's verification, plus the local mapping."""
        customer = await self.get_customer(user_id)
        endorsements = customer.get("endorsements") or []
        mapping = map_customer_status(customer.get("status"), endorsements)
        return {
            "bridge_customer_id": customer.get("id"),
            "bridge_status": customer.get("status"),
            "kyc_status": mapping.status,
            "kyc_tier": mapping.tier,
            "requirements_due": customer.get("requirements_due") or [],
            "future_requirements_due": customer.get("future_requirements_due") or [],
            "endorsements": endorsements,
            "rejection_reasons": customer.get("rejection_reasons") or [],
        }

    async def sync_customer_status(self, user_id: str) -> CustomerSyncResult:
        """Manual sync: pull the customer from Bridge and apply it."""
        customer = await self.get_customer(user_id)
        return self.sync_to_mirror(customer, user_id)

    def sync_to_mirror(
        self,
        customer: dict[str, Any],
        user_id: str,
        *,
        bridge_event_id: Optional[str] = None,
        bridge_event_type: Optional[str] = None,
    ) -> CustomerSyncResult:
        """Apply a Bridge customer object to the local user.

        Writes status and tier, audits the sync, and notifies only when the
        mapped status differs from the stored one.
        """
        user = self.get_user(user_id)
        mapping = map_customer_status(customer.get("status"), customer.get("endorsements"))
        result = CustomerSyncResult(
            previous_status=user.kyc_status or "not_started",
            status=mapping.status,
            previous_tier=user.kyc_tier or 1,
            tier=mapping.tier,
        )

        if customer.get("id") and not user.bridge_customer_id:
            user.bridge_customer_id = customer["id"]
        user.kyc_status = mapping.status
        user.kyc_tier = mapping.tier
        self.commit()

        logger.info(
            "KYC_STATUS_SYNCED",
            extra={
                "previous_status": result.previous_status,
                "kyc_status": result.status,
                "kyc_tier": result.tier,
                "status_changed": result.status_changed,
            },
        )
        self.record_audit(
            "kyc_status_updated",
            f"KYC status updated to {mapping.status} (tier {mapping.tier})",
            {
                "kyc_status": mapping.status,
                "kyc_tier": mapping.tier,
                "previous_status": result.previous_status,
                "bridge_customer_status": customer.get("status"),
            },
            user_id=user_id,
            bridge_event_id=bridge_event_id,
            bridge_event_type=bridge_event_type,
        )

        if result.status_changed:
            draft = kyc_notification(mapping.status, mapping.tier, user.bridge_customer_id)
            if draft is not None:
                self.notify(user_id, draft)
        return result

    def apply_customer_update(
        self,
        customer: dict[str, Any],
        *,
        bridge_event_id: Optional[str] = None,
        bridge_event_type: Optional[str] = None,
    ) -> Optional[CustomerSyncResult]:
        """Webhook path: resolve the user by Bridge customer ID and sync.

        Returns None (after a warning) when no local user is linked yet.
        """
        user = self.find_by_customer_id(customer.get("id") or "")
        if user is None:
            logger.warning("CUSTOMER_NOT_LINKED", extra={"bridge_customer_id": customer.get("id")})
            return None
        return self.sync_to_mirror(
            customer,
            user.id,
            bridge_event_id=bridge_event_id,
            bridge_event_type=bridge_event_type,
        )
