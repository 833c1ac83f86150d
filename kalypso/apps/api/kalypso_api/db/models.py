"""SQLAlchemy ORM models for the Bridge mirror.

Table and column names follow the Supabase schema the mobile clients already
read through row-level security; every table other than ``audit_logs`` and
``webhook_events`` is owned by exactly one user.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    BOOLEAN,
    INTEGER,
    JSON,
    NUMERIC,
    TEXT,
    TIMESTAMP,
    UUID,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

MONEY = NUMERIC(20, 8, asdecimal=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class User(TimestampMixin, Base):
    """Local user profile plus its Bridge customer linkage."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # Null until KYC starts
    bridge_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True, unique=True)
    kyc_status: Mapped[str] = mapped_column(TEXT, nullable=False, default="not_started")
    kyc_tier: Mapped[int] = mapped_column(INTEGER, nullable=False, default=1)


class BridgeWallet(TimestampMixin, Base):
    __tablename__ = "bridge_wallets"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    bridge_wallet_id: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    bridge_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    wallet_type: Mapped[str] = mapped_column(TEXT, nullable=False, default="user")  # user|treasury
    chain: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="active")  # active|inactive|frozen

    __table_args__ = (Index("idx_bridge_wallets_user", "user_id"),)


class WalletBalance(Base):
    """Balance per (wallet, currency, chain), rebuilt from wallet history."""

    __tablename__ = "wallet_balances"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    wallet_id: Mapped[str] = mapped_column(ForeignKey("bridge_wallets.id"), nullable=False)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False)
    chain: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    last_updated: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("wallet_id", "currency", "chain", name="uq_wallet_balances_key"),
    )


class BridgeTransfer(TimestampMixin, Base):
    """Transfer mirror. Kind is one of internal|external|ach and never changes."""

    __tablename__ = "bridge_transfers"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    bridge_transfer_id: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    transfer_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="usdc")
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    bridge_state: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    bridge_source_wallet_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    bridge_destination_wallet_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    destination_address: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    destination_chain: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    destination_account_number: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    destination_routing_number: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    destination_user_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    memo: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    transaction_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    receipt: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    processing_started_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_bridge_transfers_user_created", "user_id", "created_at"),
    )


class BridgeCard(TimestampMixin, Base):
    __tablename__ = "bridge_cards"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    bridge_card_id: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    bridge_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    card_type: Mapped[str] = mapped_column(TEXT, nullable=False, default="virtual")  # virtual|physical
    card_brand: Mapped[str] = mapped_column(TEXT, nullable=False, default="visa")  # visa|mastercard
    last_four: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    expiry_month: Mapped[Optional[int]] = mapped_column(INTEGER, nullable=True)
    expiry_year: Mapped[Optional[int]] = mapped_column(INTEGER, nullable=True)
    cardholder_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # pending → active → frozen | cancelled | expired
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    activation_status: Mapped[str] = mapped_column(TEXT, nullable=False, default="not_activated")
    is_frozen: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    frozen_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    frozen_reason: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    daily_spend_limit: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("1000"))
    monthly_spend_limit: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("10000"))
    single_transaction_limit: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("500"))
    current_daily_spend: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    current_monthly_spend: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    last_daily_reset: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    last_monthly_reset: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    allow_international: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    allow_online: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    allow_contactless: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    allow_atm_withdrawals: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)

    shipping_address: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("idx_bridge_cards_user", "user_id"),)


class CardTransaction(Base):
    __tablename__ = "card_transactions"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    card_id: Mapped[str] = mapped_column(ForeignKey("bridge_cards.id"), nullable=False)
    bridge_transaction_id: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)

    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="usd")
    merchant_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    merchant_category: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    merchant_city: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    merchant_country: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    transaction_type: Mapped[str] = mapped_column(TEXT, nullable=False, default="purchase")
    # pending | approved | declined | settled | reversed
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    decline_reason: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    is_international: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    is_online: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    settled_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("idx_card_transactions_card_created", "card_id", "created_at"),)


class BridgeVirtualAccount(TimestampMixin, Base):
    __tablename__ = "bridge_virtual_accounts"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    bridge_account_id: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    bridge_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    account_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    account_number: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    routing_number: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="usd")
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")  # pending|active|inactive|closed
    destination_wallet_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    destination_currency: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    destination_payment_rail: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (Index("idx_bridge_virtual_accounts_user", "user_id"),)


class LiquidationAddress(TimestampMixin, Base):
    __tablename__ = "liquidation_addresses"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    bridge_liquidation_address_id: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    bridge_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False)
    chain: Mapped[str] = mapped_column(TEXT, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    destination_payment_rail: Mapped[str] = mapped_column(TEXT, nullable=False, default="ach")
    destination_currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="usd")
    external_account_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    custom_developer_fee_percent: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="active")

    __table_args__ = (Index("idx_liquidation_addresses_user", "user_id"),)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    # success|error|warning|info|kyc|transaction|card|account
    type: Mapped[str] = mapped_column(TEXT, nullable=False)
    title: Mapped[str] = mapped_column(TEXT, nullable=False)
    message: Mapped[str] = mapped_column(TEXT, nullable=False)
    data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    read: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    priority: Mapped[str] = mapped_column(TEXT, nullable=False, default="normal")
    category: Mapped[str] = mapped_column(TEXT, nullable=False, default="general")
    action_url: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_notifications_user_read", "user_id", "read"),)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, unique=True)
    enable_transaction_notifications: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    enable_card_notifications: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    enable_wallet_notifications: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    enable_kyc_notifications: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    enable_security_notifications: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    enable_system_notifications: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    min_priority_level: Mapped[str] = mapped_column(TEXT, nullable=False, default="low")
    enable_email_notifications: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    email_for_high_priority: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    enable_push_notifications: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    push_for_urgent: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class AuditLog(Base):
    """Append-only audit record. Never updated or deleted."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    event_description: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    event_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    bridge_event_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    bridge_event_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_audit_logs_event_type", "event_type", "created_at"),)


class WebhookEvent(Base):
    """Dedup ledger for inbound webhook deliveries."""

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(TEXT, nullable=False)
    dedup_key: Mapped[str] = mapped_column(TEXT, nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="processing")  # processing|done|failed
    request_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_events_provider_key"),
    )
