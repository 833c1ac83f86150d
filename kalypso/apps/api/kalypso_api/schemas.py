"""Pydantic schemas for API requests/responses."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    ``correlation_id`` is set for Bridge failures so support can find the
    outbound call in the logs.
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation")
    instance: Optional[str] = Field(None, description="Opaque identifier of this occurrence")
    correlation_id: Optional[str] = Field(None, description="X-Correlation-ID of the failing Bridge call")


class MirrorModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# KYC
# ============================================================================


class KycInitiateRequest(BaseModel):
    """Optional profile fields forwarded to Bridge when the customer is created."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[str] = None
    address: Optional[dict[str, Any]] = None


class CustomerUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[dict[str, Any]] = None


class KycSyncResponse(BaseModel):
    previous_status: str
    kyc_status: str
    kyc_tier: int
    status_changed: bool


# ============================================================================
# Wallets
# ============================================================================


class WalletCreateRequest(BaseModel):
    wallet_type: Literal["user", "treasury"] = "user"
    chain: Optional[str] = None


class WalletOut(MirrorModel):
    id: str
    bridge_wallet_id: str
    wallet_type: str
    chain: Optional[str] = None
    address: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None


class WalletBalanceOut(MirrorModel):
    currency: str
    chain: str
    balance: Decimal
    last_updated: Optional[datetime] = None


# ============================================================================
# Transfers
# ============================================================================


class TransferCreateRequest(BaseModel):
    """Transfer body; per-type destination rules are enforced by the service."""

    type: str
    amount: Decimal
    currency: Optional[str] = None
    source_wallet_id: Optional[str] = None
    destination: dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    memo: Optional[str] = None


class TransferOut(MirrorModel):
    id: str
    bridge_transfer_id: str
    transfer_type: str
    amount: Decimal
    fee: Decimal
    total_amount: Decimal
    currency: str
    status: str
    bridge_state: Optional[str] = None
    destination_address: Optional[str] = None
    destination_chain: Optional[str] = None
    transaction_hash: Optional[str] = None
    description: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


# ============================================================================
# Cards
# ============================================================================


class CardCreateRequest(BaseModel):
    card_type: Literal["virtual", "physical"] = "virtual"
    cardholder_name: Optional[str] = None
    brand: Literal["visa", "mastercard"] = "visa"


class CardActivateRequest(BaseModel):
    activation_code: Optional[str] = None


class CardReasonRequest(BaseModel):
    reason: str = "user_requested"


class CardLimitsRequest(BaseModel):
    daily_spend_limit: Optional[Decimal] = None
    monthly_spend_limit: Optional[Decimal] = None
    single_transaction_limit: Optional[Decimal] = None


class CardControlsRequest(BaseModel):
    allow_international: Optional[bool] = None
    allow_online: Optional[bool] = None
    allow_contactless: Optional[bool] = None
    allow_atm_withdrawals: Optional[bool] = None


class CardOut(MirrorModel):
    id: str
    bridge_card_id: str
    card_type: str
    card_brand: str
    last_four: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    cardholder_name: Optional[str] = None
    status: str
    activation_status: str
    is_frozen: bool
    daily_spend_limit: Decimal
    monthly_spend_limit: Decimal
    single_transaction_limit: Decimal
    current_daily_spend: Decimal
    current_monthly_spend: Decimal
    allow_international: bool
    allow_online: bool
    allow_contactless: bool
    allow_atm_withdrawals: bool


class CardTransactionOut(MirrorModel):
    id: str
    bridge_transaction_id: str
    amount: Decimal
    currency: str
    merchant_name: Optional[str] = None
    merchant_category: Optional[str] = None
    transaction_type: str
    status: str
    decline_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None


# ============================================================================
# Virtual accounts / liquidation addresses
# ============================================================================


class VirtualAccountOut(MirrorModel):
    id: str
    bridge_account_id: str
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    routing_number: Optional[str] = None
    bank_name: Optional[str] = None
    currency: str
    status: str


class MirrorStatusRequest(BaseModel):
    status: str


class LiquidationAddressCreateRequest(BaseModel):
    currency: str
    chain: str
    external_account_id: Optional[str] = None


class LiquidationAddressOut(MirrorModel):
    id: str
    bridge_liquidation_address_id: str
    currency: str
    chain: str
    address: Optional[str] = None
    destination_payment_rail: str
    destination_currency: str
    status: str


# ============================================================================
# Notifications
# ============================================================================


class NotificationOut(MirrorModel):
    id: str
    type: str
    title: str
    message: str
    data: Optional[dict[str, Any]] = None
    read: bool
    priority: str
    category: str
    action_url: Optional[str] = None
    created_at: Optional[datetime] = None


class NotificationPreferencesRequest(BaseModel):
    enable_transaction_notifications: Optional[bool] = None
    enable_card_notifications: Optional[bool] = None
    enable_wallet_notifications: Optional[bool] = None
    enable_kyc_notifications: Optional[bool] = None
    enable_security_notifications: Optional[bool] = None
    enable_system_notifications: Optional[bool] = None
    min_priority_level: Optional[str] = None
    enable_email_notifications: Optional[bool] = None
    email_for_high_priority: Optional[bool] = None
    enable_push_notifications: Optional[bool] = None
    push_for_urgent: Optional[bool] = None


class NotificationPreferencesOut(MirrorModel):
    enable_transaction_notifications: bool = True
    enable_card_notifications: bool = True
    enable_wallet_notifications: bool = True
    enable_kyc_notifications: bool = True
    enable_security_notifications: bool = True
    enable_system_notifications: bool = True
    min_priority_level: str = "low"
    enable_email_notifications: bool = False
    email_for_high_priority: bool = True
    enable_push_notifications: bool = True
    push_for_urgent: bool = True
