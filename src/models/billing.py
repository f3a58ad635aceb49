"""
Billing data models for organizations, usage metering and the credit ledger.

All money values are integers in decimillicents (1/100,000 of a cent) so that
sub-cent unit costs (e.g. per-token inference pricing) never need floats.
"""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

DECIMILLICENTS_PER_CENT = 100_000
DECIMILLICENTS_PER_DOLLAR = 10_000_000


def to_decimillicents(dollars: float | int | str | Decimal) -> int:
    """Convert a dollar amount to integer decimillicents (half away from zero)."""
    scaled = Decimal(str(dollars)) * DECIMILLICENTS_PER_DOLLAR
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_decimillicents(decimillicents: int) -> float:
    return decimillicents / DECIMILLICENTS_PER_DOLLAR


class SubscriptionStatus(str, Enum):
    """Internal subscription status (mirrors Stripe's subscription statuses)."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"
    UNPAID = "unpaid"


class SubscriptionPlan(str, Enum):
    """Plan slugs ranked for feature access. FREE is implicit (no subscription)."""

    FREE = "free"
    PRO = "pro"


class MemberRole(str, Enum):
    """Organization membership role (owned by the membership subsystem)."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class UsageCategory(str, Enum):
    """Known usage categories. Other labels are accepted as-is."""

    OPENROUTER_INFERENCE = "openrouter_inference"
    WORKFLOW_EXECUTION = "workflow_execution"
    API_CALL = "api_call"


class CreditEntryType(str, Enum):
    """Known ledger entry types. Other labels are accepted as-is."""

    ADJUSTMENT = "adjustment"
    CHARGE = "charge"
    REFUND = "refund"
    RECHARGE = "recharge"
    INITIAL_GRANT = "initial_grant"


class Principal(BaseModel):
    """Authenticated caller resolved by the outer auth layer."""

    user_id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)


class BillingProfile(BaseModel):
    """
    Per-organization billing state.

    One row per organization, mutated in place and never deleted by billing.
    Invariant: credits_balance == sum(credit ledger amounts for the organization).
    """

    organization_id: str
    billing_email: str | None = None

    # Provider linkage
    customer_id: str | None = None
    subscription_id: str | None = None
    payment_method_id: str | None = None
    metered_subscription_item_id: str | None = None

    # Subscription state
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    is_subscribed: bool = False
    subscription_plan: str | None = None
    subscription_started_at: datetime | None = None
    subscription_ends_at: datetime | None = None
    subscription_current_period_end: datetime | None = None

    # Ledger balance (decimillicents)
    credits_balance: int = 0
    reserved_credits: int = 0

    # Auto-recharge configuration (stored only)
    auto_recharge_enabled: bool = False
    auto_recharge_threshold: int | None = None
    auto_recharge_amount: int | None = None


class BillingSettings(BaseModel):
    """Billing projection returned to organization members."""

    organization_id: str
    billing_email: str | None
    customer_id: str | None
    subscription_id: str | None
    payment_method_id: str | None
    metered_subscription_item_id: str | None
    credits_balance: int
    reserved_credits: int
    auto_recharge_enabled: bool
    auto_recharge_threshold: int | None
    auto_recharge_amount: int | None
    is_subscribed: bool
    subscription_status: SubscriptionStatus
    subscription_plan: SubscriptionPlan | None
    subscription_started_at: datetime | None
    subscription_ends_at: datetime | None
    subscription_current_period_end: datetime | None

    @classmethod
    def from_profile(cls, profile: BillingProfile) -> "BillingSettings":
        # Unknown plan slugs (legacy rows) are not exposed
        plan = profile.subscription_plan
        known_plan = SubscriptionPlan(plan) if plan in {SubscriptionPlan.PRO.value} else None

        return cls(
            organization_id=profile.organization_id,
            billing_email=profile.billing_email,
            customer_id=profile.customer_id,
            subscription_id=profile.subscription_id,
            payment_method_id=profile.payment_method_id,
            metered_subscription_item_id=profile.metered_subscription_item_id,
            credits_balance=profile.credits_balance,
            reserved_credits=profile.reserved_credits,
            auto_recharge_enabled=profile.auto_recharge_enabled,
            auto_recharge_threshold=profile.auto_recharge_threshold,
            auto_recharge_amount=profile.auto_recharge_amount,
            is_subscribed=profile.is_subscribed,
            subscription_status=profile.subscription_status,
            subscription_plan=known_plan,
            subscription_started_at=profile.subscription_started_at,
            subscription_ends_at=profile.subscription_ends_at,
            subscription_current_period_end=profile.subscription_current_period_end,
        )


class SubscriptionPatch(BaseModel):
    """
    Partial update of provider linkage and subscription state.

    Only fields explicitly set are written (model_fields_set), so None can be
    used to clear a column.
    """

    billing_email: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    payment_method_id: str | None = None
    metered_subscription_item_id: str | None = None
    is_subscribed: bool | None = None
    subscription_status: SubscriptionStatus | None = None
    subscription_plan: str | None = None
    subscription_started_at: datetime | None = None
    subscription_ends_at: datetime | None = None
    subscription_current_period_end: datetime | None = None


class UpdateBillingSettingsCommand(BaseModel):
    """Partial billing settings update. Unset fields are left untouched."""

    billing_email: str | None = None
    auto_recharge_enabled: bool | None = None
    auto_recharge_threshold: int | None = Field(default=None, ge=0)
    auto_recharge_amount: int | None = Field(default=None, ge=0)

    @field_validator("billing_email")
    @classmethod
    def validate_email_format(cls, v: str | None) -> str | None:
        """Basic email validation."""
        if v is None:
            return v
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()

    @field_validator("auto_recharge_enabled")
    @classmethod
    def reject_null_flag(cls, v: bool | None) -> bool | None:
        # The flag column is NOT NULL: omit it to leave unchanged
        if v is None:
            raise ValueError("auto_recharge_enabled cannot be null")
        return v


class CreateCheckoutSessionCommand(BaseModel):
    organization_id: str = Field(..., min_length=1)
    success_url: str = Field(..., min_length=1)
    cancel_url: str = Field(..., min_length=1)


class CreatePortalSessionCommand(BaseModel):
    organization_id: str = Field(..., min_length=1)
    return_url: str = Field(..., min_length=1)


class SessionLink(BaseModel):
    """Hosted provider session (checkout or billing portal)."""

    id: str
    url: str


class RecordUsageCommand(BaseModel):
    """
    Usage submission from an internal service.

    quantity/unit_cost bounds are enforced by the service (BadRequest) rather
    than here, so invalid payloads map to the billing error taxonomy.
    """

    organization_id: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=100)
    quantity: int
    unit_cost: int = Field(..., description="Cost per unit in decimillicents")
    reference_id: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] | None = None

    @field_validator("reference_id")
    @classmethod
    def blank_reference_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class UsageRecord(BaseModel):
    """Immutable metered usage row."""

    id: str
    organization_id: str
    category: str
    quantity: int
    unit_cost: int
    total_cost: int
    reference_id: str | None = None
    provider_usage_record_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UsageSummaryCommand(BaseModel):
    organization_id: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=100)
    period_start: datetime
    period_end: datetime

    @model_validator(mode="after")
    def validate_period(self) -> "UsageSummaryCommand":
        if self.period_end < self.period_start:
            raise ValueError("period_end must be >= period_start")
        return self


class UsageSummary(BaseModel):
    organization_id: str
    category: str
    period_start: datetime
    period_end: datetime
    total_quantity: int
    total_cost: int


class WebhookEvent(BaseModel):
    """Inbound provider event. processed_at is set exactly once."""

    id: str
    provider_event_id: str
    event_type: str
    organization_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    processed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ProviderEvent(BaseModel):
    """Verified, parsed webhook event as returned by the provider adapter."""

    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    object: dict[str, Any] = Field(default_factory=dict, description="event.data.object")


class WebhookResult(BaseModel):
    processed: bool = True
    idempotent: bool
    event_id: str


class CreditLedgerEntry(BaseModel):
    """Append-only signed balance adjustment."""

    id: str
    organization_id: str
    amount: int
    entry_type: str
    reason: str
    reference_id: str | None = None
    balance_after: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
