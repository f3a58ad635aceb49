"""
Capability interfaces consumed by the billing service.

Each port has one production implementation and one in-memory implementation,
injected explicitly through constructors:

- BillingProvider: StripeBillingProvider / InMemoryBillingProvider
- BillingStore, UsageStore, WebhookEventStore, MembershipLookup:
  BillingDatabase (file-backed SQLite / ":memory:")
- Clock: SystemClock / FrozenClock
"""

from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from src.models.billing import (
    BillingProfile,
    CreditLedgerEntry,
    MemberRole,
    ProviderEvent,
    SessionLink,
    SubscriptionPatch,
    UpdateBillingSettingsCommand,
    UsageRecord,
    WebhookEvent,
)


class BillingProvider(Protocol):
    """External subscription/payment processor. Failures raise ProviderError."""

    async def create_customer(self, organization_id: str, email: str) -> str: ...

    async def create_checkout_session(
        self,
        organization_id: str,
        customer_id: str,
        success_url: str,
        cancel_url: str,
    ) -> SessionLink: ...

    async def create_portal_session(self, customer_id: str, return_url: str) -> SessionLink: ...

    def construct_webhook_event(self, raw_body: bytes | str, signature: str) -> ProviderEvent: ...

    async def report_usage(
        self,
        subscription_item_id: str,
        quantity: int,
        timestamp: datetime,
        idempotency_key: str | None = None,
    ) -> str: ...


class BillingStore(Protocol):
    """Organization billing/subscription fields and the credit ledger."""

    async def get_billing_profile(self, organization_id: str) -> BillingProfile | None: ...

    async def find_by_customer_id(self, customer_id: str) -> BillingProfile | None: ...

    async def find_by_subscription_id(self, subscription_id: str) -> BillingProfile | None: ...

    async def update_subscription_fields(
        self, organization_id: str, patch: SubscriptionPatch
    ) -> BillingProfile | None: ...

    async def update_billing_settings(
        self, organization_id: str, update: UpdateBillingSettingsCommand
    ) -> BillingProfile | None: ...

    async def adjust_credits(
        self,
        organization_id: str,
        amount: int,
        entry_type: str,
        reason: str,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditLedgerEntry | None: ...

    async def list_credit_ledger(
        self, organization_id: str, limit: int = 200
    ) -> list[CreditLedgerEntry]: ...


class MembershipLookup(Protocol):
    """role-of(organization_id, user_id), owned by the membership subsystem."""

    async def get_member_role(self, organization_id: str, user_id: str) -> MemberRole | None: ...


class UsageStore(Protocol):
    async def find_usage_by_reference(
        self, organization_id: str, reference_id: str
    ) -> UsageRecord | None: ...

    async def insert_usage_record(self, record: UsageRecord) -> UsageRecord: ...

    async def summarize_usage(
        self,
        organization_id: str,
        category: str,
        period_start: datetime,
        period_end: datetime,
    ) -> tuple[int, int]: ...

    async def list_usage_records(
        self,
        organization_id: str,
        category: str | None = None,
        recorded_after: datetime | None = None,
        recorded_before: datetime | None = None,
        limit: int = 200,
    ) -> list[UsageRecord]: ...


class WebhookEventStore(Protocol):
    async def find_webhook_event(self, provider_event_id: str) -> WebhookEvent | None: ...

    async def create_webhook_event(
        self,
        provider_event_id: str,
        event_type: str,
        organization_id: str | None,
        payload: dict[str, Any],
    ) -> WebhookEvent | None: ...

    async def mark_webhook_processed(self, event_id: str, processed_at: datetime) -> bool: ...


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Server wall clock (UTC)."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """Deterministic clock for tests and replays."""

    def __init__(self, current: datetime | None = None):
        self.current = current or datetime(2025, 1, 15, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current
