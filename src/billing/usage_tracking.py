"""
Usage tracking and metering service.

Records metered usage per organization and reports it to Stripe when the
organization has a metered subscription item.

Deduplication:
- A usage submission with a reference_id is recorded at most once per
  organization. Repeats return the original record unchanged.
- The reference_id doubles as the Stripe idempotency key, which covers the
  window between the pre-check and the insert.

Costs are integer decimillicents: total_cost = quantity * unit_cost.
"""

import logging
import uuid
from datetime import datetime

from src.billing.errors import (
    BadRequestError,
    NotFoundError,
    ProviderError,
    StorageError,
    UnauthorizedError,
)
from src.billing.ports import BillingProvider, BillingStore, Clock, UsageStore
from src.billing.subscription import is_subscription_active, is_subscription_guard_satisfied
from src.models.billing import (
    BillingProfile,
    RecordUsageCommand,
    UsageRecord,
    UsageSummary,
    UsageSummaryCommand,
)
from src.observability.metrics import track_provider_error, track_usage_record

logger = logging.getLogger(__name__)


class UsageTracker:
    """
    Track and meter organization usage.

    Responsibilities:
    - Validate usage submissions
    - Enforce the subscription guard (when enabled)
    - Report usage to Stripe (metered billing)
    - Persist immutable usage records
    - Summarize usage per category and period
    """

    def __init__(
        self,
        billing_store: BillingStore,
        usage_store: UsageStore,
        provider: BillingProvider,
        clock: Clock,
        guard_enabled: bool = False,
    ):
        """
        Initialize usage tracker.

        Args:
            billing_store: Organization billing profiles
            usage_store: Usage record storage
            provider: Billing provider for metered usage reporting
            clock: Time source for recorded_at
            guard_enabled: Require an active subscription to record/summarize
        """
        self.billing_store = billing_store
        self.usage_store = usage_store
        self.provider = provider
        self.clock = clock
        self.guard_enabled = guard_enabled

    async def _load_profile(self, organization_id: str) -> BillingProfile:
        try:
            profile = await self.billing_store.get_billing_profile(organization_id)
        except StorageError as e:
            raise BadRequestError("Failed to fetch billing settings") from e

        if not profile:
            raise NotFoundError("Organization not found")
        return profile

    async def record_usage(self, command: RecordUsageCommand) -> UsageRecord:
        """
        Record one usage submission.

        Returns:
            UsageRecord: The new record, or the existing record for a repeated
                reference_id

        Raises:
            BadRequestError: Invalid quantity/unit cost, provider or storage failure
            NotFoundError: Organization does not exist
            UnauthorizedError: Subscription guard not satisfied
        """
        if command.quantity < 1 or command.unit_cost < 0:
            raise BadRequestError("Invalid usage payload")

        profile = await self._load_profile(command.organization_id)

        if not is_subscription_guard_satisfied(profile, self.guard_enabled):
            raise UnauthorizedError("Active subscription required")

        if command.reference_id:
            try:
                existing = await self.usage_store.find_usage_by_reference(
                    command.organization_id, command.reference_id
                )
            except StorageError as e:
                raise BadRequestError("Failed to look up usage reference") from e

            if existing:
                logger.info(
                    "Duplicate usage submission",
                    extra={
                        "organization_id": command.organization_id,
                        "reference_id": command.reference_id,
                        "usage_record_id": existing.id,
                    },
                )
                track_usage_record(existing.category, existing.quantity, existing.total_cost, True)
                return existing

        total_cost = command.quantity * command.unit_cost
        recorded_at = self.clock.now()
        provider_usage_record_id = None

        if profile.metered_subscription_item_id:
            try:
                provider_usage_record_id = await self.provider.report_usage(
                    subscription_item_id=profile.metered_subscription_item_id,
                    quantity=command.quantity,
                    timestamp=recorded_at,
                    idempotency_key=command.reference_id,
                )
            except ProviderError as e:
                track_provider_error("report_usage")
                logger.error(
                    "Failed to report usage to Stripe",
                    extra={
                        "organization_id": command.organization_id,
                        "category": command.category,
                        "error": str(e),
                    },
                )
                raise BadRequestError("Failed to report usage to Stripe") from e

        record = UsageRecord(
            id=str(uuid.uuid4()),
            organization_id=command.organization_id,
            category=command.category,
            quantity=command.quantity,
            unit_cost=command.unit_cost,
            total_cost=total_cost,
            reference_id=command.reference_id,
            provider_usage_record_id=provider_usage_record_id,
            metadata=command.metadata or {},
            recorded_at=recorded_at,
            created_at=recorded_at,
        )

        try:
            stored = await self.usage_store.insert_usage_record(record)
        except StorageError as e:
            raise BadRequestError("Failed to record usage") from e

        logger.info(
            "Usage recorded",
            extra={
                "organization_id": stored.organization_id,
                "category": stored.category,
                "quantity": stored.quantity,
                "total_cost": stored.total_cost,
                "reported": provider_usage_record_id is not None,
                "deduplicated": stored.id != record.id,
            },
        )
        track_usage_record(
            stored.category, stored.quantity, stored.total_cost, stored.id != record.id
        )
        return stored

    async def get_usage_summary(self, command: UsageSummaryCommand) -> UsageSummary:
        """
        Sum quantity and cost for one category over [period_start, period_end].

        Raises:
            NotFoundError: Organization does not exist
            UnauthorizedError: Guard enabled and subscription not active
            BadRequestError: Storage failure
        """
        profile = await self._load_profile(command.organization_id)

        if self.guard_enabled and not is_subscription_active(profile.subscription_status):
            raise UnauthorizedError("Active subscription required")

        try:
            total_quantity, total_cost = await self.usage_store.summarize_usage(
                command.organization_id,
                command.category,
                command.period_start,
                command.period_end,
            )
        except StorageError as e:
            raise BadRequestError("Failed to summarize usage") from e

        return UsageSummary(
            organization_id=command.organization_id,
            category=command.category,
            period_start=command.period_start,
            period_end=command.period_end,
            total_quantity=total_quantity,
            total_cost=total_cost,
        )

    async def list_usage_records(
        self,
        organization_id: str,
        category: str | None = None,
        recorded_after: datetime | None = None,
        recorded_before: datetime | None = None,
        limit: int = 200,
    ) -> list[UsageRecord]:
        """List usage records for an organization, newest first."""
        await self._load_profile(organization_id)

        try:
            return await self.usage_store.list_usage_records(
                organization_id,
                category=category,
                recorded_after=recorded_after,
                recorded_before=recorded_before,
                limit=limit,
            )
        except StorageError as e:
            raise BadRequestError("Failed to list usage records") from e
