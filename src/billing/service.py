"""
Billing application service.

Single entry point for billing operations. Composes the provider adapter and
the stores, enforces organization membership, and maps every provider or
storage failure to the billing error taxonomy.

Authorization:
- Read operations: any membership role
- Manage operations (settings update, checkout, portal): owner or admin
- Webhooks, usage recording and credit adjustments are service-to-service
  and not principal-gated
"""

import logging
from datetime import datetime
from typing import Any

from src.billing.errors import (
    BadRequestError,
    NotFoundError,
    ProviderError,
    StorageError,
    UnauthorizedError,
)
from src.billing.ports import (
    BillingProvider,
    BillingStore,
    Clock,
    MembershipLookup,
    UsageStore,
    WebhookEventStore,
)
from src.billing.usage_tracking import UsageTracker
from src.billing.webhooks import SubscriptionWebhookProcessor
from src.models.billing import (
    BillingProfile,
    BillingSettings,
    CreateCheckoutSessionCommand,
    CreatePortalSessionCommand,
    CreditLedgerEntry,
    MemberRole,
    Principal,
    RecordUsageCommand,
    SessionLink,
    SubscriptionPatch,
    UpdateBillingSettingsCommand,
    UsageRecord,
    UsageSummary,
    UsageSummaryCommand,
    WebhookResult,
)
from src.observability.metrics import track_credit_adjustment, track_provider_error

logger = logging.getLogger(__name__)

MANAGE_BILLING_ROLES = frozenset({MemberRole.OWNER, MemberRole.ADMIN})


class BillingService:
    """
    Billing operations for organizations.

    Handles:
    - Billing settings (read / partial update)
    - Checkout and billing portal sessions
    - Webhook ingestion (delegated to SubscriptionWebhookProcessor)
    - Usage recording and summaries (delegated to UsageTracker)
    - Credit ledger adjustments and listings
    """

    def __init__(
        self,
        billing_store: BillingStore,
        usage_store: UsageStore,
        event_store: WebhookEventStore,
        membership: MembershipLookup,
        provider: BillingProvider,
        clock: Clock,
        guard_enabled: bool = False,
    ):
        """
        Initialize billing service.

        Args:
            billing_store: Organization billing profiles and credit ledger
            usage_store: Usage record storage
            event_store: Webhook event storage
            membership: Organization role lookup
            provider: Billing provider adapter (Stripe or in-memory)
            clock: Time source
            guard_enabled: Subscription guard for usage operations
        """
        self.billing_store = billing_store
        self.membership = membership
        self.provider = provider
        self.clock = clock

        self.usage_tracker = UsageTracker(
            billing_store=billing_store,
            usage_store=usage_store,
            provider=provider,
            clock=clock,
            guard_enabled=guard_enabled,
        )
        self.webhook_processor = SubscriptionWebhookProcessor(
            provider=provider,
            billing_store=billing_store,
            event_store=event_store,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def _assert_access(
        self, organization_id: str, principal: Principal, manage: bool = False
    ) -> MemberRole:
        try:
            role = await self.membership.get_member_role(organization_id, principal.user_id)
        except StorageError as e:
            logger.error(
                "Membership lookup failed",
                extra={"organization_id": organization_id, "error": str(e)},
            )
            raise UnauthorizedError("Failed to verify organization membership") from e

        if role is None:
            raise UnauthorizedError("Not allowed to access this organization")

        if manage and role not in MANAGE_BILLING_ROLES:
            raise UnauthorizedError("Only owners and admins can manage billing")

        return role

    async def _load_profile(self, organization_id: str) -> BillingProfile:
        try:
            profile = await self.billing_store.get_billing_profile(organization_id)
        except StorageError as e:
            raise BadRequestError("Failed to fetch billing settings") from e

        if not profile:
            raise NotFoundError("Organization not found")
        return profile

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_billing_settings(self, principal: Principal, organization_id: str) -> BillingSettings:
        await self._assert_access(organization_id, principal)
        profile = await self._load_profile(organization_id)
        return BillingSettings.from_profile(profile)

    async def update_billing_settings(
        self,
        principal: Principal,
        organization_id: str,
        update: UpdateBillingSettingsCommand,
    ) -> BillingSettings:
        """
        Apply a partial settings update (owner/admin).

        Fields not set on the command are left untouched; fields explicitly
        set to None are cleared.
        """
        await self._assert_access(organization_id, principal, manage=True)

        try:
            updated = await self.billing_store.update_billing_settings(organization_id, update)
        except StorageError as e:
            raise BadRequestError("Failed to update billing settings") from e

        if not updated:
            raise NotFoundError("Organization not found")

        logger.info(
            "Billing settings updated",
            extra={
                "organization_id": organization_id,
                "fields": sorted(update.model_fields_set),
            },
        )
        return BillingSettings.from_profile(updated)

    # ------------------------------------------------------------------
    # Provider sessions
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self, principal: Principal, command: CreateCheckoutSessionCommand
    ) -> SessionLink:
        """
        Create a pro plan checkout session (owner/admin).

        Creates and persists the Stripe customer first when the organization
        has none; the checkout call is never made if either step fails.
        """
        organization_id = command.organization_id
        await self._assert_access(organization_id, principal, manage=True)
        profile = await self._load_profile(organization_id)

        customer_id = profile.customer_id
        if not customer_id:
            try:
                customer_id = await self.provider.create_customer(organization_id, principal.email)
            except ProviderError as e:
                track_provider_error("create_customer")
                raise BadRequestError("Failed to create Stripe customer") from e

            try:
                await self.billing_store.update_subscription_fields(
                    organization_id, SubscriptionPatch(customer_id=customer_id)
                )
            except StorageError as e:
                raise BadRequestError("Failed to update billing customer reference") from e

        try:
            session = await self.provider.create_checkout_session(
                organization_id=organization_id,
                customer_id=customer_id,
                success_url=command.success_url,
                cancel_url=command.cancel_url,
            )
        except ProviderError as e:
            track_provider_error("create_checkout_session")
            raise BadRequestError("Failed to create checkout session") from e

        logger.info(
            "Checkout session created",
            extra={"organization_id": organization_id, "checkout_session_id": session.id},
        )
        return session

    async def create_portal_session(
        self, principal: Principal, command: CreatePortalSessionCommand
    ) -> SessionLink:
        await self._assert_access(command.organization_id, principal, manage=True)
        profile = await self._load_profile(command.organization_id)

        if not profile.customer_id:
            raise BadRequestError("Stripe customer is not configured for this organization")

        try:
            return await self.provider.create_portal_session(
                customer_id=profile.customer_id, return_url=command.return_url
            )
        except ProviderError as e:
            track_provider_error("create_portal_session")
            raise BadRequestError("Failed to create billing portal session") from e

    # ------------------------------------------------------------------
    # Webhooks and usage
    # ------------------------------------------------------------------

    async def process_webhook_event(self, raw_body: bytes | str, signature: str) -> WebhookResult:
        return await self.webhook_processor.process(raw_body, signature)

    async def record_usage(self, command: RecordUsageCommand) -> UsageRecord:
        return await self.usage_tracker.record_usage(command)

    async def get_usage_summary(
        self, principal: Principal, command: UsageSummaryCommand
    ) -> UsageSummary:
        await self._assert_access(command.organization_id, principal)
        return await self.usage_tracker.get_usage_summary(command)

    async def list_usage_records(
        self,
        principal: Principal,
        organization_id: str,
        category: str | None = None,
        recorded_after: datetime | None = None,
        recorded_before: datetime | None = None,
        limit: int = 200,
    ) -> list[UsageRecord]:
        await self._assert_access(organization_id, principal)
        return await self.usage_tracker.list_usage_records(
            organization_id,
            category=category,
            recorded_after=recorded_after,
            recorded_before=recorded_before,
            limit=limit,
        )

    # ------------------------------------------------------------------
    # Credit ledger
    # ------------------------------------------------------------------

    async def adjust_credits(
        self,
        organization_id: str,
        amount: int,
        entry_type: str,
        reason: str,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditLedgerEntry | None:
        """
        Apply a signed credit adjustment.

        Returns:
            The ledger entry, or None when the organization does not exist
        """
        if not entry_type:
            raise BadRequestError("Credit entry type is required")

        try:
            entry = await self.billing_store.adjust_credits(
                organization_id,
                amount,
                entry_type,
                reason,
                reference_id=reference_id,
                metadata=metadata,
            )
        except StorageError as e:
            raise BadRequestError("Failed to adjust credits") from e

        if entry is None:
            logger.warning(
                "Credit adjustment for unknown organization",
                extra={"organization_id": organization_id, "amount": amount},
            )
            return None

        logger.info(
            "Credits adjusted",
            extra={
                "organization_id": organization_id,
                "amount": amount,
                "entry_type": entry_type,
                "balance_after": entry.balance_after,
            },
        )
        track_credit_adjustment(entry_type)
        return entry

    async def list_credit_ledger(
        self, principal: Principal, organization_id: str, limit: int = 200
    ) -> list[CreditLedgerEntry]:
        await self._assert_access(organization_id, principal)
        await self._load_profile(organization_id)

        try:
            return await self.billing_store.list_credit_ledger(organization_id, limit=limit)
        except StorageError as e:
            raise BadRequestError("Failed to list credit ledger") from e
