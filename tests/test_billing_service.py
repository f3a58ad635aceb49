"""
Tests for BillingService authorization, settings and provider sessions.
"""

from unittest.mock import AsyncMock

import pytest

from src.billing.errors import (
    BadRequestError,
    NotFoundError,
    StorageError,
    UnauthorizedError,
)
from src.billing.memory_provider import InMemoryBillingProvider
from src.billing.service import BillingService
from src.models.billing import (
    CreateCheckoutSessionCommand,
    CreatePortalSessionCommand,
    MemberRole,
    SubscriptionPatch,
    UpdateBillingSettingsCommand,
    UsageSummaryCommand,
)

from tests.conftest import ORG_ID


def checkout_command(organization_id: str = ORG_ID) -> CreateCheckoutSessionCommand:
    return CreateCheckoutSessionCommand(
        organization_id=organization_id,
        success_url="https://app.acme.test/billing?success=1",
        cancel_url="https://app.acme.test/billing?canceled=1",
    )


def portal_command() -> CreatePortalSessionCommand:
    return CreatePortalSessionCommand(
        organization_id=ORG_ID, return_url="https://app.acme.test/billing"
    )


def service_with(billing_db, provider, clock, **overrides) -> BillingService:
    ports = {
        "billing_store": billing_db,
        "usage_store": billing_db,
        "event_store": billing_db,
        "membership": billing_db,
        "provider": provider,
        "clock": clock,
    }
    ports.update(overrides)
    return BillingService(**ports)


class TestAuthorization:
    """Membership role checks."""

    @pytest.mark.asyncio
    async def test_any_member_can_read_settings(self, billing_service, member):
        settings = await billing_service.get_billing_settings(member, ORG_ID)

        assert settings.organization_id == ORG_ID
        assert settings.billing_email == "billing@acme.test"
        assert settings.subscription_plan is None

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_settings(self, billing_service, outsider):
        with pytest.raises(UnauthorizedError, match="Not allowed to access this organization"):
            await billing_service.get_billing_settings(outsider, ORG_ID)

    @pytest.mark.asyncio
    async def test_member_cannot_manage_billing(self, billing_service, member):
        with pytest.raises(UnauthorizedError, match="Only owners and admins can manage billing"):
            await billing_service.update_billing_settings(
                member, ORG_ID, UpdateBillingSettingsCommand(auto_recharge_enabled=True)
            )

        with pytest.raises(UnauthorizedError):
            await billing_service.create_checkout_session(member, checkout_command())

        with pytest.raises(UnauthorizedError):
            await billing_service.create_portal_session(member, portal_command())

    @pytest.mark.asyncio
    async def test_outsider_cannot_list_usage_or_ledger(self, billing_service, outsider, clock):
        with pytest.raises(UnauthorizedError):
            await billing_service.list_usage_records(outsider, ORG_ID)

        with pytest.raises(UnauthorizedError):
            await billing_service.list_credit_ledger(outsider, ORG_ID)

        with pytest.raises(UnauthorizedError):
            await billing_service.get_usage_summary(
                outsider,
                UsageSummaryCommand(
                    organization_id=ORG_ID,
                    category="api_call",
                    period_start=clock.now(),
                    period_end=clock.now(),
                ),
            )

    @pytest.mark.asyncio
    async def test_membership_lookup_failure_is_unauthorized(
        self, billing_db, provider, clock, owner
    ):
        membership = AsyncMock()
        membership.get_member_role.side_effect = StorageError("no such table")
        service = service_with(billing_db, provider, clock, membership=membership)

        with pytest.raises(UnauthorizedError, match="Failed to verify organization membership"):
            await service.get_billing_settings(owner, ORG_ID)

    @pytest.mark.asyncio
    async def test_member_of_missing_organization_gets_not_found(self, billing_db, provider, clock, owner):
        membership = AsyncMock()
        membership.get_member_role.return_value = MemberRole.OWNER
        service = service_with(billing_db, provider, clock, membership=membership)

        with pytest.raises(NotFoundError):
            await service.get_billing_settings(owner, "org-missing")


class TestBillingSettings:
    """Partial settings updates."""

    @pytest.mark.asyncio
    async def test_only_set_fields_change(self, billing_service, admin):
        await billing_service.update_billing_settings(
            admin,
            ORG_ID,
            UpdateBillingSettingsCommand(
                auto_recharge_enabled=True,
                auto_recharge_threshold=5_000_000,
                auto_recharge_amount=20_000_000,
            ),
        )

        settings = await billing_service.update_billing_settings(
            admin, ORG_ID, UpdateBillingSettingsCommand(billing_email="Finance@Acme.test")
        )

        assert settings.billing_email == "finance@acme.test"
        assert settings.auto_recharge_enabled is True
        assert settings.auto_recharge_threshold == 5_000_000
        assert settings.auto_recharge_amount == 20_000_000

    @pytest.mark.asyncio
    async def test_explicit_null_clears_field(self, billing_service, owner):
        await billing_service.update_billing_settings(
            owner, ORG_ID, UpdateBillingSettingsCommand(auto_recharge_threshold=1000)
        )

        settings = await billing_service.update_billing_settings(
            owner, ORG_ID, UpdateBillingSettingsCommand(auto_recharge_threshold=None)
        )

        assert settings.auto_recharge_threshold is None

    @pytest.mark.asyncio
    async def test_empty_update_returns_current_settings(self, billing_service, owner):
        settings = await billing_service.update_billing_settings(
            owner, ORG_ID, UpdateBillingSettingsCommand()
        )

        assert settings.billing_email == "billing@acme.test"

    def test_invalid_email_is_rejected(self):
        with pytest.raises(ValueError):
            UpdateBillingSettingsCommand(billing_email="not-an-email")

    def test_negative_recharge_values_are_rejected(self):
        with pytest.raises(ValueError):
            UpdateBillingSettingsCommand(auto_recharge_amount=-1)


class TestCheckoutSession:
    """Customer provisioning and checkout ordering."""

    @pytest.mark.asyncio
    async def test_creates_and_persists_customer_before_checkout(
        self, billing_service, billing_db, provider, owner
    ):
        session = await billing_service.create_checkout_session(owner, checkout_command())

        assert len(provider.customers) == 1
        customer = provider.customers[0]
        assert customer["organization_id"] == ORG_ID
        assert customer["email"] == "owner@acme.test"

        profile = await billing_db.get_billing_profile(ORG_ID)
        assert profile.customer_id == customer["id"]

        assert provider.checkout_sessions[0]["customer_id"] == customer["id"]
        assert provider.checkout_sessions[0]["success_url"].endswith("success=1")
        assert session.url.startswith("http://localhost:8000/billing/local/checkout/")

    @pytest.mark.asyncio
    async def test_existing_customer_is_reused(self, billing_service, billing_db, provider, admin):
        await billing_db.update_subscription_fields(ORG_ID, SubscriptionPatch(customer_id="cus_existing"))

        await billing_service.create_checkout_session(admin, checkout_command())

        assert provider.customers == []
        assert provider.checkout_sessions[0]["customer_id"] == "cus_existing"

    @pytest.mark.asyncio
    async def test_customer_failure_skips_checkout(self, billing_service, billing_db, provider, owner):
        provider.fail_on.add("create_customer")

        with pytest.raises(BadRequestError, match="Failed to create Stripe customer"):
            await billing_service.create_checkout_session(owner, checkout_command())

        assert provider.checkout_sessions == []
        profile = await billing_db.get_billing_profile(ORG_ID)
        assert profile.customer_id is None

    @pytest.mark.asyncio
    async def test_customer_persist_failure_skips_checkout(
        self, billing_service, billing_db, provider, owner, monkeypatch
    ):
        monkeypatch.setattr(
            billing_db,
            "update_subscription_fields",
            AsyncMock(side_effect=StorageError("readonly database")),
        )

        with pytest.raises(BadRequestError, match="Failed to update billing customer reference"):
            await billing_service.create_checkout_session(owner, checkout_command())

        assert len(provider.customers) == 1
        assert provider.checkout_sessions == []

    @pytest.mark.asyncio
    async def test_missing_price_ids_is_bad_request(self, billing_db, clock, owner):
        provider = InMemoryBillingProvider(prices_configured=False)
        service = service_with(billing_db, provider, clock)

        with pytest.raises(BadRequestError, match="Failed to create checkout session"):
            await service.create_checkout_session(owner, checkout_command())

        # The customer is kept for the next attempt
        profile = await billing_db.get_billing_profile(ORG_ID)
        assert profile.customer_id == provider.customers[0]["id"]

    @pytest.mark.asyncio
    async def test_missing_redirect_url_is_bad_request(self, billing_db, clock, owner):
        provider = InMemoryBillingProvider(missing_checkout_url=True)
        service = service_with(billing_db, provider, clock)

        with pytest.raises(BadRequestError, match="Failed to create checkout session"):
            await service.create_checkout_session(owner, checkout_command())

        assert provider.checkout_sessions == []

    @pytest.mark.asyncio
    async def test_unknown_organization_is_unauthorized(self, billing_service, owner):
        with pytest.raises(UnauthorizedError):
            await billing_service.create_checkout_session(owner, checkout_command("org-missing"))


class TestPortalSession:
    @pytest.mark.asyncio
    async def test_requires_customer(self, billing_service, owner):
        with pytest.raises(
            BadRequestError, match="Stripe customer is not configured for this organization"
        ):
            await billing_service.create_portal_session(owner, portal_command())

    @pytest.mark.asyncio
    async def test_creates_portal_session_for_customer(
        self, billing_service, billing_db, provider, admin
    ):
        await billing_db.update_subscription_fields(ORG_ID, SubscriptionPatch(customer_id="cus_123"))

        session = await billing_service.create_portal_session(admin, portal_command())

        assert provider.portal_sessions == [
            {"id": session.id, "customer_id": "cus_123", "return_url": "https://app.acme.test/billing"}
        ]

    @pytest.mark.asyncio
    async def test_provider_failure_is_bad_request(self, billing_service, billing_db, provider, owner):
        await billing_db.update_subscription_fields(ORG_ID, SubscriptionPatch(customer_id="cus_123"))
        provider.fail_on.add("create_portal_session")

        with pytest.raises(BadRequestError, match="Failed to create billing portal session"):
            await billing_service.create_portal_session(owner, portal_command())
