"""
Tests for the Stripe provider adapter.

Stripe API calls are patched; webhook verification runs against the real SDK.
"""

import json
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from src.billing.errors import ProviderError
from src.billing.stripe_service import (
    LOCAL_EVENT_ID,
    StripeBillingProvider,
    parse_webhook_payload,
)
from src.config import StripeConfig
from src.webhooks.signing import WebhookSigner

from tests.conftest import ORG_ID, WEBHOOK_SECRET


@pytest.fixture
def stripe_config() -> StripeConfig:
    return StripeConfig(
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        pro_price_id="price_pro_monthly",
        pro_metered_price_id="price_pro_metered",
    )


@pytest.fixture
def stripe_provider(stripe_config) -> StripeBillingProvider:
    return StripeBillingProvider(stripe_config)


class TestCustomersAndSessions:
    @pytest.mark.asyncio
    async def test_create_customer_carries_organization_metadata(self, stripe_provider):
        with patch.object(stripe.Customer, "create", return_value=SimpleNamespace(id="cus_123")) as create:
            customer_id = await stripe_provider.create_customer(ORG_ID, "owner@acme.test")

        assert customer_id == "cus_123"
        create.assert_called_once_with(
            email="owner@acme.test", metadata={"organizationId": ORG_ID}
        )

    @pytest.mark.asyncio
    async def test_stripe_error_becomes_provider_error(self, stripe_provider):
        with patch.object(stripe.Customer, "create", side_effect=stripe.StripeError("card_declined")):
            with pytest.raises(ProviderError):
                await stripe_provider.create_customer(ORG_ID, "owner@acme.test")

    @pytest.mark.asyncio
    async def test_unconfigured_provider_fails_without_calling_stripe(self):
        provider = StripeBillingProvider(StripeConfig(secret_key=""))

        with patch.object(stripe.Customer, "create") as create:
            with pytest.raises(ProviderError, match="Stripe not configured"):
                await provider.create_customer(ORG_ID, "owner@acme.test")

        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_checkout_session_uses_flat_and_metered_prices(self, stripe_provider):
        session = SimpleNamespace(id="cs_123", url="https://checkout.stripe.com/c/pay/cs_123")

        with patch.object(stripe.checkout.Session, "create", return_value=session) as create:
            link = await stripe_provider.create_checkout_session(
                ORG_ID, "cus_123", "https://app/success", "https://app/cancel"
            )

        assert link.id == "cs_123"
        assert link.url == session.url

        kwargs = create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["customer"] == "cus_123"
        assert kwargs["client_reference_id"] == ORG_ID
        assert kwargs["metadata"] == {"organizationId": ORG_ID}
        assert kwargs["subscription_data"] == {"metadata": {"organizationId": ORG_ID}}
        assert kwargs["line_items"] == [
            {"price": "price_pro_monthly", "quantity": 1},
            {"price": "price_pro_metered"},
        ]

    @pytest.mark.asyncio
    async def test_checkout_requires_price_ids(self):
        provider = StripeBillingProvider(StripeConfig(secret_key="sk_test_123", pro_price_id="price_pro_monthly"))

        with patch.object(stripe.checkout.Session, "create") as create:
            with pytest.raises(ProviderError, match="price IDs"):
                await provider.create_checkout_session(ORG_ID, "cus_123", "s", "c")

        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_checkout_without_url_is_rejected(self, stripe_provider):
        with patch.object(
            stripe.checkout.Session, "create", return_value=SimpleNamespace(id="cs_1", url=None)
        ):
            with pytest.raises(ProviderError, match="redirect URL"):
                await stripe_provider.create_checkout_session(ORG_ID, "cus_123", "s", "c")

    @pytest.mark.asyncio
    async def test_portal_session(self, stripe_provider):
        session = SimpleNamespace(id="bps_1", url="https://billing.stripe.com/p/session/bps_1")

        with patch.object(stripe.billing_portal.Session, "create", return_value=session) as create:
            link = await stripe_provider.create_portal_session("cus_123", "https://app/billing")

        assert link.url == session.url
        create.assert_called_once_with(customer="cus_123", return_url="https://app/billing")


class TestUsageReporting:
    @pytest.mark.asyncio
    async def test_reports_increment_with_idempotency_key(self, stripe_provider):
        timestamp = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)

        with patch.object(
            stripe.SubscriptionItem,
            "create_usage_record",
            return_value=SimpleNamespace(id="mbur_123"),
        ) as create_usage_record:
            record_id = await stripe_provider.report_usage(
                "si_metered", 5, timestamp, idempotency_key="req-1"
            )

        assert record_id == "mbur_123"
        create_usage_record.assert_called_once_with(
            "si_metered",
            quantity=5,
            timestamp=int(timestamp.timestamp()),
            action="increment",
            idempotency_key="req-1",
        )

    @pytest.mark.asyncio
    async def test_omits_idempotency_key_without_reference(self, stripe_provider):
        with patch.object(
            stripe.SubscriptionItem,
            "create_usage_record",
            return_value=SimpleNamespace(id="mbur_124"),
        ) as create_usage_record:
            await stripe_provider.report_usage("si_metered", 1, datetime.now(UTC))

        assert "idempotency_key" not in create_usage_record.call_args.kwargs

    @pytest.mark.asyncio
    async def test_stripe_error_becomes_provider_error(self, stripe_provider):
        with patch.object(
            stripe.SubscriptionItem,
            "create_usage_record",
            side_effect=stripe.StripeError("No such subscription item"),
        ):
            with pytest.raises(ProviderError):
                await stripe_provider.report_usage("si_missing", 1, datetime.now(UTC))

    @pytest.mark.asyncio
    async def test_response_without_id_is_rejected(self, stripe_provider):
        with patch.object(
            stripe.SubscriptionItem, "create_usage_record", return_value=SimpleNamespace()
        ):
            with pytest.raises(ProviderError):
                await stripe_provider.report_usage("si_metered", 1, datetime.now(UTC))


class TestWebhookVerification:
    def body(self) -> str:
        return json.dumps(
            {
                "id": "evt_123",
                "object": "event",
                "type": "invoice.payment_succeeded",
                "data": {"object": {"id": "in_1", "customer": "cus_123"}},
            }
        )

    def test_accepts_signature_from_compatible_signer(self, stripe_provider):
        raw_body = self.body()
        signature = WebhookSigner(WEBHOOK_SECRET).sign_payload(raw_body)

        event = stripe_provider.construct_webhook_event(raw_body, signature)

        assert event.id == "evt_123"
        assert event.type == "invoice.payment_succeeded"
        assert event.object == {"id": "in_1", "customer": "cus_123"}

    def test_rejects_wrong_secret(self, stripe_provider):
        raw_body = self.body()
        signature = WebhookSigner("whsec_some_other_secret_value").sign_payload(raw_body)

        with pytest.raises(ProviderError, match="Invalid signature"):
            stripe_provider.construct_webhook_event(raw_body, signature)

    def test_rejects_missing_signature(self, stripe_provider):
        with pytest.raises(ProviderError):
            stripe_provider.construct_webhook_event(self.body(), "")

    def test_unverified_without_secret(self):
        provider = StripeBillingProvider(StripeConfig(secret_key="sk_test_123"))

        event = provider.construct_webhook_event(self.body(), "")

        assert event.id == "evt_123"

    def test_strict_mode_without_secret_rejects(self):
        provider = StripeBillingProvider(
            StripeConfig(secret_key="sk_test_123", strict_webhook_verification=True)
        )

        with pytest.raises(ProviderError, match="Webhook secret not configured"):
            provider.construct_webhook_event(self.body(), "")


class TestParseWebhookPayload:
    def test_missing_id_and_type_get_defaults(self):
        event = parse_webhook_payload(b'{"data": {"object": {"id": "sub_1"}}}')

        assert event.id == LOCAL_EVENT_ID
        assert event.type == "unknown"
        assert event.object == {"id": "sub_1"}

    def test_non_object_data_is_empty(self):
        event = parse_webhook_payload('{"id": "evt_1", "type": "x", "data": []}')
        assert event.object == {}

    @pytest.mark.parametrize("raw_body", ["not json", "[1, 2]", '"string"'])
    def test_invalid_payload_is_rejected(self, raw_body):
        with pytest.raises(ProviderError):
            parse_webhook_payload(raw_body)
