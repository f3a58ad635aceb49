"""
Stripe billing provider adapter.

Features:
- Customer creation (organization id carried in metadata)
- Hosted checkout sessions for the pro plan (flat + metered price)
- Billing portal sessions
- Webhook signature verification and parsing
- Metered usage reporting with provider-side idempotency keys

Every Stripe failure surfaces as ProviderError. The adapter performs no
retries: callers rely on idempotency (webhook redelivery, usage reference ids).
"""

import json
import logging
from datetime import datetime
from typing import Any

import stripe

from src.billing.errors import ProviderError
from src.config import StripeConfig
from src.models.billing import ProviderEvent, SessionLink
from src.observability.logging import OperationContext

logger = logging.getLogger(__name__)

LOCAL_EVENT_ID = "local-webhook-event"


def _as_object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_webhook_payload(raw_body: bytes | str) -> ProviderEvent:
    """
    Parse a webhook body without verifying its signature.

    Raises:
        ProviderError: Body is not a JSON object
    """
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise ProviderError(f"Invalid webhook payload: {e}") from e

    if not isinstance(payload, dict):
        raise ProviderError("Invalid webhook payload: expected a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    data = _as_object(payload.get("data"))

    return ProviderEvent(
        id=event_id if isinstance(event_id, str) and event_id else LOCAL_EVENT_ID,
        type=event_type if isinstance(event_type, str) and event_type else "unknown",
        payload=payload,
        object=_as_object(data.get("object")),
    )


class StripeBillingProvider:
    """
    Stripe implementation of the BillingProvider port.

    Handles:
    - Customer and session creation
    - Webhook verification
    - Metered usage reporting
    """

    def __init__(self, config: StripeConfig, require_verified_webhooks: bool = False):
        """
        Initialize Stripe provider.

        Args:
            config: Stripe configuration
            require_verified_webhooks: Reject webhooks when no signing secret is set
        """
        self.config = config
        self.require_verified_webhooks = (
            require_verified_webhooks or config.strict_webhook_verification
        )

        if config.secret_key:
            stripe.api_key = config.secret_key
            if config.api_version:
                stripe.api_version = config.api_version
            logger.info("Stripe billing provider initialized")
        else:
            logger.warning("Stripe API key not configured - provider calls will fail")

    def _require_configured(self) -> None:
        if not self.config.is_configured:
            raise ProviderError("Stripe not configured")

    async def create_customer(self, organization_id: str, email: str) -> str:
        """
        Create Stripe customer.

        Returns:
            Stripe customer ID (cus_xxx)

        Raises:
            ProviderError: If creation fails
        """
        self._require_configured()

        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"organizationId": organization_id},
            )
        except stripe.StripeError as e:
            logger.error(
                "Failed to create Stripe customer",
                extra={"organization_id": organization_id, "error": str(e)},
            )
            raise ProviderError(f"Failed to create Stripe customer: {e}") from e

        logger.info(
            "Created Stripe customer",
            extra={"organization_id": organization_id, "stripe_customer_id": customer.id},
        )
        return customer.id

    async def create_checkout_session(
        self,
        organization_id: str,
        customer_id: str,
        success_url: str,
        cancel_url: str,
    ) -> SessionLink:
        """
        Create a subscription-mode checkout session for the pro plan.

        Raises:
            ProviderError: Price IDs not configured, Stripe rejected the
                request, or the session has no redirect URL
        """
        self._require_configured()

        if not self.config.has_plan_prices:
            raise ProviderError("Stripe pro price IDs are not configured")

        metadata = {"organizationId": organization_id}

        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=organization_id,
                metadata=metadata,
                subscription_data={"metadata": metadata},
                line_items=[
                    {"price": self.config.pro_price_id, "quantity": 1},
                    {"price": self.config.pro_metered_price_id},
                ],
            )
        except stripe.StripeError as e:
            logger.error(
                "Failed to create checkout session",
                extra={"organization_id": organization_id, "error": str(e)},
            )
            raise ProviderError(f"Failed to create checkout session: {e}") from e

        if not session.url:
            raise ProviderError("Stripe checkout session did not include a redirect URL")

        return SessionLink(id=session.id, url=session.url)

    async def create_portal_session(self, customer_id: str, return_url: str) -> SessionLink:
        self._require_configured()

        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            logger.error(
                "Failed to create billing portal session",
                extra={"stripe_customer_id": customer_id, "error": str(e)},
            )
            raise ProviderError(f"Failed to create billing portal session: {e}") from e

        return SessionLink(id=session.id, url=session.url)

    def construct_webhook_event(self, raw_body: bytes | str, signature: str) -> ProviderEvent:
        """
        Verify and parse a Stripe webhook.

        Without a signing secret the body is parsed unverified, unless
        verification is required (strict mode / production).

        Raises:
            ProviderError: Missing secret in strict mode, invalid payload or
                invalid signature
        """
        if not self.config.webhook_secret:
            if self.require_verified_webhooks:
                raise ProviderError("Webhook secret not configured")

            logger.warning("Accepting webhook without signature verification")
            return parse_webhook_payload(raw_body)

        try:
            stripe.Webhook.construct_event(
                raw_body,
                signature,
                self.config.webhook_secret,
                tolerance=self.config.webhook_tolerance_seconds,
            )
        except ValueError as e:
            raise ProviderError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise ProviderError("Invalid signature") from e

        # Signature covers the raw body, so the plain JSON is the verified payload
        return parse_webhook_payload(raw_body)

    async def report_usage(
        self,
        subscription_item_id: str,
        quantity: int,
        timestamp: datetime,
        idempotency_key: str | None = None,
    ) -> str:
        """
        Report usage to Stripe for metered billing.

        Args:
            subscription_item_id: Metered subscription item (si_xxx)
            quantity: Units to add to the current period
            timestamp: Usage timestamp
            idempotency_key: Forwarded as Stripe's Idempotency-Key

        Returns:
            Stripe usage record ID

        Raises:
            ProviderError: If reporting fails
        """
        self._require_configured()

        params: dict[str, Any] = {
            "quantity": quantity,
            "timestamp": int(timestamp.timestamp()),
            "action": "increment",
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            with OperationContext(
                "stripe_report_usage", subscription_item_id=subscription_item_id, quantity=quantity
            ):
                usage_record = stripe.SubscriptionItem.create_usage_record(
                    subscription_item_id, **params
                )
        except stripe.StripeError as e:
            logger.error(
                "Failed to report usage",
                extra={
                    "subscription_item_id": subscription_item_id,
                    "quantity": quantity,
                    "error": str(e),
                },
            )
            raise ProviderError(f"Failed to report usage to Stripe: {e}") from e

        usage_record_id = getattr(usage_record, "id", None)
        if not usage_record_id:
            raise ProviderError("Stripe usage report response did not include an id")

        return usage_record_id
