"""
In-memory billing provider.

Implements the BillingProvider port without network access. Used as the
provider in tests and for local development when no Stripe secret key is
configured. Every call is recorded, and any operation can be made to fail.

Webhooks are signed and verified with WebhookSigner, which uses the same
header scheme as Stripe ("t=<ts>,v1=<hex>").
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.billing.errors import ProviderError
from src.billing.stripe_service import parse_webhook_payload
from src.models.billing import ProviderEvent, SessionLink
from src.webhooks.signing import WebhookSignatureError, WebhookSigner

logger = logging.getLogger(__name__)

LOCAL_BASE_URL = "http://localhost:8000/billing/local"


def _local_id(prefix: str) -> str:
    return f"{prefix}_local_{uuid.uuid4().hex[:16]}"


@dataclass
class UsageReport:
    """A usage increment received by the in-memory provider."""

    id: str
    subscription_item_id: str
    quantity: int
    timestamp: datetime
    idempotency_key: str | None


@dataclass
class InMemoryBillingProvider:
    """
    Recording BillingProvider double.

    Attributes:
        webhook_secret: Signing secret (None = accept unsigned webhooks)
        require_verified_webhooks: Reject webhooks when no secret is set
        prices_configured: Whether pro plan price IDs are available
        fail_on: Operation names that raise ProviderError when called
        missing_checkout_url: Simulate a checkout session without a redirect URL
    """

    webhook_secret: str | None = None
    require_verified_webhooks: bool = False
    prices_configured: bool = True
    fail_on: set[str] = field(default_factory=set)
    missing_checkout_url: bool = False

    customers: list[dict[str, str]] = field(default_factory=list)
    checkout_sessions: list[dict[str, str]] = field(default_factory=list)
    portal_sessions: list[dict[str, str]] = field(default_factory=list)
    usage_reports: list[UsageReport] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._signer = WebhookSigner(self.webhook_secret) if self.webhook_secret else None
        # Provider-side idempotency: same key returns the original usage record
        self._usage_by_key: dict[str, UsageReport] = {}

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise ProviderError(f"Simulated provider failure: {operation}")

    async def create_customer(self, organization_id: str, email: str) -> str:
        self._maybe_fail("create_customer")

        customer_id = _local_id("cus")
        self.customers.append(
            {"id": customer_id, "organization_id": organization_id, "email": email}
        )
        logger.info(
            "Created local customer",
            extra={"organization_id": organization_id, "stripe_customer_id": customer_id},
        )
        return customer_id

    async def create_checkout_session(
        self,
        organization_id: str,
        customer_id: str,
        success_url: str,
        cancel_url: str,
    ) -> SessionLink:
        self._maybe_fail("create_checkout_session")

        if not self.prices_configured:
            raise ProviderError("Stripe pro price IDs are not configured")
        if self.missing_checkout_url:
            raise ProviderError("Stripe checkout session did not include a redirect URL")

        session_id = _local_id("cs")
        self.checkout_sessions.append(
            {
                "id": session_id,
                "organization_id": organization_id,
                "customer_id": customer_id,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        return SessionLink(id=session_id, url=f"{LOCAL_BASE_URL}/checkout/{session_id}")

    async def create_portal_session(self, customer_id: str, return_url: str) -> SessionLink:
        self._maybe_fail("create_portal_session")

        session_id = _local_id("bps")
        self.portal_sessions.append(
            {"id": session_id, "customer_id": customer_id, "return_url": return_url}
        )
        return SessionLink(id=session_id, url=f"{LOCAL_BASE_URL}/portal/{session_id}")

    def construct_webhook_event(self, raw_body: bytes | str, signature: str) -> ProviderEvent:
        self._maybe_fail("construct_webhook_event")

        if self._signer is None:
            if self.require_verified_webhooks:
                raise ProviderError("Webhook secret not configured")
            return parse_webhook_payload(raw_body)

        try:
            self._signer.verify(raw_body, signature)
        except WebhookSignatureError as e:
            raise ProviderError(f"Invalid signature: {e}") from e

        return parse_webhook_payload(raw_body)

    async def report_usage(
        self,
        subscription_item_id: str,
        quantity: int,
        timestamp: datetime,
        idempotency_key: str | None = None,
    ) -> str:
        self._maybe_fail("report_usage")

        if idempotency_key and idempotency_key in self._usage_by_key:
            return self._usage_by_key[idempotency_key].id

        report = UsageReport(
            id=_local_id("mbur"),
            subscription_item_id=subscription_item_id,
            quantity=quantity,
            timestamp=timestamp,
            idempotency_key=idempotency_key,
        )
        self.usage_reports.append(report)
        if idempotency_key:
            self._usage_by_key[idempotency_key] = report

        return report.id

    # ------------------------------------------------------------------
    # Helpers for tests and local tooling
    # ------------------------------------------------------------------

    def sign(self, raw_body: bytes | str, timestamp: int | None = None) -> str:
        """Produce a Stripe-Signature header value for raw_body."""
        if self._signer is None:
            return ""
        return self._signer.sign_payload(raw_body, timestamp=timestamp)

    @staticmethod
    def build_event(
        event_type: str,
        data_object: dict[str, Any],
        event_id: str | None = None,
    ) -> str:
        """Serialize a minimal Stripe-shaped event body."""
        return json.dumps(
            {
                "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
                "object": "event",
                "type": event_type,
                "data": {"object": data_object},
            }
        )
