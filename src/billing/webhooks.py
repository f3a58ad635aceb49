"""
Stripe webhook event processing.

Reconciles organization subscription state from provider events:
- checkout.session.completed
- customer.subscription.created / customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_failed
- invoice.payment_succeeded

Every event is stored once (unique provider event id) and finalized once
(processed_at). Redeliveries of a finalized event are idempotent no-ops.
Other event types are stored and finalized without mutating anything.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from src.billing.errors import BadRequestError, ProviderError, StorageError
from src.billing.ports import BillingProvider, BillingStore, Clock, WebhookEventStore
from src.billing.subscription import can_access_feature, parse_subscription_status
from src.models.billing import (
    ProviderEvent,
    SubscriptionPatch,
    SubscriptionPlan,
    SubscriptionStatus,
    WebhookEvent,
    WebhookResult,
)
from src.observability.metrics import track_webhook_event

logger = logging.getLogger(__name__)


def _read_object(record: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = record.get(key)
    return value if isinstance(value, dict) else None


def _read_string(record: dict[str, Any], key: str) -> str | None:
    value = record.get(key)
    return value if isinstance(value, str) and value else None


def _read_number(record: dict[str, Any], key: str) -> int | float | None:
    value = record.get(key)
    # bool is an int subclass; Stripe never sends booleans for timestamps
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return value


def _from_unix_seconds(value: int | float | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(value, UTC)
    except (OverflowError, OSError, ValueError):
        logger.warning("Ignoring out-of-range provider timestamp", extra={"value": value})
        return None


def resolve_organization_from_object(data_object: dict[str, Any]) -> str | None:
    """Organization id carried directly on the event object (metadata, then client_reference_id)."""
    metadata = _read_object(data_object, "metadata")
    if metadata:
        organization_id = _read_string(metadata, "organizationId") or _read_string(
            metadata, "organization_id"
        )
        if organization_id:
            return organization_id

    return _read_string(data_object, "client_reference_id")


def resolve_metered_subscription_item_id(subscription: dict[str, Any]) -> str | None:
    """First subscription item whose price is metered, or None."""
    items = _read_object(subscription, "items")
    if not items:
        return None

    rows = items.get("data")
    if not isinstance(rows, list):
        return None

    for item in rows:
        if not isinstance(item, dict):
            continue
        price = _read_object(item, "price") or {}
        recurring = _read_object(price, "recurring") or {}
        if _read_string(recurring, "usage_type") == "metered":
            return _read_string(item, "id")

    return None


class SubscriptionWebhookProcessor:
    """
    Verify, deduplicate and apply provider webhook events.

    Failures are raised as BadRequestError and leave the event unfinalized,
    so the provider's redelivery can complete it.
    """

    def __init__(
        self,
        provider: BillingProvider,
        billing_store: BillingStore,
        event_store: WebhookEventStore,
        clock: Clock,
    ):
        self.provider = provider
        self.billing_store = billing_store
        self.event_store = event_store
        self.clock = clock

        self._handlers: dict[str, Callable[[str, dict[str, Any]], Awaitable[None]]] = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_failed": self._handle_payment_failed,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
        }

    async def process(self, raw_body: bytes | str, signature: str) -> WebhookResult:
        """
        Process one webhook delivery.

        Args:
            raw_body: Raw request body exactly as received
            signature: Stripe-Signature header value

        Returns:
            WebhookResult: idempotent=True when the event was already finalized

        Raises:
            BadRequestError: Signature/parse failure or a storage failure
        """
        try:
            event = self.provider.construct_webhook_event(raw_body, signature)
        except ProviderError as e:
            logger.warning("Rejected webhook delivery", extra={"error": str(e)})
            track_webhook_event("unknown", "rejected")
            raise BadRequestError("Invalid Stripe webhook signature") from e

        existing = await self._call(
            self.event_store.find_webhook_event(event.id),
            "Failed to check webhook idempotency",
        )
        if existing and existing.processed_at:
            logger.info(
                "Webhook event already processed",
                extra={"stripe_event_id": event.id, "event_type": event.type},
            )
            track_webhook_event(event.type, "idempotent")
            return WebhookResult(idempotent=True, event_id=event.id)

        organization_id = await self._resolve_organization(event.object)

        stored = existing or await self._persist_event(event, organization_id)
        if stored is None:
            # A concurrent delivery won the insert and applies the event
            track_webhook_event(event.type, "idempotent")
            return WebhookResult(idempotent=True, event_id=event.id)

        handler = self._handlers.get(event.type)
        if organization_id and handler:
            await handler(organization_id, event.object)
        elif not organization_id:
            logger.warning(
                "Webhook event not linked to an organization",
                extra={"stripe_event_id": event.id, "event_type": event.type},
            )

        await self._call(
            self.event_store.mark_webhook_processed(stored.id, self.clock.now()),
            "Failed to mark webhook event processed",
        )

        logger.info(
            "Webhook event processed",
            extra={
                "stripe_event_id": event.id,
                "event_type": event.type,
                "organization_id": organization_id,
                "applied": bool(organization_id and handler),
            },
        )
        track_webhook_event(event.type, "processed")
        return WebhookResult(idempotent=False, event_id=event.id)

    async def _call(self, operation: Awaitable[Any], failure_message: str) -> Any:
        try:
            return await operation
        except StorageError as e:
            logger.error(failure_message, extra={"error": str(e)})
            raise BadRequestError(failure_message) from e

    async def _persist_event(
        self, event: ProviderEvent, organization_id: str | None
    ) -> WebhookEvent | None:
        """
        Insert the event row.

        Returns:
            The new row, or None when a concurrent delivery inserted it first.
            That delivery owns the transition; if it never finalizes, the
            provider's redelivery picks up the unfinalized row.
        """
        created = await self._call(
            self.event_store.create_webhook_event(
                provider_event_id=event.id,
                event_type=event.type,
                organization_id=organization_id,
                payload=event.payload,
            ),
            "Failed to persist webhook event",
        )
        if created is None:
            logger.info(
                "Webhook event claimed by concurrent delivery",
                extra={"stripe_event_id": event.id},
            )
        return created

    async def _resolve_organization(self, data_object: dict[str, Any]) -> str | None:
        direct = resolve_organization_from_object(data_object)
        if direct:
            return direct

        subscription_id = _read_string(data_object, "subscription") or _read_string(
            data_object, "id"
        )
        if subscription_id:
            profile = await self._call(
                self.billing_store.find_by_subscription_id(subscription_id),
                "Failed to resolve organization for subscription webhook",
            )
            if profile:
                return profile.organization_id

        customer_id = _read_string(data_object, "customer")
        if customer_id:
            profile = await self._call(
                self.billing_store.find_by_customer_id(customer_id),
                "Failed to resolve organization for customer webhook",
            )
            if profile:
                return profile.organization_id

        return None

    async def _apply(
        self, organization_id: str, patch: SubscriptionPatch, failure_message: str
    ) -> None:
        await self._call(
            self.billing_store.update_subscription_fields(organization_id, patch),
            failure_message,
        )

    async def _handle_checkout_completed(self, organization_id: str, session: dict[str, Any]) -> None:
        await self._apply(
            organization_id,
            SubscriptionPatch(
                customer_id=_read_string(session, "customer"),
                subscription_id=_read_string(session, "subscription"),
                payment_method_id=_read_string(session, "payment_method"),
                is_subscribed=True,
                subscription_status=SubscriptionStatus.ACTIVE,
                subscription_plan=SubscriptionPlan.PRO.value,
            ),
            "Failed to persist checkout webhook state",
        )

    async def _handle_subscription_changed(
        self, organization_id: str, subscription: dict[str, Any]
    ) -> None:
        status = (
            parse_subscription_status(_read_string(subscription, "status"))
            or SubscriptionStatus.INACTIVE
        )
        ended_at = _read_number(subscription, "ended_at")
        if ended_at is None:
            ended_at = _read_number(subscription, "cancel_at")

        await self._apply(
            organization_id,
            SubscriptionPatch(
                customer_id=_read_string(subscription, "customer"),
                subscription_id=_read_string(subscription, "id"),
                metered_subscription_item_id=resolve_metered_subscription_item_id(subscription),
                is_subscribed=can_access_feature(
                    SubscriptionPlan.PRO.value, status, SubscriptionPlan.FREE
                ),
                subscription_status=status,
                subscription_plan=SubscriptionPlan.PRO.value,
                subscription_started_at=_from_unix_seconds(
                    _read_number(subscription, "start_date")
                ),
                subscription_ends_at=_from_unix_seconds(ended_at),
                subscription_current_period_end=_from_unix_seconds(
                    _read_number(subscription, "current_period_end")
                ),
            ),
            "Failed to persist subscription webhook state",
        )

    async def _handle_subscription_deleted(
        self, organization_id: str, subscription: dict[str, Any]
    ) -> None:
        await self._apply(
            organization_id,
            SubscriptionPatch(
                is_subscribed=False,
                subscription_status=SubscriptionStatus.CANCELED,
                subscription_ends_at=self.clock.now(),
            ),
            "Failed to persist cancellation webhook state",
        )

    async def _handle_payment_failed(self, organization_id: str, invoice: dict[str, Any]) -> None:
        await self._apply(
            organization_id,
            SubscriptionPatch(subscription_status=SubscriptionStatus.PAST_DUE),
            "Failed to persist failed payment webhook state",
        )

    async def _handle_payment_succeeded(self, organization_id: str, invoice: dict[str, Any]) -> None:
        await self._apply(
            organization_id,
            SubscriptionPatch(is_subscribed=True, subscription_status=SubscriptionStatus.ACTIVE),
            "Failed to persist payment success webhook state",
        )
