"""
Per-request billing context.

Holds the constructed service for one request, built from settings plus the
long-lived handles (database, provider) owned by the application. There is no
global service container: the router builds a context per request and tests
build one directly.
"""

import logging
from dataclasses import dataclass

from src.billing.memory_provider import InMemoryBillingProvider
from src.billing.ports import BillingProvider, Clock, SystemClock
from src.billing.service import BillingService
from src.billing.stripe_service import StripeBillingProvider
from src.config import Settings
from src.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


@dataclass
class BillingContext:
    settings: Settings
    database: BillingDatabase
    provider: BillingProvider
    clock: Clock
    service: BillingService


def create_billing_provider(settings: Settings) -> BillingProvider:
    """
    Select the provider adapter.

    Stripe when STRIPE_SECRET_KEY is set, otherwise the in-memory provider
    (local development).
    """
    if settings.stripe.is_configured:
        return StripeBillingProvider(
            settings.stripe,
            require_verified_webhooks=settings.webhook_verification_required,
        )

    logger.warning("Using in-memory billing provider (STRIPE_SECRET_KEY not set)")
    return InMemoryBillingProvider(
        webhook_secret=settings.stripe.webhook_secret or None,
        require_verified_webhooks=settings.webhook_verification_required,
        prices_configured=settings.stripe.has_plan_prices,
    )


def build_billing_context(
    settings: Settings,
    database: BillingDatabase,
    provider: BillingProvider | None = None,
    clock: Clock | None = None,
) -> BillingContext:
    """
    Build the billing context for one request.

    Args:
        settings: Application settings
        database: Shared billing database (all store ports + membership lookup)
        provider: Shared provider adapter (None = select from settings)
        clock: Time source (None = system clock)
    """
    provider = provider or create_billing_provider(settings)
    clock = clock or SystemClock()

    service = BillingService(
        billing_store=database,
        usage_store=database,
        event_store=database,
        membership=database,
        provider=provider,
        clock=clock,
        guard_enabled=settings.billing.subscription_guard_enabled,
    )
    return BillingContext(
        settings=settings,
        database=database,
        provider=provider,
        clock=clock,
        service=service,
    )
