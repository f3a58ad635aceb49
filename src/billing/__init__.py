"""
Billing and subscription management.

Stripe integration for:
- Checkout and billing portal sessions
- Webhook reconciliation of subscription state
- Usage-based metering with deduplication
- Append-only credit ledger
"""

from src.billing.memory_provider import InMemoryBillingProvider
from src.billing.service import BillingService
from src.billing.stripe_service import StripeBillingProvider
from src.billing.usage_tracking import UsageTracker
from src.billing.webhooks import SubscriptionWebhookProcessor

__all__ = [
    "BillingService",
    "InMemoryBillingProvider",
    "StripeBillingProvider",
    "SubscriptionWebhookProcessor",
    "UsageTracker",
]
