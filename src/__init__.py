"""
Billing engine - subscription billing and usage metering for organizations.

Stripe-backed subscriptions, metered usage and an append-only credit ledger
behind a small FastAPI service.

Key Features:
    - Hosted checkout and billing portal sessions
    - Idempotent Stripe webhook reconciliation
    - Usage metering with reference-id deduplication
    - Credit ledger with integer decimillicent amounts

Example:
    >>> from src import get_settings
    >>> settings = get_settings()
    >>> print(settings.stripe.is_configured)
"""

from src.config import get_settings

__all__ = ["get_settings"]
