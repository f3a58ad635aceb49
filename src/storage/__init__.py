"""
Storage layer for organization billing, usage records and webhook events.

Uses SQLite for bootstrapping (free, embedded).
Migration path to PostgreSQL for production scale.
"""

from src.storage.database import BillingDatabase, get_billing_db

__all__ = ["BillingDatabase", "get_billing_db"]
