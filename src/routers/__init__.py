"""
API routers for the billing service.

Routers:
- billing: Webhooks, billing settings, sessions, usage and ledger
"""

from src.routers.billing import router as billing_router

__all__ = ["billing_router"]
