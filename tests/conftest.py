"""
Pytest configuration and fixtures for billing tests.

Provides shared fixtures for:
- In-memory billing database with a seeded organization and members
- In-memory billing provider (signs and verifies webhooks)
- Frozen clock
- Billing service wired to the above
"""

import pytest
import pytest_asyncio

from src.billing.memory_provider import InMemoryBillingProvider
from src.billing.ports import FrozenClock
from src.billing.service import BillingService
from src.config import BillingConfig, LoggingConfig, Settings, StripeConfig
from src.models.billing import MemberRole, Principal
from src.storage.database import BillingDatabase

WEBHOOK_SECRET = "whsec_test_0123456789abcdef0123456789abcdef"
ORG_ID = "org-acme"


@pytest.fixture
def test_settings() -> Settings:
    """Settings for tests: no Stripe key (in-memory provider), signed webhooks."""
    return Settings(
        stripe=StripeConfig(
            secret_key="",
            webhook_secret=WEBHOOK_SECRET,
            pro_price_id="price_pro_monthly",
            pro_metered_price_id="price_pro_metered",
        ),
        billing=BillingConfig(database_path=":memory:"),
        logging=LoggingConfig(json_output=False, environment="development"),
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def provider() -> InMemoryBillingProvider:
    return InMemoryBillingProvider(webhook_secret=WEBHOOK_SECRET)


@pytest_asyncio.fixture
async def billing_db():
    """Initialized in-memory database with one organization and its members."""
    db = BillingDatabase.in_memory()
    await db.initialize()

    await db.create_organization(ORG_ID, "Acme Corp", billing_email="billing@acme.test")
    await db.add_member(ORG_ID, "user-owner", MemberRole.OWNER)
    await db.add_member(ORG_ID, "user-admin", MemberRole.ADMIN)
    await db.add_member(ORG_ID, "user-member", MemberRole.MEMBER)

    yield db

    await db.close()


@pytest.fixture
def billing_service(billing_db, provider, clock) -> BillingService:
    return BillingService(
        billing_store=billing_db,
        usage_store=billing_db,
        event_store=billing_db,
        membership=billing_db,
        provider=provider,
        clock=clock,
    )


@pytest.fixture
def owner() -> Principal:
    return Principal(user_id="user-owner", email="owner@acme.test")


@pytest.fixture
def admin() -> Principal:
    return Principal(user_id="user-admin", email="admin@acme.test")


@pytest.fixture
def member() -> Principal:
    return Principal(user_id="user-member", email="member@acme.test")


@pytest.fixture
def outsider() -> Principal:
    return Principal(user_id="user-outsider", email="someone@elsewhere.test")


@pytest.fixture
def deliver(billing_service, provider):
    """Sign and deliver a webhook event through the billing service."""

    async def _deliver(event_type: str, data_object: dict, event_id: str | None = None):
        raw_body = provider.build_event(event_type, data_object, event_id=event_id)
        return await billing_service.process_webhook_event(raw_body, provider.sign(raw_body))

    return _deliver
