"""
Tests for usage recording and summaries.

Tests:
- Payload validation and organization lookup
- Reference-id deduplication (pre-check and unique index)
- Metered usage reporting to the provider
- Provider failure leaves no record behind
- Subscription guard
- Inclusive period summaries
"""

from datetime import UTC, datetime, timedelta

import pytest

from src.billing.errors import BadRequestError, NotFoundError, UnauthorizedError
from src.billing.usage_tracking import UsageTracker
from src.models.billing import (
    RecordUsageCommand,
    SubscriptionPatch,
    SubscriptionStatus,
    UsageRecord,
    UsageSummaryCommand,
)

from tests.conftest import ORG_ID


def usage(**overrides) -> RecordUsageCommand:
    fields = {
        "organization_id": ORG_ID,
        "category": "openrouter_inference",
        "quantity": 3,
        "unit_cost": 250,
    }
    fields.update(overrides)
    return RecordUsageCommand(**fields)


@pytest.fixture
def tracker(billing_db, provider, clock) -> UsageTracker:
    return UsageTracker(billing_db, billing_db, provider, clock)


@pytest.fixture
def guarded_tracker(billing_db, provider, clock) -> UsageTracker:
    return UsageTracker(billing_db, billing_db, provider, clock, guard_enabled=True)


async def attach_metered_item(billing_db, item_id: str = "si_metered") -> None:
    await billing_db.update_subscription_fields(
        ORG_ID, SubscriptionPatch(metered_subscription_item_id=item_id)
    )


@pytest.mark.asyncio
async def test_record_usage_computes_total_cost(tracker, billing_db, clock):
    record = await tracker.record_usage(usage(metadata={"model": "gpt-4o-mini"}))

    assert record.total_cost == 750
    assert record.recorded_at == clock.now()
    assert record.provider_usage_record_id is None
    assert record.metadata == {"model": "gpt-4o-mini"}
    assert await billing_db.count_usage_records(ORG_ID) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity,unit_cost", [(0, 10), (-1, 10), (1, -1)])
async def test_invalid_usage_payload_is_rejected(tracker, billing_db, quantity, unit_cost):
    with pytest.raises(BadRequestError, match="Invalid usage payload"):
        await tracker.record_usage(usage(quantity=quantity, unit_cost=unit_cost))

    assert await billing_db.count_usage_records(ORG_ID) == 0


@pytest.mark.asyncio
async def test_zero_unit_cost_is_allowed(tracker):
    record = await tracker.record_usage(usage(unit_cost=0))
    assert record.total_cost == 0


@pytest.mark.asyncio
async def test_unknown_organization_is_not_found(tracker):
    with pytest.raises(NotFoundError):
        await tracker.record_usage(usage(organization_id="org-missing"))


@pytest.mark.asyncio
async def test_repeated_reference_returns_original_record(tracker, billing_db, clock):
    first = await tracker.record_usage(usage(reference_id="req-42"))
    clock.advance(seconds=30)

    second = await tracker.record_usage(usage(reference_id="req-42", quantity=99))

    assert second.id == first.id
    assert second.quantity == 3
    assert second.recorded_at == first.recorded_at
    assert await billing_db.count_usage_records(ORG_ID) == 1


@pytest.mark.asyncio
async def test_blank_reference_is_not_deduplicated(tracker, billing_db):
    await tracker.record_usage(usage(reference_id="   "))
    await tracker.record_usage(usage(reference_id="   "))

    assert await billing_db.count_usage_records(ORG_ID) == 2


@pytest.mark.asyncio
async def test_same_reference_in_other_organization_is_independent(tracker, billing_db):
    await billing_db.create_organization("org-other", "Other Inc")

    await tracker.record_usage(usage(reference_id="req-1"))
    await tracker.record_usage(usage(organization_id="org-other", reference_id="req-1"))

    assert await billing_db.count_usage_records(ORG_ID) == 1
    assert await billing_db.count_usage_records("org-other") == 1


@pytest.mark.asyncio
async def test_unique_index_suppresses_racing_insert(billing_db, clock):
    """A record inserted between the pre-check and the insert is returned instead."""
    winner = UsageRecord(
        id="usage-winner",
        organization_id=ORG_ID,
        category="api_call",
        quantity=1,
        unit_cost=10,
        total_cost=10,
        reference_id="req-race",
        recorded_at=clock.now(),
    )
    await billing_db.insert_usage_record(winner)

    loser = winner.model_copy(update={"id": "usage-loser", "quantity": 5})
    stored = await billing_db.insert_usage_record(loser)

    assert stored.id == "usage-winner"
    assert await billing_db.count_usage_records(ORG_ID) == 1


@pytest.mark.asyncio
async def test_metered_usage_is_reported_with_reference_as_idempotency_key(
    tracker, billing_db, provider, clock
):
    await attach_metered_item(billing_db)

    record = await tracker.record_usage(usage(reference_id="req-7"))

    assert len(provider.usage_reports) == 1
    report = provider.usage_reports[0]
    assert report.subscription_item_id == "si_metered"
    assert report.quantity == 3
    assert report.timestamp == clock.now()
    assert report.idempotency_key == "req-7"
    assert record.provider_usage_record_id == report.id


@pytest.mark.asyncio
async def test_duplicate_reference_is_not_reported_twice(tracker, billing_db, provider):
    await attach_metered_item(billing_db)

    await tracker.record_usage(usage(reference_id="req-8"))
    await tracker.record_usage(usage(reference_id="req-8"))

    assert len(provider.usage_reports) == 1


@pytest.mark.asyncio
async def test_provider_failure_writes_nothing(tracker, billing_db, provider):
    await attach_metered_item(billing_db)
    provider.fail_on.add("report_usage")

    with pytest.raises(BadRequestError, match="Failed to report usage to Stripe"):
        await tracker.record_usage(usage(reference_id="req-9"))

    assert await billing_db.count_usage_records(ORG_ID) == 0


@pytest.mark.asyncio
async def test_guard_rejects_without_active_subscription(guarded_tracker, billing_db):
    with pytest.raises(UnauthorizedError, match="Active subscription required"):
        await guarded_tracker.record_usage(usage())

    assert await billing_db.count_usage_records(ORG_ID) == 0


@pytest.mark.asyncio
async def test_guard_rejects_canceled_status_with_stale_subscribed_flag(
    guarded_tracker, billing_db
):
    await billing_db.update_subscription_fields(
        ORG_ID,
        SubscriptionPatch(is_subscribed=True, subscription_status=SubscriptionStatus.CANCELED),
    )

    with pytest.raises(UnauthorizedError, match="Active subscription required"):
        await guarded_tracker.record_usage(usage())

    assert await billing_db.count_usage_records(ORG_ID) == 0


@pytest.mark.asyncio
async def test_guard_allows_subscribed_active_organization(guarded_tracker, billing_db):
    await billing_db.update_subscription_fields(
        ORG_ID,
        SubscriptionPatch(is_subscribed=True, subscription_status=SubscriptionStatus.TRIALING),
    )

    record = await guarded_tracker.record_usage(usage())
    assert record.organization_id == ORG_ID


@pytest.mark.asyncio
async def test_summary_bounds_are_inclusive(tracker, clock):
    start = clock.now()
    await tracker.record_usage(usage(quantity=2))
    clock.advance(hours=1)
    await tracker.record_usage(usage(quantity=5))
    end = clock.now()
    clock.advance(seconds=1)
    await tracker.record_usage(usage(quantity=100))

    summary = await tracker.get_usage_summary(
        UsageSummaryCommand(
            organization_id=ORG_ID,
            category="openrouter_inference",
            period_start=start,
            period_end=end,
        )
    )

    assert summary.total_quantity == 7
    assert summary.total_cost == 7 * 250
    assert summary.period_start == start
    assert summary.period_end == end


@pytest.mark.asyncio
async def test_summary_without_matching_records_is_zero(tracker, clock):
    await tracker.record_usage(usage(category="api_call"))

    summary = await tracker.get_usage_summary(
        UsageSummaryCommand(
            organization_id=ORG_ID,
            category="workflow_execution",
            period_start=clock.now() - timedelta(days=1),
            period_end=clock.now(),
        )
    )

    assert summary.total_quantity == 0
    assert summary.total_cost == 0


@pytest.mark.asyncio
async def test_summary_guard_checks_status_only(guarded_tracker, billing_db, clock):
    command = UsageSummaryCommand(
        organization_id=ORG_ID,
        category="api_call",
        period_start=clock.now() - timedelta(days=1),
        period_end=clock.now(),
    )

    with pytest.raises(UnauthorizedError):
        await guarded_tracker.get_usage_summary(command)

    await billing_db.update_subscription_fields(
        ORG_ID, SubscriptionPatch(subscription_status=SubscriptionStatus.ACTIVE)
    )
    summary = await guarded_tracker.get_usage_summary(command)
    assert summary.total_quantity == 0


def test_summary_period_must_be_ordered():
    with pytest.raises(ValueError):
        UsageSummaryCommand(
            organization_id=ORG_ID,
            category="api_call",
            period_start=datetime(2025, 2, 1, tzinfo=UTC),
            period_end=datetime(2025, 1, 1, tzinfo=UTC),
        )


@pytest.mark.asyncio
async def test_list_usage_records_newest_first_with_filters(tracker, clock):
    await tracker.record_usage(usage(category="api_call", reference_id="a"))
    clock.advance(minutes=1)
    await tracker.record_usage(usage(category="api_call", reference_id="b"))
    clock.advance(minutes=1)
    await tracker.record_usage(usage(category="workflow_execution", reference_id="c"))

    records = await tracker.list_usage_records(ORG_ID)
    assert [r.reference_id for r in records] == ["c", "b", "a"]

    api_calls = await tracker.list_usage_records(ORG_ID, category="api_call", limit=1)
    assert [r.reference_id for r in api_calls] == ["b"]


@pytest.mark.asyncio
async def test_list_usage_records_unknown_organization(tracker):
    with pytest.raises(NotFoundError):
        await tracker.list_usage_records("org-missing")
