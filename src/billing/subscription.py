"""
Subscription predicates.

Status -> is_subscribed table applied on customer.subscription.created/updated
(can_access_feature(plan="pro", status, required_plan="free")):

    active    -> True
    trialing  -> True
    inactive  -> False
    past_due  -> False
    canceled  -> False
    paused    -> False
    unpaid    -> False
"""

from src.models.billing import BillingProfile, SubscriptionPlan, SubscriptionStatus

ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})

PLAN_RANK = {
    SubscriptionPlan.FREE: 0,
    SubscriptionPlan.PRO: 1,
}


def parse_subscription_status(value: object) -> SubscriptionStatus | None:
    """Map a provider status string to the internal enum (None if unrecognized)."""
    if not isinstance(value, str) or not value:
        return None
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


def is_subscription_active(status: SubscriptionStatus | str) -> bool:
    # Accept enum members and raw provider strings alike
    value = status.value if isinstance(status, SubscriptionStatus) else status
    return value in ACTIVE_STATUSES


def can_access_feature(
    plan: str | None,
    status: SubscriptionStatus | str,
    required_plan: SubscriptionPlan | str,
) -> bool:
    """
    Check whether a subscription grants access to a plan-gated feature.

    Access requires an active status first; FREE features need nothing else,
    paid features need a known plan ranked at least as high as required_plan.
    """
    if not is_subscription_active(status):
        return False

    required = SubscriptionPlan(required_plan)
    if required == SubscriptionPlan.FREE:
        return True

    try:
        granted = SubscriptionPlan(plan) if plan is not None else None
    except ValueError:
        granted = None
    if granted is None:
        return False

    return PLAN_RANK[granted] >= PLAN_RANK[required]


def is_subscription_guard_satisfied(profile: BillingProfile, guard_enabled: bool) -> bool:
    """Usage guard: disabled => always satisfied, enabled => subscribed and active."""
    if not guard_enabled:
        return True
    return profile.is_subscribed and is_subscription_active(profile.subscription_status)
