"""
Billing API endpoints.

Thin HTTP layer over BillingService:
- Stripe webhook ingestion (signature-verified, idempotent)
- Organization billing settings
- Checkout and billing portal sessions
- Usage summaries and listings
- Credit ledger listing

Security:
- Organization endpoints require an authenticated principal placed on
  request.state.principal by the outer authentication layer
- Membership and role checks happen in BillingService
- BillingError subclasses map to their HTTP status codes (see main.py)
"""

import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field, ValidationError

from src.billing.context import BillingContext, build_billing_context
from src.billing.errors import BadRequestError, UnauthorizedError
from src.models.billing import (
    BillingSettings,
    CreateCheckoutSessionCommand,
    CreatePortalSessionCommand,
    CreditLedgerEntry,
    Principal,
    SessionLink,
    UpdateBillingSettingsCommand,
    UsageRecord,
    UsageSummary,
    UsageSummaryCommand,
    WebhookResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["Billing"])

DEFAULT_SUMMARY_PERIOD = timedelta(days=30)


# Request models
class CheckoutSessionRequest(BaseModel):
    success_url: str = Field(..., min_length=1)
    cancel_url: str = Field(..., min_length=1)


class PortalSessionRequest(BaseModel):
    return_url: str = Field(..., min_length=1)


def _as_utc(value: datetime | None) -> datetime | None:
    # Query timestamps without an offset are interpreted as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# Dependencies
def get_billing_context(request: Request) -> BillingContext:
    """Build the per-request billing context from application state."""
    state = request.app.state
    return build_billing_context(
        settings=state.settings,
        database=state.billing_db,
        provider=state.billing_provider,
        clock=getattr(state, "clock", None),
    )


def get_principal(request: Request) -> Principal:
    """
    Authenticated caller set by the outer authentication layer.

    Raises:
        UnauthorizedError: No principal on the request
    """
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise UnauthorizedError("Authentication required")
    if isinstance(principal, Principal):
        return principal

    try:
        return Principal.model_validate(principal)
    except ValidationError as e:
        raise UnauthorizedError("Authentication required") from e


# Webhooks


@router.post("/webhooks/stripe", response_model=WebhookResult)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
    context: BillingContext = Depends(get_billing_context),
) -> WebhookResult:
    """
    Receive a Stripe webhook delivery.

    The raw body is verified against the Stripe-Signature header before
    parsing. Redeliveries of processed events return 200 with idempotent=true.

    Raises:
        400: Missing header, invalid signature or payload
    """
    if not stripe_signature:
        raise BadRequestError("Missing stripe-signature header")

    raw_body = await request.body()
    return await context.service.process_webhook_event(raw_body, stripe_signature)


# Organization billing


@router.get("/organizations/{org_id}/settings", response_model=BillingSettings)
async def get_billing_settings(
    org_id: str,
    principal: Principal = Depends(get_principal),
    context: BillingContext = Depends(get_billing_context),
) -> BillingSettings:
    return await context.service.get_billing_settings(principal, org_id)


@router.patch("/organizations/{org_id}/settings", response_model=BillingSettings)
async def update_billing_settings(
    org_id: str,
    update: UpdateBillingSettingsCommand,
    principal: Principal = Depends(get_principal),
    context: BillingContext = Depends(get_billing_context),
) -> BillingSettings:
    """Partially update billing settings (owner/admin). Omitted fields are untouched."""
    return await context.service.update_billing_settings(principal, org_id, update)


@router.post("/organizations/{org_id}/checkout-session", response_model=SessionLink)
async def create_checkout_session(
    org_id: str,
    body: CheckoutSessionRequest,
    principal: Principal = Depends(get_principal),
    context: BillingContext = Depends(get_billing_context),
) -> SessionLink:
    command = CreateCheckoutSessionCommand(
        organization_id=org_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return await context.service.create_checkout_session(principal, command)


@router.post("/organizations/{org_id}/portal-session", response_model=SessionLink)
async def create_portal_session(
    org_id: str,
    body: PortalSessionRequest,
    principal: Principal = Depends(get_principal),
    context: BillingContext = Depends(get_billing_context),
) -> SessionLink:
    command = CreatePortalSessionCommand(organization_id=org_id, return_url=body.return_url)
    return await context.service.create_portal_session(principal, command)


@router.get("/organizations/{org_id}/usage/summary", response_model=UsageSummary)
async def get_usage_summary(
    org_id: str,
    category: str = Query(..., min_length=1, max_length=100),
    period_start: datetime | None = Query(default=None),
    period_end: datetime | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    context: BillingContext = Depends(get_billing_context),
) -> UsageSummary:
    """
    Usage totals for one category.

    Period defaults to the last 30 days ending now.

    Raises:
        400: period_end before period_start
    """
    period_end = _as_utc(period_end) or context.clock.now()
    period_start = _as_utc(period_start) or period_end - DEFAULT_SUMMARY_PERIOD

    if period_end < period_start:
        raise BadRequestError("period_end must be >= period_start")

    command = UsageSummaryCommand(
        organization_id=org_id,
        category=category,
        period_start=period_start,
        period_end=period_end,
    )
    return await context.service.get_usage_summary(principal, command)


@router.get("/organizations/{org_id}/usage", response_model=list[UsageRecord])
async def list_usage_records(
    org_id: str,
    category: str | None = Query(default=None, max_length=100),
    recorded_after: datetime | None = Query(default=None),
    recorded_before: datetime | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=1000),
    principal: Principal = Depends(get_principal),
    context: BillingContext = Depends(get_billing_context),
) -> list[UsageRecord]:
    """Usage records, newest first."""
    return await context.service.list_usage_records(
        principal,
        org_id,
        category=category,
        recorded_after=_as_utc(recorded_after),
        recorded_before=_as_utc(recorded_before),
        limit=limit or context.settings.billing.usage_list_limit,
    )


@router.get("/organizations/{org_id}/ledger", response_model=list[CreditLedgerEntry])
async def list_credit_ledger(
    org_id: str,
    limit: int | None = Query(default=None, ge=1, le=1000),
    principal: Principal = Depends(get_principal),
    context: BillingContext = Depends(get_billing_context),
) -> list[CreditLedgerEntry]:
    """Credit ledger entries, newest first."""
    return await context.service.list_credit_ledger(
        principal,
        org_id,
        limit=limit or context.settings.billing.usage_list_limit,
    )

