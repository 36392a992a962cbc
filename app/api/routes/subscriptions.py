"""
Subscription API Routes

REST API endpoints for subscription management.
Follows FastAPI best practices with dependency injection.
"""

import logging

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from app.api.dependencies import CurrentUserId
from app.domain.plans import BillingInterval, Currency
from app.domain.subscription import (
    AutoRenewRequest,
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    SubscriptionResponse,
    SubscriptionStatusResponse,
)
from app.infrastructure.db.dependencies import (
    PaymentServiceDep,
    PlanCatalogDep,
    SubscriptionServiceDep,
)


logger = logging.getLogger(__name__)

router = APIRouter()


class RedirectResponse(BaseModel):
    """Hosted gateway page to send the user to."""
    id: str
    url: str


# =============================================================================
# Subscription Status Endpoints
# =============================================================================

@router.get("/subscriptions/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(user_id: CurrentUserId, subscriptions: SubscriptionServiceDep):
    """
    Get the current user's subscription status.

    ``credits_used`` comes from the credit ledger.
    """
    return await subscriptions.get_status(user_id)


@router.get("/subscriptions/current", response_model=SubscriptionResponse)
async def get_current_subscription(user_id: CurrentUserId, subscriptions: SubscriptionServiceDep):
    return await subscriptions.get_open_for_user(user_id)


# =============================================================================
# Lifecycle Endpoints
# =============================================================================

@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: CreateSubscriptionRequest,
    user_id: CurrentUserId,
    subscriptions: SubscriptionServiceDep,
    catalog: PlanCatalogDep,
):
    """
    Start a subscription on a plan.

    Trials start immediately; paid plans stay ``pending`` until their
    first payment is confirmed.
    """
    plan = await catalog.get_by_slug(request.plan_slug)
    return await subscriptions.create(
        user_id,
        plan.id,
        request.billing_interval,
        request.currency,
        with_trial=request.with_trial,
        trial_days=request.trial_days,
    )


@router.post("/subscriptions/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    user_id: CurrentUserId,
    subscriptions: SubscriptionServiceDep,
):
    """
    Cancel the caller's subscription.

    With auto-renew already off, access continues until the end of the
    paid period; otherwise it ends now.
    """
    return await subscriptions.cancel_for_user(user_id, request.reason)


@router.put("/subscriptions/auto-renew", response_model=SubscriptionResponse)
async def set_auto_renew(
    request: AutoRenewRequest,
    user_id: CurrentUserId,
    subscriptions: SubscriptionServiceDep,
):
    return await subscriptions.set_auto_renew(user_id, request.auto_renew)


@router.post("/subscriptions/change-plan", response_model=SubscriptionResponse)
async def change_plan(
    request: ChangePlanRequest,
    user_id: CurrentUserId,
    subscriptions: SubscriptionServiceDep,
    catalog: PlanCatalogDep,
):
    """Switch plans from the next billing period on."""
    plan = await catalog.get_by_slug(request.plan_slug)
    return await subscriptions.change_plan(user_id, plan.id)


# =============================================================================
# Hosted Checkout & Portal
# =============================================================================

@router.post("/subscriptions/checkout", response_model=RedirectResponse)
async def create_checkout_session(
    user_id: CurrentUserId,
    subscriptions: SubscriptionServiceDep,
    catalog: PlanCatalogDep,
    payments: PaymentServiceDep,
):
    """
    Hosted checkout for the caller's pending subscription.

    The plan must have a gateway price for the subscription's currency
    and interval.
    """
    subscription = await subscriptions.get_open_for_user(user_id)
    price = await catalog.resolve_price(
        subscription.plan_id,
        Currency(subscription.currency),
        BillingInterval(subscription.billing_interval),
    )
    if not price.stripe_price_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="This plan cannot be bought through hosted checkout",
        )

    redirect = await payments.start_checkout(user_id, subscription.id, price.stripe_price_id)
    return RedirectResponse(id=redirect.id, url=redirect.url)


@router.post("/subscriptions/portal", response_model=RedirectResponse)
async def create_portal_session(user_id: CurrentUserId, payments: PaymentServiceDep):
    """Billing portal for managing payment methods and invoices."""
    redirect = await payments.open_portal(user_id)
    return RedirectResponse(id=redirect.id, url=redirect.url)
