"""
Payment API Routes

Payment initiation (generic and credit packages), lookup and
cancellation for the authenticated user. Confirmation only ever comes
from the gateway webhook.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.api.dependencies import CurrentUserId
from app.domain.payments import (
    InitiatePaymentRequest,
    PaymentResponse,
    PurchaseCreditsRequest,
    RefundResponse,
)
from app.infrastructure.db.dependencies import PaymentServiceDep
from app.infrastructure.services.payment_service import PaymentInitiation


logger = logging.getLogger(__name__)

router = APIRouter()


def _initiation_response(initiation: PaymentInitiation) -> PaymentResponse:
    response = PaymentResponse.model_validate(initiation.payment)
    response.client_secret = initiation.client_secret
    return response


@router.post("/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    request: InitiatePaymentRequest,
    user_id: CurrentUserId,
    payments: PaymentServiceDep,
):
    """
    Start a payment. The response carries the gateway client secret the
    frontend confirms the charge with.
    """
    initiation = await payments.initiate(
        user_id,
        request.amount,
        request.currency,
        request.payment_type,
        request.metadata,
        plan_id=request.plan_id,
        subscription_id=request.subscription_id,
        credits=request.credits,
    )
    return _initiation_response(initiation)


@router.post("/payments/credits", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def purchase_credits(
    request: PurchaseCreditsRequest,
    user_id: CurrentUserId,
    payments: PaymentServiceDep,
):
    """Buy a credit package; credits are granted once the gateway confirms."""
    initiation = await payments.purchase_credits(user_id, request.package_id, request.currency)
    return _initiation_response(initiation)


@router.get("/payments", response_model=List[PaymentResponse])
async def list_payments(
    user_id: CurrentUserId,
    payments: PaymentServiceDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    rows = await payments.list_for_user(user_id, limit=limit, offset=offset)
    return [PaymentResponse.model_validate(row) for row in rows]


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: UUID, user_id: CurrentUserId, payments: PaymentServiceDep):
    return PaymentResponse.model_validate(await payments.get(payment_id, user_id=user_id))


@router.get("/payments/{payment_id}/refunds", response_model=List[RefundResponse])
async def list_payment_refunds(payment_id: UUID, user_id: CurrentUserId, payments: PaymentServiceDep):
    await payments.get(payment_id, user_id=user_id)
    return [RefundResponse.model_validate(row) for row in await payments.list_refunds(payment_id)]


@router.post("/payments/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(payment_id: UUID, user_id: CurrentUserId, payments: PaymentServiceDep):
    """Abandon a pending payment."""
    return PaymentResponse.model_validate(await payments.cancel(payment_id, user_id=user_id))
