"""
Stripe Webhook Handler

Verifies the ``Stripe-Signature`` header and hands the event to
``StripeWebhookService``, which applies it exactly once (DB-backed
event log, survives restarts).

Errors propagate as non-2xx responses so Stripe retries the delivery;
replays of an already applied event answer ``already_processed``.
"""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from app.infrastructure.db.dependencies import GatewayDep, WebhookServiceDep


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    gateway: GatewayDep,
    webhooks: WebhookServiceDep,
):
    """
    Handle Stripe webhook events.

    Returns 200 OK to acknowledge receipt (Stripe will retry on failure).
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    # WebhookSignatureError maps to 400 in the app's exception handlers
    event = gateway.verify_webhook_signature(payload, signature)

    outcome = await webhooks.handle_event(event)
    return {"status": outcome}
