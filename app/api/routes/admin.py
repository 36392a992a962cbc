"""
Admin Routes for Billing Operations

Manual grants, refunds, sweeps, ledger audits, account status and
removal, user statistics and catalog management. Protected by API key authentication.
"""

import logging
from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, status

from app.api.dependencies import verify_admin_api_key
from app.domain.credits import GrantCreditsRequest, LedgerIntegrityReport, TransactionResponse
from app.domain.payments import RefundRequest, RefundResponse
from app.domain.plans import (
    FeatureCreate,
    PlanCreate,
    PlanFeatureAttach,
    PlanPriceResponse,
    PlanPriceUpsert,
    PlanResponse,
    PlanUpdate,
)
from app.domain.users import UserResponse, UserStatsResponse, UserStatusUpdate
from app.infrastructure.db.dependencies import (
    BillingSweepDep,
    LedgerDep,
    PaymentServiceDep,
    PlanCatalogDep,
    UserServiceDep,
)


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_api_key)]  # Protect ALL admin routes
)


# =============================================================================
# Credits & Payments
# =============================================================================

@router.post("/credits/grant", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def grant_credits(request: GrantCreditsRequest, ledger: LedgerDep):
    """
    Manual grant (bonus, goodwill credit, ...). Replays of the same
    ``idempotency_key`` return the original row.
    """
    logger.info(f"Admin grant of {request.amount} {request.transaction_type.value} credits to {request.user_id}")
    return await ledger.grant(
        request.user_id,
        request.amount,
        request.transaction_type,
        description=request.description,
        reference_type="admin",
        idempotency_key=request.idempotency_key,
    )


@router.get("/credits/{user_id}/integrity", response_model=LedgerIntegrityReport)
async def verify_ledger_integrity(user_id: UUID, ledger: LedgerDep):
    """Recompute a user's balance from the ledger and report any drift."""
    return await ledger.verify_integrity(user_id)


@router.post("/payments/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(payment_id: UUID, request: RefundRequest, payments: PaymentServiceDep):
    """Refund a completed payment; credits granted for it are reversed proportionally."""
    return await payments.refund(payment_id, request.amount, request.reason)


# =============================================================================
# Maintenance
# =============================================================================

@router.post("/sweeps/run")
async def run_sweeps(sweep: BillingSweepDep) -> Dict[str, Any]:
    """Run credit expiry, the subscription sweep and the session sweep now."""
    return await sweep.run()


@router.get("/stats", response_model=UserStatsResponse)
async def user_stats(users: UserServiceDep):
    return await users.get_stats()


@router.patch("/users/{user_id}/status", response_model=UserResponse)
async def set_user_status(user_id: UUID, request: UserStatusUpdate, users: UserServiceDep):
    """Activate, deactivate or suspend an account. Leaving ``active`` logs it out everywhere."""
    return await users.set_status(user_id, request.status, request.reason)


@router.delete("/users/{user_id}", response_model=UserResponse)
async def soft_delete_user(user_id: UUID, users: UserServiceDep):
    return await users.soft_delete(user_id)


# =============================================================================
# Catalog Management
# =============================================================================

@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(request: PlanCreate, catalog: PlanCatalogDep):
    plan = await catalog.create_plan(request)
    return await catalog.get_plan_response(plan.slug)


@router.patch("/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(plan_id: UUID, request: PlanUpdate, catalog: PlanCatalogDep):
    plan = await catalog.update_plan(plan_id, request)
    return await catalog.get_plan_response(plan.slug)


@router.post("/plans/{plan_id}/toggle-active", response_model=PlanResponse)
async def toggle_plan(plan_id: UUID, catalog: PlanCatalogDep):
    plan = await catalog.toggle_active(plan_id)
    return await catalog.get_plan_response(plan.slug)


@router.put("/plans/{plan_id}/prices", response_model=PlanPriceResponse)
async def upsert_plan_price(plan_id: UUID, request: PlanPriceUpsert, catalog: PlanCatalogDep):
    return await catalog.upsert_price(plan_id, request)


@router.post("/features", status_code=status.HTTP_201_CREATED)
async def create_feature(request: FeatureCreate, catalog: PlanCatalogDep):
    feature = await catalog.create_feature(request)
    return {"id": str(feature.id), "key": feature.key}


@router.put("/plans/{plan_id}/features")
async def attach_plan_feature(plan_id: UUID, request: PlanFeatureAttach, catalog: PlanCatalogDep):
    await catalog.attach_feature(plan_id, request)
    return await catalog.list_plan_features(plan_id)
