"""
Plan Catalog API Routes

Public, read-only view of plans, prices and feature limits.
"""

from typing import List

from fastapi import APIRouter

from app.domain.credits import CREDIT_PACKAGES, CreditPackage
from app.domain.plans import PlanFeatureResponse, PlanPriceResponse, PlanResponse
from app.infrastructure.db.dependencies import PlanCatalogDep


router = APIRouter()


@router.get("/plans", response_model=List[PlanResponse])
async def list_plans(catalog: PlanCatalogDep):
    """Active plans in display order."""
    return await catalog.list_plans()


@router.get("/plans/credit-packages", response_model=List[CreditPackage])
async def list_credit_packages():
    return CREDIT_PACKAGES


@router.get("/plans/{slug}", response_model=PlanResponse)
async def get_plan(slug: str, catalog: PlanCatalogDep):
    return await catalog.get_plan_response(slug)


@router.get("/plans/{slug}/prices", response_model=List[PlanPriceResponse])
async def list_plan_prices(slug: str, catalog: PlanCatalogDep):
    plan = await catalog.get_by_slug(slug)
    return await catalog.list_prices(plan.id)


@router.get("/plans/{slug}/features", response_model=List[PlanFeatureResponse])
async def list_plan_features(slug: str, catalog: PlanCatalogDep):
    plan = await catalog.get_by_slug(slug)
    return await catalog.list_plan_features(plan.id)
