"""
Dependency Injection Providers for CreditFlow

Provides FastAPI dependencies for the database handle, the payment
gateway and the application services. The handle and gateway are built
once in the app lifespan and kept on ``app.state``; services are
lightweight and constructed per request around them.
"""

from typing import Annotated

from fastapi import Depends, Request

from app.config.settings import Settings, get_settings
from app.infrastructure.db.database import Database
from app.infrastructure.payments.gateway import PaymentGateway
from app.infrastructure.services.billing_sweep_service import BillingSweepService
from app.infrastructure.services.credit_ledger_service import CreditLedgerService
from app.infrastructure.services.payment_service import PaymentService
from app.infrastructure.services.plan_catalog_service import PlanCatalogService
from app.infrastructure.services.session_service import SessionService
from app.infrastructure.services.subscription_service import SubscriptionService
from app.infrastructure.services.user_service import UserService
from app.infrastructure.services.webhook_service import StripeWebhookService


def get_database(request: Request) -> Database:
    """The process-wide database handle opened in the lifespan."""
    return request.app.state.db


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


DatabaseDep = Annotated[Database, Depends(get_database)]
GatewayDep = Annotated[PaymentGateway, Depends(get_gateway)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


def get_ledger_service(db: DatabaseDep) -> CreditLedgerService:
    return CreditLedgerService(db)


LedgerDep = Annotated[CreditLedgerService, Depends(get_ledger_service)]


def get_plan_catalog_service(db: DatabaseDep) -> PlanCatalogService:
    return PlanCatalogService(db)


def get_subscription_service(
    db: DatabaseDep,
    ledger: LedgerDep,
    gateway: GatewayDep,
    settings: SettingsDep,
) -> SubscriptionService:
    return SubscriptionService(db, ledger, gateway, settings)


SubscriptionServiceDep = Annotated[SubscriptionService, Depends(get_subscription_service)]


def get_payment_service(
    db: DatabaseDep,
    ledger: LedgerDep,
    subscriptions: SubscriptionServiceDep,
    gateway: GatewayDep,
    settings: SettingsDep,
) -> PaymentService:
    return PaymentService(db, ledger, subscriptions, gateway, settings)


PaymentServiceDep = Annotated[PaymentService, Depends(get_payment_service)]


def get_webhook_service(
    db: DatabaseDep,
    payments: PaymentServiceDep,
    subscriptions: SubscriptionServiceDep,
) -> StripeWebhookService:
    return StripeWebhookService(db, payments, subscriptions)


def get_user_service(db: DatabaseDep, ledger: LedgerDep, settings: SettingsDep) -> UserService:
    return UserService(db, ledger, settings)


def get_session_service(db: DatabaseDep, settings: SettingsDep) -> SessionService:
    return SessionService(db, settings)


SessionServiceDep = Annotated[SessionService, Depends(get_session_service)]


def get_billing_sweep_service(
    ledger: LedgerDep,
    subscriptions: SubscriptionServiceDep,
    sessions: SessionServiceDep,
) -> BillingSweepService:
    return BillingSweepService(ledger, subscriptions, sessions)


# Type aliases for route signatures
PlanCatalogDep = Annotated[PlanCatalogService, Depends(get_plan_catalog_service)]
WebhookServiceDep = Annotated[StripeWebhookService, Depends(get_webhook_service)]
UserServiceDep = Annotated[UserService, Depends(get_user_service)]
BillingSweepDep = Annotated[BillingSweepService, Depends(get_billing_sweep_service)]
