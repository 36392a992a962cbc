"""
Test configuration and fixtures for CreditFlow.

Provides shared fixtures for unit and integration tests. Integration
tests run against a throwaway SQLite file per test and a mocked payment
gateway; nothing talks to Stripe.
"""

import itertools
import json
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from app.config.settings import Settings, get_settings
from app.domain.plans import PlanCreate
from app.infrastructure.db.database import Database
from app.infrastructure.payments.gateway import (
    GatewayPaymentIntent,
    GatewayRedirect,
    GatewayRefund,
    PaymentGateway,
)
from app.infrastructure.services.billing_sweep_service import BillingSweepService
from app.infrastructure.services.credit_ledger_service import CreditLedgerService
from app.infrastructure.services.payment_service import PaymentService
from app.infrastructure.services.plan_catalog_service import PlanCatalogService
from app.infrastructure.services.session_service import SessionService
from app.infrastructure.services.subscription_service import SubscriptionService
from app.infrastructure.services.user_service import UserService
from app.infrastructure.services.webhook_service import StripeWebhookService


TEST_PASSWORD = "correct-horse-battery"
ADMIN_KEY = "test-admin-key"


# =============================================================================
# Settings & Database
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Settings tuned for fast, deterministic tests."""
    return Settings(
        environment="testing",
        jwt_secret="test-jwt-secret-0123456789abcdef0123",
        bcrypt_rounds=4,
        max_login_attempts=3,
        lockout_minutes=15,
        max_active_sessions=2,
        grace_period_days=3,
        pending_subscription_ttl_hours=48,
        ledger_max_retries=10,
        admin_api_key=ADMIN_KEY,
        stripe_secret_key=None,
        stripe_webhook_secret=None,
    )


@pytest.fixture
async def db(tmp_path) -> AsyncGenerator[Database, None]:
    """Fresh SQLite database with every table created."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'creditflow.db'}", max_retries=10)
    await database.create_tables()
    yield database
    await database.drop_tables()
    await database.close()


# =============================================================================
# Mock Fixtures
# =============================================================================

@pytest.fixture
def gateway():
    """Mock payment gateway handing out predictable ids."""
    intents = itertools.count(1)
    refunds = itertools.count(1)

    def create_payment_intent(amount, currency, metadata, customer_id=None, idempotency_key=None):
        intent_id = f"pi_test_{next(intents)}"
        return GatewayPaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            raw={"id": intent_id, "amount": amount},
        )

    def create_refund(intent_id, amount, metadata=None, idempotency_key=None):
        return GatewayRefund(id=f"re_test_{next(refunds)}", amount=amount, status="succeeded")

    mock = MagicMock(spec=PaymentGateway)
    mock.provider = "stripe"
    mock.create_payment_intent = AsyncMock(side_effect=create_payment_intent)
    mock.create_refund = AsyncMock(side_effect=create_refund)
    mock.retrieve_payment_intent = AsyncMock()
    mock.cancel_payment_intent = AsyncMock(return_value=None)
    mock.cancel_subscription = AsyncMock(return_value=None)
    mock.get_or_create_customer = AsyncMock(return_value="cus_test")
    mock.create_checkout_session = AsyncMock(
        return_value=GatewayRedirect(id="cs_test", url="https://checkout.stripe.test/cs_test")
    )
    mock.create_portal_session = AsyncMock(
        return_value=GatewayRedirect(id="bps_test", url="https://billing.stripe.test/bps_test")
    )
    mock.verify_webhook_signature = MagicMock(side_effect=lambda payload, signature: json.loads(payload))
    return mock


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def ledger(db) -> CreditLedgerService:
    return CreditLedgerService(db)


@pytest.fixture
def catalog(db) -> PlanCatalogService:
    return PlanCatalogService(db)


@pytest.fixture
def subscriptions(db, ledger, gateway, test_settings) -> SubscriptionService:
    return SubscriptionService(db, ledger, gateway, test_settings)


@pytest.fixture
def payments(db, ledger, subscriptions, gateway, test_settings) -> PaymentService:
    return PaymentService(db, ledger, subscriptions, gateway, test_settings)


@pytest.fixture
def webhooks(db, payments, subscriptions) -> StripeWebhookService:
    return StripeWebhookService(db, payments, subscriptions)


@pytest.fixture
def users(db, ledger, test_settings) -> UserService:
    return UserService(db, ledger, test_settings)


@pytest.fixture
def sessions(db, test_settings) -> SessionService:
    return SessionService(db, test_settings)


@pytest.fixture
def sweep(ledger, subscriptions, sessions) -> BillingSweepService:
    return BillingSweepService(ledger, subscriptions, sessions)


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def make_user(users):
    """Factory registering users with unique emails."""
    counter = itertools.count(1)

    async def _make(email=None, password=TEST_PASSWORD, username=None):
        return await users.register(email or f"user{next(counter)}@example.com", password, username)

    return _make


@pytest.fixture
async def user(make_user):
    return await make_user()


@pytest.fixture
def make_plan(catalog):
    """Factory creating plans; paid monthly plan with 1000 credits by default."""

    async def _make(slug="pro", **overrides):
        values = dict(
            name=slug.title(),
            monthly_price=1990,
            annual_price=19900,
            monthly_credits=1000,
        )
        values.update(overrides)
        return await catalog.create_plan(PlanCreate(slug=slug, **values))

    return _make


@pytest.fixture
async def plan(make_plan):
    return await make_plan()


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
async def client(db, gateway, test_settings) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client against the app, wired to the test database and
    the mocked gateway. The lifespan is not run, so the app never builds
    its own handles.
    """
    from app.main import app

    app.state.db = db
    app.state.gateway = gateway
    app.dependency_overrides[get_settings] = lambda: test_settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.db = None
    app.state.gateway = None


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def auth_headers():
    """Build bearer headers from an auth response body."""

    def _headers(body):
        return {"Authorization": f"Bearer {body['tokens']['access_token']}"}

    return _headers
