"""
Integration Tests for the HTTP API

Credits, plans, subscriptions, payments and admin endpoints, driven
through the FastAPI app with a mocked gateway.
"""

from uuid import UUID, uuid4

import pytest

from app.domain.plans import Currency
from app.infrastructure.exceptions import GatewayError


@pytest.fixture
async def account(client, auth_headers):
    """Registered user: (user body, bearer headers)."""
    response = await client.post(
        "/api/auth/register",
        json={"email": "frank@example.com", "password": "correct-horse-battery"},
    )
    body = response.json()
    return body["user"], auth_headers(body)


class TestHealth:

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestCredits:

    async def test_balance_starts_empty(self, client, account):
        _, headers = account

        response = await client.get("/api/credits/balance", headers=headers)

        assert response.status_code == 200
        assert response.json()["total_available"] == 0

    async def test_consume_without_credits_is_402(self, client, account):
        _, headers = account

        response = await client.post("/api/credits/consume", json={"amount": 5}, headers=headers)

        assert response.status_code == 402
        body = response.json()
        assert body["code"] == "insufficient_credits"
        assert body["details"]["available"] == 0

    async def test_grant_then_consume(self, client, account, admin_headers):
        user, headers = account
        grant = await client.post(
            "/api/admin/credits/grant",
            json={"user_id": user["id"], "amount": 40, "idempotency_key": "goodwill-1"},
            headers=admin_headers,
        )
        assert grant.status_code == 201
        assert grant.json()["balance_after"] == 40

        consumed = await client.post(
            "/api/credits/consume",
            json={"amount": 15, "reference_type": "job", "reference_id": "j-9"},
            headers=headers,
        )
        assert consumed.status_code == 200
        assert consumed.json()["total_available"] == 25

        history = await client.get("/api/credits/history", headers=headers)
        items = history.json()["items"]
        assert [item["type"] for item in items] == ["consumption", "bonus"]

        report = await client.get(f"/api/admin/credits/{user['id']}/integrity", headers=admin_headers)
        assert report.json()["is_consistent"] is True

    async def test_requires_auth(self, client):
        response = await client.get("/api/credits/balance")

        assert response.status_code == 401


class TestAdminKey:

    async def test_wrong_key(self, client):
        response = await client.post("/api/admin/sweeps/run", headers={"X-Admin-Key": "wrong"})

        assert response.status_code == 403

    async def test_missing_key(self, client):
        response = await client.post("/api/admin/sweeps/run")

        assert response.status_code == 403

    async def test_unconfigured_key(self, client, test_settings):
        test_settings.admin_api_key = None

        response = await client.post("/api/admin/sweeps/run", headers={"X-Admin-Key": "anything"})

        assert response.status_code == 503

    async def test_run_sweeps(self, client, admin_headers):
        response = await client.post("/api/admin/sweeps/run", headers=admin_headers)

        assert response.status_code == 200

    async def test_grant_to_unknown_user(self, client, admin_headers):
        response = await client.post(
            "/api/admin/credits/grant",
            json={"user_id": str(uuid4()), "amount": 10},
            headers=admin_headers,
        )

        assert response.status_code == 404


class TestPlansAndSubscriptions:

    @pytest.fixture
    async def pro_plan(self, client, admin_headers):
        response = await client.post(
            "/api/admin/plans",
            json={
                "slug": "pro",
                "name": "Pro",
                "monthly_price": 1990,
                "annual_price": 19900,
                "monthly_credits": 1000,
                "trial_days": 7,
            },
            headers=admin_headers,
        )
        assert response.status_code == 201
        return response.json()

    async def test_public_catalog(self, client, pro_plan, admin_headers):
        await client.put(
            f"/api/admin/plans/{pro_plan['id']}/prices",
            json={"currency": "BRL", "interval": "monthly", "amount": 7990},
            headers=admin_headers,
        )

        listed = await client.get("/api/plans")
        detail = await client.get("/api/plans/pro")
        packages = await client.get("/api/plans/credit-packages")

        assert [p["slug"] for p in listed.json()] == ["pro"]
        assert detail.json()["prices"][0]["amount"] == 7990
        assert detail.json()["version"] == 2
        assert {p["id"] for p in packages.json()} == {"starter", "standard", "pro"}
        assert (await client.get("/api/plans/nope")).status_code == 404

    async def test_trial_subscription_and_status(self, client, account, pro_plan):
        _, headers = account

        created = await client.post("/api/subscriptions", json={"plan_slug": "pro"}, headers=headers)

        assert created.status_code == 201
        assert created.json()["status"] == "trialing"

        status = await client.get("/api/subscriptions/status", headers=headers)
        assert status.json()["is_usable"] is True
        assert status.json()["credits_granted"] == 1000

        balance = await client.get("/api/credits/balance", headers=headers)
        assert balance.json()["monthly_remaining"] == 1000

        duplicate = await client.post("/api/subscriptions", json={"plan_slug": "pro"}, headers=headers)
        assert duplicate.status_code == 409

    async def test_cancel_pending_subscription(self, client, account, pro_plan):
        _, headers = account
        await client.post("/api/subscriptions", json={"plan_slug": "pro", "with_trial": False}, headers=headers)

        response = await client.post("/api/subscriptions/cancel", json={"reason": "testing"}, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert (await client.get("/api/subscriptions/current", headers=headers)).status_code == 404

    async def test_cancel_without_subscription(self, client, account):
        _, headers = account

        response = await client.post("/api/subscriptions/cancel", json={}, headers=headers)

        assert response.status_code == 404


class TestPayments:

    async def test_purchase_credits_flow(self, client, account, webhooks, admin_headers):
        _, headers = account

        created = await client.post("/api/payments/credits", json={"package_id": "standard"}, headers=headers)

        assert created.status_code == 201
        payment = created.json()
        assert payment["status"] == "pending"
        assert payment["client_secret"] == "pi_test_1_secret"
        assert payment["credits"] == 500

        await webhooks.handle_event({
            "id": "evt_api_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": payment["external_payment_id"]}},
        })
        fetched = await client.get(f"/api/payments/{payment['id']}", headers=headers)
        assert fetched.json()["status"] == "completed"
        assert (await client.get("/api/credits/balance", headers=headers)).json()["extra_remaining"] == 500

        refund = await client.post(
            f"/api/admin/payments/{payment['id']}/refund",
            json={"amount": 999, "reason": "partial"},
            headers=admin_headers,
        )
        assert refund.status_code == 200
        assert refund.json()["credits_reversed"] == 249

        refunds = await client.get(f"/api/payments/{payment['id']}/refunds", headers=headers)
        assert len(refunds.json()) == 1

    async def test_cancel_pending_payment(self, client, account, gateway):
        _, headers = account
        created = await client.post(
            "/api/payments", json={"amount": 1500, "currency": "USD"}, headers=headers
        )

        response = await client.post(f"/api/payments/{created.json()['id']}/cancel", headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        gateway.cancel_payment_intent.assert_awaited_once()

    async def test_other_users_payment(self, client, account, make_user, payments):
        _, headers = account
        stranger = await make_user()
        foreign = await payments.initiate(stranger.id, 500, Currency.USD)

        response = await client.get(f"/api/payments/{foreign.payment.id}", headers=headers)

        assert response.status_code == 404

    async def test_gateway_failure_is_502(self, client, account, gateway):
        _, headers = account
        gateway.create_payment_intent.side_effect = GatewayError("stripe unavailable")

        response = await client.post("/api/payments", json={"amount": 500}, headers=headers)

        assert response.status_code == 502
        listed = await client.get("/api/payments", headers=headers)
        assert listed.json()[0]["status"] == "failed"


class TestTransfersAndValidation:

    async def test_transfer_to_another_account(self, client, account, ledger, make_user):
        user, headers = account
        receiver = await make_user()
        await ledger.grant(UUID(user["id"]), 100)

        response = await client.post(
            "/api/credits/transfer",
            json={"to_user_id": str(receiver.id), "amount": 30, "idempotency_key": "gift-1"},
            headers=headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["debit"]["amount"] == -30
        assert body["credit"]["amount"] == 30
        assert body["balance"]["total_available"] == 70
        assert (await ledger.get_balance(receiver.id)).extra_remaining == 30

        replay = await client.post(
            "/api/credits/transfer",
            json={"to_user_id": str(receiver.id), "amount": 30, "idempotency_key": "gift-1"},
            headers=headers,
        )
        assert replay.json()["balance"]["total_available"] == 70

    async def test_transfer_without_credits_is_402(self, client, account, make_user):
        _, headers = account
        receiver = await make_user()

        response = await client.post(
            "/api/credits/transfer", json={"to_user_id": str(receiver.id), "amount": 5}, headers=headers
        )

        assert response.status_code == 402

    async def test_transfer_to_unknown_user_is_404(self, client, account, ledger):
        user, headers = account
        await ledger.grant(UUID(user["id"]), 10)

        response = await client.post(
            "/api/credits/transfer", json={"to_user_id": str(uuid4()), "amount": 5}, headers=headers
        )

        assert response.status_code == 404
        assert (await ledger.get_balance(UUID(user["id"]))).total_available == 10

    async def test_validate_does_not_spend(self, client, account, ledger):
        user, headers = account
        await ledger.grant(UUID(user["id"]), 20)

        enough = await client.post("/api/credits/validate", json={"amount": 20}, headers=headers)
        short = await client.post("/api/credits/validate", json={"amount": 21}, headers=headers)

        assert enough.json() == {"has_enough_credits": True, "required_amount": 20, "total_available": 20}
        assert short.json()["has_enough_credits"] is False
        assert (await ledger.get_balance(UUID(user["id"]))).total_available == 20


class TestAdminUsers:

    async def test_suspend_logs_out_and_blocks_login(self, client, account, admin_headers):
        user, headers = account

        response = await client.patch(
            f"/api/admin/users/{user['id']}/status",
            json={"status": "suspended", "reason": "chargeback"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "suspended"
        assert (await client.get("/api/auth/me", headers=headers)).status_code == 401
        login = await client.post(
            "/api/auth/login", json={"email": "frank@example.com", "password": "correct-horse-battery"}
        )
        assert login.status_code == 401

        reactivated = await client.patch(
            f"/api/admin/users/{user['id']}/status", json={"status": "active"}, headers=admin_headers
        )
        assert reactivated.json()["status"] == "active"
        login = await client.post(
            "/api/auth/login", json={"email": "frank@example.com", "password": "correct-horse-battery"}
        )
        assert login.status_code == 200

    async def test_unknown_status_is_422(self, client, account, admin_headers):
        user, _ = account

        response = await client.patch(
            f"/api/admin/users/{user['id']}/status", json={"status": "banished"}, headers=admin_headers
        )

        assert response.status_code == 422

    async def test_stats(self, client, account, make_user, users, admin_headers):
        other = await make_user()
        await users.set_status(other.id, "suspended")

        response = await client.get("/api/admin/stats", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total_users"] == 2
        assert body["by_status"] == {"active": 1, "suspended": 1}
        assert body["new_today"] == 2

    async def test_stats_need_admin_key(self, client):
        response = await client.get("/api/admin/stats")

        assert response.status_code == 403
