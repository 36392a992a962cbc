"""
Auth Endpoint Tests

Exercises registration, login, the bearer dependency, refresh-token
rotation and logout over HTTP.
"""

import pytest


PASSWORD = "correct-horse-battery"


@pytest.fixture
async def registered(client):
    response = await client.post(
        "/api/auth/register",
        json={"email": "Erin@Example.com", "password": PASSWORD, "username": "erin"},
    )
    assert response.status_code == 201
    return response.json()


class TestRegisterAndLogin:

    async def test_register_returns_user_and_tokens(self, registered):
        assert registered["user"]["email"] == "erin@example.com"
        assert registered["user"]["username"] == "erin"
        assert "password_hash" not in registered["user"]
        tokens = registered["tokens"]
        assert tokens["access_token"]
        assert tokens["refresh_token"]
        assert tokens["expires_in"] == 30 * 60

    async def test_duplicate_registration(self, client, registered):
        response = await client.post(
            "/api/auth/register", json={"email": "erin@example.com", "password": PASSWORD}
        )

        assert response.status_code == 409
        assert response.json()["code"] == "duplicate_operation"

    async def test_short_password_rejected(self, client):
        response = await client.post("/api/auth/register", json={"email": "x@example.com", "password": "short"})

        assert response.status_code == 422

    async def test_login(self, client, registered, auth_headers):
        response = await client.post("/api/auth/login", json={"email": "ERIN@example.com", "password": PASSWORD})

        assert response.status_code == 200
        me = await client.get("/api/auth/me", headers=auth_headers(response.json()))
        assert me.status_code == 200
        assert me.json()["id"] == registered["user"]["id"]

    async def test_wrong_password(self, client, registered):
        response = await client.post("/api/auth/login", json={"email": "erin@example.com", "password": "nope-nope"})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid email or password"
        assert response.headers["www-authenticate"] == "Bearer"

    async def test_lockout_over_http(self, client, registered):
        for _ in range(3):
            await client.post("/api/auth/login", json={"email": "erin@example.com", "password": "nope-nope"})

        response = await client.post("/api/auth/login", json={"email": "erin@example.com", "password": PASSWORD})

        assert response.status_code == 401
        assert "locked" in response.json()["message"]


class TestBearerAuth:

    async def test_me(self, client, registered, auth_headers):
        response = await client.get("/api/auth/me", headers=auth_headers(registered))

        assert response.status_code == 200
        assert response.json()["email"] == "erin@example.com"

    async def test_missing_token(self, client):
        response = await client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing authorization token"

    async def test_garbage_token(self, client):
        response = await client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401


class TestRefreshAndLogout:

    async def test_refresh_rotates(self, client, registered, auth_headers):
        response = await client.post(
            "/api/auth/refresh", json={"refresh_token": registered["tokens"]["refresh_token"]}
        )

        assert response.status_code == 200
        rotated = {"tokens": response.json()}
        assert (await client.get("/api/auth/me", headers=auth_headers(rotated))).status_code == 200
        assert (await client.get("/api/auth/me", headers=auth_headers(registered))).status_code == 401

        replay = await client.post(
            "/api/auth/refresh", json={"refresh_token": registered["tokens"]["refresh_token"]}
        )
        assert replay.status_code == 401

    async def test_logout_invalidates_token(self, client, registered, auth_headers):
        headers = auth_headers(registered)

        response = await client.post("/api/auth/logout", headers=headers)

        assert response.status_code == 204
        assert (await client.get("/api/auth/me", headers=headers)).status_code == 401

    async def test_logout_all(self, client, registered, auth_headers):
        login = await client.post("/api/auth/login", json={"email": "erin@example.com", "password": PASSWORD})

        response = await client.post("/api/auth/logout-all", headers=auth_headers(login.json()))

        assert response.status_code == 200
        assert response.json() == {"revoked": 2}
        assert (await client.get("/api/auth/me", headers=auth_headers(registered))).status_code == 401


class TestChangePassword:

    NEW_PASSWORD = "staple-battery-horse"

    async def test_change_logs_out_other_sessions(self, client, registered, auth_headers):
        login = await client.post("/api/auth/login", json={"email": "erin@example.com", "password": PASSWORD})
        headers = auth_headers(login.json())

        response = await client.patch(
            "/api/auth/change-password",
            json={"current_password": PASSWORD, "new_password": self.NEW_PASSWORD},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["sessions_revoked"] == 1
        assert (await client.get("/api/auth/me", headers=headers)).status_code == 200
        assert (await client.get("/api/auth/me", headers=auth_headers(registered))).status_code == 401

        old = await client.post("/api/auth/login", json={"email": "erin@example.com", "password": PASSWORD})
        assert old.status_code == 401
        new = await client.post(
            "/api/auth/login", json={"email": "erin@example.com", "password": self.NEW_PASSWORD}
        )
        assert new.status_code == 200

    async def test_wrong_current_password(self, client, registered, auth_headers):
        response = await client.patch(
            "/api/auth/change-password",
            json={"current_password": "nope-nope", "new_password": self.NEW_PASSWORD},
            headers=auth_headers(registered),
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Current password is incorrect"

    async def test_requires_auth(self, client):
        response = await client.patch(
            "/api/auth/change-password",
            json={"current_password": PASSWORD, "new_password": self.NEW_PASSWORD},
        )

        assert response.status_code == 401
