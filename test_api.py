"""
Tests for the aiohttp authentication API.
"""

import pytest

from perkstore.api import create_app

ADMIN_KEY = "test-admin-key"


@pytest.fixture
async def client(aiohttp_client, config, manager):
    return await aiohttp_client(create_app(config, manager))


async def login(client, employee_id="E1", year=1990):
    resp = await client.post("/api/auth/verify", json={"employeeId": employee_id, "yearOfBirth": year})
    return resp, await resp.json()


class TestIdentifyEndpoint:
    """Test POST /api/auth/identify."""

    async def test_identify(self, client, employee):
        resp = await client.post("/api/auth/identify", json={"employeeId": "E1"})

        assert resp.status == 200
        assert await resp.json() == {"firstName": "Ada", "lastName": "Lovelace", "maskedEmployeeId": "*1"}

    async def test_identify_unknown(self, client, employee):
        resp = await client.post("/api/auth/identify", json={"employeeId": "E9"})

        assert resp.status == 404
        assert (await resp.json())["code"] == "NOT_FOUND"

    async def test_identify_missing_field(self, client):
        resp = await client.post("/api/auth/identify", json={})

        assert resp.status == 400
        assert (await resp.json())["code"] == "BAD_REQUEST"

    async def test_invalid_json(self, client):
        resp = await client.post("/api/auth/identify", data="{not json", headers={"Content-Type": "application/json"})

        assert resp.status == 400


class TestVerifyEndpoint:
    """Test POST /api/auth/verify."""

    async def test_verify_success(self, client, employee):
        resp, body = await login(client)

        assert resp.status == 200
        assert body["token"]
        assert body["employee"]["employeeId"] == "E1"
        assert body["employee"]["points"] == 120
        assert "birthYear" not in body["employee"]
        assert body["expiresAt"]

    async def test_wrong_year_then_lock(self, client, employee):
        resp, body = await login(client, year=1991)
        assert resp.status == 401
        assert body["code"] == "INVALID_CREDENTIAL"
        assert body["remainingAttempts"] == 1

        resp, body = await login(client, year=1992)
        assert resp.status == 423
        assert body["code"] == "LOCKED"
        assert body["isLocked"] is True
        assert "HR" in body["message"]

        resp, body = await login(client, year=1990)
        assert resp.status == 423

    async def test_year_must_be_numeric(self, client, employee):
        resp = await client.post("/api/auth/verify", json={"employeeId": "E1", "yearOfBirth": "nineteen"})

        assert resp.status == 400

    @pytest.mark.parametrize("year", [1990.9, True, "19.90", "１９９０"])
    async def test_year_is_not_coerced(self, client, employee, year):
        resp = await client.post("/api/auth/verify", json={"employeeId": "E1", "yearOfBirth": year})

        assert resp.status == 400
        assert (await resp.json())["code"] == "BAD_REQUEST"

    async def test_year_as_digit_string(self, client, employee):
        resp, body = await login(client, year="1990")

        assert resp.status == 200
        assert body["token"]


class TestSessionEndpoints:
    """Test GET /api/auth/session and POST /api/auth/logout."""

    async def test_session_roundtrip(self, client, employee):
        _, issued = await login(client)

        resp = await client.get("/api/auth/session", headers={"Authorization": f"Bearer {issued['token']}"})

        assert resp.status == 200
        body = await resp.json()
        assert body["employee"]["id"] == issued["employee"]["id"]
        assert body["expiresAt"] == issued["expiresAt"]

    async def test_session_without_token(self, client):
        resp = await client.get("/api/auth/session")

        assert resp.status == 401
        assert (await resp.json())["code"] == "UNAUTHORIZED"

    async def test_session_after_expiry(self, client, employee, clock):
        _, issued = await login(client)
        clock.advance(days=8)

        resp = await client.get("/api/auth/session", headers={"Authorization": f"Bearer {issued['token']}"})

        assert resp.status == 401

    async def test_logout(self, client, employee):
        _, issued = await login(client)
        headers = {"Authorization": f"Bearer {issued['token']}"}

        resp = await client.post("/api/auth/logout", headers=headers)
        assert resp.status == 200
        assert (await resp.json())["message"] == "Logged out successfully"

        resp = await client.get("/api/auth/session", headers=headers)
        assert resp.status == 401

    async def test_logout_without_token_succeeds(self, client):
        resp = await client.post("/api/auth/logout")

        assert resp.status == 200


class TestOtpEndpoints:
    """Test the OTP endpoints."""

    async def test_otp_login(self, client, employee, sender):
        resp = await client.post("/api/auth/send-otp", json={"email": "ada@corp.com"})
        assert resp.status == 200
        assert (await resp.json())["timeoutSec"] == 120

        resp = await client.post("/api/auth/verify-otp", json={"email": "ada@corp.com", "code": sender.last_code})
        assert resp.status == 200
        body = await resp.json()
        assert body["isNewUser"] is False
        assert body["employee"]["email"] == "ada@corp.com"

    async def test_domain_not_allowed(self, client):
        resp = await client.post("/api/auth/send-otp", json={"email": "x@elsewhere.com"})

        assert resp.status == 403
        body = await resp.json()
        assert body["code"] == "DOMAIN_NOT_ALLOWED"
        assert body["domain"] == "elsewhere.com"

    async def test_verify_without_code_issued(self, client, employee):
        resp = await client.post("/api/auth/verify-otp", json={"email": "ada@corp.com", "code": "123456"})

        assert resp.status == 400
        assert (await resp.json())["code"] == "OTP_ERROR"

    async def test_lookup_and_domain_check(self, client, employee, db):
        db.add_whitelisted_domain("corp.com")

        resp = await client.get("/api/auth/lookup-by-email", params={"email": "ada@corp.com"})
        assert (await resp.json())["exists"] is True

        resp = await client.get("/api/auth/check-domain/corp.com")
        assert (await resp.json())["isWhitelisted"] is True

    async def test_otp_routes_absent_when_disabled(self, aiohttp_client, config, manager):
        config.otp.enabled = False
        client = await aiohttp_client(create_app(config, manager))

        resp = await client.post("/api/auth/send-otp", json={"email": "ada@corp.com"})

        assert resp.status in (404, 405)


class TestAdminUnlock:
    """Test POST /api/admin/employees/{id}/unlock."""

    async def test_unlock(self, client, employee):
        await login(client, year=1991)
        await login(client, year=1992)

        resp = await client.post("/api/admin/employees/E1/unlock", headers={"X-Admin-Key": ADMIN_KEY})

        assert resp.status == 200
        body = await resp.json()
        assert body["isLocked"] is False
        assert body["loginAttempts"] == 0

        resp, _ = await login(client)
        assert resp.status == 200

    async def test_unlock_requires_admin_key(self, client, employee):
        resp = await client.post("/api/admin/employees/E1/unlock", headers={"X-Admin-Key": "wrong"})

        assert resp.status == 403
        assert (await resp.json())["code"] == "FORBIDDEN"

    async def test_unlock_unknown(self, client):
        resp = await client.post("/api/admin/employees/E404/unlock", headers={"X-Admin-Key": ADMIN_KEY})

        assert resp.status == 404


class TestMisc:
    """Test health and CORS."""

    async def test_health(self, client):
        resp = await client.get("/health")

        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    async def test_preflight(self, client):
        resp = await client.options("/api/auth/verify")

        assert resp.status == 200
        assert "Authorization" in resp.headers["Access-Control-Allow-Headers"]

    async def test_unknown_route_carries_cors_headers(self, client):
        resp = await client.get("/nope")

        assert resp.status == 404
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    async def test_wrong_method_carries_cors_headers(self, client):
        resp = await client.get("/api/auth/verify")

        assert resp.status == 405
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
