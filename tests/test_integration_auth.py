"""End-to-end auth flow through the HTTP API.

Covers registration, login, the /me profile, refresh rotation with reuse
detection, logout, rate limiting and quota proxying.
"""

import base64

import httpx
import pytest
from fastapi.testclient import TestClient

from tenantauth import app as app_module
from tenantauth.service.quota import QuotaClient
from tenantauth.service.runtime import get_runtime
from tenantauth.storage.errors import StoreUnavailable

PASSWORD = "Corr3ctHorse"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, username="frank", email="frank@example.com", org=None):
    body = {"username": username, "email": email, "password": PASSWORD}
    if org is not None:
        body["organization_name"] = org
    return client.post("/v1/auth/register", json=body)


def _login(client, identifier="frank"):
    response = client.post(
        "/v1/auth/login", json={"identifier": identifier, "password": PASSWORD}
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _error_code(response):
    return response.json()["error"]["code"]


class TestRegistration:
    def test_register_returns_principal(self, client):
        response = _register(client, org="Frank Co")

        assert response.status_code == 201
        payload = response.json()
        assert payload["status"] == "ok"
        user = payload["data"]["user"]
        assert user["username"] == "frank"
        assert user["role"] == "admin"
        assert user["organization_name"] == "Frank Co"
        assert "password" not in str(payload)

    def test_duplicate_is_conflict(self, client):
        _register(client)
        response = _register(client, username="frank2")

        assert response.status_code == 409
        assert _error_code(response) == "conflict"

    def test_invalid_email_is_validation_error(self, client):
        response = _register(client, email="nope")
        assert response.status_code == 400
        assert _error_code(response) == "validation_error"

    def test_weak_password_is_validation_error(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"username": "frank", "email": "frank@example.com", "password": "weak"},
        )
        assert response.status_code == 400
        assert _error_code(response) == "validation_error"


class TestSessionFlow:
    def test_login_and_me(self, client):
        _register(client)
        tokens = _login(client, "FRANK@example.com")

        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] > 0
        response = client.get("/v1/me", headers=_auth(tokens["access_token"]))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "frank@example.com"

    def test_bad_credentials(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/login", json={"identifier": "frank", "password": "Wr0ngWrong"}
        )
        assert response.status_code == 401
        assert _error_code(response) == "unauthorized"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_me_requires_bearer(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert _error_code(response) == "unauthorized"

    def test_malformed_access_token(self, client):
        response = client.get("/v1/me", headers=_auth("garbage"))
        assert response.status_code == 401
        assert _error_code(response) == "token_malformed"

    def test_deeply_nested_refresh_header_is_malformed(self, client):
        nested = base64.urlsafe_b64encode(b"[" * 3000).decode().rstrip("=")
        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": f"{nested}.e30.sig"}
        )
        assert response.status_code == 401
        assert _error_code(response) == "token_malformed"

    def test_refresh_token_cannot_be_used_as_access_token(self, client):
        _register(client)
        tokens = _login(client)
        response = client.get("/v1/me", headers=_auth(tokens["refresh_token"]))
        assert response.status_code == 401
        assert _error_code(response) == "token_invalid"

    def test_refresh_then_replay_revokes_everything(self, client):
        _register(client)
        r0 = _login(client)["refresh_token"]

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": r0})
        assert rotated.status_code == 200
        fresh = rotated.json()["data"]
        assert fresh["refresh_token"] != r0
        assert client.get("/v1/me", headers=_auth(fresh["access_token"])).status_code == 200

        replay = client.post("/v1/auth/refresh", json={"refresh_token": r0})
        assert replay.status_code == 401
        assert _error_code(replay) == "session_invalidated"

        me = client.get("/v1/me", headers=_auth(fresh["access_token"]))
        assert me.status_code == 401
        assert _error_code(me) == "session_invalidated"
        again = client.post("/v1/auth/refresh", json={"refresh_token": fresh["refresh_token"]})
        assert _error_code(again) == "session_invalidated"

    def test_logout(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post("/v1/auth/logout", headers=_auth(tokens["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "Logged out"}

        me = client.get("/v1/me", headers=_auth(tokens["access_token"]))
        assert _error_code(me) == "session_invalidated"
        refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert _error_code(refresh) == "session_invalidated"

    def test_login_with_compatibility_characters(self, client):
        _register(client)
        tokens = _login(client, "\uff46rank")
        assert client.get("/v1/me", headers=_auth(tokens["access_token"])).status_code == 200

    def test_issue_token_supersedes_login_refresh(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post("/v1/auth/token", headers=_auth(tokens["access_token"]))
        assert response.status_code == 200
        issued = response.json()["data"]
        assert client.get("/v1/me", headers=_auth(issued["access_token"])).status_code == 200

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": issued["refresh_token"]})
        assert rotated.status_code == 200

    def test_change_password_requires_new_login(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post(
            "/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "Fr3shHorse"},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 200

        me = client.get("/v1/me", headers=_auth(tokens["access_token"]))
        assert _error_code(me) == "session_invalidated"
        old = client.post("/v1/auth/login", json={"identifier": "frank", "password": PASSWORD})
        assert old.status_code == 401
        new = client.post(
            "/v1/auth/login", json={"identifier": "frank", "password": "Fr3shHorse"}
        )
        assert new.status_code == 200

    def test_change_password_with_wrong_current_password(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post(
            "/v1/auth/change-password",
            json={"current_password": "Wr0ngWrong", "new_password": "Fr3shHorse"},
            headers=_auth(tokens["access_token"]),
        )

        assert response.status_code == 401
        assert _error_code(response) == "unauthorized"
        assert client.get("/v1/me", headers=_auth(tokens["access_token"])).status_code == 200

    def test_admin_password_reset(self, client):
        _register(client, org="system")
        _register(client, "grace", "grace@example.com")
        grace = _login(client, "grace")
        grace_id = client.get("/v1/me", headers=_auth(grace["access_token"])).json()["data"]["id"]
        admin = _login(client)

        response = client.post(
            f"/v1/principals/{grace_id}/password",
            json={"new_password": "Res3tHorse"},
            headers=_auth(admin["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] is True

        me = client.get("/v1/me", headers=_auth(grace["access_token"]))
        assert _error_code(me) == "session_invalidated"
        assert client.post(
            "/v1/auth/login", json={"identifier": "grace", "password": "Res3tHorse"}
        ).status_code == 200

        missing = client.post(
            "/v1/principals/nobody/password",
            json={"new_password": "Res3tHorse"},
            headers=_auth(admin["access_token"]),
        )
        assert missing.status_code == 404
        assert _error_code(missing) == "not_found"

    def test_org_admin_cannot_reset_outsiders(self, client):
        _register(client)
        _register(client, "grace", "grace@example.com")
        grace = _login(client, "grace")
        grace_id = client.get("/v1/me", headers=_auth(grace["access_token"])).json()["data"]["id"]

        response = client.post(
            f"/v1/principals/{grace_id}/password",
            json={"new_password": "Res3tHorse"},
            headers=_auth(_login(client)["access_token"]),
        )

        assert response.status_code == 403
        assert _error_code(response) == "forbidden"

    def test_store_outage_is_retryable(self, client, monkeypatch):
        _register(client)
        tokens = _login(client)
        runtime = get_runtime()

        def unavailable(principal_id):
            raise StoreUnavailable("timeout")

        monkeypatch.setattr(runtime.store, "read_token_version", unavailable)
        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )

        assert response.status_code == 503
        assert _error_code(response) == "store_unavailable"
        assert response.headers["Retry-After"] == "1"
        monkeypatch.undo()
        assert runtime.store.read_current_refresh_hash(
            runtime.store.get_principal_by_identifier("frank").id
        ) is not None


class TestRateLimits:
    def test_login_is_rate_limited(self, client, monkeypatch):
        _register(client)
        monkeypatch.setattr(get_runtime().settings, "auth_rate_limit_max", 2)

        for _ in range(2):
            assert client.post(
                "/v1/auth/login", json={"identifier": "frank", "password": PASSWORD}
            ).status_code == 200
        response = client.post(
            "/v1/auth/login", json={"identifier": "frank", "password": PASSWORD}
        )

        assert response.status_code == 429
        assert _error_code(response) == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1


class TestQuotas:
    @pytest.fixture
    def quota_calls(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            if request.method == "PUT":
                return httpx.Response(200, json={"success": True})
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {"status": {"allowed": True, "limit": 10, "used": 3, "remaining": 7}},
                },
            )

        get_runtime().quota = QuotaClient(
            "http://quota.test", transport=httpx.MockTransport(handler)
        )
        return calls

    def test_member_can_check_own_quota(self, client, quota_calls):
        org_id = _register(client).json()["data"]["user"]["organization_id"]
        tokens = _login(client)

        response = client.get(
            f"/v1/quotas/{org_id}/plugins", headers=_auth(tokens["access_token"])
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"]["remaining"] == 7
        assert quota_calls == [("GET", f"/quotas/{org_id}/plugins")]

    def test_other_organization_is_forbidden(self, client, quota_calls):
        _register(client)
        other_org = _register(client, "grace", "grace@example.com").json()["data"]["user"][
            "organization_id"
        ]
        tokens = _login(client)

        response = client.get(
            f"/v1/quotas/{other_org}/plugins", headers=_auth(tokens["access_token"])
        )

        assert response.status_code == 403
        assert _error_code(response) == "forbidden"
        assert quota_calls == []

    def test_system_admin_can_manage_any_organization(self, client, quota_calls):
        _register(client, org="system")
        other_org = _register(client, "grace", "grace@example.com").json()["data"]["user"][
            "organization_id"
        ]
        tokens = _login(client)

        response = client.put(
            f"/v1/quotas/{other_org}",
            json={"plugins": 20},
            headers=_auth(tokens["access_token"]),
        )

        assert response.status_code == 200
        assert response.json()["data"]["limits"] == {"plugins": 20}
        assert quota_calls == [("PUT", f"/quotas/{other_org}")]

    def test_unknown_quota_type(self, client, quota_calls):
        org_id = _register(client).json()["data"]["user"]["organization_id"]
        tokens = _login(client)
        response = client.get(
            f"/v1/quotas/{org_id}/storage", headers=_auth(tokens["access_token"])
        )
        assert response.status_code == 400
        assert _error_code(response) == "validation_error"

    def test_increment_is_accepted_and_sent_in_background(self, quota_calls):
        with TestClient(app_module.app) as live:
            org_id = _register(live).json()["data"]["user"]["organization_id"]
            tokens = _login(live)

            response = live.post(
                f"/v1/quotas/{org_id}/apiCalls/increment",
                json={"amount": 2},
                headers=_auth(tokens["access_token"]),
            )

            assert response.status_code == 202
            assert response.json()["data"] == {
                "quota_type": "apiCalls",
                "amount": 2,
                "queued": True,
            }

        assert quota_calls == [("POST", f"/quotas/{org_id}/increment")]

    def test_increment_rejects_non_positive_amount(self, client, quota_calls):
        org_id = _register(client).json()["data"]["user"]["organization_id"]
        tokens = _login(client)

        response = client.post(
            f"/v1/quotas/{org_id}/plugins/increment",
            json={"amount": 0},
            headers=_auth(tokens["access_token"]),
        )

        assert response.status_code == 400
        assert _error_code(response) == "validation_error"

    def test_reset_requires_admin_of_the_organization(self, client, quota_calls):
        _register(client)
        other_org = _register(client, "grace", "grace@example.com").json()["data"]["user"][
            "organization_id"
        ]
        tokens = _login(client)

        denied = client.post(
            f"/v1/quotas/{other_org}/reset", headers=_auth(tokens["access_token"])
        )
        assert denied.status_code == 403

        own = _login(client, "grace")
        response = client.post(
            f"/v1/quotas/{other_org}/reset",
            json={"quota_type": "plugins"},
            headers=_auth(own["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"org_id": other_org, "quota_type": "plugins"}
        assert quota_calls == [("POST", f"/quotas/{other_org}/reset")]


def test_request_id_round_trip(client):
    response = client.get("/v1/me", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["request_id"] == "req-123"
    assert response.headers["Cache-Control"] == "no-store"


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["status"] == "healthy"
    assert body["checks"]["redis"] == {"status": "not_configured"}
