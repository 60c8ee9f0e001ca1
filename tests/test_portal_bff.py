"""Portal BFF routes wired to an in-process session gateway."""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

from portal_bff import main as bff
from portal_bff.auth_utils import GatewayClient
from portal_bff.session_data import RefreshOutcome, epoch_ms
from portal_bff.session_manager import SessionManager
from session_gateway.auth_utils import issue_token_pair, refresh_token_registry
from session_gateway.main import app as gateway_app, rate_limiter


@pytest.fixture()
def client():
    rate_limiter.reset()
    refresh_token_registry.clear()
    bff._in_memory_session_data_storage.clear()
    bff._session_managers.clear()
    bff.gateway_client = GatewayClient(
        refresh_url="http://gateway.test/refresh",
        verify_url="http://gateway.test/verify-token",
        timeout=5.0,
        transport=httpx.ASGITransport(app=gateway_app),
    )
    yield TestClient(bff.app)
    bff.gateway_client = None
    bff._in_memory_session_data_storage.clear()
    bff._session_managers.clear()
    refresh_token_registry.clear()


def _hand_off(client, tokens, expires_at=None, device_id="device-abc"):
    body = {"accessToken": tokens["accessToken"], "refreshToken": tokens["refreshToken"], "deviceId": device_id}
    if expires_at is not None:
        body["expiresAt"] = expires_at
    response = client.post("/api/bff/session/tokens", json=body)
    assert response.status_code == 200
    return response.json()


def test_token_handoff_starts_an_authenticated_session(client):
    snapshot = _hand_off(client, issue_token_pair("clinician-1", device_id="device-abc"))

    assert snapshot["state"] == "authenticated"
    assert snapshot["token_status"] == "valid"
    assert snapshot["device_id"] == "device-abc"
    assert "session_id" in client.cookies

    assert client.get("/api/bff/session").json()["state"] == "authenticated"


def test_back_navigation_near_expiry_refreshes_silently(client):
    tokens = issue_token_pair("clinician-1", device_id="device-abc")
    _hand_off(client, tokens, expires_at=epoch_ms() + 60_000)

    response = client.post("/api/bff/navigation", json={"type": "popstate", "path": "/admin/patients"})

    assert response.status_code == 200
    assert response.json() == {"outcome": "refreshed", "state": "authenticated", "redirect": None}
    status = client.get("/api/bff/session").json()
    assert status["token_status"] == "valid"
    assert status["expires_at"] > epoch_ms() + 800_000


def test_navigation_on_public_page_is_ignored(client):
    response = client.post("/api/bff/navigation", json={"type": "focus", "path": "/login"})

    assert response.json() == {"outcome": None, "state": "logged_out", "redirect": None}


def test_expired_refresh_token_redirects_to_login(client):
    tokens = issue_token_pair("clinician-1", device_id="device-abc", refresh_ttl_seconds=-10)
    _hand_off(client, tokens, expires_at=epoch_ms() - 1000)

    response = client.post("/api/bff/navigation", json={"type": "pageshow", "path": "/admin/triage/3", "persisted": True})

    body = response.json()
    assert body["outcome"] == "expired"
    assert body["state"] == "logged_out"
    redirect = urlsplit(body["redirect"])
    assert redirect.path == "/login"
    assert parse_qs(redirect.query)["redirect"] == ["/admin/triage/3"]
    assert parse_qs(redirect.query)["token_expired"] == ["true"]

    # A second failure inside the throttle window produces no further redirect
    again = client.post("/api/bff/session/refresh", json={"path": "/admin/triage/3"})
    assert again.json()["outcome"] == "no_token"
    assert again.json()["redirect"] is None


def test_device_mismatch_terminates_the_session(client):
    tokens = issue_token_pair("clinician-1", device_id="device-abc")
    _hand_off(client, tokens, device_id="device-stolen")

    response = client.post("/api/bff/session/refresh", json={"path": "/admin/patients"})

    assert response.json()["outcome"] == "device_mismatch"
    assert response.json()["redirect"].startswith("/login?redirect=%2Fadmin%2Fpatients")


def test_refresh_without_body(client):
    _hand_off(client, issue_token_pair("clinician-1", device_id="device-abc"))

    response = client.post("/api/bff/session/refresh")

    assert response.json()["outcome"] == "refreshed"
    assert response.json()["expiresAt"] is not None


def test_verify_session(client):
    _hand_off(client, issue_token_pair("clinician-1", device_id="device-abc"))

    assert client.get("/api/bff/session/verify", params={"path": "/admin/patients"}).json()["valid"] is True


def test_access_token_requires_a_session(client):
    response = client.get("/api/bff/access-token", params={"path": "/admin/patients"})

    assert response.status_code == 401
    assert response.json()["detail"]["message"] == "Session expired"
    redirect = urlsplit(response.json()["detail"]["redirect"])
    assert redirect.path == "/login"
    assert parse_qs(redirect.query)["redirect"] == ["/admin/patients"]


def test_protected_navigation_without_tokens_redirects(client):
    response = client.post("/api/bff/navigation", json={"type": "initial_load", "path": "/admin/patients"})

    body = response.json()
    assert body["outcome"] == "no_token"
    assert parse_qs(urlsplit(body["redirect"]).query)["redirect"] == ["/admin/patients"]


def test_access_token_is_refreshed_before_hand_out(client):
    tokens = issue_token_pair("clinician-1", device_id="device-abc")
    _hand_off(client, tokens, expires_at=epoch_ms() + 30_000)

    response = client.get("/api/bff/access-token", params={"path": "/admin/patients"})

    assert response.status_code == 200
    assert response.json()["accessToken"] != tokens["accessToken"]


def test_logout_redirects_to_login(client):
    _hand_off(client, issue_token_pair("clinician-1"))

    response = client.get("/logout", params={"path": "/admin/schedule"}, follow_redirects=False)

    assert response.status_code == 302
    location = urlsplit(response.headers["location"])
    assert location.path == "/login"
    assert parse_qs(location.query)["redirect"] == ["/admin/schedule"]
    assert "token_expired" not in parse_qs(location.query)
    assert client.get("/api/bff/session").json()["state"] == "logged_out"


def test_logout_releases_the_session_manager(client):
    _hand_off(client, issue_token_pair("clinician-1"))
    assert len(bff._session_managers) == 1

    client.get("/logout", follow_redirects=False)

    assert len(bff._session_managers) == 0


@pytest.mark.asyncio
async def test_immediate_refresh_against_gateway_moves_expiry_forward():
    refresh_token_registry.clear()
    rate_limiter.reset()
    manager = SessionManager(
        gateway=GatewayClient(
            refresh_url="http://gateway.test/refresh",
            verify_url="http://gateway.test/verify-token",
            timeout=5.0,
            transport=httpx.ASGITransport(app=gateway_app),
        ),
        failure_sink=lambda report: None,
    )
    tokens = issue_token_pair("clinician-1", device_id="device-abc")
    manager.login(tokens["accessToken"], tokens["refreshToken"], device_id="device-abc")
    before = manager.store.get_expires_at()

    first = await manager.refresh("/admin/patients")
    second = await manager.refresh("/admin/patients")

    assert first.outcome == RefreshOutcome.REFRESHED
    assert second.outcome == RefreshOutcome.REFRESHED
    assert before < first.expires_at < second.expires_at
    refresh_token_registry.clear()
