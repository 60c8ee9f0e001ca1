"""SessionManager lifecycle: login, logout, state, verification and redirects."""

import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest

from portal_bff.auth_utils import SessionGatewayError
from portal_bff.navigation import NavigationEvent, NavigationEventKind
from portal_bff.session_data import SessionState, TokenStatus

from conftest import NOW_MS, make_token


def test_login_derives_expiry_from_access_token(manager, clock):
    status = manager.login(make_token(clock() + 900_000), make_token(clock() + 3_600_000), device_id="device-xyz")

    assert status.state == SessionState.AUTHENTICATED
    assert status.token_status == TokenStatus.VALID
    assert status.expires_at == NOW_MS + 900_000
    assert status.device_id == "device-xyz"


def test_new_manager_is_logged_out(manager):
    status = manager.status()
    assert status.state == SessionState.LOGGED_OUT
    assert status.token_status == TokenStatus.ABSENT
    assert status.return_path == "/admin/dashboard"


@pytest.mark.asyncio
async def test_state_is_refreshing_while_refresh_in_flight(logged_in, gateway):
    gateway.delay = 0.05
    task = asyncio.ensure_future(logged_in.refresh("/admin/patients"))
    await asyncio.sleep(0.01)

    assert logged_in.state == SessionState.REFRESHING

    await task
    assert logged_in.state == SessionState.AUTHENTICATED


@pytest.mark.asyncio
async def test_logout_clears_session_and_builds_plain_login_url(logged_in, clock):
    await logged_in.handle_event(NavigationEvent(NavigationEventKind.FOCUS, "/admin/patients"))
    redirects = []
    logged_in.subscribe_redirects(redirects.append)

    url = logged_in.logout()

    assert url == f"/login?redirect=%2Fadmin%2Fpatients&t={clock()}"
    assert redirects == [url]
    assert logged_in.store.get_token_pair() is None
    assert logged_in.store.get_navigation_history() == []
    assert logged_in.state == SessionState.LOGGED_OUT
    assert logged_in.store.get_device_id() == "device-abc"


def test_logout_throttles_an_immediate_forced_redirect(logged_in, clock):
    logged_in.logout("/admin/patients")

    assert logged_in.redirect_to_login("/admin/patients") is None

    clock.advance(5000)
    assert logged_in.redirect_to_login("/admin/patients") is not None


def test_no_redirect_when_already_on_login_page(manager):
    assert manager.redirect_to_login("/login?redirect=%2Fadmin") is None
    assert manager.pending_redirect is None


@pytest.mark.parametrize("path", ["/login-help", "/loginhistory", "/admin/login"])
def test_paths_that_only_resemble_login_still_redirect(manager, path):
    url = manager.redirect_to_login(path)

    assert url is not None
    assert parse_qs(urlsplit(url).query)["redirect"] == [path]


def test_take_pending_redirect_hands_it_over_once(manager):
    url = manager.redirect_to_login("/admin/schedule")

    assert manager.take_pending_redirect() == url
    assert manager.take_pending_redirect() is None


def test_failing_redirect_listener_does_not_block_others(manager):
    received = []

    def broken(url):
        raise RuntimeError("listener bug")

    manager.subscribe_redirects(broken)
    unsubscribe = manager.subscribe_redirects(received.append)

    url = manager.redirect_to_login("/admin/schedule")
    assert received == [url]

    unsubscribe()
    manager.pending_redirect = None
    manager.store.tab.clear()
    manager.redirect_to_login("/admin/schedule")
    assert received == [url]


def test_redirect_uses_login_url_query(manager, clock):
    url = manager.redirect_to_login("/doctor/prior-authorization")
    query = parse_qs(urlsplit(url).query)

    assert query == {
        "redirect": ["/doctor/prior-authorization"],
        "token_expired": ["true"],
        "t": [str(clock())],
    }


@pytest.mark.asyncio
async def test_ensure_fresh_token_refreshes_near_expiry(logged_in, gateway):
    old_token = logged_in.store.get_access_token()

    token = await logged_in.ensure_fresh_token("/admin/patients")

    assert gateway.refresh_calls == 1
    assert token != old_token
    assert token == logged_in.store.get_access_token()


@pytest.mark.asyncio
async def test_ensure_fresh_token_keeps_usable_token_on_transient_failure(logged_in, gateway):
    gateway.error = SessionGatewayError("Failed to refresh token", status_code=502)
    old_token = logged_in.store.get_access_token()

    assert await logged_in.ensure_fresh_token("/admin/patients") == old_token


@pytest.mark.asyncio
async def test_ensure_fresh_token_gives_up_on_expired_token(logged_in, gateway, clock):
    gateway.error = SessionGatewayError("Failed to refresh token", status_code=502)
    clock.advance(60_000)

    assert await logged_in.ensure_fresh_token("/admin/patients") is None


@pytest.mark.asyncio
async def test_ensure_fresh_token_without_session_redirects(manager, gateway):
    assert await manager.ensure_fresh_token("/admin/patients") is None
    assert gateway.refresh_calls == 0
    assert parse_qs(urlsplit(manager.pending_redirect).query)["redirect"] == ["/admin/patients"]


@pytest.mark.asyncio
async def test_ensure_fresh_token_ends_idle_session(manager, gateway, clock):
    manager.login(make_token(clock() + 3_600_000), make_token(clock() + 7_200_000), expires_at=clock() + 3_600_000)
    clock.advance(31 * 60 * 1000)

    assert await manager.ensure_fresh_token("/admin/patients") is None
    assert gateway.refresh_calls == 0
    assert manager.state == SessionState.LOGGED_OUT
    assert manager.pending_redirect is not None


@pytest.mark.asyncio
async def test_verify_accepted_token(logged_in, gateway):
    assert await logged_in.verify("/admin/patients") is True
    assert gateway.refresh_calls == 0


@pytest.mark.asyncio
async def test_verify_rejected_token_refreshes_once(logged_in, gateway):
    gateway.verify_result = False

    assert await logged_in.verify("/admin/patients") is True
    assert gateway.refresh_calls == 1


@pytest.mark.asyncio
async def test_verify_rejected_token_with_dead_refresh_token(logged_in, gateway, expired_error):
    gateway.verify_result = False
    gateway.error = expired_error

    assert await logged_in.verify("/admin/patients") is False
    assert logged_in.pending_redirect is not None


@pytest.mark.asyncio
async def test_verify_network_failure_is_reported_not_fatal(logged_in, gateway, failures):
    gateway.verify_error = SessionGatewayError("Could not connect to Session Gateway: boom")

    assert await logged_in.verify("/admin/patients", client_ip="10.0.0.5") is False
    assert logged_in.store.get_token_pair() is not None
    assert failures[0].kind == "verify_network"
    assert failures[0].client_ip == "10.0.0.5"


@pytest.mark.asyncio
async def test_verify_without_token(manager):
    assert await manager.verify("/admin/patients") is False
