import asyncio
import os
import sys
import uuid

import pytest

# Ensure both service source roots are importable without an install
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
for src_dir in ('portal_bff/src', 'session_gateway/src'):
    path = os.path.join(ROOT, src_dir)
    if path not in sys.path:
        sys.path.insert(0, path)

# Settings are instantiated at import time, so the environment must be ready first
os.environ.setdefault('GATEWAY_JWT_SECRET', 'test-gateway-secret-0123456789abcdef')
os.environ.setdefault('SESSION_GATEWAY_BASE_URL', 'http://gateway.test/')

from jose import jwt  # noqa: E402

from portal_bff.auth_utils import SessionGatewayError  # noqa: E402
from portal_bff.session_data import GatewayTokens, RefreshResponse  # noqa: E402

NOW_MS = 1_700_000_000_000
TEST_SIGNING_KEY = 'portal-test-signing-key'


def make_token(expires_at_ms, subject='clinician-1'):
    """A JWT-shaped token whose exp claim matches ``expires_at_ms``."""
    claims = {'sub': subject, 'jti': uuid.uuid4().hex, 'exp': expires_at_ms // 1000}
    return jwt.encode(claims, TEST_SIGNING_KEY, algorithm='HS256')


class FakeClock:
    def __init__(self, now=NOW_MS):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeGateway:
    """Stands in for GatewayClient; counts calls and can fail or stall on demand."""

    def __init__(self, clock, ttl_ms=900_000):
        self.clock = clock
        self.ttl_ms = ttl_ms
        self.refresh_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.device_ids = []
        self.error = None
        self.delay = 0.0
        self.verify_result = True
        self.verify_error = None

    async def refresh(self, refresh_token, device_id=None):
        self.refresh_calls += 1
        self.device_ids.append(device_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            expires_at = self.clock() + self.ttl_ms
            return RefreshResponse(tokens=GatewayTokens(
                accessToken=make_token(expires_at),
                refreshToken=make_token(expires_at + 7 * 24 * 3600 * 1000),
            ))
        finally:
            self.in_flight -= 1

    async def verify_token(self, access_token):
        if self.verify_error is not None:
            raise self.verify_error
        return self.verify_result


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def gateway(clock):
    return FakeGateway(clock)


@pytest.fixture()
def failures():
    return []


@pytest.fixture()
def manager(clock, gateway, failures):
    from portal_bff.session_manager import SessionManager

    return SessionManager(
        durable={},
        tab={},
        gateway=gateway,
        clock=clock,
        failure_sink=failures.append,
        refresh_threshold_ms=120_000,
        redirect_throttle_ms=5000,
        refresh_timeout_seconds=1.0,
    )


@pytest.fixture()
def logged_in(manager, clock):
    """Session whose access token expires in 60 seconds."""
    manager.login(
        make_token(clock() + 60_000),
        make_token(clock() + 3_600_000),
        device_id='device-abc',
        expires_at=clock() + 60_000,
    )
    return manager


@pytest.fixture()
def expired_error():
    return SessionGatewayError('Refresh token has expired', status_code=401, details='Please log in again')
