# src/portal_bff/auth_utils.py

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx  # Using httpx for async requests

from .config import settings
from .session_data import RefreshOutcome, RefreshResponse, epoch_ms


class SessionGatewayError(Exception):
    """Non-2xx answer (or no answer at all) from the Session Gateway."""

    def __init__(self, error: str, status_code: Optional[int] = None, details: Optional[str] = None):
        self.error = error
        self.status_code = status_code
        self.details = details
        super().__init__(error)


def classify_refresh_error(error: SessionGatewayError) -> RefreshOutcome:
    """
    Maps a failed refresh onto the session error taxonomy.
    Only expired and device-mismatch failures end the session; everything
    else is transient and leaves the stored tokens alone.
    """
    text = (error.error or "").lower()
    if "expired" in text:
        return RefreshOutcome.EXPIRED
    if "device" in text and ("mismatch" in text or "invalid" in text):
        return RefreshOutcome.DEVICE_MISMATCH
    if error.status_code == 401:
        return RefreshOutcome.EXPIRED
    if error.status_code == 403:
        return RefreshOutcome.DEVICE_MISMATCH
    return RefreshOutcome.TRANSIENT


# --- Failure reporting ---

@dataclass
class FailureReport:
    kind: str
    message: str
    path: Optional[str] = None
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    timestamp: int = field(default_factory=epoch_ms)


FailureSink = Callable[[FailureReport], None]


def print_failure_sink(report: FailureReport) -> None:
    print(
        f"SESSION_FAILURE: {report.kind} - {report.message} "
        f"(path={report.path or 'N/A'}, ua={report.user_agent or 'unknown'}, "
        f"ip={report.client_ip or 'unknown'}, at={report.timestamp})"
    )


# --- Session Gateway client ---

class GatewayClient:
    """
    Thin httpx wrapper around the Session Gateway refresh/verify endpoints.
    ``transport`` lets tests route requests to an in-process app.
    """

    def __init__(
        self,
        refresh_url: str = settings.REFRESH_ENDPOINT,
        verify_url: str = settings.VERIFY_ENDPOINT,
        timeout: float = settings.REFRESH_TIMEOUT_SECONDS,
        verify_tls: bool = settings.GATEWAY_VERIFY_TLS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.refresh_url = refresh_url
        self.verify_url = verify_url
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, verify=self.verify_tls, transport=self.transport)

    async def refresh(self, refresh_token: str, device_id: Optional[str] = None) -> RefreshResponse:
        body: Dict[str, Any] = {"refreshToken": refresh_token}
        if device_id:
            body["deviceId"] = device_id
        headers = {"Cache-Control": "no-cache", "Pragma": "no-cache"}

        async with self._client() as client:
            try:
                print(f"AUTH_UTILS: refresh - Calling Session Gateway at {self.refresh_url}")
                response = await client.post(self.refresh_url, json=body, headers=headers)
                response.raise_for_status()
                return RefreshResponse.model_validate(response.json())
            except httpx.HTTPStatusError as e:
                error, details = _error_fields(e.response)
                print(f"AUTH_UTILS: refresh - Gateway rejected refresh: {e.response.status_code} - {error}")
                raise SessionGatewayError(error, status_code=e.response.status_code, details=details) from e
            except httpx.RequestError as e:
                print(f"AUTH_UTILS: refresh - Request error calling Session Gateway: {str(e)}")
                raise SessionGatewayError(f"Could not connect to Session Gateway: {str(e)}") from e
            except ValueError as e:
                # Undecodable JSON or a body that does not match RefreshResponse
                print(f"AUTH_UTILS: refresh - Unreadable refresh response: {str(e)}")
                raise SessionGatewayError(f"Malformed refresh response: {str(e)}") from e

    async def verify_token(self, access_token: str) -> bool:
        """
        True on 200, False on 401.
        Other answers and network problems raise SessionGatewayError.
        """
        headers = {"Authorization": f"Bearer {access_token}", "Cache-Control": "no-cache"}
        async with self._client() as client:
            try:
                response = await client.get(self.verify_url, headers=headers)
            except httpx.RequestError as e:
                print(f"AUTH_UTILS: verify_token - Request error calling Session Gateway: {str(e)}")
                raise SessionGatewayError(f"Could not connect to Session Gateway: {str(e)}") from e

        if response.status_code == 200:
            return True
        if response.status_code == 401:
            return False
        error, details = _error_fields(response)
        raise SessionGatewayError(error, status_code=response.status_code, details=details)


def _error_fields(response: httpx.Response):
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}", None
    if isinstance(payload, dict):
        error = payload.get("error") or payload.get("message") or payload.get("detail")
        return str(error or f"HTTP {response.status_code}"), payload.get("details")
    return f"HTTP {response.status_code}", None
