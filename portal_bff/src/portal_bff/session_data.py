# src/portal_bff/session_data.py

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def epoch_ms() -> int:
    return int(time.time() * 1000)


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    ABSENT = "absent"


class SessionState(str, Enum):
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    LOGGED_OUT = "logged_out"


class RefreshOutcome(str, Enum):
    REFRESHED = "refreshed"
    TRANSIENT = "transient"
    EXPIRED = "expired"
    DEVICE_MISMATCH = "device_mismatch"
    MALFORMED_TOKEN = "malformed_token"
    NO_TOKEN = "no_token"
    INACTIVE = "inactive"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_OUTCOMES


TERMINAL_OUTCOMES = frozenset({
    RefreshOutcome.EXPIRED,
    RefreshOutcome.DEVICE_MISMATCH,
    RefreshOutcome.MALFORMED_TOKEN,
    RefreshOutcome.NO_TOKEN,
    RefreshOutcome.INACTIVE,
})


class TokenPair(BaseModel):
    """
    Credentials held for one browsing context.
    expires_at is an absolute epoch timestamp in milliseconds.
    """
    access_token: str
    refresh_token: str
    expires_at: int


class GatewayTokens(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")


class RefreshResponse(BaseModel):
    """Success body of the Session Gateway refresh endpoint."""
    success: bool = True
    tokens: GatewayTokens


class RefreshResult(BaseModel):
    outcome: RefreshOutcome
    message: Optional[str] = None
    expires_at: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome == RefreshOutcome.REFRESHED


class SessionSnapshot(BaseModel):
    """What the BFF reports about a session to the page."""
    state: SessionState
    token_status: TokenStatus
    expires_at: Optional[int] = None
    device_id: Optional[str] = None
    return_path: str
    pending_redirect: Optional[str] = None
