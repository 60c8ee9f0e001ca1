# src/portal_bff/token_validity.py

import re
from typing import Optional

from jose import JWTError, jwt  # python-jose

from .session_data import TokenPair, TokenStatus

MIN_TOKEN_LENGTH = 20
_BASE64URL_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_token_format(token: Optional[str]) -> bool:
    """True when ``token`` has the shape of a compact JWT."""
    if not token or not isinstance(token, str):
        return False
    if len(token) < MIN_TOKEN_LENGTH:
        return False
    parts = token.split(".")
    if len(parts) != 3:
        return False
    return all(part and _BASE64URL_SEGMENT.match(part) for part in parts)


def is_expiring_soon(expires_at: int, now: int, buffer_ms: int) -> bool:
    return now >= expires_at - buffer_ms


def check_token_status(pair: Optional[TokenPair], now: int, buffer_ms: int) -> TokenStatus:
    if pair is None or not pair.access_token:
        return TokenStatus.ABSENT
    if not validate_token_format(pair.access_token):
        return TokenStatus.EXPIRED
    if now >= pair.expires_at:
        return TokenStatus.EXPIRED
    if is_expiring_soon(pair.expires_at, now, buffer_ms):
        return TokenStatus.EXPIRING_SOON
    return TokenStatus.VALID


def expiry_from_token(token: str, now: int, default_ttl_ms: int) -> int:
    """
    Absolute expiry (ms) for a freshly issued access token.
    Uses the unverified ``exp`` claim when the token carries one.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return now + default_ttl_ms
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return int(exp * 1000)
    return now + default_ttl_ms


def is_session_inactive(last_activity: Optional[int], now: int, max_inactivity_ms: int) -> bool:
    """A session with no recorded activity is not considered idle."""
    if last_activity is None:
        return False
    return now - last_activity >= max_inactivity_ms
