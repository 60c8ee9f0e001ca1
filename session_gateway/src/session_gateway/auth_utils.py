# src/session_gateway/auth_utils.py

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt  # python-jose
from pydantic import BaseModel

from .config import settings

# Extracts the bearer token from the Authorization header.
# The tokenUrl doesn't matter here as this service never runs a password grant.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

ACCESS = "access"
REFRESH = "refresh"
MIN_REFRESH_TOKEN_LENGTH = 20


class TokenData(BaseModel):
    sub: Optional[str] = None
    token_type: Optional[str] = None
    device_id: Optional[str] = None
    jti: Optional[str] = None
    exp: Optional[int] = None


class RefreshError(Exception):
    """Refresh rejected; ``reason`` is one of invalid, expired, device."""

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)


@dataclass
class RefreshTokenRecord:
    subject: str
    device_id: Optional[str]
    expires_at: float


class RefreshTokenRegistry:
    """
    In-memory source of truth for issued refresh tokens.
    Revoked tokens are dropped and expired ones are pruned on every register.
    """

    def __init__(self):
        self._records: Dict[str, RefreshTokenRecord] = {}
        self._lock = threading.Lock()

    def register(self, token: str, record: RefreshTokenRecord, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        with self._lock:
            self._records = {key: value for key, value in self._records.items() if value.expires_at > now}
            self._records[token] = record

    def get(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            return self._records.get(token)

    def revoke(self, token: str) -> None:
        with self._lock:
            self._records.pop(token, None)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


refresh_token_registry = RefreshTokenRegistry()


def create_token(subject: str, token_type: str, ttl_seconds: int, device_id: Optional[str] = None) -> str:
    now = int(time.time())
    claims = {
        "sub": subject,
        "token_type": token_type,
        "jti": str(uuid.uuid4()),
        "iss": settings.GATEWAY_ISSUER,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    if device_id:
        claims["device_id"] = device_id
    return jwt.encode(claims, settings.GATEWAY_JWT_SECRET, algorithm=settings.GATEWAY_JWT_ALGORITHM)


def decode_token(token: str) -> TokenData:
    payload = jwt.decode(
        token,
        settings.GATEWAY_JWT_SECRET,
        algorithms=[settings.GATEWAY_JWT_ALGORITHM],
        issuer=settings.GATEWAY_ISSUER,
    )
    return TokenData(**payload)


def issue_token_pair(
    subject: str,
    device_id: Optional[str] = None,
    access_ttl_seconds: Optional[int] = None,
    refresh_ttl_seconds: Optional[int] = None,
) -> Dict[str, str]:
    """Issues and registers a fresh access/refresh pair (used by the login flow and by /refresh)."""
    access_ttl = settings.ACCESS_TOKEN_EXPIRY_SECONDS if access_ttl_seconds is None else access_ttl_seconds
    refresh_ttl = settings.REFRESH_TOKEN_EXPIRY_SECONDS if refresh_ttl_seconds is None else refresh_ttl_seconds

    access_token = create_token(subject, ACCESS, access_ttl, device_id)
    refresh_token = create_token(subject, REFRESH, refresh_ttl, device_id)
    refresh_token_registry.register(
        refresh_token,
        RefreshTokenRecord(subject=subject, device_id=device_id, expires_at=time.time() + refresh_ttl),
    )
    return {"accessToken": access_token, "refreshToken": refresh_token}


def refresh_tokens(refresh_token: str, device_id: Optional[str] = None) -> Dict[str, str]:
    """
    Validates ``refresh_token`` and rotates it: the old token is revoked and
    a new pair bound to the same device is returned.
    """
    if not refresh_token or len(refresh_token) < MIN_REFRESH_TOKEN_LENGTH:
        raise RefreshError("invalid", "Invalid refresh token format")

    try:
        token_data = decode_token(refresh_token)
    except ExpiredSignatureError as e:
        refresh_token_registry.revoke(refresh_token)
        raise RefreshError("expired", "Refresh token not found or expired") from e
    except JWTError as e:
        print(f"SessionGateway: Refresh token validation error: {e}")
        raise RefreshError("invalid", "Invalid refresh token") from e

    if token_data.token_type != REFRESH:
        raise RefreshError("invalid", "Invalid refresh token")

    record = refresh_token_registry.get(refresh_token)
    if record is None:
        raise RefreshError("invalid", "Invalid refresh token")
    if record.expires_at <= time.time():
        refresh_token_registry.revoke(refresh_token)
        raise RefreshError("expired", "Refresh token not found or expired")

    if device_id and record.device_id and record.device_id != device_id:
        print(
            f"SessionGateway: Device ID mismatch during token refresh for {record.subject}: "
            f"expected {record.device_id}, got {device_id}"
        )
        refresh_token_registry.revoke(refresh_token)
        raise RefreshError("device", "Invalid device")

    refresh_token_registry.revoke(refresh_token)
    return issue_token_pair(record.subject, device_id=record.device_id or device_id)


async def get_access_token_from_request(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme)
) -> Optional[str]:
    return token or request.cookies.get("accessToken")

