# src/session_gateway/main.py

import time
from typing import Dict, Optional, Tuple

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from jose import JWTError
from pydantic import BaseModel, ConfigDict, Field

from .auth_utils import (
    ACCESS,
    RefreshError,
    decode_token,
    get_access_token_from_request,
    refresh_tokens,
)
from .config import settings

app = FastAPI(
    title="SessionGateway API",
    description="Validates refresh tokens and issues new token pairs for the clinic portal.",
    version="0.1.0",
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


# --- Pydantic Models for Request/Response ---
class RefreshBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(alias="refreshToken", min_length=1)
    device_id: Optional[str] = Field(default=None, alias="deviceId")


# --- Rate limiting ---
class RateLimiter:
    """Fixed-window request counter per client IP."""

    def __init__(self, window_seconds: int, max_requests: int, max_entries: int = 10000):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.max_entries = max_entries
        self._counts: Dict[str, Tuple[int, float]] = {}

    def is_rate_limited(self, ip: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        count, started = self._counts.get(ip, (0, now))
        if now - started > self.window_seconds:
            count, started = 1, now
        else:
            count += 1
        self._counts[ip] = (count, started)

        if len(self._counts) > self.max_entries:
            cutoff = now - self.window_seconds
            self._counts = {key: value for key, value in self._counts.items() if value[1] >= cutoff}

        return count > self.max_requests

    def reset(self) -> None:
        self._counts.clear()


rate_limiter = RateLimiter(settings.RATE_LIMIT_WINDOW_SECONDS, settings.RATE_LIMIT_MAX_REQUESTS)


def client_ip(request: Request) -> str:
    return (
        request.headers.get("x-forwarded-for")
        or request.headers.get("x-real-ip")
        or (request.client.host if request.client else "unknown")
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request body") if errors else "Invalid request body"
    if errors and errors[0].get("type") == "missing":
        message = "Refresh token is required"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


# --- API Endpoints ---
@app.get("/")
async def home() -> Dict[str, str]:
    return {"message": "Session Gateway is running!"}


@app.post("/refresh")
async def refresh(request: Request, body: RefreshBody):
    ip = client_ip(request)
    if rate_limiter.is_rate_limited(ip):
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"error": "Too many requests", "details": "Please try again later"},
        )

    try:
        tokens = refresh_tokens(body.refresh_token, body.device_id)
    except RefreshError as e:
        print(f"SessionGateway: Token refresh error ({e.reason}) from {ip}: {e}")
        if e.reason == "expired":
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"error": "Refresh token has expired", "details": "Please log in again"},
            )
        if e.reason == "device":
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"error": "Device mismatch detected", "details": "Security violation detected"},
            )
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": str(e), "details": "Please log in again"},
        )

    print(
        f"SessionGateway: Token refresh succeeded for {ip} "
        f"(device: {body.device_id or 'none'}, ua: {request.headers.get('user-agent', 'unknown')})"
    )
    response = JSONResponse(content={"success": True, "tokens": tokens}, headers=NO_CACHE_HEADERS)
    response.headers["X-Refresh-Success"] = "true"
    return response


@app.get("/verify-token")
async def verify_token(token: Optional[str] = Depends(get_access_token_from_request)):
    if not token:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"status": "error", "message": "No access token provided"},
        )
    try:
        token_data = decode_token(token)
    except JWTError as e:
        print(f"SessionGateway: JWT Validation Error: {e}")
        token_data = None

    if token_data is None or token_data.token_type != ACCESS:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"status": "error", "message": "Invalid or expired token"},
        )
    return JSONResponse(content={"status": "success", "valid": True}, headers=NO_CACHE_HEADERS)


# --- Lifecycle Events (Optional, for printing config on startup) ---
@app.on_event("startup")
async def startup_event():
    print("--- SessionGateway (FastAPI) Starting Up ---")
    print(f"Issuer: {settings.GATEWAY_ISSUER}")
    print(f"Signing algorithm: {settings.GATEWAY_JWT_ALGORITHM}")
    print(f"Access token lifetime (s): {settings.ACCESS_TOKEN_EXPIRY_SECONDS}")
    print(f"Refresh token lifetime (s): {settings.REFRESH_TOKEN_EXPIRY_SECONDS}")
    print(f"Refresh rate limit: {settings.RATE_LIMIT_MAX_REQUESTS} per {settings.RATE_LIMIT_WINDOW_SECONDS}s")
    print("-------------------------------------------")
