# src/portal_bff/main.py

import typing
import uuid

from fastapi import Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .auth_utils import GatewayClient
from .config import settings
from .navigation import NavigationEvent, NavigationEventKind
from .session_manager import SessionManager

# --- Simple In-Memory Session Store Implementation ---
# Each server-side session keeps two string maps mirroring the page's
# localStorage ("durable") and sessionStorage ("tab"), plus one live
# SessionManager that owns the refresh coordination for that session.
_in_memory_session_data_storage: typing.Dict[str, dict] = {}
_session_managers: typing.Dict[str, SessionManager] = {}
gateway_client: typing.Optional[GatewayClient] = None

SESSION_COOKIE_NAME = "session_id"
SESSION_COOKIE_MAX_AGE = 60 * 60 * 4  # 4 hours


class SessionMiddlewareCustom(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        session_id = request.cookies.get(SESSION_COOKIE_NAME)
        if not session_id or session_id not in _in_memory_session_data_storage:
            session_id = str(uuid.uuid4())
            _in_memory_session_data_storage[session_id] = {"durable": {}, "tab": {}}
        request.state.session_id = session_id
        request.state.session = _in_memory_session_data_storage[session_id]
        response: StarletteResponse = await call_next(request)
        response.set_cookie(
            SESSION_COOKIE_NAME,
            session_id,
            max_age=SESSION_COOKIE_MAX_AGE,
            httponly=True,
            secure=False,  # Set to True in production with HTTPS
            samesite="lax",
        )
        return response


def get_gateway_client() -> GatewayClient:
    global gateway_client
    if gateway_client is None:
        gateway_client = GatewayClient()
    return gateway_client


def get_session_manager(request: Request) -> SessionManager:
    session_id = request.state.session_id
    manager = _session_managers.get(session_id)
    if manager is None:
        session = request.state.session
        manager = SessionManager(
            durable=session.setdefault("durable", {}),
            tab=session.setdefault("tab", {}),
            gateway=get_gateway_client(),
        )
        _session_managers[session_id] = manager
    return manager


def client_context(request: Request) -> typing.Dict[str, typing.Optional[str]]:
    client_ip = (
        request.headers.get("x-forwarded-for")
        or request.headers.get("x-real-ip")
        or (request.client.host if request.client else None)
    )
    return {"user_agent": request.headers.get("user-agent"), "client_ip": client_ip}


# --- Request Models ---
class TokenHandoff(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: str = Field(alias="refreshToken", min_length=1)
    device_id: typing.Optional[str] = Field(default=None, alias="deviceId")
    expires_at: typing.Optional[int] = Field(default=None, alias="expiresAt")


class NavigationEventIn(BaseModel):
    type: NavigationEventKind
    path: str = Field(min_length=1)
    persisted: bool = False


class RefreshRequest(BaseModel):
    path: typing.Optional[str] = None


# --- FastAPI App Setup ---
app = FastAPI(
    title="Portal BFF API",
    description="Backend-For-Frontend for the clinic portal, keeping browser sessions alive across navigation.",
    version="0.1.0"
)

app.add_middleware(
    SessionMiddlewareCustom,
)


@app.get("/")
async def home():
    return {"message": "Portal BFF is running!"}


# --- Session Routes ---
@app.post("/api/bff/session/tokens")
async def store_tokens(handoff: TokenHandoff, manager: SessionManager = Depends(get_session_manager)):
    print(f"MAIN: /api/bff/session/tokens - Storing token pair. Device: {handoff.device_id or 'none'}")
    snapshot = manager.login(
        handoff.access_token,
        handoff.refresh_token,
        device_id=handoff.device_id,
        expires_at=handoff.expires_at,
    )
    return snapshot.model_dump(mode="json")


@app.get("/api/bff/session")
async def session_status(manager: SessionManager = Depends(get_session_manager)):
    return manager.status().model_dump(mode="json")


@app.post("/api/bff/navigation")
async def navigation_event(
        request: Request,
        event_in: NavigationEventIn,
        manager: SessionManager = Depends(get_session_manager)
):
    event = NavigationEvent(
        kind=event_in.type,
        path=event_in.path,
        persisted=event_in.persisted,
        **client_context(request),
    )
    print(f"MAIN: /api/bff/navigation - '{event.kind.value}' on {event.path}")
    result = await manager.handle_event(event)
    return {
        "outcome": result.outcome.value if result else None,
        "state": manager.state.value,
        "redirect": manager.take_pending_redirect(),
    }


@app.post("/api/bff/session/refresh")
async def refresh_session(
        request: Request,
        body: typing.Optional[RefreshRequest] = Body(default=None),
        manager: SessionManager = Depends(get_session_manager)
):
    path = body.path if body else None
    result = await manager.refresh(path, **client_context(request))
    print(f"MAIN: /api/bff/session/refresh - Outcome: {result.outcome.value}")
    return {
        "outcome": result.outcome.value,
        "message": result.message,
        "expiresAt": result.expires_at,
        "redirect": manager.take_pending_redirect(),
    }


@app.get("/api/bff/session/verify")
async def verify_session(
        request: Request,
        path: typing.Optional[str] = None,
        manager: SessionManager = Depends(get_session_manager)
):
    valid = await manager.verify(path, **client_context(request))
    return {"valid": valid, "state": manager.state.value, "redirect": manager.take_pending_redirect()}


@app.get("/api/bff/access-token")
async def access_token(
        request: Request,
        path: typing.Optional[str] = None,
        manager: SessionManager = Depends(get_session_manager)
):
    token = await manager.ensure_fresh_token(path, **client_context(request))
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Session expired", "redirect": manager.take_pending_redirect()},
        )
    return {"accessToken": token, "expiresAt": manager.store.get_expires_at()}


@app.get("/logout")
async def logout(
        request: Request,
        path: typing.Optional[str] = None,
        manager: SessionManager = Depends(get_session_manager)
):
    login_url = manager.logout(path)
    # Storage survives in the session record; a new manager is built on the next request
    _session_managers.pop(request.state.session_id, None)
    print(f"MAIN: /logout - Session cleared. Redirecting to: {login_url}")
    return RedirectResponse(url=login_url, status_code=status.HTTP_302_FOUND)


# --- Startup Event (Optional) ---
@app.on_event("startup")
async def startup_event():
    print("--- Portal BFF (FastAPI) Starting Up ---")
    print(f"Session Gateway: {settings.SESSION_GATEWAY_BASE_URL}")
    print(f"Refresh threshold (ms): {settings.REFRESH_THRESHOLD_MS}")
    print(f"Redirect throttle (ms): {settings.REDIRECT_THROTTLE_MS}")
    print(f"Refresh timeout (s): {settings.REFRESH_TIMEOUT_SECONDS}")
    print(f"Max inactivity (ms): {settings.SESSION_MAX_INACTIVITY_MS}")
    print("-------------------------------------------")
