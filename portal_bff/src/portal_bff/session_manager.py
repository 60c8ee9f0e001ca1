# src/portal_bff/session_manager.py

from typing import Callable, Iterable, List, MutableMapping, Optional
from urllib.parse import urlsplit

from .auth_utils import FailureReport, FailureSink, GatewayClient, SessionGatewayError, print_failure_sink
from .config import settings
from .navigation import EventDispatcher, NavigationEvent, NavigationObserver
from .redirect_throttler import RedirectThrottler, build_login_url
from .refresh_coordinator import RefreshContext, RefreshCoordinator
from .session_data import (
    RefreshOutcome,
    RefreshResult,
    SessionSnapshot,
    SessionState,
    TokenPair,
    TokenStatus,
    epoch_ms,
)
from .token_store import TokenStore
from .token_validity import expiry_from_token

RedirectListener = Callable[[str], None]


class SessionManager:
    """
    Owns the whole token lifecycle for one browsing context (here: one
    server-side session). Nothing in here raises on auth failure; outcomes
    come back as values and redirects go to the registered listeners.
    """

    def __init__(
        self,
        durable: Optional[MutableMapping[str, str]] = None,
        tab: Optional[MutableMapping[str, str]] = None,
        gateway: Optional[GatewayClient] = None,
        clock: Callable[[], int] = epoch_ms,
        failure_sink: FailureSink = print_failure_sink,
        refresh_threshold_ms: int = settings.REFRESH_THRESHOLD_MS,
        redirect_throttle_ms: int = settings.REDIRECT_THROTTLE_MS,
        max_inactivity_ms: int = settings.SESSION_MAX_INACTIVITY_MS,
        refresh_timeout_seconds: float = settings.REFRESH_TIMEOUT_SECONDS,
        default_ttl_ms: int = settings.DEFAULT_ACCESS_TOKEN_TTL_MS,
        login_path: str = settings.LOGIN_PATH,
        default_return_path: str = settings.DEFAULT_RETURN_PATH,
        public_paths: Iterable[str] = tuple(settings.PUBLIC_PATHS),
        history_limit: int = settings.NAVIGATION_HISTORY_LIMIT,
        history_window_ms: int = settings.NAVIGATION_HISTORY_WINDOW_MS,
    ):
        self.store = TokenStore(
            durable if durable is not None else {},
            tab if tab is not None else {},
            clock=clock,
            history_limit=history_limit,
        )
        self.gateway = gateway or GatewayClient()
        self.failure_sink = failure_sink
        self.default_ttl_ms = default_ttl_ms
        self.login_path = login_path
        self.default_return_path = default_return_path
        self.history_window_ms = history_window_ms
        self.pending_redirect: Optional[str] = None
        self._redirect_listeners: List[RedirectListener] = []

        self.throttler = RedirectThrottler(self.store, window_ms=redirect_throttle_ms)
        self.coordinator = RefreshCoordinator(
            self.store,
            self.gateway,
            on_terminated=self._on_session_terminated,
            failure_sink=failure_sink,
            timeout_seconds=refresh_timeout_seconds,
            default_ttl_ms=default_ttl_ms,
        )
        self.dispatcher = EventDispatcher()
        self.observer = NavigationObserver(
            self.store,
            self.coordinator,
            public_paths=public_paths,
            refresh_threshold_ms=refresh_threshold_ms,
            max_inactivity_ms=max_inactivity_ms,
        )
        self.observer.attach(self.dispatcher)

    # --- State ---

    @property
    def state(self) -> SessionState:
        if self.coordinator.in_progress:
            return SessionState.REFRESHING
        if self.store.get_token_pair() is None:
            return SessionState.LOGGED_OUT
        return SessionState.AUTHENTICATED

    def token_status(self) -> TokenStatus:
        return self.observer.token_status()

    def return_path(self) -> str:
        return self.store.get_return_path(self.default_return_path, self.history_window_ms)

    def status(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self.state,
            token_status=self.token_status(),
            expires_at=self.store.get_expires_at(),
            device_id=self.store.get_device_id(),
            return_path=self.return_path(),
            pending_redirect=self.pending_redirect,
        )

    # --- Redirects ---

    def subscribe_redirects(self, listener: RedirectListener) -> Callable[[], None]:
        self._redirect_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._redirect_listeners:
                self._redirect_listeners.remove(listener)

        return unsubscribe

    def take_pending_redirect(self) -> Optional[str]:
        redirect, self.pending_redirect = self.pending_redirect, None
        return redirect

    def _emit_redirect(self, url: str) -> None:
        self.pending_redirect = url
        for listener in list(self._redirect_listeners):
            try:
                listener(url)
            except Exception as e:
                print(f"SESSION: _emit_redirect - Redirect listener failed: {str(e)}")

    def redirect_to_login(self, return_path: Optional[str] = None, token_expired: bool = True) -> Optional[str]:
        """Issue a throttled login redirect. Returns the URL, or None when suppressed."""
        current_path = return_path or self.store.get_last_navigation_path()
        if current_path and self._is_login_page(current_path):
            print("SESSION: redirect_to_login - Already on the login page, not redirecting")
            return None
        if not self.throttler.should_redirect():
            return None
        url = build_login_url(self.login_path, current_path, self.store.clock(), token_expired=token_expired)
        print(f"SESSION: redirect_to_login - Redirecting to login: {url}")
        self._emit_redirect(url)
        return url

    def _is_login_page(self, path: str) -> bool:
        clean_path = urlsplit(path).path.rstrip("/")
        login_path = self.login_path.rstrip("/")
        return clean_path == login_path or clean_path.startswith(f"{login_path}/")

    def _on_session_terminated(self, result: RefreshResult, context: RefreshContext) -> None:
        print(f"SESSION: _on_session_terminated - Session ended ({result.outcome.value}): {result.message}")
        self.redirect_to_login(context.path or self.return_path())

    # --- Lifecycle ---

    def login(
        self,
        access_token: str,
        refresh_token: str,
        device_id: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> SessionSnapshot:
        now = self.store.clock()
        if expires_at is None:
            expires_at = expiry_from_token(access_token, now, self.default_ttl_ms)
        self.store.set_tokens(TokenPair(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at))
        if device_id:
            self.store.set_device_id(device_id)
        self.store.clear_terminated()
        self.pending_redirect = None
        print(f"SESSION: login - Token pair stored. Expires at: {expires_at}")
        return self.status()

    def logout(self, return_path: Optional[str] = None) -> str:
        """Clears the session and returns the login URL (never throttled)."""
        path = return_path or self.store.get_last_navigation_path()
        self.store.clear_session_state()
        self.store.clear_navigation_state()
        self.store.clear_terminated()
        now = self.store.clock()
        self.store.record_login_redirect(now)
        url = build_login_url(self.login_path, path, now, token_expired=False)
        print(f"SESSION: logout - Session cleared. Redirecting to: {url}")
        self._emit_redirect(url)
        return url

    async def refresh(
        self, path: Optional[str] = None, user_agent: Optional[str] = None, client_ip: Optional[str] = None
    ) -> RefreshResult:
        context = RefreshContext(path=path, user_agent=user_agent, client_ip=client_ip)
        return await self.coordinator.refresh(context)

    async def handle_event(self, event: NavigationEvent) -> Optional[RefreshResult]:
        results = await self.dispatcher.dispatch(event)
        for result in results:
            if isinstance(result, RefreshResult):
                return result
        return None

    async def ensure_fresh_token(
        self, path: Optional[str] = None, user_agent: Optional[str] = None, client_ip: Optional[str] = None
    ) -> Optional[str]:
        """
        Access token usable for a downstream request, refreshing first when it
        is expired or about to be. None means the session is gone; idle and
        tokenless sessions are ended with a login redirect on the way.
        """
        status = self.token_status()
        context = RefreshContext(path=path, user_agent=user_agent, client_ip=client_ip)
        result = await self.observer.revalidate(context)
        if result is not None and not result.ok:
            if result.outcome.is_terminal or status == TokenStatus.EXPIRED:
                return None
        return self.store.get_access_token()

    async def verify(
        self, path: Optional[str] = None, user_agent: Optional[str] = None, client_ip: Optional[str] = None
    ) -> bool:
        """
        Asks the gateway whether the stored access token is still accepted,
        refreshing once when it is not.
        """
        access_token = self.store.get_access_token()
        if not access_token:
            return False
        try:
            if await self.gateway.verify_token(access_token):
                return True
        except SessionGatewayError as e:
            self.failure_sink(FailureReport(
                kind="verify_network",
                message=e.error,
                path=path,
                user_agent=user_agent,
                client_ip=client_ip,
                timestamp=self.store.clock(),
            ))
            return False
        print("SESSION: verify - Access token rejected by gateway, refreshing")
        result = await self.refresh(path, user_agent=user_agent, client_ip=client_ip)
        return result.outcome == RefreshOutcome.REFRESHED
