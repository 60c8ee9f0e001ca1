# src/portal_bff/navigation.py

import inspect
import traceback
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union
from urllib.parse import urlsplit

from .refresh_coordinator import RefreshContext, RefreshCoordinator
from .session_data import RefreshOutcome, RefreshResult, TokenStatus
from .token_store import TokenStore
from .token_validity import check_token_status, is_session_inactive

STATIC_ASSET_SUFFIXES = (".html", ".js", ".css", ".map", ".ico", ".png", ".jpg", ".jpeg", ".svg", ".webp", ".woff", ".woff2")
PUBLIC_DIRECTORIES = ("/public/", "/static/", "/_next/")


class NavigationEventKind(str, Enum):
    POPSTATE = "popstate"          # back/forward
    PAGESHOW = "pageshow"          # persisted=True when restored from bfcache
    FOCUS = "focus"
    INITIAL_LOAD = "initial_load"


@dataclass
class NavigationEvent:
    kind: NavigationEventKind
    path: str
    persisted: bool = False
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None


Handler = Callable[[NavigationEvent], Union[Any, Awaitable[Any]]]


class EventDispatcher:
    """
    Minimal subscribe/dispatch channel standing in for window event listeners.
    Handler errors are reported and swallowed so one bad listener cannot
    break the others.
    """

    def __init__(self):
        self._handlers: Dict[NavigationEventKind, List[Handler]] = defaultdict(list)

    def subscribe(self, kinds: Iterable[NavigationEventKind], handler: Handler) -> Callable[[], None]:
        kinds = list(kinds)
        for kind in kinds:
            self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            for kind in kinds:
                if handler in self._handlers[kind]:
                    self._handlers[kind].remove(handler)

        return unsubscribe

    async def dispatch(self, event: NavigationEvent) -> List[Any]:
        results = []
        for handler in list(self._handlers.get(event.kind, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    result = await result
                results.append(result)
            except Exception as e:
                print(f"NAVIGATION: dispatch - Handler for '{event.kind.value}' failed: {str(e)}")
                traceback.print_exc()
        return results


def is_public_path(path: str, public_paths: Iterable[str]) -> bool:
    """Login, registration, password reset and static assets need no session."""
    clean_path = urlsplit(path).path or "/"
    for public_path in public_paths:
        if clean_path == public_path:
            return True
        if public_path != "/" and clean_path.startswith(f"{public_path.rstrip('/')}/"):
            return True
    if any(directory in clean_path for directory in PUBLIC_DIRECTORIES):
        return True
    return clean_path.lower().endswith(STATIC_ASSET_SUFFIXES)


class NavigationObserver:
    """
    Revalidates the session on back/forward, bfcache restores, tab refocus
    and initial load. Expired or nearly expired tokens are refreshed; idle
    or tokenless sessions on protected paths are ended.
    """

    EVENTS = (
        NavigationEventKind.POPSTATE,
        NavigationEventKind.PAGESHOW,
        NavigationEventKind.FOCUS,
        NavigationEventKind.INITIAL_LOAD,
    )

    def __init__(
        self,
        store: TokenStore,
        coordinator: RefreshCoordinator,
        public_paths: Iterable[str],
        refresh_threshold_ms: int = 2 * 60 * 1000,
        max_inactivity_ms: int = 30 * 60 * 1000,
    ):
        self.store = store
        self.coordinator = coordinator
        self.public_paths = list(public_paths)
        self.refresh_threshold_ms = refresh_threshold_ms
        self.max_inactivity_ms = max_inactivity_ms
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, dispatcher: EventDispatcher) -> None:
        self._unsubscribe = dispatcher.subscribe(self.EVENTS, self.handle_event)

    def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def token_status(self) -> TokenStatus:
        return check_token_status(self.store.get_token_pair(), self.store.clock(), self.refresh_threshold_ms)

    def is_inactive(self) -> bool:
        return is_session_inactive(self.store.get_last_activity(), self.store.clock(), self.max_inactivity_ms)

    async def revalidate(self, context: RefreshContext) -> Optional[RefreshResult]:
        """
        Ends idle or tokenless sessions and refreshes tokens that are expired
        or close to it. None means the session is fine as it is.
        """
        status = self.token_status()
        if status == TokenStatus.ABSENT:
            print("NAVIGATION: revalidate - No token pair on a protected path")
            # Goes through the coordinator so a lone refresh token can still be used
            return await self.coordinator.refresh(context)

        if self.is_inactive():
            print(f"NAVIGATION: revalidate - Session idle for more than {self.max_inactivity_ms}ms")
            return self.coordinator.end_session(RefreshOutcome.INACTIVE, "Session expired due to inactivity", context)

        if status not in (TokenStatus.EXPIRING_SOON, TokenStatus.EXPIRED):
            return None

        print(f"NAVIGATION: revalidate - Token {status.value}, refreshing")
        return await self.coordinator.refresh(context)

    async def handle_event(self, event: NavigationEvent) -> Optional[RefreshResult]:
        if is_public_path(event.path, self.public_paths):
            return None

        if event.kind == NavigationEventKind.PAGESHOW:
            if not event.persisted:
                return None
            print("NAVIGATION: handle_event - Page restored from back-forward cache")
            self.store.mark_bfcache_restoration()

        context = RefreshContext(path=event.path, user_agent=event.user_agent, client_ip=event.client_ip)
        result = await self.revalidate(context)
        if result is None or not result.outcome.is_terminal:
            self.store.update_last_activity()
        self.store.store_navigation_state(event.path)
        return result
