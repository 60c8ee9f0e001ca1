# src/portal_bff/token_store.py

import json
from typing import Callable, Dict, List, MutableMapping, Optional

from .session_data import TokenPair, epoch_ms

# Durable keys (survive the tab, mirror the page's localStorage)
ACCESS_TOKEN = "accessToken"
REFRESH_TOKEN = "refreshToken"
EXPIRES_AT = "expiresAt"
DEVICE_ID = "deviceId"
LAST_ACTIVITY = "lastActivity"
ACCESS_TOKEN_TIMESTAMP = "accessTokenTimestamp"

# Per-tab keys (mirror the page's sessionStorage)
REFRESH_IN_PROGRESS = "refreshInProgress"
LAST_NAV_PATH = "lastNavPath"
LAST_NAV_TIME = "lastNavTime"
BF_CACHE_RESTORED = "bfCacheRestored"
LAST_LOGIN_REDIRECT = "lastLoginRedirect"
NAVIGATION_HISTORY = "navigationHistory"
LAST_AUTHENTICATED_PATH = "lastAuthenticatedPath"
SESSION_TERMINATED = "sessionTerminated"

AUTH_PATH_MARKERS = (
    "/login",
    "/register",
    "/forgot-password",
    "/reset-password",
    "/verify-2fa",
    "/setup-2fa",
    "/api/auth/",
)


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def is_auth_path(path: str) -> bool:
    return any(marker in path for marker in AUTH_PATH_MARKERS)


class TokenStore:
    """
    Key/value accessor for the token pair and the per-tab session bookkeeping.

    ``durable`` and ``tab`` are any string mappings; the BFF hands in the
    dictionaries kept in the server-side session record.
    """

    def __init__(
        self,
        durable: MutableMapping[str, str],
        tab: MutableMapping[str, str],
        clock: Callable[[], int] = epoch_ms,
        history_limit: int = 20,
    ):
        self.durable = durable
        self.tab = tab
        self.clock = clock
        self.history_limit = history_limit

    # --- Token pair ---

    def get_access_token(self) -> Optional[str]:
        return self.durable.get(ACCESS_TOKEN) or None

    def get_refresh_token(self) -> Optional[str]:
        return self.durable.get(REFRESH_TOKEN) or None

    def get_expires_at(self) -> Optional[int]:
        return _parse_int(self.durable.get(EXPIRES_AT))

    def get_token_pair(self) -> Optional[TokenPair]:
        access_token = self.get_access_token()
        refresh_token = self.get_refresh_token()
        expires_at = self.get_expires_at()
        if not access_token or not refresh_token or expires_at is None:
            return None
        return TokenPair(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)

    def set_tokens(self, pair: TokenPair) -> None:
        now = self.clock()
        self.durable[ACCESS_TOKEN] = pair.access_token
        self.durable[REFRESH_TOKEN] = pair.refresh_token
        self.durable[EXPIRES_AT] = str(pair.expires_at)
        self.durable[ACCESS_TOKEN_TIMESTAMP] = str(now)
        self.durable[LAST_ACTIVITY] = str(now)

    def clear_tokens(self) -> None:
        for key in (ACCESS_TOKEN, REFRESH_TOKEN, EXPIRES_AT, ACCESS_TOKEN_TIMESTAMP):
            self.durable.pop(key, None)

    def get_device_id(self) -> Optional[str]:
        return self.durable.get(DEVICE_ID) or None

    def set_device_id(self, device_id: Optional[str]) -> None:
        if not device_id:
            self.durable.pop(DEVICE_ID, None)
            return
        self.durable[DEVICE_ID] = device_id

    def update_last_activity(self) -> None:
        self.durable[LAST_ACTIVITY] = str(self.clock())

    def get_last_activity(self) -> Optional[int]:
        return _parse_int(self.durable.get(LAST_ACTIVITY))

    # --- Refresh flag ---

    def mark_refresh_in_progress(self) -> None:
        self.tab[REFRESH_IN_PROGRESS] = str(self.clock())

    def clear_refresh_in_progress(self) -> None:
        self.tab.pop(REFRESH_IN_PROGRESS, None)

    def refresh_started_at(self) -> Optional[int]:
        return _parse_int(self.tab.get(REFRESH_IN_PROGRESS))

    # --- Redirect / termination bookkeeping ---

    def record_login_redirect(self, at: Optional[int] = None) -> None:
        self.tab[LAST_LOGIN_REDIRECT] = str(self.clock() if at is None else at)

    def last_login_redirect(self) -> Optional[int]:
        return _parse_int(self.tab.get(LAST_LOGIN_REDIRECT))

    def mark_terminated(self) -> None:
        self.tab[SESSION_TERMINATED] = str(self.clock())

    def clear_terminated(self) -> None:
        self.tab.pop(SESSION_TERMINATED, None)

    def is_terminated(self) -> bool:
        return SESSION_TERMINATED in self.tab

    def mark_bfcache_restoration(self) -> None:
        self.tab[BF_CACHE_RESTORED] = str(self.clock())

    # --- Navigation state ---

    def store_navigation_state(self, path: str) -> None:
        now = self.clock()
        self.tab[LAST_NAV_PATH] = path
        self.tab[LAST_NAV_TIME] = str(now)

        history = self.get_navigation_history()
        history.append({"path": path, "timestamp": now, "isAuthPath": is_auth_path(path)})
        self.tab[NAVIGATION_HISTORY] = json.dumps(history[-self.history_limit:])

        if not is_auth_path(path) and "/api/" not in path:
            self.tab[LAST_AUTHENTICATED_PATH] = path

    def get_last_navigation_path(self) -> Optional[str]:
        return self.tab.get(LAST_NAV_PATH) or None

    def get_navigation_history(self) -> List[Dict]:
        raw = self.tab.get(NAVIGATION_HISTORY)
        if not raw:
            return []
        try:
            history = json.loads(raw)
        except ValueError:
            print("TOKEN_STORE: get_navigation_history - Discarding unreadable navigation history.")
            return []
        return history if isinstance(history, list) else []

    def get_return_path(self, default: str, window_ms: int) -> str:
        """
        Path to send the user back to after a forced login.
        Prefers the last authenticated path, then the newest non-auth path
        visited within ``window_ms``, then ``default``.
        """
        last_authenticated = self.tab.get(LAST_AUTHENTICATED_PATH)
        if last_authenticated:
            return last_authenticated

        now = self.clock()
        for entry in reversed(self.get_navigation_history()):
            path = entry.get("path")
            timestamp = entry.get("timestamp") or 0
            if path and not is_auth_path(path) and now - timestamp < window_ms:
                self.tab[LAST_AUTHENTICATED_PATH] = path
                return path
        return default

    def clear_navigation_state(self) -> None:
        for key in (LAST_NAV_PATH, LAST_NAV_TIME, NAVIGATION_HISTORY, LAST_AUTHENTICATED_PATH):
            self.tab.pop(key, None)

    def clear_session_state(self) -> None:
        """Drop everything tied to the current login (used on logout)."""
        self.clear_tokens()
        self.durable.pop(LAST_ACTIVITY, None)
        for key in (REFRESH_IN_PROGRESS, BF_CACHE_RESTORED):
            self.tab.pop(key, None)
