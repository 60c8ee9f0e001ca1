# src/portal_bff/redirect_throttler.py

from typing import Optional
from urllib.parse import quote

from .token_store import TokenStore


class RedirectThrottler:
    """
    Allows at most one forced login redirect per throttle window so a
    gateway that keeps rejecting the session cannot cause a redirect loop.
    """

    def __init__(self, store: TokenStore, window_ms: int = 5000):
        self.store = store
        self.window_ms = window_ms

    def is_throttled(self, now: Optional[int] = None) -> bool:
        last_redirect = self.store.last_login_redirect()
        if last_redirect is None:
            return False
        now = self.store.clock() if now is None else now
        return now - last_redirect < self.window_ms

    def should_redirect(self) -> bool:
        now = self.store.clock()
        if self.is_throttled(now):
            print("REDIRECT: should_redirect - Login redirect throttled to prevent loops")
            return False
        self.store.record_login_redirect(now)
        return True


def build_login_url(login_path: str, return_path: Optional[str], now: int, token_expired: bool = True) -> str:
    query = []
    if return_path:
        query.append(f"redirect={quote(return_path, safe='')}")
    if token_expired:
        query.append("token_expired=true")
    query.append(f"t={now}")  # Cache buster
    return f"{login_path}?{'&'.join(query)}"
