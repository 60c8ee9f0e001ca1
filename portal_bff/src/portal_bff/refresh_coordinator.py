# src/portal_bff/refresh_coordinator.py

import asyncio
import traceback
from dataclasses import dataclass
from typing import Callable, Optional

from .auth_utils import (
    FailureReport,
    FailureSink,
    GatewayClient,
    SessionGatewayError,
    classify_refresh_error,
    print_failure_sink,
)
from .session_data import RefreshOutcome, RefreshResult, TokenPair
from .token_store import TokenStore
from .token_validity import expiry_from_token, validate_token_format


@dataclass
class RefreshContext:
    """Where a refresh was triggered from; used for redirects and failure reports."""
    path: Optional[str] = None
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None


class RefreshCoordinator:
    """
    Runs at most one token refresh at a time for a session.

    Callers that arrive while a refresh is in flight await the same pending
    task instead of starting another gateway call. Failures never propagate:
    every call resolves to a RefreshResult.
    """

    def __init__(
        self,
        store: TokenStore,
        gateway: GatewayClient,
        on_terminated: Callable[[RefreshResult, RefreshContext], None],
        failure_sink: FailureSink = print_failure_sink,
        timeout_seconds: float = 10.0,
        default_ttl_ms: int = 15 * 60 * 1000,
    ):
        self.store = store
        self.gateway = gateway
        self.on_terminated = on_terminated
        self.failure_sink = failure_sink
        self.timeout_seconds = timeout_seconds
        self.default_ttl_ms = default_ttl_ms
        self._pending: Optional["asyncio.Task[RefreshResult]"] = None

    @property
    def in_progress(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def _flag_held_elsewhere(self) -> bool:
        started_at = self.store.refresh_started_at()
        if started_at is None:
            return False
        return self.store.clock() - started_at < self.timeout_seconds * 1000

    async def refresh(self, context: Optional[RefreshContext] = None) -> RefreshResult:
        context = context or RefreshContext()

        if self.in_progress:
            print("REFRESH: refresh - Token refresh already in progress, awaiting it")
            return await asyncio.shield(self._pending)

        if self._flag_held_elsewhere():
            print("REFRESH: refresh - Refresh flag set by another worker, skipping")
            return RefreshResult(outcome=RefreshOutcome.TRANSIENT, message="Token refresh already in progress")

        self._pending = asyncio.ensure_future(self._run(context))
        return await asyncio.shield(self._pending)

    async def _run(self, context: RefreshContext) -> RefreshResult:
        try:
            refresh_token = self.store.get_refresh_token()
            if not refresh_token:
                return self._terminate(RefreshOutcome.NO_TOKEN, "No refresh token available", context)
            if not validate_token_format(refresh_token):
                return self._terminate(RefreshOutcome.MALFORMED_TOKEN, "Stored refresh token is malformed", context)

            self.store.mark_refresh_in_progress()
            print("REFRESH: _run - Refreshing access token...")
            try:
                response = await asyncio.wait_for(
                    self.gateway.refresh(refresh_token, self.store.get_device_id()),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                return self._transient(
                    "timeout", f"Session Gateway did not answer within {self.timeout_seconds}s", context
                )
            except SessionGatewayError as e:
                outcome = classify_refresh_error(e)
                if outcome.is_terminal:
                    return self._terminate(outcome, e.error, context)
                return self._transient("network", e.error, context)
            except Exception as e_gen:
                traceback.print_exc()
                return self._transient("unexpected", f"Unexpected refresh error: {str(e_gen)}", context)

            access_token = response.tokens.access_token
            expires_at = expiry_from_token(access_token, self.store.clock(), self.default_ttl_ms)
            previous_expiry = self.store.get_expires_at()
            if previous_expiry is not None and expires_at <= previous_expiry:
                # exp has whole-second resolution; a refresh must still move the expiry forward
                expires_at = previous_expiry + 1
            self.store.set_tokens(TokenPair(
                access_token=access_token,
                refresh_token=response.tokens.refresh_token,
                expires_at=expires_at,
            ))
            self.store.clear_terminated()
            print(f"REFRESH: _run - Token refresh successful. New expiry: {expires_at}")
            return RefreshResult(outcome=RefreshOutcome.REFRESHED, expires_at=expires_at)
        finally:
            self.store.clear_refresh_in_progress()
            self._pending = None

    def end_session(self, outcome: RefreshOutcome, message: str, context: Optional[RefreshContext] = None) -> RefreshResult:
        """Ends the session without a gateway call, exactly as a terminal refresh failure does."""
        return self._terminate(outcome, message, context or RefreshContext())

    def _transient(self, kind: str, message: str, context: RefreshContext) -> RefreshResult:
        self._report(f"refresh_{kind}", message, context)
        return RefreshResult(outcome=RefreshOutcome.TRANSIENT, message=message)

    def _terminate(self, outcome: RefreshOutcome, message: str, context: RefreshContext) -> RefreshResult:
        # Tokens must be gone before anyone is sent to the login page
        self.store.clear_tokens()
        self.store.mark_terminated()
        self._report(outcome.value, message, context)
        result = RefreshResult(outcome=outcome, message=message)
        try:
            self.on_terminated(result, context)
        except Exception as e:
            print(f"REFRESH: _terminate - Redirect handler failed: {str(e)}")
            traceback.print_exc()
        return result

    def _report(self, kind: str, message: str, context: RefreshContext) -> None:
        report = FailureReport(
            kind=kind,
            message=message,
            path=context.path,
            user_agent=context.user_agent,
            client_ip=context.client_ip,
            timestamp=self.store.clock(),
        )
        try:
            self.failure_sink(report)
        except Exception as e:
            print(f"REFRESH: _report - Failure sink raised: {str(e)}")
