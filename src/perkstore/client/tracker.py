"""
Client session tracker.

Keeps the locally cached session in step with the server: rehydrates on
start, arms one expiry timer for the current token, re-checks on focus and
always clears local state on logout, whether or not the server answered.
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loguru import logger

from ..auth.errors import AuthError, UnauthorizedError
from ..auth.models import utcnow
from .api import AuthApiClient, SessionPayload, TransportError
from .scheduler import ExpiryScheduler
from .storage import CachedSession, SessionCache


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    EXPIRING_SOON = "expiring_soon"
    LOGGED_OUT = "logged_out"


class ClientSessionTracker:
    """
    Client-side view of one employee session.

    The server is authoritative for expiry and the employee snapshot; the
    tracker only mirrors what it was told and reacts to its timers.
    """

    def __init__(
        self,
        api: AuthApiClient,
        cache: SessionCache,
        warning_window: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
        on_state_change: Optional[Callable[[SessionState], None]] = None,
        on_warning: Optional[Callable[[datetime], None]] = None
    ):
        """
        Initialize tracker.

        Args:
            api: Authentication API client
            cache: Persistent session cache
            warning_window: Lead time for the expiring-soon warning
            clock: Returns the current UTC time
            on_state_change: Called with each new state
            on_warning: Called with the expiry when the warning window opens
        """
        self.api = api
        self.cache = cache
        self.clock = clock
        self.on_state_change = on_state_change
        self.on_warning = on_warning

        self.state = SessionState.UNAUTHENTICATED
        self.token: Optional[str] = None
        self.employee: Optional[Dict[str, Any]] = None
        self.expires_at: Optional[datetime] = None
        self.is_new_user = False

        self.scheduler = ExpiryScheduler(
            on_expiry=self._on_expiry,
            on_warning=self._on_warning,
            warning_window=warning_window,
            clock=clock
        )
        self._logout_task: Optional[asyncio.Task] = None

    @property
    def is_authenticated(self) -> bool:
        return self.state in (SessionState.AUTHENTICATED, SessionState.EXPIRING_SOON)

    @property
    def logout_task(self) -> Optional[asyncio.Task]:
        """Logout started by the expiry timer, if any."""
        return self._logout_task

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        logger.debug(f"Session state {self.state.value} -> {state.value}")
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> SessionState:
        """
        Rehydrate from the cache and confirm the token with the server.

        Returns:
            Resulting state
        """
        cached = self.cache.load()
        if cached is None:
            self._set_state(SessionState.UNAUTHENTICATED)
            return self.state

        self._set_state(SessionState.INITIALIZING)
        try:
            payload = await self.api.get_session(cached.token)
        except UnauthorizedError:
            logger.info("Cached session is no longer valid")
            self._clear_local()
            self._set_state(SessionState.UNAUTHENTICATED)
            return self.state
        except (TransportError, AuthError) as e:
            logger.warning(f"Could not confirm cached session: {e}")
            self._set_state(SessionState.UNAUTHENTICATED)
            return self.state

        self.token = cached.token
        self.is_new_user = cached.is_new_user
        self._apply(payload)
        self._set_state(SessionState.AUTHENTICATED)
        self.scheduler.arm(self.token, self.expires_at)
        logger.info(f"Session restored, expires {self.expires_at.isoformat()}")
        return self.state

    async def identify(self, employee_id: str) -> Dict[str, Any]:
        """Step 1 of login; returns the name and masked ID to confirm."""
        return await self.api.identify(employee_id)

    async def login(self, employee_id: str, year_of_birth: int) -> Dict[str, Any]:
        """
        Step 2 of login.

        Returns:
            Employee profile

        Raises:
            InvalidCredentialError, AccountLockedError, EmployeeNotFoundError
        """
        payload = await self.api.verify(employee_id, year_of_birth)
        self.establish(payload)
        return self.employee

    async def send_otp(self, email: str) -> Dict[str, Any]:
        return await self.api.send_otp(email)

    async def login_with_otp(self, email: str, code: str) -> Dict[str, Any]:
        """Log in with an emailed code. Returns the employee profile."""
        payload = await self.api.verify_otp(email, code)
        self.establish(payload)
        return self.employee

    def establish(self, payload: SessionPayload) -> None:
        """
        Adopt a freshly issued session.

        Replaces any session the tracker held, including its timers.
        """
        self.scheduler.cancel()
        self.token = payload.token
        self.is_new_user = payload.is_new_user
        self.employee = payload.employee
        self.expires_at = payload.expires_at

        self.cache.save(CachedSession(
            token=self.token,
            expires_at=self.expires_at,
            employee=self.employee,
            is_new_user=self.is_new_user
        ))
        self._set_state(SessionState.AUTHENTICATED)
        self.scheduler.arm(self.token, self.expires_at)
        logger.success(f"Logged in as {self.employee.get('firstName', '')} {self.employee.get('lastName', '')}".strip())

    async def on_focus(self) -> SessionState:
        """
        Re-check the session when the client regains focus.

        Timers are reconciled against the wall clock first, then the server is
        asked whether the token is still valid.
        """
        if not self.is_authenticated:
            return self.state

        self.scheduler.reconcile()
        token = self.token
        try:
            payload = await self.api.get_session(token)
        except UnauthorizedError:
            if token != self.token:
                # a newer login replaced the token while the check was in flight
                return self.state
            logger.info("Session invalidated on the server")
            await self.logout()
            return self.state
        except (TransportError, AuthError) as e:
            logger.warning(f"Session re-check failed: {e}")
            return self.state

        if token != self.token:
            return self.state

        previous_points = (self.employee or {}).get("points")
        previous_expiry = self.expires_at
        self._apply(payload)

        if self.employee.get("points") != previous_points:
            logger.info(f"Points balance updated: {previous_points} -> {self.employee.get('points')}")
        if self.expires_at != previous_expiry:
            self.scheduler.arm(self.token, self.expires_at)
        return self.state

    async def logout(self) -> None:
        """
        End the session.

        The server call is best effort; local state is cleared regardless.
        """
        token = self.token
        self.scheduler.cancel()

        if token:
            try:
                await self.api.logout(token)
            except (AuthError, TransportError) as e:
                logger.warning(f"Server logout failed, clearing local session anyway: {e}")

        self._clear_local()
        self._set_state(SessionState.LOGGED_OUT)
        logger.info("Logged out")

    def close(self) -> None:
        """Cancel all timers (client shutting down)."""
        self.scheduler.cancel()
        if self._logout_task is not None and not self._logout_task.done():
            self._logout_task.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply(self, payload: SessionPayload) -> None:
        """Take server expiry and employee as authoritative."""
        self.employee = payload.employee
        self.expires_at = payload.expires_at
        self.cache.update(expires_at=payload.expires_at, employee=payload.employee)

    def _clear_local(self) -> None:
        self.token = None
        self.employee = None
        self.expires_at = None
        self.is_new_user = False
        self.cache.clear()

    def _on_warning(self, token: str) -> None:
        if token != self.token or not self.is_authenticated:
            return
        logger.warning(f"Session expires soon ({self.expires_at.isoformat()})")
        self._set_state(SessionState.EXPIRING_SOON)
        if self.on_warning:
            self.on_warning(self.expires_at)

    def _on_expiry(self, token: str) -> None:
        if token != self.token:
            return
        logger.info("Session expired")
        self._logout_task = asyncio.get_running_loop().create_task(self.logout())
