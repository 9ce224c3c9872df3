"""
Session expiry scheduling.

One warning timer and one expiry timer per armed token. Delays are always
computed from the absolute expiry against the wall clock, so a client that
was suspended can call ``reconcile()`` on resume and get correct timers.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from loguru import logger

from ..auth.models import utcnow


class ExpiryScheduler:
    """
    Cancellable expiry timers keyed by token.

    Arming a token cancels whatever was armed before, so there is never more
    than one expiry timer.
    """

    def __init__(
        self,
        on_expiry: Callable[[str], None],
        on_warning: Optional[Callable[[str], None]] = None,
        warning_window: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize scheduler.

        Args:
            on_expiry: Called with the token once its expiry is reached
            on_warning: Called with the token when it enters the warning window
            warning_window: How long before expiry the warning fires
            clock: Returns the current UTC time
        """
        self.on_expiry = on_expiry
        self.on_warning = on_warning
        self.warning_window = warning_window
        self.clock = clock

        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._warned = False
        self._expiry_handle: Optional[asyncio.TimerHandle] = None
        self._warning_handle: Optional[asyncio.Handle] = None

    @property
    def armed_token(self) -> Optional[str]:
        return self._token

    @property
    def expires_at(self) -> Optional[datetime]:
        return self._expires_at

    @property
    def active_timers(self) -> int:
        """Number of pending expiry timers (0 or 1)."""
        return 1 if self._expiry_handle is not None else 0

    def arm(self, token: str, expires_at: datetime) -> None:
        """
        Schedule timers for a token, replacing any previous token's timers.

        Must be called from within a running event loop.
        """
        self.cancel()
        self._token = token
        self._expires_at = expires_at
        self._schedule()
        logger.debug(f"Expiry timer armed for {expires_at.isoformat()}")

    def reconcile(self) -> None:
        """Recompute delays from the absolute expiry (after sleep or resume)."""
        if self._token is None:
            return
        self._cancel_handles()
        self._schedule()

    def cancel(self) -> None:
        """Drop all timers and forget the token."""
        self._cancel_handles()
        self._token = None
        self._expires_at = None
        self._warned = False

    def _cancel_handles(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None
        if self._warning_handle is not None:
            self._warning_handle.cancel()
            self._warning_handle = None

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        token = self._token
        remaining = (self._expires_at - self.clock()).total_seconds()

        if self.on_warning is not None and not self._warned:
            warning_delay = remaining - self.warning_window.total_seconds()
            if warning_delay > 0:
                self._warning_handle = loop.call_later(warning_delay, self._fire_warning, token)
            else:
                self._warning_handle = loop.call_soon(self._fire_warning, token)

        self._expiry_handle = loop.call_later(max(remaining, 0), self._fire_expiry, token)

    def _fire_warning(self, token: str) -> None:
        self._warning_handle = None
        if token != self._token or self._warned:
            return
        self._warned = True
        self.on_warning(token)

    def _fire_expiry(self, token: str) -> None:
        self._expiry_handle = None
        if token != self._token:
            return

        if self.clock() < self._expires_at:
            # loop clock ran ahead of wall clock
            self._schedule_expiry_only()
            return

        self._cancel_handles()
        self._token = None
        self._expires_at = None
        self._warned = False
        self.on_expiry(token)

    def _schedule_expiry_only(self) -> None:
        loop = asyncio.get_running_loop()
        remaining = (self._expires_at - self.clock()).total_seconds()
        self._expiry_handle = loop.call_later(max(remaining, 0), self._fire_expiry, self._token)
