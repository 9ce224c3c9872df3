"""
Bearer session issuance and validation.

Tokens are opaque random strings recorded server-side with a fixed expiry.
There is no renewal: a session ends at its expiry or on logout.
"""

import secrets
import sqlite3
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger
from .database import EmployeeDatabase
from .errors import UnauthorizedError
from .models import IssuedSession, SessionContext, SessionRecord, VerifiedIdentity, utcnow

DEFAULT_TTL = timedelta(days=7)


class SessionStore:
    """
    Validates and invalidates bearer tokens.
    """

    def __init__(self, db: EmployeeDatabase, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def validate(self, token: str) -> SessionContext:
        """
        Resolve a bearer token to its employee.

        Args:
            token: Bearer token

        Returns:
            SessionContext for the token

        Raises:
            UnauthorizedError: Missing, unknown or expired token, or the
                employee no longer exists
        """
        if not token:
            raise UnauthorizedError("No token provided")

        session = self.db.get_session(token)
        if session is None:
            raise UnauthorizedError()

        if session.is_expired(self.clock()):
            logger.debug(f"Rejected expired session for employee {session.employee_pk}")
            raise UnauthorizedError()

        employee = self.db.get_employee(session.employee_pk)
        if employee is None:
            logger.warning(f"Session references missing employee {session.employee_pk}")
            raise UnauthorizedError()

        return SessionContext(employee=employee, session=session)

    def invalidate(self, token: str) -> None:
        """Delete a session. Unknown or expired tokens are not an error."""
        if token and self.db.delete_session(token):
            logger.info("Session invalidated")

    def purge_expired(self) -> int:
        """Delete expired sessions and return how many were removed."""
        return self.db.cleanup_expired_sessions(self.clock())


class SessionIssuer:
    """
    Mints sessions for verified employees.
    """

    def __init__(
        self,
        db: EmployeeDatabase,
        ttl: timedelta = DEFAULT_TTL,
        token_bytes: int = 32,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[int], str] = secrets.token_urlsafe
    ):
        """
        Initialize issuer.

        Args:
            db: Employee database
            ttl: Fixed session lifetime
            token_bytes: Random bytes per token
            max_retries: Insert attempts before giving up on token collisions
            clock: Returns the current UTC time
            token_factory: Generates a token from a byte count
        """
        self.db = db
        self.ttl = ttl
        self.token_bytes = token_bytes
        self.max_retries = max_retries
        self.clock = clock
        self.token_factory = token_factory

    def issue(self, identity: VerifiedIdentity) -> IssuedSession:
        """
        Create a session for a verified employee.

        Args:
            identity: Result of a successful verification

        Returns:
            IssuedSession with token, expiry and employee

        Raises:
            RuntimeError: If every generated token collided
        """
        employee = identity.employee

        for _ in range(self.max_retries):
            now = self.clock()
            session = SessionRecord(
                token=self.token_factory(self.token_bytes),
                employee_pk=employee.id,
                expires_at=now + self.ttl,
                created_at=now
            )
            try:
                self.db.create_session(session)
            except sqlite3.IntegrityError:
                logger.warning("Session token collision, regenerating")
                continue

            logger.info(f"Session issued for employee {employee.id}, expires {session.expires_at.isoformat()}")
            return IssuedSession(
                token=session.token,
                employee=employee,
                expires_at=session.expires_at,
                is_new_user=identity.is_new_user
            )

        raise RuntimeError(f"Could not issue a unique session token after {self.max_retries} attempts")
