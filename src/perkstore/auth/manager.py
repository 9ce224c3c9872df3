"""
Employee authentication manager.

Combines the employee database, credential verifier, OTP service and session
handling into one object for the API layer and CLI.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from loguru import logger

from ..config import PerkstoreConfig
from .database import EmployeeDatabase
from .errors import EmployeeNotFoundError
from .lockout import LockoutPolicy
from .models import Employee, IdentifyResult, IssuedSession, SessionContext, utcnow
from .otp import OtpSender, OtpService
from .sessions import SessionIssuer, SessionStore
from .verifier import CredentialVerifier


class AuthManager:
    """
    Employee authentication manager.

    Provides:
    - Two-step login (identify, then year of birth)
    - Emailed OTP login with self-enrolment on whitelisted domains
    - Session lookup and logout
    - HR unlock and session housekeeping
    """

    def __init__(
        self,
        config: PerkstoreConfig,
        db: Optional[EmployeeDatabase] = None,
        sender: Optional[OtpSender] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize manager.

        Args:
            config: Loaded configuration
            db: Employee database (default: opened from ``config.database.path``)
            sender: OTP sender override (default: from ``config.otp.delivery``)
            clock: Returns the current UTC time
        """
        self.config = config
        self.db = db or EmployeeDatabase(config.database.path)
        self.verifier = CredentialVerifier(self.db, LockoutPolicy.from_settings(config.lockout), clock)
        self.otp = OtpService(self.db, self.verifier, config.otp, sender, clock)
        self.issuer = SessionIssuer(
            self.db,
            ttl=config.session.ttl,
            token_bytes=config.session.token_bytes,
            max_retries=config.session.max_issue_retries,
            clock=clock
        )
        self.sessions = SessionStore(self.db, clock)

    def identify(self, employee_id: str) -> IdentifyResult:
        """Step 1 of login. Raises EmployeeNotFoundError."""
        return self.verifier.identify(employee_id)

    def verify(self, employee_id: str, year_of_birth: int) -> IssuedSession:
        """
        Step 2 of login: check year of birth and issue a session.

        Raises:
            EmployeeNotFoundError, InvalidCredentialError, AccountLockedError
        """
        identity = self.verifier.verify(employee_id, year_of_birth)
        return self.issuer.issue(identity)

    def send_otp(self, email: str) -> Dict[str, Any]:
        """Issue an emailed code."""
        return self.otp.send_otp(email)

    def verify_otp(self, email: str, code: str) -> IssuedSession:
        """Check an emailed code and issue a session."""
        identity = self.otp.verify_otp(email, code)
        return self.issuer.issue(identity)

    def lookup_by_email(self, email: str) -> Dict[str, Any]:
        return self.otp.lookup_by_email(email)

    def check_domain(self, domain: str) -> Dict[str, Any]:
        return self.otp.check_domain(domain)

    def get_session(self, token: str) -> SessionContext:
        """Validate a bearer token. Raises UnauthorizedError."""
        return self.sessions.validate(token)

    def logout(self, token: Optional[str]) -> None:
        """Invalidate a bearer token. Idempotent."""
        self.sessions.invalidate(token or "")

    def unlock(self, employee_id: str) -> Employee:
        """
        HR reset of a locked employee.

        Args:
            employee_id: Company employee ID or internal id

        Returns:
            The unlocked employee

        Raises:
            EmployeeNotFoundError: Unknown employee
        """
        employee = self.db.get_employee_by_employee_id(employee_id) or self.db.get_employee(employee_id)
        if employee is None:
            raise EmployeeNotFoundError()

        self.db.unlock_employee(employee.id)
        logger.info(f"Employee {employee.employee_id or employee.id} unlocked by administrator")
        return self.db.get_employee(employee.id)

    def purge_expired_sessions(self) -> int:
        return self.sessions.purge_expired()
