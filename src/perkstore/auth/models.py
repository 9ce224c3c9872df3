"""
Employee authentication data models.

Data classes for employees, sessions, OTP challenges and whitelisted domains,
plus the result objects handed between verifier, issuer and API layer.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def mask_employee_id(employee_id: str) -> str:
    """
    Mask an employee identifier for display.

    Everything but the last four characters is replaced with ``*``; identifiers
    of four characters or fewer keep only their last character.

    Examples:
        >>> mask_employee_id("EMP123456")
        '*****3456'
        >>> mask_employee_id("E1")
        '*1'
    """
    if not employee_id:
        return ""
    visible = 4 if len(employee_id) > 4 else 1
    return "*" * (len(employee_id) - visible) + employee_id[-visible:]


@dataclass
class Employee:
    """
    Employee directory record.

    Attributes:
        id: Internal identifier (UUID)
        employee_id: Company-issued employee ID (None for OTP-enrolled employees)
        first_name: First name
        last_name: Last name
        email: Unique email address (lower-case)
        birth_year: Year of birth, used as knowledge factor
        points: Running points balance
        login_attempts: Consecutive failed verification attempts
        is_locked: Whether verification is blocked
        locked_at: When the lock was set
        created_at: Record creation timestamp
    """
    id: str
    employee_id: Optional[str]
    first_name: str
    last_name: str
    email: str
    birth_year: Optional[int]
    points: int
    login_attempts: int
    is_locked: bool
    locked_at: Optional[datetime]
    created_at: datetime

    def public_profile(self) -> Dict[str, Any]:
        """Profile returned to clients; never includes the knowledge factor."""
        return {
            "id": self.id,
            "employeeId": self.employee_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "points": self.points,
        }


@dataclass
class SessionRecord:
    """
    Server-side session bound to an opaque bearer token.

    Attributes:
        token: Opaque bearer token (unique)
        employee_pk: Internal id of the owning employee
        expires_at: Absolute expiry, fixed at creation
        created_at: Creation timestamp
    """
    token: str
    employee_pk: str
    expires_at: datetime
    created_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class OtpChallenge:
    """One-time code issued to an email address."""
    id: str
    email: str
    code_hash: str
    expires_at: datetime
    created_at: datetime
    used_at: Optional[datetime] = None
    attempts: int = 0


@dataclass
class WhitelistedDomain:
    """Email domain allowed to self-enrol through the OTP flow."""
    domain: str
    is_active: bool
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class IdentifyResult:
    """Non-secret profile fields for rendering the verification prompt."""
    first_name: str
    last_name: str
    masked_employee_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "maskedEmployeeId": self.masked_employee_id,
        }


@dataclass
class VerifiedIdentity:
    """Outcome of a successful knowledge-factor check."""
    employee: Employee
    is_new_user: bool = False


@dataclass
class IssuedSession:
    """Token, expiry and profile returned after a successful login."""
    token: str
    employee: Employee
    expires_at: datetime
    is_new_user: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "employee": self.employee.public_profile(),
            "expiresAt": self.expires_at.isoformat(),
            "isNewUser": self.is_new_user,
        }


@dataclass
class SessionContext:
    """
    Authenticated request context.

    Built once per request from the bearer token and passed explicitly to
    handlers that need the current employee.
    """
    employee: Employee
    session: SessionRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "employee": self.employee.public_profile(),
            "expiresAt": self.session.expires_at.isoformat(),
        }
