"""
Authentication module for Perkstore.

Employee ID + knowledge-factor login with lockout, and opaque bearer sessions.
"""

from .models import (
    Employee,
    IdentifyResult,
    IssuedSession,
    OtpChallenge,
    SessionContext,
    SessionRecord,
    VerifiedIdentity,
    WhitelistedDomain,
    mask_employee_id,
)
from .database import EmployeeDatabase
from .errors import (
    AccountLockedError,
    AuthError,
    BadRequestError,
    DomainNotAllowedError,
    EmployeeNotFoundError,
    ForbiddenError,
    InvalidCredentialError,
    OtpError,
    UnauthorizedError,
    error_from_payload,
)
from .lockout import LockoutPolicy
from .verifier import CredentialVerifier
from .sessions import SessionIssuer, SessionStore
from .otp import LogOtpSender, OtpSender, OtpService, SmtpOtpSender
from .manager import AuthManager

__all__ = [
    # Models and database
    "Employee",
    "IdentifyResult",
    "IssuedSession",
    "OtpChallenge",
    "SessionContext",
    "SessionRecord",
    "VerifiedIdentity",
    "WhitelistedDomain",
    "mask_employee_id",
    "EmployeeDatabase",
    # Errors
    "AuthError",
    "AccountLockedError",
    "BadRequestError",
    "DomainNotAllowedError",
    "EmployeeNotFoundError",
    "ForbiddenError",
    "InvalidCredentialError",
    "OtpError",
    "UnauthorizedError",
    "error_from_payload",
    # Verification and sessions
    "LockoutPolicy",
    "CredentialVerifier",
    "SessionIssuer",
    "SessionStore",
    "LogOtpSender",
    "OtpSender",
    "OtpService",
    "SmtpOtpSender",
    "AuthManager",
]
