"""
Authentication errors.

Every failure the auth flow can surface to an employee is an ``AuthError``
carrying a stable ``code`` and the HTTP status it maps to.
"""

from typing import Any, Dict, Optional


class AuthError(Exception):
    """Base class for authentication failures."""

    code = "AUTH_ERROR"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code}


class BadRequestError(AuthError):
    """Malformed or incomplete request."""

    code = "BAD_REQUEST"
    status_code = 400


class EmployeeNotFoundError(AuthError):
    """No employee matches the supplied identifier."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = "Employee not found"):
        super().__init__(message)


class InvalidCredentialError(AuthError):
    """
    Wrong knowledge factor with attempts still remaining.

    Attributes:
        remaining_attempts: Attempts left before the account locks
    """

    code = "INVALID_CREDENTIAL"
    status_code = 401

    def __init__(self, remaining_attempts: int, message: Optional[str] = None):
        self.remaining_attempts = remaining_attempts
        if message is None:
            message = f"Invalid credentials, {remaining_attempts} attempt(s) remaining"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["remainingAttempts"] = self.remaining_attempts
        return data


class AccountLockedError(AuthError):
    """
    Attempts exhausted or account administratively locked.

    Attributes:
        minutes_remaining: Minutes until a timed lock lifts, None when the
            lock only clears through an administrator
    """

    code = "LOCKED"
    status_code = 423

    def __init__(self, minutes_remaining: Optional[int] = None, message: Optional[str] = None):
        self.minutes_remaining = minutes_remaining
        if message is None:
            if minutes_remaining is None:
                message = "Unsuccessful attempts. Please contact the HR team"
            else:
                message = f"Account locked. Try again in {minutes_remaining} minute(s)"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["isLocked"] = True
        data["minutesRemaining"] = self.minutes_remaining
        return data


class UnauthorizedError(AuthError):
    """Missing, unknown or expired bearer token."""

    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Invalid or expired session"):
        super().__init__(message)


class DomainNotAllowedError(AuthError):
    """Email domain is not on the enrolment whitelist."""

    code = "DOMAIN_NOT_ALLOWED"
    status_code = 403

    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(f"Email domain '{domain}' is not allowed")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["domain"] = self.domain
        return data


class OtpError(AuthError):
    """No usable one-time code for the address (never issued, used or expired)."""

    code = "OTP_ERROR"
    status_code = 400


class ForbiddenError(AuthError):
    """Administrative call without a valid admin key."""

    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str = "Admin key required"):
        super().__init__(message)


_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        BadRequestError,
        EmployeeNotFoundError,
        UnauthorizedError,
        OtpError,
        ForbiddenError,
    )
}


def error_from_payload(status: int, payload: Dict[str, Any]) -> AuthError:
    """
    Rebuild an AuthError from an API error body.

    Args:
        status: HTTP status of the response
        payload: Decoded JSON error body

    Returns:
        Matching AuthError subclass instance
    """
    code = payload.get("code")
    message = payload.get("message") or f"Request failed with status {status}"

    if code == InvalidCredentialError.code:
        return InvalidCredentialError(int(payload.get("remainingAttempts", 0)), message)
    if code == AccountLockedError.code or payload.get("isLocked"):
        return AccountLockedError(payload.get("minutesRemaining"), message)
    if code == DomainNotAllowedError.code:
        error = DomainNotAllowedError(payload.get("domain", ""))
        error.message = message
        return error

    cls = _ERRORS_BY_CODE.get(code)
    if cls is not None:
        return cls(message)
    if status == 401:
        return UnauthorizedError(message)

    error = AuthError(message)
    error.status_code = status
    return error
