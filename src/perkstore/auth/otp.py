"""
Emailed one-time codes.

Alternate knowledge factor: a short numeric code sent to the employee's email
address. Codes are stored as bcrypt hashes and expire quickly. An address on a
whitelisted domain that is not yet in the directory is enrolled on its first
successful verification.
"""

import secrets
import smtplib
import sqlite3
import ssl
import string
from datetime import datetime, timedelta
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional

import bcrypt
from loguru import logger

from ..config import OtpSettings, SmtpSettings
from .database import AttemptTransaction, EmployeeDatabase
from .errors import (
    AccountLockedError,
    BadRequestError,
    DomainNotAllowedError,
    InvalidCredentialError,
    OtpError,
)
from .models import Employee, VerifiedIdentity, utcnow
from .verifier import CredentialVerifier


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def email_domain(email: str) -> str:
    _, _, domain = email.rpartition("@")
    return domain


class OtpSender:
    """Delivers a code to an email address."""

    def send(self, email: str, code: str, ttl_seconds: int) -> None:
        raise NotImplementedError


class LogOtpSender(OtpSender):
    """Development sender: writes the code to the log instead of mailing it."""

    def send(self, email: str, code: str, ttl_seconds: int) -> None:
        logger.warning(f"[FAKE OTP] To {email}: {code} (valid {ttl_seconds}s)")


class SmtpOtpSender(OtpSender):
    """Sends the code by email over SMTP."""

    def __init__(self, settings: SmtpSettings):
        self.settings = settings

    def build_message(self, email: str, code: str, ttl_seconds: int) -> EmailMessage:
        company = self.settings.company_name
        minutes = max(1, ttl_seconds // 60)

        msg = EmailMessage()
        msg["Subject"] = f"{company} verification code"
        msg["From"] = self.settings.sender
        msg["To"] = email
        msg.set_content(
            f"Your {company} portal verification code is {code}.\n\n"
            f"This code will expire in {minutes} minute(s).\n"
            "If you didn't request this code, please ignore this email.\n"
        )
        return msg

    def send(self, email: str, code: str, ttl_seconds: int) -> None:
        msg = self.build_message(email, code, ttl_seconds)
        s = self.settings

        if s.use_ssl:
            server = smtplib.SMTP_SSL(s.host, s.port, context=ssl.create_default_context())
        else:
            server = smtplib.SMTP(s.host, s.port)

        with server:
            if s.username and s.password:
                server.login(s.username, s.password)
            server.send_message(msg)

        logger.info(f"OTP email sent to {email}")


def build_sender(settings: OtpSettings) -> OtpSender:
    """Sender for the configured delivery mode."""
    if settings.delivery == "smtp":
        return SmtpOtpSender(settings.smtp)
    return LogOtpSender()


class OtpService:
    """
    Issues and verifies emailed one-time codes.
    """

    def __init__(
        self,
        db: EmployeeDatabase,
        verifier: CredentialVerifier,
        settings: Optional[OtpSettings] = None,
        sender: Optional[OtpSender] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.verifier = verifier
        self.settings = settings or OtpSettings()
        self.sender = sender or build_sender(self.settings)
        self.clock = clock

    def lookup_by_email(self, email: str) -> Dict[str, Any]:
        """Name prefill for the OTP form; ``exists`` is False for unknown addresses."""
        employee = self.db.get_employee_by_email(normalize_email(email))
        if not employee:
            return {"firstName": None, "lastName": None, "exists": False}
        return {"firstName": employee.first_name, "lastName": employee.last_name, "exists": True}

    def check_domain(self, domain: str) -> Dict[str, Any]:
        """Whether a domain may self-enrol."""
        entry = self.db.get_whitelisted_domain(domain)
        return {
            "isWhitelisted": bool(entry and entry.is_active),
            "domain": entry.to_dict() if entry else None,
        }

    def send_otp(self, email: str) -> Dict[str, Any]:
        """
        Generate, store and deliver a code.

        Args:
            email: Destination address

        Returns:
            ``{"ok", "timeoutSec", "employee"}`` with a name prefill

        Raises:
            BadRequestError: Malformed address
            DomainNotAllowedError: Unknown address outside the whitelist
            AccountLockedError: Existing employee is locked
        """
        email = self._require_email(email)
        employee = self.db.get_employee_by_email(email)

        if employee is None:
            self._require_whitelisted(email)
        elif employee.is_locked and not self.verifier.policy.lock_elapsed(employee.locked_at, self.clock()):
            raise AccountLockedError(self.verifier.policy.minutes_remaining(employee.locked_at, self.clock()))

        code = "".join(secrets.choice(string.digits) for _ in range(self.settings.code_length))
        code_hash = bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(self.settings.hash_rounds)).decode("utf-8")
        expires_at = self.clock() + timedelta(seconds=self.settings.ttl_seconds)

        self.db.create_otp(email, code_hash, expires_at)
        self.sender.send(email, code, self.settings.ttl_seconds)

        prefill = {
            "firstName": employee.first_name if employee else "",
            "lastName": employee.last_name if employee else "",
        }
        return {"ok": True, "timeoutSec": self.settings.ttl_seconds, "employee": prefill}

    def verify_otp(self, email: str, code: str) -> VerifiedIdentity:
        """
        Check a code and resolve (or enrol) the employee.

        Args:
            email: Address the code was sent to
            code: Code typed by the employee

        Returns:
            VerifiedIdentity, with ``is_new_user`` set for fresh enrolments

        Raises:
            OtpError: No usable code for the address
            InvalidCredentialError: Wrong code, attempts remain
            AccountLockedError: Attempts exhausted
        """
        email = self._require_email(email)
        code = (code or "").strip()
        if not code:
            raise BadRequestError("email and code required")

        challenge = self.db.get_latest_otp(email)
        if challenge is None:
            raise OtpError("No OTP issued")
        now = self.clock()
        if challenge.expires_at < now:
            raise OtpError("OTP expired")

        # hash check stays outside the attempt transaction
        matched = bcrypt.checkpw(code.encode("utf-8"), challenge.code_hash.encode("utf-8"))

        def claim(txn: AttemptTransaction) -> None:
            if not txn.claim_otp(challenge.id, now):
                raise OtpError("No OTP issued")

        employee = self.db.get_employee_by_email(email)
        if employee is not None:
            try:
                return self.verifier.check_factor(employee, lambda _: matched, on_match=claim)
            except AccountLockedError:
                self.db.claim_otp(challenge.id, now)
                raise

        if not matched:
            attempts = self.db.increment_otp_attempts(challenge.id)
            remaining = self.verifier.policy.max_attempts - attempts
            logger.warning(f"Wrong OTP for unenrolled address {email} ({max(remaining, 0)} remaining)")
            if remaining <= 0:
                self.db.claim_otp(challenge.id, now)
                raise AccountLockedError(None, "Too many wrong codes. Please request a new code")
            raise InvalidCredentialError(remaining)

        if not self.db.claim_otp(challenge.id, now):
            raise OtpError("No OTP issued")
        return VerifiedIdentity(employee=self._enrol(email), is_new_user=True)

    def _enrol(self, email: str) -> Employee:
        try:
            employee = self.db.create_employee(first_name="User", last_name="", email=email)
        except sqlite3.IntegrityError:
            # enrolled concurrently by another request
            employee = self.db.get_employee_by_email(email)
        logger.success(f"Employee enrolled via OTP: {email}")
        return employee

    def _require_email(self, email: str) -> str:
        email = normalize_email(email)
        if "@" not in email or not email_domain(email):
            raise BadRequestError("Valid email required")
        return email

    def _require_whitelisted(self, email: str) -> None:
        domain = email_domain(email)
        entry = self.db.get_whitelisted_domain(domain)
        if not entry or not entry.is_active:
            logger.warning(f"OTP refused for non-whitelisted domain {domain}")
            raise DomainNotAllowedError(domain)
