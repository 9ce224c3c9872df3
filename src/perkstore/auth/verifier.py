"""
Credential verification.

Two-step login: identify the employee by ID, then check a knowledge factor
(year of birth) while counting failures and enforcing the lockout policy.
"""

from datetime import datetime
from typing import Callable, Optional

from loguru import logger
from .database import AttemptTransaction, EmployeeDatabase
from .errors import AccountLockedError, EmployeeNotFoundError, InvalidCredentialError
from .lockout import LockoutPolicy
from .models import Employee, IdentifyResult, VerifiedIdentity, mask_employee_id, utcnow


class CredentialVerifier:
    """
    Employee credential verifier.

    Every attempt runs in one database transaction on the employee row so
    concurrent attempts for the same employee cannot lose a counter update.
    """

    def __init__(
        self,
        db: EmployeeDatabase,
        policy: Optional[LockoutPolicy] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize verifier.

        Args:
            db: Employee database
            policy: Lockout policy (default: 2 attempts, permanent lock)
            clock: Returns the current UTC time
        """
        self.db = db
        self.policy = policy or LockoutPolicy()
        self.clock = clock

    def identify(self, employee_id: str) -> IdentifyResult:
        """
        Step 1: look up the employee for the verification prompt.

        Args:
            employee_id: Company employee ID

        Returns:
            IdentifyResult with name and masked ID

        Raises:
            EmployeeNotFoundError: If no employee has that ID
        """
        employee = self._require_employee(employee_id)
        return IdentifyResult(
            first_name=employee.first_name,
            last_name=employee.last_name,
            masked_employee_id=mask_employee_id(employee.employee_id or "")
        )

    def verify(self, employee_id: str, year_of_birth: int) -> VerifiedIdentity:
        """
        Step 2: check year of birth.

        Args:
            employee_id: Company employee ID
            year_of_birth: Claimed year of birth

        Returns:
            VerifiedIdentity on success

        Raises:
            EmployeeNotFoundError: Unknown employee
            InvalidCredentialError: Wrong year, attempts remain
            AccountLockedError: Account locked, now or before this attempt
        """
        employee = self._require_employee(employee_id)
        return self.check_factor(
            employee,
            lambda current: current.birth_year is not None and current.birth_year == year_of_birth
        )

    def check_factor(
        self,
        employee: Employee,
        matches: Callable[[Employee], bool],
        on_match: Optional[Callable[[AttemptTransaction], None]] = None
    ) -> VerifiedIdentity:
        """
        Run one counted attempt against an employee.

        Args:
            employee: Employee being verified
            matches: Called with the freshly locked row; True if the factor is correct.
                Must be cheap, it runs while the row is write-locked
            on_match: Called inside the transaction after a match; an exception
                rolls the attempt back

        Returns:
            VerifiedIdentity on success

        Raises:
            InvalidCredentialError: Wrong factor, attempts remain
            AccountLockedError: Account locked, now or before this attempt
        """
        now = self.clock()
        error = None

        try:
            with self.db.attempt_transaction(employee.id) as txn:
                current = txn.employee

                if current.is_locked and self.policy.lock_elapsed(current.locked_at, now):
                    logger.info(f"Timed lock elapsed for employee {current.id}")
                    txn.reset()

                if current.is_locked:
                    error = AccountLockedError(self.policy.minutes_remaining(current.locked_at, now))
                elif matches(current):
                    if on_match is not None:
                        on_match(txn)
                    if current.login_attempts:
                        txn.reset()
                else:
                    attempts = current.login_attempts + 1
                    if attempts >= self.policy.max_attempts:
                        txn.save(attempts, True, now)
                        error = AccountLockedError(self.policy.minutes_remaining(now, now))
                        logger.warning(f"Employee {current.id} locked after {attempts} failed attempts")
                    else:
                        txn.save(attempts, False, None)
                        error = InvalidCredentialError(self.policy.max_attempts - attempts)
                        logger.warning(
                            f"Verification failed for employee {current.id} "
                            f"({self.policy.max_attempts - attempts} attempt(s) remaining)"
                        )
        except KeyError:
            raise EmployeeNotFoundError() from None

        if error is not None:
            raise error

        logger.success(f"Employee verified: {current.id}")
        return VerifiedIdentity(employee=current)

    def _require_employee(self, employee_id: str) -> Employee:
        employee_id = (employee_id or "").strip()
        employee = self.db.get_employee_by_employee_id(employee_id) if employee_id else None
        if not employee:
            logger.warning(f"Verification failed: employee '{employee_id}' not found")
            raise EmployeeNotFoundError()
        return employee
