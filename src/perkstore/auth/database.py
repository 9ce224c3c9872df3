"""
SQLite database for the employee directory and sessions.

Thread-safe store for employees, sessions, OTP challenges and whitelisted
email domains.
"""

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from loguru import logger
from .models import Employee, OtpChallenge, SessionRecord, WhitelistedDomain, utcnow

_CLAIM_OTP_SQL = "UPDATE otps SET used_at = ? WHERE id = ? AND used_at IS NULL"


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_employee(row: sqlite3.Row) -> Employee:
    return Employee(
        id=row["id"],
        employee_id=row["employee_id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        email=row["email"],
        birth_year=row["birth_year"],
        points=row["points"],
        login_attempts=row["login_attempts"],
        is_locked=bool(row["is_locked"]),
        locked_at=_dt(row["locked_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class AttemptTransaction:
    """
    Write handle for one verification attempt on one employee row.

    Only valid inside ``EmployeeDatabase.attempt_transaction``.
    """

    def __init__(self, cursor: sqlite3.Cursor, employee: Employee):
        self._cursor = cursor
        self.employee = employee

    def save(self, login_attempts: int, is_locked: bool, locked_at: Optional[datetime]) -> None:
        """Write counter and lock state for the employee."""
        self._cursor.execute("""
            UPDATE employees
            SET login_attempts = ?, is_locked = ?, locked_at = ?
            WHERE id = ?
        """, (
            login_attempts,
            1 if is_locked else 0,
            locked_at.isoformat() if locked_at else None,
            self.employee.id
        ))
        self.employee.login_attempts = login_attempts
        self.employee.is_locked = is_locked
        self.employee.locked_at = locked_at

    def reset(self) -> None:
        """Clear counter and lock."""
        self.save(0, False, None)

    def claim_otp(self, otp_id: str, when: datetime) -> bool:
        """Consume an OTP challenge as part of this attempt. False if already used."""
        self._cursor.execute(_CLAIM_OTP_SQL, (when.isoformat(), otp_id))
        return self._cursor.rowcount == 1


class EmployeeDatabase:
    """
    Thread-safe employee database.

    Manages employees, sessions, OTP challenges and domain whitelist in SQLite.
    All operations are protected by threading.RLock; attempt bookkeeping also
    takes a write lock on the database file (BEGIN IMMEDIATE) so separate
    processes serialize too.
    """

    def __init__(self, db_path: Path):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS employees (
                    id TEXT PRIMARY KEY,
                    employee_id TEXT UNIQUE,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    email TEXT UNIQUE NOT NULL,
                    birth_year INTEGER,
                    points INTEGER NOT NULL DEFAULT 0,
                    login_attempts INTEGER NOT NULL DEFAULT 0,
                    is_locked INTEGER NOT NULL DEFAULT 0,
                    locked_at TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    token TEXT PRIMARY KEY,
                    employee_pk TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (employee_pk) REFERENCES employees(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS otps (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    code_hash TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    used_at TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS domain_whitelist (
                    domain TEXT PRIMARY KEY,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_employee ON sessions(employee_pk)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_expires ON sessions(expires_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_otps_email ON otps(email, created_at)")

            conn.commit()
            conn.close()

            logger.info(f"Employee database initialized: {self.db_path}")

    # ========================================================================
    # Employee Operations
    # ========================================================================

    def create_employee(
        self,
        first_name: str,
        last_name: str,
        email: str,
        employee_id: Optional[str] = None,
        birth_year: Optional[int] = None,
        points: int = 0
    ) -> Employee:
        """
        Add an employee to the directory.

        Args:
            first_name: First name
            last_name: Last name
            email: Email address (stored lower-case)
            employee_id: Company employee ID (optional for OTP enrolment)
            birth_year: Year of birth (optional for OTP enrolment)
            points: Starting points balance

        Returns:
            Created Employee

        Raises:
            sqlite3.IntegrityError: If employee ID or email already exists
        """
        employee = Employee(
            id=str(uuid.uuid4()),
            employee_id=employee_id,
            first_name=first_name,
            last_name=last_name,
            email=email.strip().lower(),
            birth_year=birth_year,
            points=points,
            login_attempts=0,
            is_locked=False,
            locked_at=None,
            created_at=utcnow()
        )

        with self._lock:
            conn = self._connect()
            try:
                conn.execute("""
                    INSERT INTO employees (id, employee_id, first_name, last_name, email,
                                           birth_year, points, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    employee.id,
                    employee.employee_id,
                    employee.first_name,
                    employee.last_name,
                    employee.email,
                    employee.birth_year,
                    employee.points,
                    employee.created_at.isoformat()
                ))
                conn.commit()
            finally:
                conn.close()

        logger.info(f"Employee created: {employee.employee_id or employee.email} ({employee.id})")
        return employee

    def _get_employee(self, column: str, value: str) -> Optional[Employee]:
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(f"SELECT * FROM employees WHERE {column} = ?", (value,)).fetchone()
            finally:
                conn.close()
        return _row_to_employee(row) if row else None

    def get_employee(self, employee_pk: str) -> Optional[Employee]:
        """Get employee by internal id."""
        return self._get_employee("id", employee_pk)

    def get_employee_by_employee_id(self, employee_id: str) -> Optional[Employee]:
        """Get employee by company employee ID."""
        return self._get_employee("employee_id", employee_id)

    def get_employee_by_email(self, email: str) -> Optional[Employee]:
        """Get employee by email (case-insensitive)."""
        return self._get_employee("email", email.strip().lower())

    def list_employees(self) -> List[Employee]:
        """
        Get all employees.

        Returns:
            Employees ordered by last then first name
        """
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT * FROM employees ORDER BY last_name, first_name"
                ).fetchall()
            finally:
                conn.close()
        return [_row_to_employee(row) for row in rows]

    def unlock_employee(self, employee_pk: str) -> bool:
        """
        Clear the failed-attempt counter and lock (HR reset).

        Args:
            employee_pk: Internal employee id

        Returns:
            True if the employee exists
        """
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("""
                    UPDATE employees
                    SET login_attempts = 0, is_locked = 0, locked_at = NULL
                    WHERE id = ?
                """, (employee_pk,))
                conn.commit()
                success = cursor.rowcount > 0
            finally:
                conn.close()

        if success:
            logger.info(f"Employee unlocked: {employee_pk}")
        return success

    @contextmanager
    def attempt_transaction(self, employee_pk: str) -> Iterator[AttemptTransaction]:
        """
        Serialize one verification attempt against an employee row.

        Opens a write transaction (BEGIN IMMEDIATE), re-reads the employee and
        yields an AttemptTransaction. Changes are committed when the block
        exits normally and rolled back if it raises.

        Args:
            employee_pk: Internal employee id

        Yields:
            AttemptTransaction with the freshly read employee

        Raises:
            KeyError: If the employee disappeared
        """
        with self._lock:
            conn = self._connect()
            conn.isolation_level = None
            try:
                cursor = conn.cursor()
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute("SELECT * FROM employees WHERE id = ?", (employee_pk,)).fetchone()
                if row is None:
                    cursor.execute("ROLLBACK")
                    raise KeyError(employee_pk)

                try:
                    yield AttemptTransaction(cursor, _row_to_employee(row))
                except BaseException:
                    cursor.execute("ROLLBACK")
                    raise
                cursor.execute("COMMIT")
            finally:
                conn.close()

    # ========================================================================
    # Session Operations
    # ========================================================================

    def create_session(self, session: SessionRecord) -> None:
        """
        Store a new session.

        Args:
            session: SessionRecord to insert

        Raises:
            sqlite3.IntegrityError: If the token already exists
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("""
                    INSERT INTO sessions (token, employee_pk, expires_at, created_at)
                    VALUES (?, ?, ?, ?)
                """, (
                    session.token,
                    session.employee_pk,
                    session.expires_at.isoformat(),
                    session.created_at.isoformat()
                ))
                conn.commit()
            finally:
                conn.close()

    def get_session(self, token: str) -> Optional[SessionRecord]:
        """
        Get session by token.

        Returns:
            SessionRecord if found (expired or not), None otherwise
        """
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute("SELECT * FROM sessions WHERE token = ?", (token,)).fetchone()
            finally:
                conn.close()

        if not row:
            return None

        return SessionRecord(
            token=row["token"],
            employee_pk=row["employee_pk"],
            expires_at=datetime.fromisoformat(row["expires_at"]),
            created_at=datetime.fromisoformat(row["created_at"])
        )

    def delete_session(self, token: str) -> bool:
        """
        Delete session (logout).

        Returns:
            True if a row was deleted
        """
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    def cleanup_expired_sessions(self, now: Optional[datetime] = None) -> int:
        """
        Remove expired sessions.

        Returns:
            Number of sessions deleted
        """
        now = now or utcnow()
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (now.isoformat(),))
                conn.commit()
                deleted = cursor.rowcount
            finally:
                conn.close()

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired sessions")

        return deleted

    # ========================================================================
    # OTP Operations
    # ========================================================================

    def create_otp(self, email: str, code_hash: str, expires_at: datetime) -> OtpChallenge:
        """Store a new OTP challenge for an email address."""
        challenge = OtpChallenge(
            id=str(uuid.uuid4()),
            email=email,
            code_hash=code_hash,
            expires_at=expires_at,
            created_at=utcnow()
        )

        with self._lock:
            conn = self._connect()
            try:
                conn.execute("""
                    INSERT INTO otps (id, email, code_hash, expires_at, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    challenge.id,
                    challenge.email,
                    challenge.code_hash,
                    challenge.expires_at.isoformat(),
                    challenge.created_at.isoformat()
                ))
                conn.commit()
            finally:
                conn.close()

        return challenge

    def get_latest_otp(self, email: str) -> Optional[OtpChallenge]:
        """Most recent unused challenge for the address."""
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute("""
                    SELECT * FROM otps
                    WHERE email = ? AND used_at IS NULL
                    ORDER BY created_at DESC
                    LIMIT 1
                """, (email,)).fetchone()
            finally:
                conn.close()

        if not row:
            return None

        return OtpChallenge(
            id=row["id"],
            email=row["email"],
            code_hash=row["code_hash"],
            expires_at=datetime.fromisoformat(row["expires_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            used_at=_dt(row["used_at"]),
            attempts=row["attempts"]
        )

    def claim_otp(self, otp_id: str, when: Optional[datetime] = None) -> bool:
        """
        Consume a challenge so it cannot be replayed.

        Returns:
            True if this call consumed it, False if it was already used
        """
        when = when or utcnow()
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(_CLAIM_OTP_SQL, (when.isoformat(), otp_id))
                conn.commit()
                claimed = cursor.rowcount == 1
            finally:
                conn.close()
        return claimed

    def increment_otp_attempts(self, otp_id: str) -> int:
        """
        Count a wrong guess against a challenge.

        Returns:
            Updated attempt count
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("UPDATE otps SET attempts = attempts + 1 WHERE id = ?", (otp_id,))
                row = conn.execute("SELECT attempts FROM otps WHERE id = ?", (otp_id,)).fetchone()
                conn.commit()
            finally:
                conn.close()
        return row["attempts"] if row else 0

    # ========================================================================
    # Domain Whitelist Operations
    # ========================================================================

    def add_whitelisted_domain(self, domain: str, is_active: bool = True) -> WhitelistedDomain:
        """Insert or update a whitelisted domain."""
        entry = WhitelistedDomain(
            domain=domain.strip().lower(),
            is_active=is_active,
            created_at=utcnow()
        )

        with self._lock:
            conn = self._connect()
            try:
                conn.execute("""
                    INSERT INTO domain_whitelist (domain, is_active, created_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(domain) DO UPDATE SET is_active = excluded.is_active
                """, (entry.domain, 1 if entry.is_active else 0, entry.created_at.isoformat()))
                conn.commit()
            finally:
                conn.close()

        logger.info(f"Domain whitelist updated: {entry.domain} (active={entry.is_active})")
        return entry

    def get_whitelisted_domain(self, domain: str) -> Optional[WhitelistedDomain]:
        """Look up a domain (case-insensitive)."""
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT * FROM domain_whitelist WHERE domain = ?",
                    (domain.strip().lower(),)
                ).fetchone()
            finally:
                conn.close()

        if not row:
            return None

        return WhitelistedDomain(
            domain=row["domain"],
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"])
        )
