"""
Shared fixtures for the Perkstore test suite.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest

from perkstore.auth import AuthManager, EmployeeDatabase, OtpSender
from perkstore.config import (
    ClientSettings,
    DatabaseSettings,
    OtpSettings,
    PerkstoreConfig,
    ServerSettings,
)

ADMIN_KEY = "test-admin-key"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class CapturingSender(OtpSender):
    """OTP sender that keeps codes for the test to read."""

    def __init__(self):
        self.sent: List[Tuple[str, str, int]] = []

    def send(self, email: str, code: str, ttl_seconds: int) -> None:
        self.sent.append((email, code, ttl_seconds))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return PerkstoreConfig(
        database=DatabaseSettings(path=tmp_path / "perkstore.db"),
        otp=OtpSettings(hash_rounds=4),
        server=ServerSettings(admin_key=ADMIN_KEY),
        client=ClientSettings(cache_path=tmp_path / "session.json"),
    )


@pytest.fixture
def db(config):
    return EmployeeDatabase(config.database.path)


@pytest.fixture
def sender():
    return CapturingSender()


@pytest.fixture
def manager(config, db, sender, clock):
    return AuthManager(config, db=db, sender=sender, clock=clock)


@pytest.fixture
def employee(db):
    """Employee E1 born in 1990."""
    return db.create_employee(
        first_name="Ada",
        last_name="Lovelace",
        email="ada@corp.com",
        employee_id="E1",
        birth_year=1990,
        points=120,
    )
