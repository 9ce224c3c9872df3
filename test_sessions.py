"""
Tests for bearer session issuance, validation and logout.
"""

import sqlite3
from datetime import timedelta

import pytest

from perkstore.auth import SessionIssuer, UnauthorizedError, VerifiedIdentity


class TestSessionValidation:
    """Test SessionStore.validate via AuthManager.get_session."""

    def test_missing_token(self, manager):
        with pytest.raises(UnauthorizedError) as exc_info:
            manager.get_session("")
        assert exc_info.value.message == "No token provided"

    def test_unknown_token(self, manager, employee):
        with pytest.raises(UnauthorizedError):
            manager.get_session("not-a-real-token")

    def test_expired_token(self, manager, employee, clock):
        issued = manager.verify("E1", 1990)

        clock.advance(days=7, seconds=1)

        with pytest.raises(UnauthorizedError):
            manager.get_session(issued.token)

    def test_token_valid_until_just_before_expiry(self, manager, employee, clock):
        issued = manager.verify("E1", 1990)

        clock.now = issued.expires_at - timedelta(seconds=1)
        assert manager.get_session(issued.token).employee.id == employee.id

        clock.now = issued.expires_at
        with pytest.raises(UnauthorizedError):
            manager.get_session(issued.token)

    def test_expiry_is_never_extended(self, manager, employee, clock):
        issued = manager.verify("E1", 1990)

        clock.advance(days=3)
        context = manager.get_session(issued.token)

        assert context.session.expires_at == issued.expires_at

    def test_session_without_employee(self, manager, employee, db):
        issued = manager.verify("E1", 1990)

        conn = sqlite3.connect(str(db.db_path))
        conn.execute("DELETE FROM employees WHERE id = ?", (employee.id,))
        conn.commit()
        conn.close()

        with pytest.raises(UnauthorizedError):
            manager.get_session(issued.token)

    def test_each_login_gets_its_own_token(self, manager, employee):
        first = manager.verify("E1", 1990)
        second = manager.verify("E1", 1990)

        assert first.token != second.token
        assert manager.get_session(first.token).employee.id == employee.id
        assert manager.get_session(second.token).employee.id == employee.id


class TestLogout:
    """Test session invalidation."""

    def test_logout_invalidates(self, manager, employee):
        issued = manager.verify("E1", 1990)

        manager.logout(issued.token)

        with pytest.raises(UnauthorizedError):
            manager.get_session(issued.token)

    def test_logout_is_idempotent(self, manager, employee):
        issued = manager.verify("E1", 1990)

        manager.logout(issued.token)
        manager.logout(issued.token)
        manager.logout("unknown-token")
        manager.logout(None)

    def test_logout_leaves_other_sessions(self, manager, employee):
        first = manager.verify("E1", 1990)
        second = manager.verify("E1", 1990)

        manager.logout(first.token)

        assert manager.get_session(second.token).employee.id == employee.id


class TestPurge:
    """Test expired session housekeeping."""

    def test_purge_removes_only_expired(self, manager, employee, clock):
        old = manager.verify("E1", 1990)
        clock.advance(days=6)
        fresh = manager.verify("E1", 1990)
        clock.advance(days=2)

        assert manager.purge_expired_sessions() == 1
        assert manager.db.get_session(old.token) is None
        assert manager.get_session(fresh.token).employee.id == employee.id


class TestSessionIssuer:
    """Test token generation and collision handling."""

    def test_retries_on_collision(self, db, employee, clock):
        tokens = iter(["dup", "dup", "unique"])
        issuer = SessionIssuer(db, clock=clock, token_factory=lambda _: next(tokens))

        first = issuer.issue(VerifiedIdentity(employee=employee))
        second = issuer.issue(VerifiedIdentity(employee=employee))

        assert first.token == "dup"
        assert second.token == "unique"

    def test_gives_up_after_max_retries(self, db, employee, clock):
        issuer = SessionIssuer(db, max_retries=2, clock=clock, token_factory=lambda _: "same")
        issuer.issue(VerifiedIdentity(employee=employee))

        with pytest.raises(RuntimeError):
            issuer.issue(VerifiedIdentity(employee=employee))

    def test_new_user_flag_is_carried(self, db, employee, clock):
        issued = SessionIssuer(db, clock=clock).issue(VerifiedIdentity(employee=employee, is_new_user=True))

        assert issued.is_new_user
        assert issued.to_dict()["isNewUser"] is True
        assert issued.to_dict()["employee"]["firstName"] == "Ada"
