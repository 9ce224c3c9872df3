"""
Tests for the client session cache, expiry scheduler and session tracker.
"""

import asyncio
import stat
from datetime import timedelta

import pytest

from perkstore.api import create_app
from perkstore.auth import AuthManager, InvalidCredentialError
from perkstore.auth.models import utcnow
from perkstore.client import (
    AuthApiClient,
    CachedSession,
    ClientSessionTracker,
    ExpiryScheduler,
    SessionCache,
    SessionPayload,
    SessionState,
)


@pytest.fixture
def live_manager(config, db, sender):
    """Manager on the wall clock, so client timers and server expiry agree."""
    return AuthManager(config, db=db, sender=sender)


@pytest.fixture
async def api(aiohttp_server, config, live_manager):
    server = await aiohttp_server(create_app(config, live_manager))
    client = AuthApiClient(str(server.make_url("/")))
    yield client
    await client.close()


@pytest.fixture
async def unreachable_api():
    client = AuthApiClient("http://127.0.0.1:1", timeout=2.0)
    yield client
    await client.close()


@pytest.fixture
def cache(config):
    return SessionCache(config.client.cache_path)


@pytest.fixture
def tracker(api, cache):
    tracker = ClientSessionTracker(api, cache)
    yield tracker
    tracker.close()


class TestSessionCache:
    """Test the on-disk session cache."""

    def test_save_and_load(self, cache):
        session = CachedSession(token="abc", expires_at=utcnow(), employee={"firstName": "Ada"})

        cache.save(session)

        loaded = SessionCache(cache.path).load()
        assert loaded == session
        assert stat.S_IMODE(cache.path.stat().st_mode) == 0o600

    def test_corrupt_file_is_ignored(self, cache):
        cache.path.write_text("{broken")

        assert cache.load() is None

    def test_update_writes_only_changes(self, cache):
        expires = utcnow()
        cache.save(CachedSession(token="abc", expires_at=expires, employee={"points": 1}))

        assert cache.update(expires_at=expires, employee={"points": 1}) is False
        assert cache.update(employee={"points": 2}) is True
        assert SessionCache(cache.path).load().employee == {"points": 2}

    def test_clear(self, cache):
        cache.save(CachedSession(token="abc", expires_at=utcnow()))

        cache.clear()

        assert not cache.path.exists()
        assert cache.load() is None


class TestExpiryScheduler:
    """Test expiry timers."""

    async def test_rearm_keeps_single_timer_for_latest_token(self, clock):
        expired = []
        scheduler = ExpiryScheduler(on_expiry=expired.append, clock=clock)

        scheduler.arm("first", clock() + timedelta(hours=1))
        scheduler.arm("second", clock() + timedelta(hours=1))

        assert scheduler.armed_token == "second"
        assert scheduler.active_timers == 1

        clock.advance(hours=2)
        scheduler.reconcile()
        await asyncio.sleep(0.05)

        assert expired == ["second"]
        assert scheduler.active_timers == 0

    async def test_reconcile_after_sleep_fires_overdue_expiry(self, clock):
        expired = []
        scheduler = ExpiryScheduler(on_expiry=expired.append, clock=clock)
        scheduler.arm("token", clock() + timedelta(hours=1))

        await asyncio.sleep(0.05)
        assert expired == []

        clock.advance(hours=1, seconds=1)
        scheduler.reconcile()
        await asyncio.sleep(0.05)

        assert expired == ["token"]

    async def test_early_fire_rearms(self, clock):
        """Loop timer fires while the wall clock is still before expiry."""
        expired = []
        scheduler = ExpiryScheduler(on_expiry=expired.append, clock=clock)
        scheduler.arm("token", clock() + timedelta(seconds=0.05))

        await asyncio.sleep(0.15)
        assert expired == []
        assert scheduler.active_timers == 1

        clock.advance(seconds=1)
        await asyncio.sleep(0.15)
        assert expired == ["token"]

    async def test_warning_inside_window_fires_immediately(self, clock):
        warned = []
        scheduler = ExpiryScheduler(
            on_expiry=lambda token: None,
            on_warning=warned.append,
            warning_window=timedelta(minutes=5),
            clock=clock
        )

        scheduler.arm("token", clock() + timedelta(minutes=2))
        await asyncio.sleep(0.01)

        assert warned == ["token"]
        scheduler.cancel()

    async def test_cancel(self, clock):
        expired = []
        scheduler = ExpiryScheduler(on_expiry=expired.append, clock=clock)
        scheduler.arm("token", clock())

        scheduler.cancel()
        await asyncio.sleep(0.05)

        assert expired == []
        assert scheduler.armed_token is None


class TestTrackerLogin:
    """Test login through the tracker."""

    async def test_login_caches_session(self, tracker, cache, employee):
        identity = await tracker.identify("E1")
        assert identity["maskedEmployeeId"] == "*1"

        profile = await tracker.login("E1", 1990)

        assert profile["firstName"] == "Ada"
        assert tracker.state == SessionState.AUTHENTICATED
        assert tracker.scheduler.armed_token == tracker.token
        assert cache.load().token == tracker.token

    async def test_wrong_year_leaves_tracker_unauthenticated(self, tracker, cache, employee):
        with pytest.raises(InvalidCredentialError) as exc_info:
            await tracker.login("E1", 1991)

        assert exc_info.value.remaining_attempts == 1
        assert tracker.state == SessionState.UNAUTHENTICATED
        assert cache.load() is None

    async def test_second_login_replaces_timer(self, tracker, employee):
        await tracker.login("E1", 1990)
        first = tracker.token

        await tracker.login("E1", 1990)

        assert tracker.token != first
        assert tracker.scheduler.armed_token == tracker.token
        assert tracker.scheduler.active_timers == 1

    async def test_otp_login_marks_new_user(self, tracker, db, sender):
        db.add_whitelisted_domain("corp.com")
        await tracker.send_otp("new@corp.com")

        await tracker.login_with_otp("new@corp.com", sender.last_code)

        assert tracker.is_new_user
        assert tracker.cache.load().is_new_user


class TestTrackerInitialize:
    """Test rehydration from the cache."""

    async def test_no_cache(self, tracker):
        assert await tracker.initialize() == SessionState.UNAUTHENTICATED

    async def test_restores_and_confirms(self, api, cache, live_manager, employee):
        issued = live_manager.verify("E1", 1990)
        cache.save(CachedSession(
            token=issued.token,
            expires_at=issued.expires_at - timedelta(days=1),
            employee={"firstName": "stale"}
        ))
        tracker = ClientSessionTracker(api, SessionCache(cache.path))

        state = await tracker.initialize()

        assert state == SessionState.AUTHENTICATED
        assert tracker.expires_at == issued.expires_at
        assert tracker.employee["firstName"] == "Ada"
        assert cache.load().expires_at == issued.expires_at
        tracker.close()

    async def test_unchanged_session_is_not_rewritten(self, api, cache, live_manager, employee, monkeypatch):
        issued = live_manager.verify("E1", 1990)
        cache.save(CachedSession(
            token=issued.token,
            expires_at=issued.expires_at,
            employee=issued.employee.public_profile()
        ))
        writes = []
        tracker_cache = SessionCache(cache.path)
        monkeypatch.setattr(tracker_cache, "save", writes.append)
        tracker = ClientSessionTracker(api, tracker_cache)

        assert await tracker.initialize() == SessionState.AUTHENTICATED
        assert writes == []
        tracker.close()

    async def test_invalid_token_clears_cache(self, tracker, cache):
        cache.save(CachedSession(token="revoked", expires_at=utcnow() + timedelta(days=1)))

        state = await tracker.initialize()

        assert state == SessionState.UNAUTHENTICATED
        assert tracker.token is None
        assert not cache.path.exists()

    async def test_transport_error_keeps_cache(self, unreachable_api, cache):
        cache.save(CachedSession(token="abc", expires_at=utcnow() + timedelta(days=1)))
        tracker = ClientSessionTracker(unreachable_api, cache)

        state = await tracker.initialize()

        assert state == SessionState.UNAUTHENTICATED
        assert cache.path.exists()
        tracker.close()


class TestTrackerFocusAndLogout:
    """Test focus re-checks, timers and logout."""

    async def test_focus_refreshes_points(self, tracker, live_manager, employee, db):
        await tracker.login("E1", 1990)
        conn = db._connect()
        conn.execute("UPDATE employees SET points = 500 WHERE id = ?", (employee.id,))
        conn.commit()
        conn.close()

        await tracker.on_focus()

        assert tracker.employee["points"] == 500
        assert tracker.cache.load().employee["points"] == 500
        assert tracker.state == SessionState.AUTHENTICATED

    async def test_focus_after_server_invalidation_logs_out(self, tracker, live_manager, employee):
        await tracker.login("E1", 1990)
        live_manager.logout(tracker.token)

        state = await tracker.on_focus()

        assert state == SessionState.LOGGED_OUT
        assert tracker.token is None
        assert not tracker.cache.path.exists()
        assert tracker.scheduler.active_timers == 0

    async def test_stale_focus_check_keeps_newer_login(self, tracker, api, live_manager, employee, monkeypatch):
        """A rejection for a token replaced mid-request must not log out the new session."""
        await tracker.login("E1", 1990)
        live_manager.logout(tracker.token)

        gate = asyncio.Event()
        real_get_session = api.get_session

        async def delayed_get_session(token):
            await gate.wait()
            return await real_get_session(token)

        monkeypatch.setattr(api, "get_session", delayed_get_session)
        focus = asyncio.create_task(tracker.on_focus())
        await asyncio.sleep(0)

        await tracker.login("E1", 1990)
        gate.set()
        await focus

        assert tracker.state == SessionState.AUTHENTICATED
        assert tracker.token is not None
        assert tracker.cache.load().token == tracker.token
        assert live_manager.get_session(tracker.token).employee.id == employee.id

    async def test_logout_invalidates_server_session(self, tracker, live_manager, employee):
        await tracker.login("E1", 1990)
        token = tracker.token

        await tracker.logout()

        assert tracker.state == SessionState.LOGGED_OUT
        assert not tracker.cache.path.exists()
        assert live_manager.db.get_session(token) is None

    async def test_logout_clears_local_state_when_server_unreachable(self, unreachable_api, cache):
        tracker = ClientSessionTracker(unreachable_api, cache)
        tracker.establish(SessionPayload(
            employee={"firstName": "Ada"},
            expires_at=utcnow() + timedelta(days=1),
            token="abc"
        ))

        await tracker.logout()

        assert tracker.state == SessionState.LOGGED_OUT
        assert tracker.token is None
        assert not cache.path.exists()
        assert tracker.scheduler.active_timers == 0

    async def test_warning_and_expiry_timers(self, api, cache, live_manager, employee):
        live_manager.issuer.ttl = timedelta(seconds=0.5)
        states = []
        warnings = []
        tracker = ClientSessionTracker(
            api,
            cache,
            warning_window=timedelta(seconds=0.3),
            on_state_change=states.append,
            on_warning=warnings.append
        )

        await tracker.login("E1", 1990)
        await asyncio.sleep(0.35)
        assert tracker.state == SessionState.EXPIRING_SOON
        assert len(warnings) == 1

        await asyncio.sleep(0.4)
        assert tracker.logout_task is not None
        await tracker.logout_task

        assert tracker.state == SessionState.LOGGED_OUT
        assert states == [
            SessionState.AUTHENTICATED,
            SessionState.EXPIRING_SOON,
            SessionState.LOGGED_OUT,
        ]
        assert not cache.path.exists()

    async def test_close_cancels_timers(self, tracker, employee):
        await tracker.login("E1", 1990)

        tracker.close()

        assert tracker.scheduler.active_timers == 0
