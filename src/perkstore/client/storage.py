"""
Client-side session cache.

Persists the bearer token, expiry, employee snapshot and new-user flag to a
JSON file readable only by the current user. The server stays the source of
truth; this cache only survives restarts until the next confirmation.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 timestamp as an aware datetime (naive values are taken as UTC)."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class CachedSession:
    """
    Cached session fields.

    Attributes:
        token: Bearer token
        expires_at: Server-issued absolute expiry
        employee: Last known employee profile
        is_new_user: Whether the account was created by this login
    """
    token: str
    expires_at: datetime
    employee: Dict[str, Any] = field(default_factory=dict)
    is_new_user: bool = False

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CachedSession":
        return cls(
            token=data["token"],
            expires_at=parse_timestamp(data["expires_at"]),
            employee=data.get("employee") or {},
            is_new_user=bool(data.get("is_new_user", False))
        )


class SessionCache:
    """
    Session cache backed by a JSON file.
    """

    def __init__(self, path: Optional[Path] = None):
        """
        Initialize cache.

        Args:
            path: Cache file (default: ~/.perkstore_session)
        """
        if path is None:
            path = Path.home() / ".perkstore_session"

        self.path = Path(path)
        self._current: Optional[CachedSession] = None

    def load(self) -> Optional[CachedSession]:
        """
        Load the cached session from disk.

        Returns:
            CachedSession, or None if the file is missing or unreadable
        """
        if not self.path.exists():
            self._current = None
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                self._current = CachedSession.from_json(json.load(f))
                return self._current
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load session cache: {e}")
            self._current = None
            return None

    def save(self, session: CachedSession) -> None:
        """Write the session to disk with mode 0600."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(session.to_json(), f, indent=2)

        self.path.chmod(0o600)  # rw-------
        self._current = session
        logger.debug(f"Session cached to {self.path}")

    def update(
        self,
        expires_at: Optional[datetime] = None,
        employee: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Overwrite cached fields that differ from the given values.

        Returns:
            True if the file was rewritten
        """
        current = self._current or self.load()
        if current is None:
            return False

        changed = False
        if expires_at is not None and expires_at != current.expires_at:
            current.expires_at = expires_at
            changed = True
        if employee is not None and employee != current.employee:
            current.employee = employee
            changed = True

        if changed:
            self.save(current)
        return changed

    def clear(self) -> None:
        """Remove the cached session."""
        self._current = None
        if self.path.exists():
            try:
                self.path.unlink()
                logger.info("Session cache cleared")
            except OSError as e:
                logger.error(f"Failed to clear session cache: {e}")
