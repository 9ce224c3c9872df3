"""
Perkstore client: API wrapper, session cache and session tracker.
"""

from .api import AuthApiClient, SessionPayload, TransportError
from .scheduler import ExpiryScheduler
from .storage import CachedSession, SessionCache
from .tracker import ClientSessionTracker, SessionState

__all__ = [
    "AuthApiClient",
    "SessionPayload",
    "TransportError",
    "ExpiryScheduler",
    "CachedSession",
    "SessionCache",
    "ClientSessionTracker",
    "SessionState",
]
