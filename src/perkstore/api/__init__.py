"""HTTP API for Perkstore authentication."""

from .app import CONFIG_KEY, MANAGER_KEY, bearer_token, create_app

__all__ = ["CONFIG_KEY", "MANAGER_KEY", "bearer_token", "create_app"]
