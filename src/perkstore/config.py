"""
Perkstore configuration.

Pydantic models loaded from YAML. String values of the form ``${VAR}`` or
``${VAR:default}`` are replaced from the environment before validation.
"""

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator

CONFIG_ENV_VAR = "PERKSTORE_CONFIG"

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


class DatabaseSettings(BaseModel):
    """SQLite database location."""
    path: Path = Path("data/perkstore.db")


class LockoutSettings(BaseModel):
    """
    Failed-attempt policy.

    ``permanent`` locks stay until an administrator unlocks the employee;
    ``timed`` locks lift after ``duration_minutes``.
    """
    max_attempts: int = Field(default=2, ge=1)
    policy: Literal["permanent", "timed"] = "permanent"
    duration_minutes: int = Field(default=30, ge=1)


class SessionSettings(BaseModel):
    """Bearer session issuance."""
    ttl_minutes: int = Field(default=7 * 24 * 60, ge=1)
    token_bytes: int = Field(default=32, ge=16)
    max_issue_retries: int = Field(default=3, ge=1)

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.ttl_minutes)


class SmtpSettings(BaseModel):
    """Outgoing mail server for OTP delivery."""
    host: str = "localhost"
    port: int = 465
    username: Optional[str] = None
    password: Optional[str] = None
    sender: str = "no-reply@perkstore.local"
    use_ssl: bool = True
    company_name: str = "Perkstore"


class OtpSettings(BaseModel):
    """One-time code flow."""
    enabled: bool = True
    code_length: int = Field(default=6, ge=4, le=10)
    ttl_seconds: int = Field(default=120, ge=10)
    hash_rounds: int = Field(default=12, ge=4, le=16)
    delivery: Literal["log", "smtp"] = "log"
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)


class ServerSettings(BaseModel):
    """HTTP API server."""
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origin: str = "*"
    admin_key: Optional[str] = None

    @field_validator("admin_key")
    @classmethod
    def _blank_admin_key_is_unset(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class LoggingSettings(BaseModel):
    """Loguru sinks."""
    level: str = "INFO"
    file: Optional[Path] = None
    rotation: str = "10 MB"
    retention: str = "14 days"


class ClientSettings(BaseModel):
    """Client-side session tracker."""
    base_url: str = "http://localhost:8080"
    cache_path: Path = Field(default_factory=lambda: Path.home() / ".perkstore_session")
    warning_minutes: int = Field(default=5, ge=0)
    request_timeout: float = 10.0


class PerkstoreConfig(BaseModel):
    """Top-level configuration."""
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    lockout: LockoutSettings = Field(default_factory=LockoutSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    otp: OtpSettings = Field(default_factory=OtpSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    client: ClientSettings = Field(default_factory=ClientSettings)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "PerkstoreConfig":
        """
        Load configuration from a YAML file.

        Args:
            path: Path to the YAML file

        Returns:
            Validated PerkstoreConfig
        """
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return cls.model_validate(_substitute_env_vars(raw))


def _substitute_env_vars(value: Any) -> Any:
    """Recursively expand ``${VAR}`` / ``${VAR:default}`` references."""
    if isinstance(value, dict):
        return {key: _substitute_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    if not isinstance(value, str):
        return value

    def _replace(match: re.Match) -> str:
        name, default = match.group(1).strip(), match.group(2)
        env_value = os.getenv(name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default.strip()
        raise ValueError(f"Environment variable {name} not set")

    return _ENV_PATTERN.sub(_replace, value)


def load_config(path: Optional[str | Path] = None) -> PerkstoreConfig:
    """
    Load configuration from ``path``, ``$PERKSTORE_CONFIG``, or defaults.

    Args:
        path: Explicit YAML path (optional)

    Returns:
        PerkstoreConfig
    """
    path = path or os.getenv(CONFIG_ENV_VAR)
    if not path:
        logger.debug("No config file given, using defaults")
        return PerkstoreConfig()

    logger.info(f"Loading config from {path}")
    return PerkstoreConfig.from_yaml(path)
