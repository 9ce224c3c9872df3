"""
HTTP client for the authentication API.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp
from loguru import logger

from ..auth.errors import error_from_payload
from .storage import parse_timestamp


class TransportError(Exception):
    """The server could not be reached or answered with garbage."""


@dataclass
class SessionPayload:
    """Session fields returned by verify, verify-otp and session endpoints."""
    employee: Dict[str, Any]
    expires_at: datetime
    token: Optional[str] = None
    is_new_user: bool = False

    @classmethod
    def from_json(cls, data: Dict[str, Any], token: Optional[str] = None) -> "SessionPayload":
        return cls(
            employee=data.get("employee") or {},
            expires_at=parse_timestamp(data["expiresAt"]),
            token=data.get("token", token),
            is_new_user=bool(data.get("isNewUser", False))
        )


class AuthApiClient:
    """
    Thin async wrapper around the ``/api/auth`` endpoints.

    Server-side failures are raised as the matching ``AuthError`` subclass,
    connection problems as ``TransportError``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize client.

        Args:
            base_url: Server root, e.g. http://localhost:8080
            timeout: Total request timeout in seconds
            session: Shared ClientSession (default: one owned by this client)
        """
        self.base_url = base_url
        self.timeout = timeout
        self.session = session
        self._owns_session = False

    async def __aenter__(self) -> "AuthApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None
        self._owns_session = False

    async def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}{path}"
        headers = {"Authorization": f"Bearer {token}"} if token else {}

        try:
            async with self._get_session().request(
                method, url, json=body, params=params, headers=headers
            ) as resp:
                status = resp.status
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"{method} {path} failed: {e!r}")
            raise TransportError(f"Cannot reach {self.base_url}: {e}") from e

        try:
            payload = json.loads(text) if text else {}
        except json.JSONDecodeError:
            if status >= 400:
                payload = {}
            else:
                raise TransportError(f"Invalid JSON from {path}") from None

        if status >= 400:
            raise error_from_payload(status, payload)
        return payload

    async def identify(self, employee_id: str) -> Dict[str, Any]:
        """Returns ``{firstName, lastName, maskedEmployeeId}``."""
        return await self._request("POST", "/api/auth/identify", body={"employeeId": employee_id})

    async def verify(self, employee_id: str, year_of_birth: int) -> SessionPayload:
        data = await self._request(
            "POST", "/api/auth/verify",
            body={"employeeId": employee_id, "yearOfBirth": year_of_birth}
        )
        return SessionPayload.from_json(data)

    async def send_otp(self, email: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/auth/send-otp", body={"email": email})

    async def verify_otp(self, email: str, code: str) -> SessionPayload:
        data = await self._request("POST", "/api/auth/verify-otp", body={"email": email, "code": code})
        return SessionPayload.from_json(data)

    async def get_session(self, token: str) -> SessionPayload:
        data = await self._request("GET", "/api/auth/session", token=token)
        return SessionPayload.from_json(data, token=token)

    async def logout(self, token: str) -> None:
        await self._request("POST", "/api/auth/logout", token=token)
