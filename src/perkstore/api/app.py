"""
Authentication HTTP API.

aiohttp application exposing identify/verify, OTP login, session lookup,
logout and the HR unlock endpoint as JSON.
"""

import asyncio
import functools
import hmac
import json
from typing import Awaitable, Callable, Optional

from aiohttp import web
from loguru import logger

from ..auth import AuthManager, AuthError, BadRequestError, ForbiddenError, SessionContext
from ..config import PerkstoreConfig

MANAGER_KEY = web.AppKey("manager", AuthManager)
CONFIG_KEY = web.AppKey("config", PerkstoreConfig)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def bearer_token(request: web.Request) -> Optional[str]:
    """Token from ``Authorization: Bearer <token>``, or None."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


async def read_json(request: web.Request) -> dict:
    """Parse the JSON object body or raise BadRequestError."""
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequestError("Invalid JSON body") from None
    if not isinstance(data, dict):
        raise BadRequestError("JSON object expected")
    return data


def parse_year(value) -> Optional[int]:
    """
    Year from a JSON integer or a string of ASCII digits, else None.

    Floats and booleans are rejected rather than coerced.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        if value.isascii() and value.isdigit():
            return int(value)
    return None


async def run_blocking(func: Callable, *args):
    """Run a blocking manager call (SQLite, bcrypt, SMTP) off the event loop."""
    return await asyncio.to_thread(func, *args)


def authenticated(handler: Callable[[web.Request, SessionContext], Awaitable[web.StreamResponse]]) -> Handler:
    """
    Resolve the bearer token and pass the SessionContext to the handler.

    Raises UnauthorizedError (rendered as 401) when the token is missing,
    unknown or expired.
    """
    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        manager = request.app[MANAGER_KEY]
        context = await run_blocking(manager.get_session, bearer_token(request) or "")
        return await handler(request, context)

    return wrapper


def require_admin(handler: Handler) -> Handler:
    """Reject requests without the configured ``X-Admin-Key``."""
    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        expected = request.app[CONFIG_KEY].server.admin_key
        supplied = request.headers.get("X-Admin-Key", "")
        if not expected or not hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8")):
            logger.warning(f"Rejected admin request to {request.path}")
            raise ForbiddenError()
        return await handler(request)

    return wrapper


# ============================================================================
# Handlers
# ============================================================================

async def handle_identify(request: web.Request) -> web.Response:
    """
    POST /api/auth/identify
    Body: {"employeeId": "..."}
    Returns: {"firstName", "lastName", "maskedEmployeeId"}
    """
    data = await read_json(request)
    employee_id = str(data.get("employeeId") or "").strip()
    if not employee_id:
        raise BadRequestError("employeeId required")

    result = await run_blocking(request.app[MANAGER_KEY].identify, employee_id)
    return web.json_response(result.to_dict())


async def handle_verify(request: web.Request) -> web.Response:
    """
    POST /api/auth/verify
    Body: {"employeeId": "...", "yearOfBirth": 1990}
    Returns: {"token", "employee", "expiresAt"}
    """
    data = await read_json(request)
    employee_id = str(data.get("employeeId") or "").strip()
    year_of_birth = parse_year(data.get("yearOfBirth"))
    if not employee_id or year_of_birth is None:
        raise BadRequestError("employeeId and yearOfBirth required")

    issued = await run_blocking(request.app[MANAGER_KEY].verify, employee_id, year_of_birth)
    return web.json_response(issued.to_dict())


async def handle_send_otp(request: web.Request) -> web.Response:
    """
    POST /api/auth/send-otp
    Body: {"email": "..."}
    Returns: {"ok": true, "timeoutSec", "employee": {"firstName", "lastName"}}
    """
    data = await read_json(request)
    result = await run_blocking(request.app[MANAGER_KEY].send_otp, str(data.get("email") or ""))
    return web.json_response(result)


async def handle_verify_otp(request: web.Request) -> web.Response:
    """
    POST /api/auth/verify-otp
    Body: {"email": "...", "code": "123456"}
    Returns: {"token", "employee", "expiresAt", "isNewUser"}
    """
    data = await read_json(request)
    issued = await run_blocking(
        request.app[MANAGER_KEY].verify_otp,
        str(data.get("email") or ""),
        str(data.get("code") or "")
    )
    return web.json_response(issued.to_dict())


async def handle_lookup_by_email(request: web.Request) -> web.Response:
    """GET /api/auth/lookup-by-email?email=..."""
    email = request.query.get("email", "").strip()
    if not email:
        raise BadRequestError("email required")
    result = await run_blocking(request.app[MANAGER_KEY].lookup_by_email, email)
    return web.json_response(result)


async def handle_check_domain(request: web.Request) -> web.Response:
    """GET /api/auth/check-domain/{domain}"""
    result = await run_blocking(request.app[MANAGER_KEY].check_domain, request.match_info["domain"])
    return web.json_response(result)


@authenticated
async def handle_session(request: web.Request, context: SessionContext) -> web.Response:
    """
    GET /api/auth/session
    Headers: Authorization: Bearer <token>
    Returns: {"employee", "expiresAt"}
    """
    return web.json_response(context.to_dict())


async def handle_logout(request: web.Request) -> web.Response:
    """
    POST /api/auth/logout
    Headers: Authorization: Bearer <token> (optional)
    Returns: {"message"}; succeeds for unknown or missing tokens too
    """
    token = bearer_token(request)
    if token:
        await run_blocking(request.app[MANAGER_KEY].logout, token)
    return web.json_response({"message": "Logged out successfully"})


@require_admin
async def handle_unlock(request: web.Request) -> web.Response:
    """
    POST /api/admin/employees/{employee_id}/unlock
    Headers: X-Admin-Key: <key>
    Returns: unlocked employee profile
    """
    employee = await run_blocking(request.app[MANAGER_KEY].unlock, request.match_info["employee_id"])
    profile = employee.public_profile()
    profile.update({"loginAttempts": employee.login_attempts, "isLocked": employee.is_locked})
    return web.json_response(profile)


async def handle_health(request: web.Request) -> web.Response:
    """GET /health"""
    return web.json_response({"status": "ok"})


# ============================================================================
# Middleware
# ============================================================================

@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Render AuthError as JSON; log and hide anything unexpected."""
    try:
        return await handler(request)
    except AuthError as e:
        if e.status_code >= 500:
            logger.error(f"{request.method} {request.path}: {e.message}")
        else:
            logger.debug(f"{request.method} {request.path} -> {e.status_code} {e.code}")
        return web.json_response(e.to_dict(), status=e.status_code)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return web.json_response(
            {"message": "Internal server error", "code": "INTERNAL"},
            status=500
        )


CORS_HEADERS = {
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Admin-Key",
}


def cors_middleware_factory(origin: str):
    """CORS headers on every response, including HTTP errors raised by routing."""
    @web.middleware
    async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                e.headers["Access-Control-Allow-Origin"] = origin
                e.headers.update(CORS_HEADERS)
                raise

        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers.update(CORS_HEADERS)
        return response

    return cors_middleware


# ============================================================================
# Application
# ============================================================================

def create_app(config: PerkstoreConfig, manager: Optional[AuthManager] = None) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        config: Loaded configuration
        manager: AuthManager to serve (default: built from config)

    Returns:
        Configured web.Application
    """
    app = web.Application(middlewares=[
        cors_middleware_factory(config.server.cors_origin),
        error_middleware,
    ])
    app[CONFIG_KEY] = config
    app[MANAGER_KEY] = manager or AuthManager(config)

    app.router.add_post("/api/auth/identify", handle_identify)
    app.router.add_post("/api/auth/verify", handle_verify)
    if config.otp.enabled:
        app.router.add_post("/api/auth/send-otp", handle_send_otp)
        app.router.add_post("/api/auth/verify-otp", handle_verify_otp)
    app.router.add_get("/api/auth/lookup-by-email", handle_lookup_by_email)
    app.router.add_get("/api/auth/check-domain/{domain}", handle_check_domain)
    app.router.add_get("/api/auth/session", handle_session)
    app.router.add_post("/api/auth/logout", handle_logout)
    app.router.add_post("/api/admin/employees/{employee_id}/unlock", handle_unlock)
    app.router.add_get("/health", handle_health)

    if not config.server.admin_key:
        logger.warning("No admin key configured, admin endpoints are disabled")

    return app
