"""Pieces shared by the bot's HTTP API and the dashboard: auth, body parsing, error mapping."""
import functools
import hmac
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from .errors import CadenceError, StoreError, UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)

TOKEN_HEADER = 'x-logs-token'


def check_token(expected: str | None, provided: str | None) -> None:
    # No configured token means nothing is authorized
    if not expected or not provided:
        raise UnauthorizedError("Unauthorized")
    if not hmac.compare_digest(expected.encode(), provided.encode()):
        raise UnauthorizedError("Unauthorized")


async def read_json(request: Request, optional: bool = False) -> dict:
    if optional and not (await request.body()).strip():
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def parse_id(raw, what: str = 'ID') -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {what}") from None
    if value < 1:
        raise ValidationError(f"Invalid {what}")
    return value


def parse_max_age(body: dict, default: int = 30) -> int:
    raw = body.get('maxAgeDays', body.get('maxAge', default))
    if isinstance(raw, str) and raw.strip().isdigit():
        raw = int(raw)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ValidationError("maxAgeDays must be a non-negative integer")
    return raw


def endpoint(logs_token: str | None = None, auth: bool = False):
    """Wrap a handler so domain errors become ``{"error": ...}`` responses.

    With ``auth`` the ``x-logs-token`` header must match ``logs_token``.
    Store failures are logged and answered with a generic 500.
    """
    def decorate(handler):
        @functools.wraps(handler)
        async def wrapper(request: Request):
            try:
                if auth:
                    check_token(logs_token, request.headers.get(TOKEN_HEADER))
                return await handler(request)
            except StoreError as e:
                logger.exception("%s %s failed: %s", request.method, request.url.path, e)
                return JSONResponse({"error": "Internal storage error"}, status_code=500)
            except CadenceError as e:
                if e.status_code >= 500:
                    logger.error("%s %s failed: %s", request.method, request.url.path, e.message)
                return JSONResponse({"error": e.message}, status_code=e.status_code)
        return wrapper
    return decorate
