"""Dashboard API over the shared store.

Endpoints:
  GET    /api/logs             - Combined log stream, filterable, cursor-paginated
  POST   /api/logs             - Append an activity entry (auth)
  POST   /api/logs/{id}/retry  - Retry a failed send through the bot (auth)
  DELETE /api/logs/clear       - Delete every log entry (auth)
  POST   /api/logs/rotate      - Purge old log entries through the bot (auth)
  GET    /api/stats            - Store statistics

Reads go straight to SQLite. Actions that send messages or must be
serialized with the bot's writes are proxied to the bot's HTTP API.
"""
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Any

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .config import Settings
from .database import Database
from .errors import UpstreamDeliveryError, ValidationError
from .logquery import LogFilter, parse_limit
from .web import TOKEN_HEADER, endpoint, parse_id, parse_max_age, read_json

logger = logging.getLogger(__name__)

ACTIVITY_FIELDS = ('source', 'channel_id', 'user_id', 'error', 'message_id', 'ref_id', 'action', 'emoji', 'metadata')


def create_dashboard_app(db, settings: Settings, bot_client: httpx.AsyncClient,
                         lifespan: Any | None = None) -> Starlette:
    """``bot_client`` must have ``base_url`` pointing at the bot's HTTP API."""
    public = endpoint()
    protected = endpoint(settings.logs_token, auth=True)

    async def call_bot(method: str, path: str, payload: dict | None = None) -> tuple[int, dict]:
        headers = {TOKEN_HEADER: settings.logs_token or ''}
        try:
            resp = await bot_client.request(method, path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Bot API %s %s unreachable: %s", method, path, e)
            raise UpstreamDeliveryError("Bot API unreachable") from e
        try:
            data = resp.json()
        except ValueError:
            data = {'error': resp.text or f"Bot API error: {resp.status_code}"}
        if not isinstance(data, dict):
            data = {'result': data}
        return resp.status_code, data

    @public
    async def list_logs(request: Request) -> JSONResponse:
        params = request.query_params
        page = await db.query_logs(
            LogFilter.from_params(params), params.get('cursor') or None, parse_limit(params.get('limit'))
        )
        return JSONResponse(page.to_dict())

    @protected
    async def create_log(request: Request) -> JSONResponse:
        body = await read_json(request)
        kind = (body.get('kind') or '').strip() if isinstance(body.get('kind'), str) else ''
        if not kind:
            raise ValidationError("Missing required field: kind")
        fields = {name: body[name] for name in ACTIVITY_FIELDS if body.get(name) not in (None, '')}
        if 'ref_id' in fields:
            fields['ref_id'] = parse_id(fields['ref_id'], 'ref_id')
        if 'metadata' in fields and not isinstance(fields['metadata'], dict):
            raise ValidationError("metadata must be an object")
        log_id = await db.append_activity_log(kind, status=body.get('status') or 'success', **fields)
        return JSONResponse({'message': 'Log created', 'id': log_id})

    @protected
    async def retry_log(request: Request) -> JSONResponse:
        log_id = parse_id(request.path_params['id'], 'log ID')
        status, data = await call_bot('POST', f'/retry/{log_id}')
        return JSONResponse(data, status_code=status)

    @protected
    async def clear_logs(request: Request) -> JSONResponse:
        send_deleted, activity_deleted = await db.clear_logs()
        return JSONResponse({
            'message': 'All logs cleared successfully',
            'sendLogsDeleted': send_deleted,
            'activityLogsDeleted': activity_deleted,
        })

    @protected
    async def rotate_logs(request: Request) -> JSONResponse:
        body = await read_json(request, optional=True)
        max_age = parse_max_age(body)
        status, data = await call_bot('POST', '/rotate-logs', {'maxAgeDays': max_age})
        if status >= 400:
            return JSONResponse({'error': data.get('error') or f"Bot API error: {status}"}, status_code=status)
        return JSONResponse({'message': 'Log rotation completed', 'archivedRecords': data.get('archivedRecords')})

    @public
    async def stats(request: Request) -> JSONResponse:
        return JSONResponse(await db.get_stats())

    routes = [
        Route('/api/logs', list_logs),
        Route('/api/logs', create_log, methods=['POST']),
        Route('/api/logs/clear', clear_logs, methods=['DELETE']),
        Route('/api/logs/rotate', rotate_logs, methods=['POST']),
        Route('/api/logs/{id}/retry', retry_log, methods=['POST']),
        Route('/api/stats', stats),
    ]

    kwargs: dict[str, Any] = {'routes': routes}
    if lifespan is not None:
        kwargs['lifespan'] = lifespan
    return Starlette(**kwargs)


def main() -> None:
    settings = Settings.from_env()
    handler = RotatingFileHandler(
        filename=settings.dashboard_log_file, encoding='utf-8', maxBytes=5_000_000, backupCount=3
    )
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s %(levelname)-8s %(name)s: %(message)s',
        handlers=[handler, logging.StreamHandler()],
    )
    if not settings.logs_token:
        logger.warning("LOGS_TOKEN is not set; every protected dashboard endpoint will answer 401")

    db = Database(settings.db_path)
    bot_client = httpx.AsyncClient(base_url=settings.bot_http_base, timeout=30.0)

    @asynccontextmanager
    async def lifespan(app):
        await db.connect()
        try:
            yield
        finally:
            await bot_client.aclose()

    app = create_dashboard_app(db, settings, bot_client, lifespan=lifespan)
    logger.info("Starting dashboard on %s:%s (bot API at %s)", settings.dashboard_host,
                settings.dashboard_port, settings.bot_http_base)
    uvicorn.run(app, host=settings.dashboard_host, port=settings.dashboard_port, log_config=None)


if __name__ == '__main__':
    main()
