"""HTTP API served from inside the bot process.

Endpoints:
  GET  /health          - Liveness, no auth
  POST /add-reminder    - Create and schedule a daily reminder
  POST /add-task        - Create and schedule a task (optional weekdays)
  POST /send-once       - Send a one-off message
  POST /retry/{id}      - Retry a failed task/reminder send
  POST /rotate-logs     - Purge old log entries
  GET  /stats           - Store statistics plus uptime

Everything except /health requires the ``x-logs-token`` header.
"""
import logging
import time
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .config import Settings
from .delivery import record_activity
from .errors import CadenceError
from .retry import retry_send
from .timestamps import format_timestamp, utc_now
from .web import endpoint, parse_id, parse_max_age, read_json

logger = logging.getLogger(__name__)


def _days_field(raw):
    # Accept [1, 2, 3] as well as "1,2,3"
    if isinstance(raw, (list, tuple)):
        return ','.join(str(d) for d in raw)
    return raw


def create_app(db, service, settings: Settings, lifespan: Any | None = None, monotonic=time.monotonic) -> Starlette:
    """Create the bot's Starlette app; ``service`` must already be started."""
    started = monotonic()
    protected = endpoint(settings.logs_token, auth=True)

    def uptime() -> float:
        return round(monotonic() - started, 3)

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({'status': 'ok', 'uptimeSeconds': uptime(), 'timestamp': format_timestamp(utc_now())})

    @protected
    async def add_reminder(request: Request) -> JSONResponse:
        body = await read_json(request)
        row = await service.add_reminder(
            body.get('content'), body.get('channel_id'), body.get('user_id'), body.get('time'), source='http_api'
        )
        return JSONResponse({'message': 'Reminder added', 'id': row['id']})

    @protected
    async def add_task(request: Request) -> JSONResponse:
        body = await read_json(request)
        row = await service.add_task(
            body.get('content'), body.get('channel_id'), body.get('user_id'), body.get('time'),
            _days_field(body.get('days')), source='http_api',
        )
        return JSONResponse({'message': 'Task added', 'id': row['id']})

    @protected
    async def send_once(request: Request) -> JSONResponse:
        body = await read_json(request)
        outcome = await service.send_once(body.get('content'), body.get('channel_id'), source='http_api')
        if not outcome.ok:
            return JSONResponse({'error': outcome.error, 'log_id': outcome.log_id}, status_code=502)
        return JSONResponse({'message': 'Message sent', 'message_id': outcome.message_id})

    @protected
    async def retry(request: Request) -> JSONResponse:
        log_id = parse_id(request.path_params['id'], 'log ID')
        outcome = await retry_send(db, service.delivery, log_id)
        if not outcome.ok:
            return JSONResponse({'error': f"Retry failed: {outcome.error}", 'result': outcome.to_dict()}, status_code=502)
        return JSONResponse({'message': 'Retry sent successfully', 'result': outcome.to_dict()})

    @protected
    async def rotate_logs(request: Request) -> JSONResponse:
        body = await read_json(request, optional=True)
        max_age = parse_max_age(body)
        try:
            archived = await db.rotate_logs(max_age)
        except CadenceError as e:
            await record_activity(
                db, 'logs_rotation_failed', source='http_api', status='failed', error=e.message,
                action='rotate_logs',
            )
            raise
        await record_activity(
            db, 'logs_rotated', source='http_api', action='rotate_logs',
            metadata={'maxAgeDays': max_age, 'archivedRecords': archived},
        )
        return JSONResponse({'message': 'Log rotation completed', 'archivedRecords': archived, 'maxAgeDays': max_age})

    @protected
    async def stats(request: Request) -> JSONResponse:
        result = await db.get_stats()
        result.update(uptimeSeconds=uptime(), timestamp=format_timestamp(utc_now()))
        return JSONResponse(result)

    routes = [
        Route('/health', health),
        Route('/add-reminder', add_reminder, methods=['POST']),
        Route('/add-task', add_task, methods=['POST']),
        Route('/send-once', send_once, methods=['POST']),
        Route('/retry/{id}', retry, methods=['POST']),
        Route('/rotate-logs', rotate_logs, methods=['POST']),
        Route('/stats', stats),
    ]

    kwargs: dict[str, Any] = {'routes': routes}
    if lifespan is not None:
        kwargs['lifespan'] = lifespan
    return Starlette(**kwargs)
