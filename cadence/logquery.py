"""Combined, filterable, cursor-paginated view over ``send_logs`` and ``activity_logs``.

Both tables form one logical audit stream. Each table is queried on its own
with the same filters and cursor predicate, then the two result sets are merged
and re-sorted by ``(timestamp, id, log_type)`` descending. Everything here is
pure: the store executes the statements built by :func:`build_select` and
hands the rows to :func:`merge_page`.
"""
import re
from dataclasses import dataclass
from itertools import chain
from typing import Any, Iterable, Mapping

from .errors import InvalidCursorError, ValidationError
from .timestamps import format_timestamp, parse_timestamp

DEFAULT_LIMIT = 50
MAX_LIMIT = 200

_CURSOR_ID = re.compile(r'[0-9]+')


@dataclass(frozen=True)
class LogTable:
    name: str
    log_type: str
    ts_column: str
    columns: tuple[str, ...]
    search_columns: tuple[str, ...]


SEND_LOGS = LogTable(
    name='send_logs',
    log_type='send',
    ts_column='sent_at',
    columns=(
        'id', 'kind', 'source', 'channel_id', 'user_id', 'content', 'status', 'error',
        'message_id', 'ref_id', 'retry_count',
        'NULL AS action', 'NULL AS emoji', 'NULL AS metadata',
    ),
    search_columns=('content', 'kind', 'error'),
)

ACTIVITY_LOGS = LogTable(
    name='activity_logs',
    log_type='activity',
    ts_column='created_at',
    columns=(
        'id', 'kind', 'source', 'channel_id', 'user_id', 'NULL AS content', 'status', 'error',
        'message_id', 'ref_id', 'NULL AS retry_count',
        'action', 'emoji', 'metadata',
    ),
    search_columns=('kind', 'error'),
)

LOG_TABLES = (SEND_LOGS, ACTIVITY_LOGS)
_LOG_TYPES = {t.log_type for t in LOG_TABLES}


@dataclass(frozen=True)
class LogFilter:
    kind: str | None = None
    status: str | None = None
    channel_id: str | None = None
    q: str | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> 'LogFilter':
        def clean(name):
            value = (params.get(name) or '').strip()
            return value or None
        return cls(kind=clean('kind'), status=clean('status'), channel_id=clean('channel_id'), q=clean('q'))


@dataclass
class LogPage:
    logs: list[dict[str, Any]]
    has_more: bool
    next_cursor: str | None

    def to_dict(self) -> dict[str, Any]:
        return {'logs': self.logs, 'hasMore': self.has_more, 'nextCursor': self.next_cursor}


def encode_cursor(timestamp: str, row_id: int, log_type: str) -> str:
    return f"{timestamp}_{row_id}_{log_type}"


def decode_cursor(cursor: str) -> tuple[str, int, str]:
    """Split ``<timestamp>_<id>_<log_type>``, rejecting anything that would silently mis-paginate."""
    parts = (cursor or '').split('_')
    if len(parts) != 3 or not _CURSOR_ID.fullmatch(parts[1]) or parts[2] not in _LOG_TYPES:
        raise InvalidCursorError(f"Invalid cursor: {cursor!r}")
    timestamp, raw_id, log_type = parts
    try:
        parsed = parse_timestamp(timestamp)
    except ValueError:
        raise InvalidCursorError(f"Invalid cursor timestamp: {timestamp!r}") from None
    return format_timestamp(parsed), int(raw_id), log_type


def parse_limit(raw: str | int | None) -> int:
    if raw is None or raw == '':
        return DEFAULT_LIMIT
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer") from None
    if not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")
    return limit


def _like(value: str) -> str:
    escaped = value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


def build_select(table: LogTable, filters: LogFilter, cursor: tuple[str, int, str] | None, limit: int) -> tuple[str, list]:
    """SELECT for one table, newest first, at most ``limit`` rows past the cursor."""
    conditions = []
    params: list[Any] = []
    if filters.kind:
        conditions.append("kind LIKE ? ESCAPE '\\'")
        params.append(_like(filters.kind))
    if filters.status:
        conditions.append('status = ?')
        params.append(filters.status)
    if filters.channel_id:
        conditions.append('channel_id = ?')
        params.append(filters.channel_id)
    if filters.q:
        conditions.append('(' + ' OR '.join(f"{col} LIKE ? ESCAPE '\\'" for col in table.search_columns) + ')')
        params.extend(_like(filters.q) for _ in table.search_columns)
    if cursor is not None:
        ts, cursor_id, cursor_type = cursor
        col = table.ts_column
        predicate = f'{col} < ? OR ({col} = ? AND id < ?)'
        params.extend([ts, ts, cursor_id])
        # rows tying the cursor on (timestamp, id) sort by log_type, descending
        if table.log_type < cursor_type:
            predicate += f' OR ({col} = ? AND id = ?)'
            params.extend([ts, cursor_id])
        conditions.append(f'({predicate})')

    sql = (
        f"SELECT {', '.join(table.columns)}, {table.ts_column} AS timestamp, "
        f"'{table.log_type}' AS log_type FROM {table.name}"
    )
    if conditions:
        sql += ' WHERE ' + ' AND '.join(conditions)
    sql += f' ORDER BY {table.ts_column} DESC, id DESC LIMIT ?'
    params.append(limit)
    return sql, params


def _sort_key(row: Mapping[str, Any]):
    return row['timestamp'], row['id'], row['log_type']


def merge_page(row_sets: Iterable[list[dict[str, Any]]], limit: int) -> LogPage:
    """Merge per-table rows, re-sort newest first and cut one page.

    Each input must hold at most ``limit + 1`` rows past the cursor; that is
    enough to decide both the page and ``has_more``.
    """
    merged = sorted(chain.from_iterable(row_sets), key=_sort_key, reverse=True)
    has_more = len(merged) > limit
    page = merged[:limit]
    next_cursor = None
    if has_more and page:
        last = page[-1]
        next_cursor = encode_cursor(last['timestamp'], last['id'], last['log_type'])
    return LogPage(logs=page, has_more=has_more, next_cursor=next_cursor)
