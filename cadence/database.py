import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta

import aiosqlite

from .errors import NotFoundError, StoreError, ValidationError
from .logquery import LOG_TABLES, LogFilter, LogPage, build_select, decode_cursor, merge_page
from .timestamps import format_timestamp, utc_now

logger = logging.getLogger(__name__)

ITEM_TABLES = {'task': 'tasks', 'reminder': 'reminders'}
LOG_STATUSES = ('success', 'failed')

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        content TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        time TEXT NOT NULL,
        days TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reminders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        content TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        time TEXT NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS send_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        source TEXT,
        channel_id TEXT,
        user_id TEXT,
        content TEXT,
        status TEXT NOT NULL,
        error TEXT,
        message_id TEXT,
        ref_id INTEGER,
        sent_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        source TEXT,
        channel_id TEXT,
        user_id TEXT,
        status TEXT,
        error TEXT,
        message_id TEXT,
        ref_id INTEGER,
        action TEXT,
        emoji TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS completions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id INTEGER,
        reminder_id INTEGER,
        user_id TEXT,
        completed_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (task_id) REFERENCES tasks(id),
        FOREIGN KEY (reminder_id) REFERENCES reminders(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS log_rotation (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        table_name TEXT NOT NULL,
        rotated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        records_archived INTEGER DEFAULT 0
    )
    """,
)

# (table, column, declaration); applied only when the column is missing
MIGRATIONS = (
    ('tasks', 'active', 'INTEGER DEFAULT 1'),
    ('tasks', 'updated_at', 'TEXT'),
    ('reminders', 'active', 'INTEGER DEFAULT 1'),
    ('reminders', 'updated_at', 'TEXT'),
    ('send_logs', 'retry_count', 'INTEGER DEFAULT 0'),
    ('activity_logs', 'metadata', 'TEXT'),
)

# Columns that older databases filled with SQLite's CURRENT_TIMESTAMP ("YYYY-MM-DD HH:MM:SS", UTC)
LEGACY_TIMESTAMP_COLUMNS = (
    ('tasks', 'created_at'),
    ('reminders', 'created_at'),
    ('send_logs', 'sent_at'),
    ('activity_logs', 'created_at'),
    ('completions', 'completed_at'),
    ('log_rotation', 'rotated_at'),
)

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_send_logs_time ON send_logs(sent_at DESC, id DESC)",
    "CREATE INDEX IF NOT EXISTS idx_activity_logs_time ON activity_logs(created_at DESC, id DESC)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_time ON tasks(time)",
    "CREATE INDEX IF NOT EXISTS idx_reminders_time ON reminders(time)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_active ON tasks(active)",
    "CREATE INDEX IF NOT EXISTS idx_reminders_active ON reminders(active)",
    "CREATE INDEX IF NOT EXISTS idx_send_logs_status ON send_logs(status)",
    "CREATE INDEX IF NOT EXISTS idx_send_logs_kind ON send_logs(kind)",
    "CREATE INDEX IF NOT EXISTS idx_send_logs_channel ON send_logs(channel_id)",
    "CREATE INDEX IF NOT EXISTS idx_activity_logs_status ON activity_logs(status)",
    "CREATE INDEX IF NOT EXISTS idx_activity_logs_kind ON activity_logs(kind)",
    "CREATE INDEX IF NOT EXISTS idx_activity_logs_channel ON activity_logs(channel_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_reminders_user ON reminders(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_send_logs_user ON send_logs(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_activity_logs_user ON activity_logs(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_send_logs_status_time ON send_logs(status, sent_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_activity_logs_kind_time ON activity_logs(kind, created_at DESC)",
)


def item_table(kind: str) -> str:
    try:
        return ITEM_TABLES[kind]
    except KeyError:
        raise ValidationError(f"Unknown item kind: {kind!r}") from None


class Database:
    """SQLite store shared by the bot and the dashboard.

    Every operation opens its own connection, so timer callbacks and HTTP
    handlers never share one. WAL mode keeps dashboard reads from blocking on
    (or observing half of) an in-flight write. ``now`` returns an aware
    datetime and is injectable for tests.
    """

    def __init__(self, path: str, now=utc_now):
        self.path = path
        self._now = now

    def _timestamp(self) -> str:
        return format_timestamp(self._now())

    @asynccontextmanager
    async def _connect(self):
        try:
            async with aiosqlite.connect(self.path, timeout=30.0) as conn:
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA synchronous=NORMAL")
                yield conn
        except aiosqlite.Error as e:
            raise StoreError(f"Database error: {e}") from e

    async def connect(self) -> None:
        """Open (creating if needed) the database file and bring the schema up to date."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        async with self._connect() as conn:
            cur = await conn.execute("PRAGMA journal_mode=WAL")
            mode = (await cur.fetchone())[0]
            if str(mode).lower() != 'wal':
                logger.warning("Could not enable WAL mode (journal_mode=%s)", mode)
            for statement in SCHEMA:
                await conn.execute(statement)
            await self._migrate(conn)
            for statement in INDEXES:
                await conn.execute(statement)
            await conn.commit()
            await conn.execute("ANALYZE")
            await conn.commit()
        logger.info("Database ready at %s", os.path.abspath(self.path))

    async def _migrate(self, conn) -> None:
        for table, column, decl in MIGRATIONS:
            cur = await conn.execute(f"PRAGMA table_info({table})")
            cols = {row[1] for row in await cur.fetchall()}
            if column in cols:
                continue
            await conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
            logger.info("Migration: added column %s.%s", table, column)

        now = self._timestamp()
        for table in ITEM_TABLES.values():
            cur = await conn.execute(f"UPDATE {table} SET updated_at = ? WHERE updated_at IS NULL", (now,))
            if cur.rowcount:
                logger.info("Migration: populated updated_at for %d %s rows", cur.rowcount, table)

        for table, column in LEGACY_TIMESTAMP_COLUMNS:
            await conn.execute(
                f"UPDATE {table} SET {column} = replace({column}, ' ', 'T') || '.000000+00:00' "
                f"WHERE length({column}) = 19"
            )

    async def _insert(self, table: str, fields: dict) -> int:
        columns = ', '.join(fields)
        placeholders = ', '.join('?' for _ in fields)
        async with self._connect() as conn:
            cur = await conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(fields.values())
            )
            await conn.commit()
            return cur.lastrowid

    async def _fetchone(self, sql: str, params=()):
        async with self._connect() as conn:
            cur = await conn.execute(sql, params)
            row = await cur.fetchone()
            return dict(row) if row is not None else None

    async def _fetchall(self, sql: str, params=()):
        async with self._connect() as conn:
            cur = await conn.execute(sql, params)
            return [dict(row) for row in await cur.fetchall()]

    # --- tasks & reminders ---

    async def create_task(self, content: str, channel_id: str, user_id: str, time: str, days: str = None) -> int:
        now = self._timestamp()
        return await self._insert('tasks', {
            'content': content, 'channel_id': channel_id, 'user_id': user_id, 'time': time,
            'days': days, 'active': 1, 'created_at': now, 'updated_at': now,
        })

    async def create_reminder(self, content: str, channel_id: str, user_id: str, time: str) -> int:
        now = self._timestamp()
        return await self._insert('reminders', {
            'content': content, 'channel_id': channel_id, 'user_id': user_id, 'time': time,
            'active': 1, 'created_at': now, 'updated_at': now,
        })

    async def get_item(self, kind: str, item_id: int) -> dict | None:
        return await self._fetchone(f"SELECT * FROM {item_table(kind)} WHERE id = ?", (item_id,))

    async def get_owned_item(self, kind: str, item_id: int, user_id: str) -> dict:
        row = await self._fetchone(
            f"SELECT * FROM {item_table(kind)} WHERE id = ? AND user_id = ?", (item_id, str(user_id))
        )
        if row is None:
            raise NotFoundError(f"{kind.capitalize()} {item_id} not found or not owned by you")
        return row

    async def remove_item(self, kind: str, item_id: int, user_id: str, soft: bool = False) -> bool:
        """Delete the row, or with ``soft`` mark it inactive. The caller owns unscheduling."""
        table = item_table(kind)
        async with self._connect() as conn:
            if soft:
                cur = await conn.execute(
                    f"UPDATE {table} SET active = 0, updated_at = ? WHERE id = ? AND user_id = ?",
                    (self._timestamp(), item_id, str(user_id)),
                )
            else:
                cur = await conn.execute(
                    f"DELETE FROM {table} WHERE id = ? AND user_id = ?", (item_id, str(user_id))
                )
            await conn.commit()
        if cur.rowcount != 1:
            raise NotFoundError(f"{kind.capitalize()} {item_id} not found or not owned by you")
        return True

    async def list_active(self, kind: str) -> list[dict]:
        return await self._fetchall(f"SELECT * FROM {item_table(kind)} WHERE active = 1 ORDER BY id")

    async def list_for_user(self, kind: str, user_id: str) -> list[dict]:
        return await self._fetchall(
            f"SELECT * FROM {item_table(kind)} WHERE user_id = ? AND active = 1 ORDER BY time ASC, id ASC",
            (str(user_id),),
        )

    async def record_completion(self, kind: str, item_id: int, user_id: str) -> int:
        await self.get_owned_item(kind, item_id, user_id)
        column = 'task_id' if kind == 'task' else 'reminder_id'
        return await self._insert('completions', {
            column: item_id, 'user_id': str(user_id), 'completed_at': self._timestamp(),
        })

    # --- logs ---

    async def append_send_log(
        self,
        kind: str,
        *,
        status: str,
        source: str = None,
        channel_id: str = None,
        user_id: str = None,
        content: str = None,
        error: str = None,
        message_id: str = None,
        ref_id: int = None,
        retry_count: int = 0,
    ) -> int:
        if status not in LOG_STATUSES:
            raise ValidationError(f"Invalid send status: {status!r}")
        return await self._insert('send_logs', {
            'kind': kind, 'source': source, 'channel_id': channel_id, 'user_id': user_id,
            'content': content, 'status': status, 'error': error, 'message_id': message_id,
            'ref_id': ref_id, 'retry_count': retry_count, 'sent_at': self._timestamp(),
        })

    async def append_activity_log(
        self,
        kind: str,
        *,
        source: str = None,
        channel_id: str = None,
        user_id: str = None,
        status: str | None = 'success',
        error: str = None,
        message_id: str = None,
        ref_id: int = None,
        action: str = None,
        emoji: str = None,
        metadata: dict = None,
    ) -> int:
        if status is not None and status not in LOG_STATUSES:
            raise ValidationError(f"Invalid activity status: {status!r}")
        return await self._insert('activity_logs', {
            'kind': kind, 'source': source, 'channel_id': channel_id, 'user_id': user_id,
            'status': status, 'error': error, 'message_id': message_id, 'ref_id': ref_id,
            'action': action, 'emoji': emoji,
            'metadata': json.dumps(metadata, default=str) if metadata is not None else None,
            'created_at': self._timestamp(),
        })

    async def get_send_log(self, log_id: int) -> dict | None:
        return await self._fetchone("SELECT * FROM send_logs WHERE id = ?", (log_id,))

    @staticmethod
    def _log_row(row) -> dict:
        entry = dict(row)
        raw = entry.get('metadata')
        if isinstance(raw, str):
            try:
                entry['metadata'] = json.loads(raw)
            except ValueError:
                logger.warning("Unparseable metadata on activity log %s", entry.get('id'))
        return entry

    async def query_logs(self, filters: LogFilter = None, cursor: str = None, limit: int = 50) -> LogPage:
        filters = filters or LogFilter()
        position = decode_cursor(cursor) if cursor else None
        row_sets = []
        async with self._connect() as conn:
            for table in LOG_TABLES:
                sql, params = build_select(table, filters, position, limit + 1)
                cur = await conn.execute(sql, params)
                row_sets.append([self._log_row(row) for row in await cur.fetchall()])
        return merge_page(row_sets, limit)

    async def rotate_logs(self, max_age_days: int = 30) -> int:
        """Purge log rows older than ``max_age_days``; returns how many were removed."""
        if isinstance(max_age_days, bool) or not isinstance(max_age_days, int) or max_age_days < 0:
            raise ValidationError("maxAgeDays must be a non-negative integer")
        cutoff = format_timestamp(self._now() - timedelta(days=max_age_days))
        async with self._connect() as conn:
            cur = await conn.execute("SELECT COUNT(*) FROM send_logs WHERE sent_at < ?", (cutoff,))
            send_count = (await cur.fetchone())[0]
            cur = await conn.execute("SELECT COUNT(*) FROM activity_logs WHERE created_at < ?", (cutoff,))
            activity_count = (await cur.fetchone())[0]
            archived = send_count + activity_count
            if archived == 0:
                logger.info("No logs older than %d days to rotate", max_age_days)
                return 0

            await conn.execute("DELETE FROM send_logs WHERE sent_at < ?", (cutoff,))
            await conn.execute("DELETE FROM activity_logs WHERE created_at < ?", (cutoff,))
            await conn.execute(
                "INSERT INTO log_rotation (table_name, rotated_at, records_archived) VALUES (?, ?, ?)",
                ('logs_combined', self._timestamp(), archived),
            )
            await conn.commit()
            logger.info("Log rotation completed: %d records archived (cutoff %s)", archived, cutoff)
            try:
                await conn.execute("VACUUM")
            except aiosqlite.Error as e:
                logger.warning("Could not vacuum database after rotation: %s", e)
        return archived

    async def clear_logs(self) -> tuple[int, int]:
        async with self._connect() as conn:
            send_cur = await conn.execute("DELETE FROM send_logs")
            activity_cur = await conn.execute("DELETE FROM activity_logs")
            await conn.execute("DELETE FROM sqlite_sequence WHERE name IN ('send_logs', 'activity_logs')")
            await conn.commit()
        logger.info("Cleared logs: %d send, %d activity", send_cur.rowcount, activity_cur.rowcount)
        return send_cur.rowcount, activity_cur.rowcount

    async def list_rotations(self) -> list[dict]:
        return await self._fetchall("SELECT * FROM log_rotation ORDER BY rotated_at DESC, id DESC")

    async def get_stats(self) -> dict:
        since = format_timestamp(self._now() - timedelta(days=1))
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM tasks WHERE active = 1) AS active_tasks,
                    (SELECT COUNT(*) FROM reminders WHERE active = 1) AS active_reminders,
                    (SELECT COUNT(*) FROM send_logs) AS total_send_logs,
                    (SELECT COUNT(*) FROM activity_logs) AS total_activity_logs,
                    (SELECT COUNT(*) FROM send_logs WHERE status = 'failed') AS failed_sends,
                    (SELECT COUNT(*) FROM send_logs WHERE status = 'success') AS successful_sends,
                    (SELECT COUNT(*) FROM activity_logs WHERE created_at > ?) AS recent_activity
                """,
                (since,),
            )
            counts = dict(await cur.fetchone())
            cur = await conn.execute(
                """
                SELECT channel_id, COUNT(*) AS count
                FROM (
                    SELECT channel_id FROM send_logs WHERE channel_id IS NOT NULL
                    UNION ALL
                    SELECT channel_id FROM activity_logs WHERE channel_id IS NOT NULL
                )
                GROUP BY channel_id
                ORDER BY count DESC, channel_id ASC
                LIMIT 5
                """
            )
            top_channels = [dict(row) for row in await cur.fetchall()]
            cur = await conn.execute("SELECT * FROM log_rotation ORDER BY rotated_at DESC, id DESC LIMIT 1")
            last_rotation = await cur.fetchone()

        total = counts['total_send_logs']
        successful = counts['successful_sends']
        return {
            'activeTasks': counts['active_tasks'],
            'activeReminders': counts['active_reminders'],
            'totalSendLogs': total,
            'totalActivityLogs': counts['total_activity_logs'],
            'failedSends': counts['failed_sends'],
            'recentActivity': counts['recent_activity'],
            'totalAttempts': total,
            'successfulAttempts': successful,
            'successRate': round(successful / total * 100, 1) if total else 100.0,
            'topChannels': top_channels,
            'lastRotation': dict(last_rotation) if last_rotation is not None else None,
        }
