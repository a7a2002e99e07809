import logging

from .delivery import record_activity
from .errors import CadenceError, ValidationError
from .scheduler import format_days, format_time_of_day, parse_days, parse_time_of_day

logger = logging.getLogger(__name__)

# Leaves room for the category prefix within Discord's 2000 character limit
MAX_CONTENT_LENGTH = 1900


def _require(value, name: str) -> str:
    text = str(value).strip() if value is not None else ''
    if not text:
        raise ValidationError(f"Missing required field: {name}")
    return text


def _clean_content(content) -> str:
    text = _require(content, 'content')
    if len(text) > MAX_CONTENT_LENGTH:
        raise ValidationError(f"Content too long. Please keep it under {MAX_CONTENT_LENGTH} characters.")
    return text


class ScheduleService:
    """Creates and removes tasks/reminders, keeping the store and the scheduler in step.

    After every create or remove completes, the scheduler holds a timer for
    exactly the active rows.
    """

    def __init__(self, db, scheduler, delivery):
        self.db = db
        self.scheduler = scheduler
        self.delivery = delivery

    def on_fire_factory(self, kind: str, row: dict):
        async def fire():
            await self.delivery.deliver_item(kind, row, source='scheduler')
        return fire

    def _schedule(self, kind: str, row: dict) -> None:
        days = parse_days(row.get('days')) if kind == 'task' else None
        self.scheduler.register(
            kind, row['id'], parse_time_of_day(row['time']), days, self.on_fire_factory(kind, row)
        )

    async def start(self) -> int:
        """Rebuild the in-memory timers from the store; run before serving requests."""
        return await self.scheduler.rebuild_from_store(self.db, self.on_fire_factory)

    async def add_task(self, content, channel_id, user_id, time, days=None, source: str = 'http_api') -> dict:
        content = _clean_content(content)
        channel_id = _require(channel_id, 'channel_id')
        user_id = _require(user_id, 'user_id')
        hour, minute = parse_time_of_day(time)
        day_set = parse_days(days)

        row = {'content': content, 'channel_id': channel_id, 'user_id': user_id,
               'time': format_time_of_day(hour, minute), 'days': format_days(day_set), 'active': 1}
        task_id = await self.db.create_task(
            row['content'], row['channel_id'], row['user_id'], row['time'], row['days']
        )
        # timer is built from the inserted values, not a re-read
        row['id'] = task_id
        self._schedule('task', row)
        await record_activity(
            self.db, 'task_added', source=source, channel_id=channel_id, user_id=user_id,
            ref_id=task_id, action='add_task',
        )
        return row

    async def add_reminder(self, content, channel_id, user_id, time, source: str = 'http_api') -> dict:
        content = _clean_content(content)
        channel_id = _require(channel_id, 'channel_id')
        user_id = _require(user_id, 'user_id')
        hour, minute = parse_time_of_day(time)

        row = {'content': content, 'channel_id': channel_id, 'user_id': user_id,
               'time': format_time_of_day(hour, minute), 'active': 1}
        reminder_id = await self.db.create_reminder(row['content'], row['channel_id'], row['user_id'], row['time'])
        row['id'] = reminder_id
        self._schedule('reminder', row)
        await record_activity(
            self.db, 'reminder_added', source=source, channel_id=channel_id, user_id=user_id,
            ref_id=reminder_id, action='add_reminder',
        )
        return row

    async def remove(self, kind: str, item_id: int, user_id, soft: bool = False, source: str = 'discord_slash',
                     channel_id: str = None) -> dict:
        """Cancel the item's timer, then delete (or deactivate) its row.

        If the row cannot be removed the timer is put back, so a failed delete
        never leaves an active row unscheduled.
        """
        row = await self.db.get_owned_item(kind, item_id, user_id)
        self.scheduler.unregister(kind, item_id)
        try:
            await self.db.remove_item(kind, item_id, user_id, soft=soft)
        except CadenceError:
            if row.get('active', 1):
                self._schedule(kind, row)
            raise
        await record_activity(
            self.db, f"{kind}_{'deactivated' if soft else 'deleted'}", source=source,
            channel_id=channel_id, user_id=str(user_id), ref_id=item_id, action=f"delete_{kind}",
        )
        return row

    async def list_for_user(self, kind: str, user_id) -> list[dict]:
        return await self.db.list_for_user(kind, str(user_id))

    async def complete(self, kind: str, item_id: int, user_id, source: str = 'discord_slash',
                       channel_id: str = None) -> int:
        completion_id = await self.db.record_completion(kind, item_id, str(user_id))
        await record_activity(
            self.db, f"{kind}_completed", source=source, channel_id=channel_id, user_id=str(user_id),
            ref_id=item_id, action=f"complete_{kind}", metadata={'completion_id': completion_id},
        )
        return completion_id

    async def send_once(self, content, channel_id, source: str = 'http_api'):
        content = _clean_content(content)
        channel_id = _require(channel_id, 'channel_id')
        return await self.delivery.deliver('send_once', channel_id, content, source=source)
