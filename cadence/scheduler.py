import asyncio
import logging
import re
from datetime import datetime, timedelta, tzinfo

from .errors import ValidationError

logger = logging.getLogger(__name__)

TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")

# Longest single sleep of the system clock; wall time is re-read after each chunk
MAX_SLEEP_CHUNK = 300.0

# Day numbers follow cron: 0 = Sunday, 1 = Monday ... 6 = Saturday
DAY_NAMES = ('Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat')


def parse_time_of_day(text: str) -> tuple[int, int]:
    m = TIME_RE.fullmatch((text or '').strip())
    if not m:
        raise ValidationError("Invalid time format. Please use HH:MM format (24-hour).")
    return int(m.group(1)), int(m.group(2))


def format_time_of_day(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


def parse_days(text: str | None) -> tuple[int, ...] | None:
    """'1,2,3' -> (1, 2, 3); blank means every day (None)."""
    if text is None or not str(text).strip():
        return None
    days = set()
    for token in str(text).split(','):
        token = token.strip()
        if not re.fullmatch(r"[0-6]", token):
            raise ValidationError(
                "Invalid days format. Use comma-separated numbers 0-6 (0=Sunday, 1=Monday, etc.)."
            )
        days.add(int(token))
    return tuple(sorted(days))


def format_days(days) -> str | None:
    return ','.join(str(d) for d in days) if days else None


def describe_days(days) -> str:
    if not days:
        return 'daily'
    return 'on ' + ', '.join(DAY_NAMES[d] for d in days)


def cron_weekday(dt: datetime) -> int:
    return dt.isoweekday() % 7


def next_fire_time(now: datetime, hour: int, minute: int, days=None, localize=None) -> datetime:
    """First instant strictly after ``now`` at hour:minute on an allowed weekday.

    Candidates are built as wall-clock times and turned into instants by
    ``localize`` (default: attach ``now``'s tzinfo), so 09:00 stays 09:00 when a
    DST change falls between ``now`` and the fire.
    """
    if localize is None:
        def localize(wall):
            return wall.replace(tzinfo=now.tzinfo)

    allowed = set(days) if days else None
    wall = now.replace(tzinfo=None, hour=hour, minute=minute, second=0, microsecond=0)
    # today plus a full week covers every allowed weekday
    for _ in range(8):
        if allowed is None or cron_weekday(wall) in allowed:
            candidate = localize(wall)
            if candidate > now:
                return candidate
        wall += timedelta(days=1)
    raise ValidationError(f"No fire time for {format_time_of_day(hour, minute)} {describe_days(days)}")


class SystemClock:
    """Wall clock in ``tz``, or in the host's local zone when ``tz`` is None."""

    def __init__(self, tz: tzinfo | None = None):
        self.tz = tz

    def now(self) -> datetime:
        if self.tz is None:
            return datetime.now().astimezone()
        return datetime.now(self.tz)

    def localize(self, wall: datetime) -> datetime:
        if self.tz is None:
            # naive astimezone() applies the host's rules for that date
            return wall.astimezone()
        return wall.replace(tzinfo=self.tz)

    async def sleep_until(self, when: datetime) -> None:
        while True:
            delay = (when - self.now()).total_seconds()
            if delay <= 0:
                return
            await asyncio.sleep(min(delay, MAX_SLEEP_CHUNK))


class Scheduler:
    """Registry of live per-item timers keyed by ``(kind, id)``.

    Each registered item gets its own asyncio task that sleeps until the next
    matching time, fires ``on_fire`` and loops. Fires run as separate tasks so
    an in-flight delivery finishes even if its timer is cancelled meanwhile.
    """

    def __init__(self, clock):
        self.clock = clock
        self._timers: dict[tuple[str, int], asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()

    def __len__(self):
        return len(self._timers)

    def __contains__(self, key):
        return key in self._timers

    def keys(self) -> list[tuple[str, int]]:
        return sorted(self._timers)

    def register(self, kind: str, item_id: int, time_of_day: tuple[int, int], days, on_fire) -> None:
        hour, minute = time_of_day
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ValidationError(f"Invalid time of day {hour}:{minute}")
        if days and any(d not in range(7) for d in days):
            raise ValidationError(f"Invalid days {days!r}")
        key = (kind, item_id)
        self.unregister(kind, item_id)
        self._timers[key] = asyncio.create_task(
            self._run(key, hour, minute, tuple(days) if days else None, on_fire),
            name=f"schedule-{kind}-{item_id}",
        )
        logger.info("Scheduled %s %s for %s %s", kind, item_id, format_time_of_day(hour, minute), describe_days(days))

    def unregister(self, kind: str, item_id: int) -> bool:
        task = self._timers.pop((kind, item_id), None)
        if task is None:
            return False
        task.cancel()
        logger.info("Unscheduled %s %s", kind, item_id)
        return True

    async def _run(self, key, hour, minute, days, on_fire):
        localize = getattr(self.clock, 'localize', None)
        kind, item_id = key
        try:
            while True:
                due = next_fire_time(self.clock.now(), hour, minute, days, localize)
                await self.clock.sleep_until(due)
                logger.debug("Firing %s %s (due %s)", kind, item_id, due.isoformat())
                fire = asyncio.create_task(self._fire(key, on_fire), name=f"fire-{kind}-{item_id}")
                self._inflight.add(fire)
                fire.add_done_callback(self._inflight.discard)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer for %s %s stopped unexpectedly", kind, item_id)
            if self._timers.get(key) is asyncio.current_task():
                del self._timers[key]

    @staticmethod
    async def _fire(key, on_fire):
        try:
            await on_fire()
        except Exception:
            logger.exception("Scheduled callback for %s %s failed", *key)

    async def rebuild_from_store(self, db, on_fire_factory) -> int:
        """Register every active task and reminder; ``on_fire_factory(kind, row)`` builds the callback."""
        count = 0
        for kind in ('reminder', 'task'):
            for row in await db.list_active(kind):
                try:
                    time_of_day = parse_time_of_day(row['time'])
                    days = parse_days(row.get('days')) if kind == 'task' else None
                except ValidationError as e:
                    logger.error("Skipping %s %s with invalid schedule: %s", kind, row['id'], e)
                    continue
                self.register(kind, row['id'], time_of_day, days, on_fire_factory(kind, row))
                count += 1
        logger.info("Loaded %d scheduled items from the database", count)
        return count

    async def wait_idle(self) -> None:
        """Wait for fires already in progress to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        await self.wait_idle()
