import asyncio
from datetime import datetime, timedelta


async def settle(rounds: int = 20) -> None:
    """Let ready tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualNow:
    """Callable wall clock for the store's timestamps."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeClock:
    """Scheduler clock that only moves when a test calls :meth:`advance_to`."""

    def __init__(self, start: datetime):
        self.current = start
        self._sleepers: list[tuple[datetime, asyncio.Future]] = []

    def now(self) -> datetime:
        return self.current

    async def sleep_until(self, when: datetime) -> None:
        if when <= self.current:
            return
        fut = asyncio.get_running_loop().create_future()
        entry = (when, fut)
        self._sleepers.append(entry)
        try:
            await fut
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    @property
    def pending(self) -> list[datetime]:
        return sorted(when for when, fut in self._sleepers if not fut.done())

    async def advance_to(self, when: datetime) -> None:
        await settle()
        self.current = when
        for due, fut in list(self._sleepers):
            if due <= when and not fut.done():
                fut.set_result(None)
        await settle()


class FakeSender:
    """Records sends; set ``fail_with`` to make the next sends raise."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None
        self._next_id = 1000

    async def __call__(self, channel_id, content):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((channel_id, content))
        self._next_id += 1
        return str(self._next_id)
