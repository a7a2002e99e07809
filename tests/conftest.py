from datetime import datetime, timezone

import pytest
import pytest_asyncio

from cadence.config import Settings
from cadence.database import Database
from cadence.delivery import Delivery
from cadence.scheduler import Scheduler
from cadence.service import ScheduleService

from .fakes import FakeClock, FakeSender, ManualNow

LOGS_TOKEN = 'test-logs-token'

# Monday
START = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return ManualNow(START)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def settings(tmp_path):
    return Settings(db_path=str(tmp_path / 'test.db'), logs_token=LOGS_TOKEN)


@pytest_asyncio.fixture
async def db(settings, now):
    database = Database(settings.db_path, now=now)
    await database.connect()
    return database


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def delivery(db, sender):
    return Delivery(db, sender)


@pytest_asyncio.fixture
async def scheduler(clock):
    sched = Scheduler(clock)
    yield sched
    await sched.close()


@pytest.fixture
def service(db, scheduler, delivery):
    return ScheduleService(db, scheduler, delivery)
