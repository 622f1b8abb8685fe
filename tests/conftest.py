from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from app.core.db import close_db, init_db
from app.testing.fake_broker import FakeBroker


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite database with every model's table."""
    await init_db("sqlite://:memory:")
    yield
    await close_db()


@pytest.fixture
def broker():
    return FakeBroker()


class FrozenClock:
    """Callable clock the relay reads instead of the wall clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))
