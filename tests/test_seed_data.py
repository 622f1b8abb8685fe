import pytest

from app.models.outbox import OutboxEvent
from app.models.user import User
from app.scripts.seed_data import DEMO_USERS, seed


@pytest.mark.asyncio
async def test_seed_is_repeatable(db):
    await seed()
    await seed()

    assert await User.all().count() == len(DEMO_USERS)
    # user.registered + user.created per seeded user, written only once
    assert await OutboxEvent.all().count() == 2 * len(DEMO_USERS)
