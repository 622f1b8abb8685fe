# scripts/seed_data.py
import asyncio
import logging

from app.core.db import close_db, init_db
from app.core.logging_config import setup_logging
from app.models.user import User
from app.services.user_service import register_user

log = logging.getLogger("seed_data")

DEMO_USERS = [
    {"username": "alice", "email": "alice@example.com", "display_name": "Alice"},
    {"username": "bob", "email": "bob@example.com", "display_name": "Bob", "avatar_url": "https://cdn.example.com/bob.png"},
    {"username": "carol", "email": "carol@example.com", "display_name": "Carol"},
]


async def seed():
    # Registering through the service queues user.registered / user.created for each user
    for data in DEMO_USERS:
        if await User.filter(username=data["username"]).exists():
            log.info("User %s already exists, skipping", data["username"])
            continue
        user = await register_user(**data)
        log.info("Seeded user %s (%s)", user.username, user.id)


async def main():
    setup_logging()
    await init_db()
    try:
        await seed()
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
