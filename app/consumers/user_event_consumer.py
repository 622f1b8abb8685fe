import asyncio

from app.consumers.idempotent_consumer import EventHandler, IdempotentConsumer, run_consumer_service
from app.core.config import CONSUMER_QUEUE
from app.events.user_events import (
    USER_CREATED,
    USER_DELETED,
    USER_UPDATED,
    UserDeletedPayload,
    UserProfilePayload,
)
from app.services.user_profile_service import delete_user_profile, upsert_user_profile

# Routing keys this service binds its queue to, and how each one is applied
USER_EVENT_HANDLERS = {
    USER_CREATED: EventHandler(UserProfilePayload, upsert_user_profile),
    USER_UPDATED: EventHandler(UserProfilePayload, upsert_user_profile),
    USER_DELETED: EventHandler(UserDeletedPayload, delete_user_profile),
}


def create_user_event_consumer(**kwargs) -> IdempotentConsumer:
    """Consumer keeping the local UserProfile cache in sync with the account side."""
    kwargs.setdefault("queue_name", CONSUMER_QUEUE)
    return IdempotentConsumer(handlers=USER_EVENT_HANDLERS, **kwargs)


async def main():
    from app.core.db import close_db, init_db
    from app.core.logging_config import setup_logging

    setup_logging()
    await init_db()
    try:
        await run_consumer_service(create_user_event_consumer())
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
