from typing import Optional

from tortoise import timezone
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from app.events.outbox_utility import append_outbox_event
from app.events.user_events import (
    USER_AGGREGATE,
    USER_CREATED,
    USER_DELETED,
    USER_REGISTERED,
    USER_UPDATED,
    UserCreatedEvent,
    UserDeletedEvent,
    UserRegisteredEvent,
    UserUpdatedEvent,
)
from app.models.user import User


async def register_user(
    username: str,
    email: str,
    display_name: str,
    avatar_url: Optional[str] = None
) -> User:
    """
    Creates the User and its integration events atomically.
    The relay publishes them later; nothing here talks to the broker.
    """
    async with in_transaction() as conn:
        if await User.filter(username=username).using_db(conn).exists():
            raise ValueError(f"Username '{username}' is already taken.")
        if await User.filter(email=email).using_db(conn).exists():
            raise ValueError(f"Email '{email}' is already registered.")

        try:
            user = await User.create(
                username=username,
                email=email,
                display_name=display_name,
                avatar_url=avatar_url,
                using_db=conn
            )
        except IntegrityError:
            # A concurrent registration took the username or email after the checks above
            raise ValueError(f"Username '{username}' or email '{email}' is already registered.")

        await append_outbox_event(
            event_type=USER_REGISTERED,
            aggregate_id=user.id,
            aggregate_type=USER_AGGREGATE,
            payload=UserRegisteredEvent(
                user_id=user.id, username=user.username, email=user.email, timestamp=user.created_at
            ),
            conn=conn
        )
        await append_outbox_event(
            event_type=USER_CREATED,
            aggregate_id=user.id,
            aggregate_type=USER_AGGREGATE,
            payload=UserCreatedEvent(
                user_id=user.id,
                username=user.username,
                display_name=user.display_name,
                email=user.email,
                avatar_url=user.avatar_url,
                created_at=user.created_at,
            ),
            conn=conn
        )

    return user


async def update_user(
    user_id: int,
    display_name: Optional[str] = None,
    email: Optional[str] = None,
    avatar_url: Optional[str] = None
) -> User:
    """Applies the given profile changes and emits user.updated in the same transaction."""
    async with in_transaction() as conn:
        user = await User.get_or_none(id=user_id).using_db(conn)
        if not user:
            raise LookupError(f"User {user_id} not found")

        if email is not None and email != user.email:
            if await User.filter(email=email).exclude(id=user_id).using_db(conn).exists():
                raise ValueError(f"Email '{email}' is already registered.")
            user.email = email
        if display_name is not None:
            user.display_name = display_name
        if avatar_url is not None:
            user.avatar_url = avatar_url
        try:
            await user.save(using_db=conn)
        except IntegrityError:
            raise ValueError(f"Email '{user.email}' is already registered.")

        await append_outbox_event(
            event_type=USER_UPDATED,
            aggregate_id=user.id,
            aggregate_type=USER_AGGREGATE,
            payload=UserUpdatedEvent(
                user_id=user.id,
                username=user.username,
                display_name=user.display_name,
                email=user.email,
                avatar_url=user.avatar_url,
                updated_at=user.updated_at,
            ),
            conn=conn
        )

    return user


async def delete_user(user_id: int) -> None:
    async with in_transaction() as conn:
        user = await User.get_or_none(id=user_id).using_db(conn)
        if not user:
            raise LookupError(f"User {user_id} not found")

        await user.delete(using_db=conn)
        await append_outbox_event(
            event_type=USER_DELETED,
            aggregate_id=user_id,
            aggregate_type=USER_AGGREGATE,
            payload=UserDeletedEvent(user_id=user_id, deleted_at=timezone.now()),
            conn=conn
        )
