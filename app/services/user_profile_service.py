import logging
from typing import Any, Optional

from app.events.user_events import UserDeletedPayload, UserProfilePayload
from app.models.user_profile import UserProfile

log = logging.getLogger(__name__)


async def upsert_user_profile(payload: UserProfilePayload, conn: Any = None) -> UserProfile:
    """Applies user.created / user.updated to the local profile cache."""
    profile = await UserProfile.filter(user_id=payload.user_id).using_db(conn).first()

    if profile is None:
        profile = await UserProfile.create(
            user_id=payload.user_id,
            username=payload.username,
            display_name=payload.display_name,
            email=payload.email,
            avatar_url=payload.avatar_url,
            using_db=conn
        )
        log.info("Created user profile cache for user %s", payload.user_id)
        return profile

    profile.username = payload.username
    profile.display_name = payload.display_name
    profile.email = payload.email
    profile.avatar_url = payload.avatar_url
    await profile.save(using_db=conn)
    log.info("Updated user profile cache for user %s", payload.user_id)
    return profile


async def delete_user_profile(payload: UserDeletedPayload, conn: Any = None) -> None:
    """Applies user.deleted; a profile that was never cached is not an error."""
    deleted = await UserProfile.filter(user_id=payload.user_id).using_db(conn).delete()
    if deleted:
        log.info("Deleted user profile cache for user %s", payload.user_id)


async def get_user_profile(user_id: int) -> Optional[UserProfile]:
    return await UserProfile.get_or_none(user_id=user_id)
