from fastapi import APIRouter, HTTPException

from app.schemas.response import SuccessResponse
from app.schemas.user import UserProfileResponse
from app.services.user_profile_service import get_user_profile

router = APIRouter()


@router.get("/{user_id}", response_model=SuccessResponse)
async def get_profile_endpoint(user_id: int):
    """Reads the locally cached profile maintained by the user event consumer."""
    profile = await get_user_profile(user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")

    data = UserProfileResponse(
        user_id=profile.user_id,
        username=profile.username,
        display_name=profile.display_name,
        email=profile.email,
        avatar_url=profile.avatar_url,
        updated_at=str(profile.updated_at)
    ).model_dump()
    return SuccessResponse(data=data)
