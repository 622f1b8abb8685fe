import logging

from fastapi import APIRouter, HTTPException, status

from app.schemas.response import SuccessResponse
from app.schemas.user import UserRegisterRequest, UserResponse, UserUpdateRequest
from app.services.user_service import delete_user, register_user, update_user

router = APIRouter()
log = logging.getLogger(__name__)


def _user_data(user) -> dict:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        display_name=user.display_name,
        avatar_url=user.avatar_url
    ).model_dump()


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def register_user_endpoint(request_data: UserRegisterRequest):
    """
    Registers a user. The user.registered and user.created events are committed with it
    and published asynchronously by the outbox relay.
    """
    try:
        user = await register_user(
            username=request_data.username,
            email=request_data.email,
            display_name=request_data.display_name,
            avatar_url=request_data.avatar_url
        )
        log.info("User %s registered.", user.id)
        return SuccessResponse(data=_user_data(user))
    except ValueError as e:
        log.error("Value error registering user: %s", e)
        raise HTTPException(status_code=400, detail=str(e))


@router.patch("/{user_id}", response_model=SuccessResponse)
async def update_user_endpoint(user_id: int, payload: UserUpdateRequest):
    """Updates profile fields and queues user.updated."""
    try:
        user = await update_user(
            user_id,
            display_name=payload.display_name,
            email=payload.email,
            avatar_url=payload.avatar_url
        )
        return SuccessResponse(data=_user_data(user))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        log.error("Value error updating user %s: %s", user_id, e)
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{user_id}", response_model=SuccessResponse)
async def delete_user_endpoint(user_id: int):
    """Deletes the user and queues user.deleted."""
    try:
        await delete_user(user_id)
        return SuccessResponse(data={"user_id": user_id, "message": "User deleted."})
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
