"""
Users router: POST /v1/users, GET /v1/users/me, PATCH /v1/users/me
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.database import get_db
from ridepay.middleware.auth import create_access_token, get_current_user
from ridepay.models.user import User
from ridepay.schemas.schemas import (
    UserCreateRequest, UserCreateResponse, UserResponse, UserUpdateRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/users", tags=["Users"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=UserCreateResponse)
async def create_user(
    payload: UserCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Register a passenger or driver. No auth required for onboarding."""
    existing = await db.execute(select(User.id).where(User.email == payload.email))
    if existing.first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    user = User(
        email=payload.email,
        name=payload.name,
        phone=payload.phone,
        role=payload.role.value,
        country=payload.country,
        vehicle_type=payload.vehicle_type.value if payload.vehicle_type else None,
        driver_status="offline",
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("Registered %s user=%s", user.role, user.id)

    return UserCreateResponse(
        user=UserResponse.model_validate(user),
        access_token=create_access_token({"sub": user.id, "role": user.role}),
    )


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(get_current_user)):
    return UserResponse.model_validate(user)


@router.patch("/me", response_model=UserResponse)
async def update_me(
    payload: UserUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "vehicle_type" in changes:
        changes["vehicle_type"] = changes["vehicle_type"].value
    for field, value in changes.items():
        setattr(user, field, value)
    await db.commit()
    await db.refresh(user)
    return UserResponse.model_validate(user)
