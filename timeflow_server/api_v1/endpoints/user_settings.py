from typing import Optional

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeflow_server import schemas
from timeflow_server.auth import DBDep, UserIdDep
from timeflow_server.core.models import UserSettings, DEFAULT_DAY_START_HOUR, DEFAULT_WEEK_START_DAY

router = APIRouter()

async def get_user_settings(db: AsyncSession, user_id: int) -> Optional[UserSettings]:
    result = await db.execute(select(UserSettings).where(UserSettings.user_id == user_id))
    return result.scalar_one_or_none()

def validate_update(update: schemas.UserSettingsUpdate) -> None:
    if update.week_start_day is not None and not 0 <= update.week_start_day <= 6:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="weekStartDay must be between 0 (Sunday) and 6 (Saturday)",
        )
    if update.day_start_hour is not None and not 0 <= update.day_start_hour <= 23:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="dayStartHour must be between 0 and 23")

@router.get("/user", response_model=schemas.UserSettingsResponse)
async def read_user_settings(db: DBDep, user_id: UserIdDep):
    """The user's settings, or the defaults when they never saved any."""
    row = await get_user_settings(db, user_id)
    if row is None:
        return schemas.UserSettingsResponse(settings=schemas.UserSettings(
            week_start_day=DEFAULT_WEEK_START_DAY,
            day_start_hour=DEFAULT_DAY_START_HOUR,
        ))
    return schemas.UserSettingsResponse(settings=row)

@router.put("/user", response_model=schemas.UserSettingsResponse)
async def update_user_settings(update: schemas.UserSettingsUpdate, db: DBDep, user_id: UserIdDep):
    """Create or update the user's settings. Fields left out keep their current value."""
    validate_update(update)

    row = await get_user_settings(db, user_id)
    if row is None:
        row = UserSettings(
            user_id=user_id,
            week_start_day=DEFAULT_WEEK_START_DAY,
            day_start_hour=DEFAULT_DAY_START_HOUR,
        )
        db.add(row)
    if update.week_start_day is not None:
        row.week_start_day = update.week_start_day
    if update.day_start_hour is not None:
        row.day_start_hour = update.day_start_hour

    await db.commit()
    await db.refresh(row)
    return schemas.UserSettingsResponse(settings=row)
