from typing import Optional
import logging

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from timeflow_server import schemas
from timeflow_server.auth import DBDep, UserIdDep
from timeflow_server.core.models import Activity as ActivityModel, DEFAULT_ACTIVITY_COLOR, DEFAULT_ACTIVITY_ICON
from timeflow_server.errors import ActivityCycleError
from timeflow_server.services.activity_tree import parent_map, would_create_cycle

router = APIRouter()
logger = logging.getLogger(__name__)

async def list_activities(db: AsyncSession, user_id: int):
    result = await db.execute(
        select(ActivityModel).where(ActivityModel.user_id == user_id).order_by(ActivityModel.id)
    )
    return result.scalars().all()

async def get_activity_by_id(db: AsyncSession, user_id: int, activity_id: int) -> ActivityModel:
    result = await db.execute(
        select(ActivityModel).where(ActivityModel.id == activity_id, ActivityModel.user_id == user_id)
    )
    activity = result.scalar_one_or_none()
    if not activity:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Activity not found")
    return activity

async def validate_parent(db: AsyncSession, user_id: int, activity_id: Optional[int], parent_id: Optional[int]) -> None:
    """
    A parent must belong to the same user, and re-parenting must not make an
    activity its own ancestor.
    """
    if parent_id is None:
        return
    result = await db.execute(
        select(ActivityModel.id).where(ActivityModel.id == parent_id, ActivityModel.user_id == user_id)
    )
    if result.scalar_one_or_none() is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Parent activity not found")
    if activity_id is None:
        return

    parents = parent_map(await list_activities(db, user_id))
    if would_create_cycle(activity_id, parent_id, parents):
        error = ActivityCycleError(activity_id, parent_id)
        logger.info(str(error))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))

def clean_name(name: Optional[str]) -> str:
    if name is None or not name.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Activity name is required")
    return name.strip()

@router.get("", response_model=schemas.ActivityListResponse)
async def get_activities(db: DBDep, user_id: UserIdDep):
    """All of the user's activities as a flat list; clients build the tree."""
    return schemas.ActivityListResponse(activities=await list_activities(db, user_id))

@router.post("", response_model=schemas.ActivityResponse, status_code=status.HTTP_201_CREATED)
async def create_activity(activity_in: schemas.ActivityCreate, db: DBDep, user_id: UserIdDep):
    name = clean_name(activity_in.name)
    await validate_parent(db, user_id, None, activity_in.parent_id)

    db_activity = ActivityModel(
        user_id=user_id,
        name=name,
        parent_id=activity_in.parent_id,
        icon=activity_in.icon or DEFAULT_ACTIVITY_ICON,
        color=activity_in.color or DEFAULT_ACTIVITY_COLOR,
        is_default=False,
    )
    db.add(db_activity)
    await db.commit()
    await db.refresh(db_activity)
    return schemas.ActivityResponse(activity=db_activity)

@router.patch("/{activity_id}", response_model=schemas.ActivityResponse)
async def update_activity(activity_id: int, activity_update: schemas.ActivityUpdate, db: DBDep, user_id: UserIdDep):
    activity = await get_activity_by_id(db, user_id, activity_id)
    changes = activity_update.model_fields_set

    if "parent_id" in changes:
        await validate_parent(db, user_id, activity.id, activity_update.parent_id)
        activity.parent_id = activity_update.parent_id
    if "name" in changes:
        activity.name = clean_name(activity_update.name)
    if "icon" in changes:
        activity.icon = activity_update.icon
    if "color" in changes:
        activity.color = activity_update.color
    if "is_default" in changes and activity_update.is_default is not None:
        if activity_update.is_default:
            # Only one default per user.
            await db.execute(
                update(ActivityModel)
                .where(ActivityModel.user_id == user_id, ActivityModel.is_default.is_(True))
                .values(is_default=False)
            )
        activity.is_default = activity_update.is_default

    await db.commit()
    await db.refresh(activity)
    return schemas.ActivityResponse(activity=activity)

@router.delete("/{activity_id}")
async def delete_activity(activity_id: int, db: DBDep, user_id: UserIdDep):
    """Delete an activity. Its children and their sessions go with it."""
    activity = await get_activity_by_id(db, user_id, activity_id)
    if activity.is_default:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot delete the default activity")
    await db.delete(activity)
    await db.commit()
    return {"success": True}
