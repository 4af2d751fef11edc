from datetime import datetime, time, timezone
from typing import Optional
import logging

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from timeflow_server import schemas
from timeflow_server.auth import DBDep, UserIdDep
from timeflow_server.core.models import (
    Emotion as EmotionModel, TrackingSession, MAX_EMOTION_RATING, MIN_EMOTION_RATING
)
from timeflow_server.core.utils import ensure_utc, utcnow

router = APIRouter()
logger = logging.getLogger(__name__)

RATING_RANGE_DETAIL = f"Rating must be between {MIN_EMOTION_RATING} and {MAX_EMOTION_RATING}"

def validate_rating(rating: Optional[int]) -> int:
    if rating is None or not MIN_EMOTION_RATING <= rating <= MAX_EMOTION_RATING:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=RATING_RANGE_DETAIL)
    return rating

def clean_description(description: Optional[str]) -> Optional[str]:
    if description is None:
        return None
    return description.strip() or None

async def get_emotion_by_id(db: AsyncSession, user_id: int, emotion_id: int) -> EmotionModel:
    result = await db.execute(
        select(EmotionModel).where(EmotionModel.id == emotion_id, EmotionModel.user_id == user_id)
    )
    emotion = result.scalar_one_or_none()
    if not emotion:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Emotion not found")
    return emotion

async def validate_session(db: AsyncSession, user_id: int, session_id: Optional[int]) -> None:
    if session_id is None:
        return
    result = await db.execute(
        select(TrackingSession.id).where(TrackingSession.id == session_id, TrackingSession.user_id == user_id)
    )
    if result.scalar_one_or_none() is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Session not found")

def in_range(user_id: int, start: Optional[datetime], end: Optional[datetime]) -> list:
    conditions = [EmotionModel.user_id == user_id]
    if start is not None:
        conditions.append(EmotionModel.created_at >= ensure_utc(start))
    if end is not None:
        conditions.append(EmotionModel.created_at <= ensure_utc(end))
    return conditions

@router.get("", response_model=schemas.EmotionListResponse)
async def get_emotions(
    db: DBDep,
    user_id: UserIdDep,
    start: Optional[datetime] = Query(None, alias="from", description="Only check-ins logged at or after this time."),
    end: Optional[datetime] = Query(None, alias="to", description="Only check-ins logged at or before this time."),
    limit: int = Query(50, ge=1, le=500),
):
    """The user's check-ins, newest first."""
    result = await db.execute(
        select(EmotionModel)
        .where(*in_range(user_id, start, end))
        .order_by(EmotionModel.created_at.desc(), EmotionModel.id.desc())
        .limit(limit)
    )
    return schemas.EmotionListResponse(emotions=result.scalars().all())

@router.post("", response_model=schemas.EmotionResponse, status_code=status.HTTP_201_CREATED)
async def create_emotion(emotion_in: schemas.EmotionCreate, db: DBDep, user_id: UserIdDep):
    rating = validate_rating(emotion_in.rating)
    await validate_session(db, user_id, emotion_in.session_id)

    db_emotion = EmotionModel(
        user_id=user_id,
        rating=rating,
        description=clean_description(emotion_in.description),
        session_id=emotion_in.session_id,
    )
    db.add(db_emotion)
    await db.commit()
    await db.refresh(db_emotion)
    return schemas.EmotionResponse(emotion=db_emotion)

@router.get("/stats", response_model=schemas.EmotionStatsResponse)
async def get_emotion_stats(
    db: DBDep,
    user_id: UserIdDep,
    start: Optional[datetime] = Query(None, alias="from", description="Range start. Defaults to today 00:00 UTC."),
    end: Optional[datetime] = Query(None, alias="to", description="Range end. Defaults to now."),
):
    """Average rating, check-in count and how many check-ins got each rating."""
    now = utcnow()
    start = start or datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    end = end or now
    conditions = in_range(user_id, start, end)

    average, total = (await db.execute(
        select(func.avg(EmotionModel.rating), func.count(EmotionModel.id)).where(*conditions)
    )).one()
    counts = (await db.execute(
        select(EmotionModel.rating, func.count(EmotionModel.id)).where(*conditions).group_by(EmotionModel.rating)
    )).all()

    distribution = {rating: 0 for rating in range(MIN_EMOTION_RATING, MAX_EMOTION_RATING + 1)}
    for rating, count in counts:
        distribution[rating] = count

    return schemas.EmotionStatsResponse(stats=schemas.EmotionStats(
        average=float(average) if average is not None else None,
        total=total or 0,
        distribution=distribution,
    ))

@router.patch("/{emotion_id}", response_model=schemas.EmotionResponse)
async def update_emotion(emotion_id: int, emotion_update: schemas.EmotionUpdate, db: DBDep, user_id: UserIdDep):
    changes = emotion_update.model_fields_set
    if "rating" in changes:
        rating = validate_rating(emotion_update.rating)
    emotion = await get_emotion_by_id(db, user_id, emotion_id)

    if "rating" in changes:
        emotion.rating = rating
    if "description" in changes:
        emotion.description = clean_description(emotion_update.description)

    await db.commit()
    await db.refresh(emotion)
    return schemas.EmotionResponse(emotion=emotion)

@router.delete("/{emotion_id}")
async def delete_emotion(emotion_id: int, db: DBDep, user_id: UserIdDep):
    emotion = await get_emotion_by_id(db, user_id, emotion_id)
    await db.delete(emotion)
    await db.commit()
    logger.debug(f"Deleted emotion {emotion_id} for user {user_id}")
    return {"success": True}
