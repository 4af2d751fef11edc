from datetime import datetime, time, timezone
from typing import Optional
import logging

from fastapi import APIRouter, Body, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from timeflow_server import schemas
from timeflow_server.auth import DBDep, UserIdDep
from timeflow_server.core.models import Activity, TrackingSession
from timeflow_server.core.utils import ensure_utc, utcnow
from timeflow_server.errors import ActivityNotFoundError
from timeflow_server.services.reconciliation import SessionReconciler
from timeflow_server.services.stats import StatsCalculator

router = APIRouter()
logger = logging.getLogger(__name__)

TIMELINE_CONFLICT_DETAIL = "Session timeline changed concurrently, retry the request"

@router.get("/current", response_model=schemas.CurrentSessionResponse)
async def get_current_session(db: DBDep, user_id: UserIdDep):
    """Return the running session with its activity's display fields, or null."""
    session = await SessionReconciler(db, user_id).get_open_session()
    return schemas.CurrentSessionResponse(session=session)

@router.post("/switch", response_model=schemas.SwitchResponse)
async def switch_activity(
    db: DBDep,
    user_id: UserIdDep,
    body: Optional[schemas.SwitchRequest] = Body(None),
):
    """
    Close the running session and start one on toActivityId.
    timestamp (ms since epoch) defaults to server time; localId makes the call idempotent.
    """
    body = body or schemas.SwitchRequest()
    if not body.to_activity_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="toActivityId is required")

    reconciler = SessionReconciler(db, user_id)
    try:
        async with reconciler.transaction():
            result = await reconciler.switch(
                body.to_activity_id,
                timestamp_ms=body.timestamp,
                local_id=body.local_id,
            )
    except ActivityNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Target activity not found")
    except IntegrityError as e:
        logger.warning(f"Switch for user {user_id} conflicted: {e.orig}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=TIMELINE_CONFLICT_DETAIL)

    return schemas.SwitchResponse(
        previous_session=result.previous,
        current_session=result.current,
    )

@router.post("/stop", response_model=schemas.StopResponse, response_model_exclude_none=True)
async def stop_tracking(
    db: DBDep,
    user_id: UserIdDep,
    body: Optional[schemas.StopRequest] = Body(None),
):
    """Close the running session. Succeeds without changes when nothing is running."""
    body = body or schemas.StopRequest()
    reconciler = SessionReconciler(db, user_id)
    try:
        async with reconciler.transaction():
            result = await reconciler.stop(timestamp_ms=body.timestamp, local_id=body.local_id)
    except IntegrityError as e:
        logger.warning(f"Stop for user {user_id} conflicted: {e.orig}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=TIMELINE_CONFLICT_DETAIL)

    if result.session is None:
        message = "Stop already applied" if result.replayed else "No active session to stop"
        return schemas.StopResponse(success=True, message=message)
    return schemas.StopResponse(success=True, message="Tracking stopped", session=result.session)

@router.post("/sync", response_model=schemas.SyncResponse)
async def sync_events(
    db: DBDep,
    user_id: UserIdDep,
    body: Optional[schemas.SyncRequest] = Body(None),
):
    """
    Replay a client's offline queue. Events are applied in timestamp order,
    already-processed localIds are skipped, and one bad event never blocks the rest.
    """
    body = body or schemas.SyncRequest()
    if body.events is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="events array is required")

    outcome = await SessionReconciler(db, user_id).replay(body.events)
    return schemas.SyncResponse(
        processed_local_ids=outcome.processed_local_ids,
        skipped_count=outcome.skipped_count,
        skipped_local_ids=outcome.skipped_local_ids,
        rejected_local_ids=outcome.rejected_local_ids,
    )

@router.get("/stats", response_model=schemas.StatsResponse, response_model_exclude_none=True)
async def get_stats(
    db: DBDep,
    user_id: UserIdDep,
    start: Optional[datetime] = Query(None, description="Range start (ISO 8601). Defaults to today 00:00 UTC."),
    end: Optional[datetime] = Query(None, description="Range end (ISO 8601). Defaults to now."),
    max_depth: int = Query(0, alias="maxDepth", ge=0, description="Roll activities up to this tree depth; 0 keeps leaves."),
    hourly: bool = Query(False, description="Include an hourly breakdown."),
):
    """Time spent per activity for sessions that started inside the range."""
    now = utcnow()
    start = start or datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    end = end or now
    start, end = ensure_utc(start), ensure_utc(end)

    activities = (await db.execute(select(Activity).where(Activity.user_id == user_id))).scalars().all()
    sessions = (await db.execute(
        select(TrackingSession)
        .where(
            TrackingSession.user_id == user_id,
            TrackingSession.started_at >= start,
            TrackingSession.started_at <= end,
        )
        .order_by(TrackingSession.started_at)
    )).scalars().all()

    return StatsCalculator(activities, now=now).calculate(
        sessions, start, end, max_depth=max_depth, include_hourly=hourly
    )
