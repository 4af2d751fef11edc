"""
Time statistics over a user's sessions.

Sessions are flattened into a Polars frame and aggregated per activity
(optionally rolled up to an ancestor depth), per day and per hour. Open
sessions count up to "now". All bucketing is done in UTC.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import polars as pl

from timeflow_server import schemas
from timeflow_server.core.models import Activity, TrackingSession
from timeflow_server.core.utils import ensure_utc, utcnow
from timeflow_server.services.activity_tree import ancestor_at_depth, parent_map

log = logging.getLogger(__name__)

UNKNOWN_ACTIVITY_NAME = "Unknown"
FALLBACK_COLOR = "#6366f1"


class StatsCalculator:
    """Aggregates durations (in milliseconds) for one user's sessions."""

    def __init__(self, activities: Sequence[Activity], now: Optional[datetime] = None):
        self.activities: Dict[int, Activity] = {a.id: a for a in activities}
        self.parents = parent_map(activities)
        self.now = ensure_utc(now) if now else utcnow()

    def _session_frame(self, sessions: Sequence[TrackingSession], max_depth: int) -> pl.DataFrame:
        rows = []
        for session in sessions:
            started_at = session.started_at
            ended_at = session.ended_at or self.now
            rows.append({
                "activity_id": session.activity_id,
                "target_id": ancestor_at_depth(session.activity_id, max_depth, self.parents),
                "started_at": started_at,
                "duration": max(0, int((ended_at - started_at).total_seconds() * 1000)),
            })
        frame = pl.from_dicts(rows)
        return frame.with_columns(
            pl.col("started_at").dt.date().alias("day"),
            pl.col("started_at").dt.hour().alias("hour"),
        )

    def _activity_durations(self, frame: pl.DataFrame, bucket: str) -> Dict[object, List[schemas.ActivityDuration]]:
        grouped = (
            frame.group_by([bucket, "activity_id"])
            .agg(pl.col("duration").sum())
            .sort([bucket, "duration", "activity_id"], descending=[False, True, False])
        )
        out: Dict[object, List[schemas.ActivityDuration]] = {}
        for row in grouped.iter_rows(named=True):
            activity = self.activities.get(row["activity_id"])
            out.setdefault(row[bucket], []).append(schemas.ActivityDuration(
                activity_id=row["activity_id"],
                name=activity.name if activity else UNKNOWN_ACTIVITY_NAME,
                color=(activity.color if activity else None) or FALLBACK_COLOR,
                duration=row["duration"],
            ))
        return out

    def calculate(
        self,
        sessions: Sequence[TrackingSession],
        start: datetime,
        end: datetime,
        max_depth: int = 0,
        include_hourly: bool = False,
    ) -> schemas.StatsResponse:
        if not sessions:
            return schemas.StatsResponse(
                start_date=start,
                end_date=end,
                total_duration=0,
                activities=[],
                session_count=0,
                daily_breakdown=[],
                hourly_breakdown=[] if include_hourly else None,
            )

        frame = self._session_frame(sessions, max_depth)

        per_activity = (
            frame.group_by("target_id")
            .agg(
                pl.col("duration").sum().alias("total_duration"),
                pl.len().alias("session_count"),
            )
            .sort(["total_duration", "target_id"], descending=[True, False])
        )
        activity_stats = []
        for row in per_activity.iter_rows(named=True):
            activity = self.activities.get(row["target_id"])
            if activity is None:
                log.debug(f"Session references unknown activity {row['target_id']}; leaving it out of stats")
                continue
            activity_stats.append(schemas.ActivityStats(
                activity=schemas.Activity.model_validate(activity),
                total_duration=row["total_duration"],
                session_count=row["session_count"],
            ))

        daily_totals = frame.group_by("day").agg(pl.col("duration").sum()).sort("day")
        daily_activities = self._activity_durations(frame, "day")
        daily_breakdown = [
            schemas.DailyBreakdown(
                date=row["day"],
                total_duration=row["duration"],
                activities=daily_activities.get(row["day"], []),
            )
            for row in daily_totals.iter_rows(named=True)
        ]

        hourly_breakdown = None
        if include_hourly:
            hourly_totals = frame.group_by("hour").agg(pl.col("duration").sum()).sort("hour")
            hourly_activities = self._activity_durations(frame, "hour")
            hourly_breakdown = [
                schemas.HourlyBreakdown(
                    hour=row["hour"],
                    duration=row["duration"],
                    activities=hourly_activities.get(row["hour"], []),
                )
                for row in hourly_totals.iter_rows(named=True)
                if row["duration"] > 0
            ]

        return schemas.StatsResponse(
            start_date=start,
            end_date=end,
            total_duration=sum(s.total_duration for s in activity_stats),
            activities=activity_stats,
            session_count=frame.height,
            daily_breakdown=daily_breakdown,
            hourly_breakdown=hourly_breakdown,
        )
