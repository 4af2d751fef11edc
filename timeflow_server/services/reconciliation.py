"""
Session reconciliation for TimeFlow.

Applies activity switches and stops to a user's authoritative session
timeline. Every applied event closes the open session before anything new
is opened, so a user never has more than one session with ended_at NULL.

Events carry the client's logical timestamp, which lets intents queued
while offline land at their real position in the timeline. Each event may
also carry a client-generated local_id; applied ids are written to the
sync_events ledger and replaying one is a no-op.
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from timeflow_server import schemas
from timeflow_server.core.models import Activity, SyncEvent, SyncEventType, TrackingSession, User
from timeflow_server.core.utils import ms_to_datetime, utcnow
from timeflow_server.errors import ActivityNotFoundError

log = logging.getLogger(__name__)

# Serializes timeline mutations for a user within this process. The row lock
# taken on the user in _lock_timeline covers multiple workers on PostgreSQL.
# Entries vanish once no coroutine holds or waits on the lock.
_timeline_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()


def _timeline_lock(user_id: int) -> asyncio.Lock:
    lock = _timeline_locks.get(user_id)
    if lock is None:
        lock = _timeline_locks[user_id] = asyncio.Lock()
    return lock


@dataclass
class SwitchResult:
    """Outcome of a switch: the session that was closed (if any) and the one now running."""
    current: TrackingSession
    previous: Optional[TrackingSession] = None
    replayed: bool = False


@dataclass
class StopResult:
    session: Optional[TrackingSession] = None
    replayed: bool = False


@dataclass
class ReplayResult:
    """Outcome of replaying a batch of queued client events."""
    processed_local_ids: List[str] = field(default_factory=list)
    skipped_count: int = 0
    skipped_local_ids: List[str] = field(default_factory=list)
    rejected_local_ids: List[str] = field(default_factory=list)


class SessionReconciler:
    """Mutates one user's session timeline. All reads and writes are scoped to that user."""

    def __init__(self, db: AsyncSession, user_id: int):
        self.db = db
        self.user_id = user_id

    # --- Transactions ---

    @asynccontextmanager
    async def transaction(self):
        """
        One event is one unit of work: the timeline lock is held from the
        first read until the commit, and any failure rolls the event back.
        """
        async with _timeline_lock(self.user_id):
            try:
                await self._lock_timeline()
                yield
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

    async def _lock_timeline(self) -> None:
        # SELECT ... FOR UPDATE on PostgreSQL; SQLite renders a plain SELECT
        # and relies on its database-level write lock instead.
        await self.db.execute(select(User.id).where(User.id == self.user_id).with_for_update())

    # --- Queries ---

    async def get_owned_activity(self, activity_id: Optional[int]) -> Activity:
        """Return the activity if it belongs to this user, otherwise raise ActivityNotFoundError."""
        if activity_id is None:
            raise ActivityNotFoundError(activity_id)
        result = await self.db.execute(
            select(Activity).where(Activity.id == activity_id, Activity.user_id == self.user_id)
        )
        activity = result.scalar_one_or_none()
        if activity is None:
            raise ActivityNotFoundError(activity_id)
        return activity

    async def get_open_session(self) -> Optional[TrackingSession]:
        """The user's running session, if any."""
        result = await self.db.execute(
            select(TrackingSession)
            .where(TrackingSession.user_id == self.user_id, TrackingSession.ended_at.is_(None))
            .order_by(TrackingSession.started_at.desc())
        )
        return result.scalars().first()

    async def already_processed(self, local_ids: Iterable[str]) -> Set[str]:
        """Subset of local_ids that are already in the ledger for this user."""
        ids = {local_id for local_id in local_ids if local_id}
        if not ids:
            return set()
        result = await self.db.execute(
            select(SyncEvent.local_id).where(
                SyncEvent.user_id == self.user_id,
                SyncEvent.local_id.in_(ids),
            )
        )
        return set(result.scalars().all())

    async def _session_by_local_id(self, local_id: str) -> Optional[TrackingSession]:
        result = await self.db.execute(
            select(TrackingSession).where(
                TrackingSession.user_id == self.user_id,
                TrackingSession.local_id == local_id,
            )
        )
        return result.scalars().first()

    async def _owned_activity_id(self, activity_id: Optional[int]) -> Optional[int]:
        # Ledger references are informational; drop ones the user does not own.
        if activity_id is None:
            return None
        try:
            return (await self.get_owned_activity(activity_id)).id
        except ActivityNotFoundError:
            return None

    # --- Mutations ---

    async def _close(self, session: TrackingSession, at: datetime) -> TrackingSession:
        # A stop that predates the session's own start collapses it to zero length.
        session.ended_at = max(at, session.started_at)
        await self.db.flush()
        return session

    async def _record(
        self,
        local_id: Optional[str],
        event_type: SyncEventType,
        event_time: datetime,
        from_activity_id: Optional[int],
        to_activity_id: Optional[int],
    ) -> None:
        if not local_id:
            return
        self.db.add(SyncEvent(
            user_id=self.user_id,
            local_id=local_id,
            event_type=event_type.value,
            from_activity_id=await self._owned_activity_id(from_activity_id),
            to_activity_id=to_activity_id,
            event_timestamp=event_time,
            processed_at=utcnow(),
        ))
        await self.db.flush()

    async def switch(
        self,
        to_activity_id: Optional[int],
        timestamp_ms: Optional[int] = None,
        local_id: Optional[str] = None,
        from_activity_id: Optional[int] = None,
    ) -> SwitchResult:
        """
        Close the running session at the event time and open a new one on
        to_activity_id starting at that same instant.

        Raises ActivityNotFoundError before touching any session when the
        target is not one of the user's activities.
        """
        activity = await self.get_owned_activity(to_activity_id)

        if local_id and await self.already_processed([local_id]):
            current = await self._session_by_local_id(local_id) or await self.get_open_session()
            if current is None:
                raise ActivityNotFoundError(to_activity_id)
            log.info(f"Switch {local_id} for user {self.user_id} was already applied")
            return SwitchResult(current=current, replayed=True)

        event_time = ms_to_datetime(timestamp_ms)
        previous = await self.get_open_session()
        if previous is not None:
            await self._close(previous, event_time)
            if from_activity_id is None:
                from_activity_id = previous.activity_id

        current = TrackingSession(
            user_id=self.user_id,
            activity_id=activity.id,
            started_at=event_time,
            local_id=local_id,
            synced_at=utcnow(),
        )
        current.activity = activity
        self.db.add(current)
        await self.db.flush()

        await self._record(local_id, SyncEventType.SWITCH, event_time, from_activity_id, activity.id)
        log.debug(
            f"User {self.user_id} switched to activity {activity.id} at {event_time.isoformat()}"
            f" (closed session {previous.id if previous else None})"
        )
        return SwitchResult(current=current, previous=previous)

    async def stop(
        self,
        timestamp_ms: Optional[int] = None,
        local_id: Optional[str] = None,
        from_activity_id: Optional[int] = None,
    ) -> StopResult:
        """Close the running session at the event time. Stopping while idle is a no-op."""
        if local_id and await self.already_processed([local_id]):
            log.info(f"Stop {local_id} for user {self.user_id} was already applied")
            return StopResult(replayed=True)

        event_time = ms_to_datetime(timestamp_ms)
        session = await self.get_open_session()
        if session is not None:
            await self._close(session, event_time)
            if from_activity_id is None:
                from_activity_id = session.activity_id

        await self._record(local_id, SyncEventType.STOP, event_time, from_activity_id, None)
        return StopResult(session=session)

    async def apply_event(self, event: schemas.SyncQueueEvent) -> None:
        """Apply one queued client event. The caller owns the transaction."""
        if event.type == SyncEventType.SWITCH:
            await self.switch(
                event.to_activity_id,
                timestamp_ms=event.timestamp,
                local_id=event.local_id,
                from_activity_id=event.from_activity_id,
            )
        else:
            await self.stop(
                timestamp_ms=event.timestamp,
                local_id=event.local_id,
                from_activity_id=event.from_activity_id,
            )

    async def replay(self, events: List[schemas.SyncQueueEvent]) -> ReplayResult:
        """
        Replay a client's offline queue.

        Events already in the ledger (or repeated within the batch) are
        counted as skipped. The rest are applied in timestamp order, each in
        its own transaction; an event that fails validation is dropped
        without affecting the others.
        """
        outcome = ReplayResult()
        known = await self.already_processed(e.local_id for e in events)

        fresh: List[schemas.SyncQueueEvent] = []
        seen: Set[str] = set(known)
        for event in events:
            if event.local_id in seen:
                outcome.skipped_count += 1
                outcome.skipped_local_ids.append(event.local_id)
                continue
            seen.add(event.local_id)
            fresh.append(event)

        # Sorting is stable, so equal timestamps keep their queue order.
        for event in sorted(fresh, key=lambda e: e.timestamp):
            try:
                async with self.transaction():
                    await self.apply_event(event)
            except ActivityNotFoundError as e:
                log.warning(f"Skipping sync event {event.local_id} for user {self.user_id}: {e}")
                outcome.rejected_local_ids.append(event.local_id)
                continue
            except IntegrityError as e:
                log.warning(f"Sync event {event.local_id} for user {self.user_id} conflicted and was rolled back: {e.orig}")
                continue
            outcome.processed_local_ids.append(event.local_id)

        log.info(
            f"Replayed sync batch for user {self.user_id}: {len(outcome.processed_local_ids)} applied, "
            f"{outcome.skipped_count} skipped, {len(outcome.rejected_local_ids)} rejected"
        )
        return outcome
