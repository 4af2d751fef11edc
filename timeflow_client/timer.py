"""
Local session store.
Holds what the user is doing right now, ticks a live clock, and survives
restarts through the local store. Every user action updates local state
first and only then talks to the server (or queues the intent when offline).

Sync states:
    CONFIRMED       local state matches what the server last told us
    OPTIMISTIC      local change not yet acknowledged by the server
    REVERT_PENDING  a direct call failed and the previous state is being restored
"""
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from . import config
from .activities import ActivityCache, display_fields
from .api_client import TimeFlowAPI
from .errors import RequestRejectedError, TimeFlowClientError, TransientNetworkError
from .storage import LocalStore
from .sync import SyncDriver, SyncOutcome
from .sync_queue import EVENT_STOP, EVENT_SWITCH, SyncQueueEvent, new_local_id

log = logging.getLogger(__name__)

TEMP_SESSION_ID = -1  # id of a session the server has not assigned yet
CLOCK_JOB_ID = "live_clock"


class SessionSyncState(str, Enum):
    CONFIRMED = "CONFIRMED"
    OPTIMISTIC = "OPTIMISTIC"
    REVERT_PENDING = "REVERT_PENDING"


ALLOWED_TRANSITIONS = {
    SessionSyncState.CONFIRMED: {SessionSyncState.CONFIRMED, SessionSyncState.OPTIMISTIC},
    SessionSyncState.OPTIMISTIC: {
        SessionSyncState.OPTIMISTIC,
        SessionSyncState.CONFIRMED,
        SessionSyncState.REVERT_PENDING,
    },
    SessionSyncState.REVERT_PENDING: {SessionSyncState.CONFIRMED, SessionSyncState.OPTIMISTIC},
}


class InvalidTransitionError(RuntimeError):
    pass


class ActivityDisplay(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None


class CurrentSession(BaseModel):
    """The running session as the client knows it; id is TEMP_SESSION_ID until the server confirms it."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    activity_id: int
    started_at: datetime
    activity: ActivityDisplay

    @field_validator("started_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def format_elapsed(elapsed_ms: int) -> str:
    total_seconds = max(0, elapsed_ms) // 1000
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class LocalSessionStore:
    def __init__(
        self,
        storage: LocalStore,
        api: TimeFlowAPI,
        driver: SyncDriver,
        activities: ActivityCache,
        scheduler,
        clock: Callable[[], datetime] = _utcnow,
        storage_key: str = config.STORAGE_KEY_SESSION,
    ):
        self.storage = storage
        self.api = api
        self.driver = driver
        self.activities = activities
        self.scheduler = scheduler
        self.clock = clock
        self.storage_key = storage_key

        self.current_session: Optional[CurrentSession] = None
        self.elapsed_ms = 0
        self.is_tracking = False
        self.is_loading = True
        self.sync_state = SessionSyncState.CONFIRMED

        self._lock = threading.RLock()
        self._clock_job = None
        self._direct_call_active = False

        self.driver.add_listener(self._on_synced)

    # --- State machine ---

    def _transition(self, target: SessionSyncState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.sync_state]:
            raise InvalidTransitionError(f"Cannot move session state from {self.sync_state.value} to {target.value}")
        if target != self.sync_state:
            log.debug(f"Session state {self.sync_state.value} -> {target.value}")
        self.sync_state = target

    # --- Live clock ---

    def _start_clock(self) -> None:
        """Ensure exactly one clock job exists."""
        if self._clock_job is not None:
            return
        self._clock_job = self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=config.CLOCK_TICK_SECONDS),
            id=CLOCK_JOB_ID,
            name="Live Clock",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.tick()

    def _stop_clock(self) -> None:
        if self._clock_job is None:
            return
        job, self._clock_job = self._clock_job, None
        try:
            job.remove()
        except JobLookupError:
            log.debug("Live clock job was already removed")

    @property
    def clock_running(self) -> bool:
        return self._clock_job is not None

    def tick(self) -> None:
        with self._lock:
            if self.current_session is not None and self.is_tracking:
                self.elapsed_ms = max(0, _to_ms(self.clock()) - _to_ms(self.current_session.started_at))

    @property
    def formatted_time(self) -> str:
        return format_elapsed(self.elapsed_ms)

    # --- Persistence ---

    def _save_snapshot(self) -> None:
        if self.current_session is None:
            self.storage.remove(self.storage_key)
            return
        snapshot = self.current_session.model_dump(mode="json", by_alias=True)
        snapshot["isTracking"] = self.is_tracking
        snapshot["syncState"] = self.sync_state.value
        self.storage.set_json(self.storage_key, snapshot)

    def _apply(self, session: Optional[CurrentSession], tracking: bool) -> None:
        self.current_session = session
        self.is_tracking = tracking and session is not None
        self.elapsed_ms = 0
        if self.is_tracking:
            self._start_clock()
        else:
            self._stop_clock()

    def restore(self) -> bool:
        """Load the last snapshot from the local store. Returns True if one was usable."""
        snapshot = self.storage.get_json(self.storage_key)
        if snapshot is None:
            return False
        try:
            session = CurrentSession.model_validate(snapshot)
        except ValidationError as e:
            log.warning(f"Ignoring unreadable session snapshot: {e.error_count()} validation error(s)")
            return False

        with self._lock:
            try:
                self.sync_state = SessionSyncState(snapshot.get("syncState"))
            except ValueError:
                self.sync_state = (
                    SessionSyncState.OPTIMISTIC if session.id == TEMP_SESSION_ID else SessionSyncState.CONFIRMED
                )
            if self.sync_state == SessionSyncState.REVERT_PENDING:
                # Interrupted mid-revert; the snapshot is the last state we committed to.
                self.sync_state = SessionSyncState.OPTIMISTIC
            self._apply(session, snapshot.get("isTracking") is not False)
            self.is_loading = False
        log.info(f"Restored session for '{session.activity.name}' started at {session.started_at.isoformat()}")
        return True

    def init(self) -> None:
        """Show the local snapshot first; only ask the server when online and nothing usable is stored."""
        restored = self.restore()
        if self.driver.is_online and not restored:
            self.fetch_current_session()
        else:
            self.is_loading = False

    def teardown(self) -> None:
        with self._lock:
            self._stop_clock()

    # --- Server reads ---

    def fetch_current_session(self) -> None:
        """Replace local state with the server's view. A failed fetch keeps whatever we have."""
        if not self.driver.is_online:
            self.is_loading = False
            return
        if self.driver.pending_count:
            log.debug("Queued events not yet synced; keeping local session state")
            self.is_loading = False
            return

        self.is_loading = True
        try:
            data = self.api.get_current_session()
        except TimeFlowClientError as e:
            log.warning(f"Failed to fetch current session, keeping local state: {e}")
            return
        finally:
            self.is_loading = False

        session = None
        if data and data.get("activity"):
            try:
                session = CurrentSession.model_validate(data)
            except ValidationError as e:
                log.error(f"Server returned an unreadable session, keeping local state: {e}")
                return

        with self._lock:
            self._apply(session, tracking=session is not None)
            self._transition(SessionSyncState.CONFIRMED)
            self._save_snapshot()

    def _on_synced(self, outcome: SyncOutcome) -> None:
        # A direct call reconciles its own response; refreshing mid-call would clobber the optimistic state.
        if self._direct_call_active:
            return
        self.fetch_current_session()

    def _flush_before_direct_call(self) -> bool:
        """
        Send anything already queued before a direct call so the server sees
        events in order. Returns False if the new intent must be queued behind them.
        """
        if self.driver.pending_count:
            self.driver.sync_to_server()
        return self.driver.is_online and not self.driver.pending_count

    # --- User actions ---

    def _display_for(self, activity_id: int, display: Optional[Dict[str, Any]]) -> ActivityDisplay:
        source = display or self.activities.get(activity_id) or {"id": activity_id, "name": "Unknown"}
        return ActivityDisplay.model_validate(display_fields({**source, "id": activity_id}))

    def switch_activity(self, target_id: int, display: Optional[Dict[str, Any]] = None) -> Optional[CurrentSession]:
        """
        Start tracking target_id now. Online: the server is called directly and a
        failure restores the previous session while the intent is queued.
        Offline: the intent is queued and the optimistic session stays.
        """
        now = self.clock()
        timestamp = _to_ms(now)
        local_id = new_local_id(EVENT_SWITCH, timestamp)

        with self._lock:
            previous = self.current_session
            previous_tracking = self.is_tracking
            previous_state = self.sync_state

            optimistic = CurrentSession(
                id=TEMP_SESSION_ID,
                activity_id=target_id,
                started_at=now,
                activity=self._display_for(target_id, display),
            )
            self._apply(optimistic, tracking=True)
            self._transition(SessionSyncState.OPTIMISTIC)
            self._save_snapshot()

        event = SyncQueueEvent(
            local_id=local_id,
            type=EVENT_SWITCH,
            from_activity_id=previous.activity_id if previous else None,
            to_activity_id=target_id,
            timestamp=timestamp,
        )

        if not self.driver.is_online:
            self.driver.add_event(event)
            log.info(f"Offline: queued switch to activity {target_id}")
            return self.current_session

        self._direct_call_active = True
        try:
            if not self._flush_before_direct_call():
                self.driver.add_event(event)
                log.info(f"Queued switch to activity {target_id} behind unsynced events")
                return self.current_session
            try:
                data = self.api.switch(target_id, timestamp, local_id)
            except RequestRejectedError as e:
                log.error(f"Server rejected switch to activity {target_id}: {e}")
                self._revert(previous, previous_tracking, previous_state)
                return self.current_session
            except TimeFlowClientError as e:
                log.warning(f"Switch to activity {target_id} failed, reverting and queueing it: {e}")
                if isinstance(e, TransientNetworkError):
                    self.driver.set_network_reachable(False)
                self._revert(previous, previous_tracking, SessionSyncState.OPTIMISTIC)
                self.driver.add_event(event)
                return self.current_session
        finally:
            self._direct_call_active = False

        try:
            confirmed = CurrentSession.model_validate(data.get("currentSession") or {})
        except ValidationError as e:
            log.error(f"Server switch response was unreadable, keeping optimistic session: {e}")
            return self.current_session

        with self._lock:
            # A later local action owns the state now; its own response will reconcile it.
            if self.current_session is optimistic:
                self.current_session = confirmed
                self.tick()
                self._transition(SessionSyncState.CONFIRMED)
                self._save_snapshot()
        log.info(f"Switched to '{confirmed.activity.name}' (session {confirmed.id})")
        return self.current_session

    def _revert(
        self,
        previous: Optional[CurrentSession],
        previous_tracking: bool,
        settle_state: SessionSyncState,
    ) -> None:
        with self._lock:
            self._transition(SessionSyncState.REVERT_PENDING)
            self._apply(previous, previous_tracking)
            self.tick()
            self._transition(settle_state)
            self._save_snapshot()

    def stop_tracking(self) -> Optional[CurrentSession]:
        """
        Stop the running session. The stopped state is kept whatever the server
        says; if it cannot be told now, a STOP intent is queued.
        Returns the session that was stopped, or None if nothing was tracked.
        """
        with self._lock:
            previous = self.current_session
            if previous is None:
                log.info("Not tracking; nothing to stop")
                return None
            now = self.clock()
            timestamp = _to_ms(now)
            local_id = new_local_id(EVENT_STOP, timestamp)

            self._apply(None, tracking=False)
            self._transition(SessionSyncState.OPTIMISTIC)
            self._save_snapshot()

        event = SyncQueueEvent(
            local_id=local_id,
            type=EVENT_STOP,
            from_activity_id=previous.activity_id,
            to_activity_id=None,
            timestamp=timestamp,
        )

        if not self.driver.is_online:
            self.driver.add_event(event)
            log.info("Offline: queued stop")
            return previous

        self._direct_call_active = True
        try:
            if not self._flush_before_direct_call():
                self.driver.add_event(event)
                log.info("Queued stop behind unsynced events")
                return previous
            try:
                self.api.stop(timestamp, local_id)
            except TimeFlowClientError as e:
                log.warning(f"Stop failed, queueing it: {e}")
                if isinstance(e, TransientNetworkError):
                    self.driver.set_network_reachable(False)
                self.driver.add_event(event)
                return previous
        finally:
            self._direct_call_active = False

        with self._lock:
            if self.current_session is None:
                self._transition(SessionSyncState.CONFIRMED)
        log.info(f"Stopped tracking '{previous.activity.name}'")
        return previous

    def resume_tracking(self) -> Optional[CurrentSession]:
        """Start a fresh session on the user's default activity."""
        default = self.activities.default_activity
        if default is None:
            log.warning("No default activity known; cannot resume")
            return None
        return self.switch_activity(default["id"], default)
