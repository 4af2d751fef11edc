"""
Offline event queue.
An ordered, durable log of state transitions taken while the server was
unreachable or the user had forced offline mode. Events are only ever
appended or removed, never edited.
"""
import logging
import threading
import uuid
from typing import Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from . import config
from .storage import LocalStore

log = logging.getLogger(__name__)

EVENT_SWITCH = "SWITCH"
EVENT_STOP = "STOP"


class SyncQueueEvent(BaseModel):
    """A queued intent, in the same camelCase shape the server's sync endpoint accepts."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    local_id: str
    type: Literal["SWITCH", "STOP"]
    from_activity_id: Optional[int] = None
    to_activity_id: Optional[int] = None
    timestamp: int  # client clock, ms since epoch

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


def new_local_id(kind: str, timestamp_ms: int) -> str:
    """Client-generated id, e.g. switch_1718000000000_3f9a1c2b7d."""
    return f"{kind.lower()}_{timestamp_ms}_{uuid.uuid4().hex[:10]}"


class OfflineEventQueue:
    """Pending SyncQueueEvents, persisted under a single local-store key after every change."""

    def __init__(self, store: LocalStore, storage_key: str = config.STORAGE_KEY_SYNC_QUEUE):
        self.store = store
        self.storage_key = storage_key
        self._events: List[SyncQueueEvent] = []
        self._lock = threading.Lock()

    def load(self) -> None:
        """Reload the queue from the local store. Unreadable entries are dropped."""
        raw = self.store.get_json(self.storage_key, [])
        if not isinstance(raw, list):
            log.warning(f"Ignoring corrupt sync queue under '{self.storage_key}' (expected a list)")
            raw = []

        events = []
        for item in raw:
            try:
                events.append(SyncQueueEvent.model_validate(item))
            except ValidationError as e:
                log.warning(f"Dropping unreadable queued event {item!r}: {e.error_count()} validation error(s)")
        with self._lock:
            self._events = events
        log.info(f"Loaded {len(events)} pending sync event(s)")

    def _save(self) -> None:
        self.store.set_json(self.storage_key, [e.to_wire() for e in self._events])

    def append(self, event: SyncQueueEvent) -> None:
        with self._lock:
            self._events.append(event)
            self._save()
        log.debug(f"Queued {event.type} event {event.local_id}")

    def remove(self, local_ids: Iterable[str]) -> int:
        """Drop acknowledged events. Returns how many were removed."""
        ids = set(local_ids)
        if not ids:
            return 0
        with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.local_id not in ids]
            removed = before - len(self._events)
            if removed:
                self._save()
        return removed

    @property
    def events(self) -> Tuple[SyncQueueEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def __len__(self) -> int:
        return len(self._events)
