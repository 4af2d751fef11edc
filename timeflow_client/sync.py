"""
Sync driver for the TimeFlow client.
Decides whether the client is effectively online and flushes the offline
event queue to the server's sync endpoint.

Effective online = network reachable AND NOT forced offline. Regaining the
network never flushes on its own; a flush happens on init, when the user
asks to go online, or when the session store is about to make a direct call.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from . import config
from .api_client import TimeFlowAPI
from .errors import TimeFlowClientError, TransientNetworkError
from .storage import LocalStore
from .sync_queue import OfflineEventQueue, SyncQueueEvent

log = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    processed_local_ids: List[str] = field(default_factory=list)
    skipped_count: int = 0
    rejected_local_ids: List[str] = field(default_factory=list)
    remaining: int = 0


class SyncDriver:
    """Owns online/offline state and the single in-flight sync."""

    def __init__(self, store: LocalStore, queue: OfflineEventQueue, api: TimeFlowAPI):
        self.store = store
        self.queue = queue
        self.api = api
        self.network_reachable = True
        self.forced_offline = False
        self.last_synced_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        # Busy flag: a second sync while one is in flight is a no-op.
        self._sync_lock = threading.Lock()
        self._listeners: List[Callable[[SyncOutcome], None]] = []

    # --- State ---

    @property
    def is_online(self) -> bool:
        return self.network_reachable and not self.forced_offline

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def pending_count(self) -> int:
        return len(self.queue)

    def add_listener(self, callback: Callable[[SyncOutcome], None]) -> None:
        """Called after every sync that reached the server."""
        self._listeners.append(callback)

    def init(self) -> None:
        """Load the queue and the forced-offline preference, then flush once if effectively online."""
        self.queue.load()
        self.forced_offline = self.store.get_json(config.STORAGE_KEY_FORCED_OFFLINE, False) is True
        if self.forced_offline:
            log.info("Starting in forced offline mode")
        else:
            self.probe_network()
        if self.is_online and self.pending_count:
            self.sync_to_server()

    def set_network_reachable(self, reachable: bool) -> None:
        """Record raw reachability. Deliberately never triggers a flush."""
        if reachable != self.network_reachable:
            log.info(f"Network {'reachable' if reachable else 'unreachable'}")
        self.network_reachable = reachable

    def probe_network(self) -> bool:
        self.set_network_reachable(self.api.health())
        return self.network_reachable

    def go_offline(self) -> None:
        self.forced_offline = True
        self.store.set_json(config.STORAGE_KEY_FORCED_OFFLINE, True)
        log.info("Forced offline mode enabled; changes will be queued locally")

    def try_go_online(self) -> bool:
        """Leave forced offline mode and, if the server is reachable, flush the queue."""
        self.forced_offline = False
        self.store.set_json(config.STORAGE_KEY_FORCED_OFFLINE, False)
        if self.probe_network():
            self.sync_to_server()
        else:
            log.warning("Server is not reachable; staying offline")
        return self.is_online

    def add_event(self, event: SyncQueueEvent) -> None:
        self.queue.append(event)

    # --- Sync ---

    def sync_to_server(self) -> Optional[SyncOutcome]:
        """
        Send the whole queue in one batch. Acknowledged events are removed;
        on failure the queue is left untouched for the next attempt.
        Returns None when nothing was sent.
        """
        if not self.pending_count or not self.is_online:
            return None
        if not self._sync_lock.acquire(blocking=False):
            log.debug("Sync already in progress; skipping")
            return None

        try:
            batch = self.queue.events
            log.info(f"Syncing {len(batch)} queued event(s) to the server")
            try:
                response = self.api.sync([event.to_wire() for event in batch])
            except TransientNetworkError as e:
                log.warning(f"Sync failed, {len(batch)} event(s) stay queued: {e}")
                self.last_error = str(e)
                self.set_network_reachable(False)
                return None
            except TimeFlowClientError as e:
                log.error(f"Server refused sync batch, {len(batch)} event(s) stay queued: {e}")
                self.last_error = str(e)
                return None

            processed = list(response.get("processedLocalIds") or [])
            skipped = list(response.get("skippedLocalIds") or [])
            rejected = list(response.get("rejectedLocalIds") or [])
            if rejected:
                log.warning(f"Server rejected queued event(s) {rejected}; dropping them")

            self.queue.remove(processed + skipped + rejected)
            outcome = SyncOutcome(
                processed_local_ids=processed,
                skipped_count=int(response.get("skippedCount") or 0),
                rejected_local_ids=rejected,
                remaining=self.pending_count,
            )
            self.last_error = None
            self.last_synced_at = datetime.now(timezone.utc)
            log.info(
                f"Sync complete: {len(processed)} applied, {outcome.skipped_count} already processed, "
                f"{outcome.remaining} still queued"
            )
        finally:
            self._sync_lock.release()

        for callback in list(self._listeners):
            try:
                callback(outcome)
            except Exception as e:
                log.error(f"Sync listener {callback!r} failed: {e}", exc_info=True)
        return outcome
