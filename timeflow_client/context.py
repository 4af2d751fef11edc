"""
Wiring for the TimeFlow client.
AppContext builds every client component once and owns their lifecycle.
"""
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .activities import ActivityCache
from .api_client import TimeFlowAPI
from .storage import LocalStore
from .sync import SyncDriver
from .sync_queue import OfflineEventQueue
from .timer import LocalSessionStore

log = logging.getLogger(__name__)

PROBE_JOB_ID = "network_probe"


class AppContext:
    def __init__(
        self,
        db_path: str = config.LOCAL_STORE_DB_PATH,
        api: Optional[TimeFlowAPI] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.storage = LocalStore(db_path)
        self.api = api or TimeFlowAPI()
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.queue = OfflineEventQueue(self.storage)
        self.driver = SyncDriver(self.storage, self.queue, self.api)
        self.activities = ActivityCache(self.storage, self.api)
        self.timer = LocalSessionStore(self.storage, self.api, self.driver, self.activities, self.scheduler)
        self._initialized = False

    def init(self, background: bool = False) -> None:
        """
        Restore local state and catch up with the server where possible.
        With background=True the scheduler is started, so the live clock
        ticks and the network is probed periodically.
        """
        if self._initialized:
            return
        self.storage.initialize()
        if not self.api.token:
            self.api.set_token(self.storage.get_json(config.STORAGE_KEY_AUTH_TOKEN))

        self.driver.init()
        if self.driver.is_online:
            self.activities.fetch()
        else:
            self.activities.restore()
        self.timer.init()

        if background:
            self.scheduler.add_job(
                self.driver.probe_network,
                trigger=IntervalTrigger(seconds=config.NETWORK_PROBE_INTERVAL_SECONDS),
                id=PROBE_JOB_ID,
                name="Network Probe",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self.scheduler.start()
            log.info("Scheduler started")
        self._initialized = True

    def save_token(self, token: Optional[str]) -> None:
        self.api.set_token(token)
        if token:
            self.storage.set_json(config.STORAGE_KEY_AUTH_TOKEN, token)
        else:
            self.storage.remove(config.STORAGE_KEY_AUTH_TOKEN)

    def teardown(self) -> None:
        self.timer.teardown()
        if self.scheduler.running:
            try:
                self.scheduler.shutdown(wait=False)
                log.info("Scheduler shut down")
            except Exception as e:
                log.error(f"Error shutting down scheduler: {e}", exc_info=True)
        self.storage.close()
        self._initialized = False
