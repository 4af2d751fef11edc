from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from timeflow_client.activities import ActivityCache
from timeflow_client.api_client import TimeFlowAPI
from timeflow_client.storage import LocalStore
from timeflow_client.sync import SyncDriver
from timeflow_client.sync_queue import OfflineEventQueue
from timeflow_client.timer import LocalSessionStore

ACTIVITIES = [
    {"id": 1, "name": "Idle", "icon": "i-lucide-circle", "color": "#6366f1", "parentId": None, "isDefault": True},
    {"id": 2, "name": "Work", "icon": None, "color": "#ff0000", "parentId": None, "isDefault": False},
    {"id": 3, "name": "Coding", "icon": None, "color": "#00ff00", "parentId": 2, "isDefault": False},
]


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    local_store = LocalStore(str(tmp_path / "client.sqlite"))
    local_store.initialize()
    yield local_store
    local_store.close()


@pytest.fixture
def api():
    mock_api = MagicMock(spec=TimeFlowAPI)
    mock_api.token = "token"
    mock_api.health.return_value = True
    mock_api.list_activities.return_value = ACTIVITIES
    mock_api.get_current_session.return_value = None
    mock_api.sync.side_effect = lambda events: {
        "processedLocalIds": [e["localId"] for e in events],
        "skippedCount": 0,
        "skippedLocalIds": [],
        "rejectedLocalIds": [],
    }
    return mock_api


@pytest.fixture
def queue(store):
    return OfflineEventQueue(store)


@pytest.fixture
def driver(store, queue, api):
    return SyncDriver(store, queue, api)


@pytest.fixture
def activities(store, api):
    cache = ActivityCache(store, api)
    cache.fetch()
    return cache


@pytest.fixture
def scheduler():
    # Never started: jobs stay pending, which is enough to count clock handles.
    return BackgroundScheduler(timezone="UTC")


@pytest.fixture
def timer(store, api, driver, activities, scheduler, clock):
    session_store = LocalSessionStore(store, api, driver, activities, scheduler, clock=clock)
    yield session_store
    session_store.teardown()


def _server_session(session_id, activity, started_at: datetime):
    return {
        "id": session_id,
        "activityId": activity["id"],
        "startedAt": started_at.isoformat().replace("+00:00", "Z"),
        "activity": {k: activity[k] for k in ("id", "name", "icon", "color")},
    }


@pytest.fixture
def server_session():
    """Builds a session the way the server's JSON returns it."""
    return _server_session
