"""
Client-side activity cache.
Keeps the user's activities (flat list and tree) available offline so the
session store can show display fields and pick the default activity.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import config
from .api_client import TimeFlowAPI
from .errors import TimeFlowClientError
from .storage import LocalStore

log = logging.getLogger(__name__)

DISPLAY_FIELDS = ("id", "name", "icon", "color")


@dataclass
class ActivityNode:
    activity: Dict[str, Any]
    children: List["ActivityNode"] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.activity["id"]

    @property
    def name(self) -> str:
        return self.activity.get("name", "")


def build_tree(activities: List[Dict[str, Any]]) -> List[ActivityNode]:
    """
    Nest a flat activity list by parentId. One pass creates the nodes, a second
    links each to its parent; activities whose parent is unknown become roots.
    """
    nodes = {a["id"]: ActivityNode(a) for a in activities}
    roots: List[ActivityNode] = []
    for activity in activities:
        node = nodes[activity["id"]]
        parent = nodes.get(activity.get("parentId"))
        if parent is not None and parent is not node:
            parent.children.append(node)
        else:
            roots.append(node)
    return roots


def display_fields(activity: Dict[str, Any]) -> Dict[str, Any]:
    """The denormalized fields a session carries for its activity."""
    return {key: activity.get(key) for key in DISPLAY_FIELDS}


class ActivityCache:
    def __init__(self, store: LocalStore, api: TimeFlowAPI, storage_key: str = config.STORAGE_KEY_ACTIVITIES):
        self.store = store
        self.api = api
        self.storage_key = storage_key
        self.activities: List[Dict[str, Any]] = []
        self.tree: List[ActivityNode] = []
        self.is_loading = False

    def _set(self, activities: List[Dict[str, Any]]) -> None:
        self.activities = [a for a in activities if isinstance(a, dict) and isinstance(a.get("id"), int)]
        self.tree = build_tree(self.activities)

    def fetch(self) -> List[Dict[str, Any]]:
        """Load activities from the server, falling back to the cached copy on failure."""
        self.is_loading = True
        try:
            activities = self.api.list_activities()
        except TimeFlowClientError as e:
            log.warning(f"Failed to fetch activities, using cached copy: {e}")
            self.restore()
            return self.activities
        finally:
            self.is_loading = False

        self._set(activities)
        self.store.set_json(self.storage_key, self.activities)
        log.info(f"Fetched {len(self.activities)} activities")
        return self.activities

    def restore(self) -> bool:
        cached = self.store.get_json(self.storage_key)
        if not isinstance(cached, list):
            if cached is not None:
                log.warning(f"Ignoring corrupt activity cache under '{self.storage_key}'")
            return False
        self._set(cached)
        return True

    @property
    def default_activity(self) -> Optional[Dict[str, Any]]:
        return next((a for a in self.activities if a.get("isDefault")), None)

    def get(self, activity_id: int) -> Optional[Dict[str, Any]]:
        return next((a for a in self.activities if a["id"] == activity_id), None)
