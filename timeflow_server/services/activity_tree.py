"""
Activity hierarchy helpers.

Activities form a forest through parent_id. These helpers work on a flat
arena of activities keyed by id and never issue a query per node.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Protocol


class ActivityLike(Protocol):
    id: int
    parent_id: Optional[int]


def parent_map(activities: Iterable[ActivityLike]) -> Dict[int, Optional[int]]:
    return {a.id: a.parent_id for a in activities}


def ancestors(activity_id: int, parents: Mapping[int, Optional[int]]) -> List[int]:
    """Ids from the activity's parent up to its root. Stops if the arena already holds a cycle."""
    chain: List[int] = []
    seen = {activity_id}
    current = parents.get(activity_id)
    while current is not None and current not in seen:
        chain.append(current)
        seen.add(current)
        current = parents.get(current)
    return chain


def would_create_cycle(activity_id: int, new_parent_id: Optional[int], parents: Mapping[int, Optional[int]]) -> bool:
    """True if making new_parent_id the parent of activity_id would put activity_id among its own ancestors."""
    if new_parent_id is None:
        return False
    if new_parent_id == activity_id:
        return True
    return activity_id in ancestors(new_parent_id, parents)


def path_from_root(activity_id: int, parents: Mapping[int, Optional[int]]) -> List[int]:
    return list(reversed(ancestors(activity_id, parents))) + [activity_id]


def ancestor_at_depth(activity_id: int, depth: int, parents: Mapping[int, Optional[int]]) -> int:
    """
    The activity's ancestor at the given depth (1 = root). Depth 0 means the
    activity itself; activities shallower than depth roll up to themselves.
    """
    if depth <= 0:
        return activity_id
    path = path_from_root(activity_id, parents)
    if len(path) >= depth:
        return path[depth - 1]
    return path[-1]
