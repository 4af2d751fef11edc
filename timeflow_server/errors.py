"""
Domain errors raised by the service layer.

Endpoints translate these into HTTP responses; the service layer itself
never raises HTTPException.
"""


class TimeFlowError(Exception):
    """Base class for domain errors."""


class ActivityNotFoundError(TimeFlowError):
    """The activity does not exist or belongs to another user."""

    def __init__(self, activity_id):
        super().__init__(f"Activity {activity_id} not found")
        self.activity_id = activity_id


class ActivityCycleError(TimeFlowError):
    """Re-parenting would make an activity its own ancestor."""

    def __init__(self, activity_id, parent_id):
        super().__init__(f"Activity {activity_id} cannot be placed under {parent_id}: it would create a cycle")
        self.activity_id = activity_id
        self.parent_id = parent_id
