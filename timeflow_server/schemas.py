from pydantic import BaseModel, ConfigDict, Field, AfterValidator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Annotated, Dict
from datetime import datetime, date

from timeflow_server.core.models import SyncEventType
from timeflow_server.core.utils import ensure_utc

UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]

# Base schemas
class BaseSchema(BaseModel):
    """Base schema for all Pydantic models to inherit from. The wire format is camelCase."""
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

# Token schemas (OAuth2 clients expect snake_case here)
class Token(BaseModel):
    """Schema for an authentication token."""
    access_token: str
    token_type: str = "bearer"

class TokenData(BaseModel):
    """Schema for the data encoded in a token."""
    user_id: Optional[int] = None
    email: Optional[str] = None

# User schemas
class UserCreate(BaseSchema):
    """Schema for registering a new user."""
    email: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None

class UserLogin(BaseSchema):
    """Schema for a JSON login request."""
    email: Optional[str] = None
    password: Optional[str] = None

class User(BaseSchema):
    """Schema for a user as returned by the API."""
    id: int
    email: str
    name: Optional[str] = None
    created_at: Optional[UTCDateTime] = None

class AuthResponse(BaseModel):
    """Login/registration response: the user plus a bearer token."""
    user: User
    access_token: str
    token_type: str = "bearer"

# Activity schemas
class ActivitySummary(BaseSchema):
    """Display fields of an activity, denormalized onto sessions."""
    id: int
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None

class Activity(ActivitySummary):
    """Schema for an activity as returned by the API."""
    parent_id: Optional[int] = None
    is_default: bool = False
    created_at: Optional[UTCDateTime] = None

class ActivityCreate(BaseSchema):
    """Schema for creating a new activity."""
    name: Optional[str] = None
    parent_id: Optional[int] = None
    icon: Optional[str] = None
    color: Optional[str] = None

class ActivityUpdate(BaseSchema):
    """Schema for updating an existing activity. Only fields that were sent are applied."""
    name: Optional[str] = None
    parent_id: Optional[int] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    is_default: Optional[bool] = None

class ActivityResponse(BaseSchema):
    activity: Activity

class ActivityListResponse(BaseSchema):
    activities: List[Activity]

# Session schemas
class Session(BaseSchema):
    """Schema for a tracked session as returned by the API."""
    id: int
    activity_id: int
    started_at: UTCDateTime
    ended_at: Optional[UTCDateTime] = None
    description: Optional[str] = None
    local_id: Optional[str] = None
    synced_at: Optional[UTCDateTime] = None
    activity: Optional[ActivitySummary] = None

class CurrentSessionView(BaseSchema):
    """The running session with its activity's display fields."""
    id: int
    activity_id: int
    started_at: UTCDateTime
    activity: Optional[ActivitySummary] = None

class CurrentSessionResponse(BaseSchema):
    session: Optional[CurrentSessionView] = None

class SwitchRequest(BaseSchema):
    """Switch to another activity. timestamp is client time in ms since epoch."""
    to_activity_id: Optional[int] = None
    timestamp: Optional[int] = None
    local_id: Optional[str] = None

class SwitchResponse(BaseSchema):
    previous_session: Optional[Session] = None
    current_session: Session

class StopRequest(BaseSchema):
    timestamp: Optional[int] = None
    local_id: Optional[str] = None

class StopResponse(BaseSchema):
    success: bool
    message: str
    session: Optional[Session] = None

# Sync schemas
class SyncQueueEvent(BaseSchema):
    """A state transition recorded by a client while it was offline."""
    local_id: str = Field(min_length=1)
    type: SyncEventType
    from_activity_id: Optional[int] = None
    to_activity_id: Optional[int] = None
    timestamp: int

class SyncRequest(BaseSchema):
    events: Optional[List[SyncQueueEvent]] = None

class SyncResponse(BaseSchema):
    processed_local_ids: List[str]
    skipped_count: int
    # Duplicates and events that can never apply; clients may drop both from their queues.
    skipped_local_ids: List[str] = []
    rejected_local_ids: List[str] = []

# Stats schemas
class ActivityDuration(BaseSchema):
    activity_id: int
    name: str
    color: Optional[str] = None
    duration: int

class ActivityStats(BaseSchema):
    activity: Activity
    total_duration: int
    session_count: int

class DailyBreakdown(BaseSchema):
    date: date
    total_duration: int
    activities: List[ActivityDuration]

class HourlyBreakdown(BaseSchema):
    hour: int
    duration: int
    activities: List[ActivityDuration]

class StatsResponse(BaseSchema):
    """Aggregated time per activity over a range. Durations are in milliseconds."""
    start_date: UTCDateTime
    end_date: UTCDateTime
    total_duration: int
    activities: List[ActivityStats]
    session_count: int
    daily_breakdown: List[DailyBreakdown]
    hourly_breakdown: Optional[List[HourlyBreakdown]] = None

# Emotion schemas
class EmotionCreate(BaseSchema):
    """Log a mood check-in. rating is 1 (worst) to 5 (best)."""
    rating: Optional[int] = None
    description: Optional[str] = None
    session_id: Optional[int] = None

class EmotionUpdate(BaseSchema):
    rating: Optional[int] = None
    description: Optional[str] = None

class Emotion(BaseSchema):
    id: int
    rating: int
    description: Optional[str] = None
    session_id: Optional[int] = None
    created_at: UTCDateTime

class EmotionResponse(BaseSchema):
    emotion: Emotion

class EmotionListResponse(BaseSchema):
    emotions: List[Emotion]

class EmotionStats(BaseSchema):
    average: Optional[float] = None
    total: int
    distribution: Dict[int, int]

class EmotionStatsResponse(BaseSchema):
    stats: EmotionStats

# User settings schemas
class UserSettings(BaseSchema):
    """Calendar preferences. weekStartDay: 0 (Sunday) to 6 (Saturday); dayStartHour: 0 to 23."""
    week_start_day: int
    day_start_hour: int
    updated_at: Optional[UTCDateTime] = None

class UserSettingsUpdate(BaseSchema):
    week_start_day: Optional[int] = None
    day_start_hour: Optional[int] = None

class UserSettingsResponse(BaseSchema):
    settings: UserSettings
