from sqlalchemy import (
    String, DateTime, Text, Integer, Boolean, ForeignKey, Index, UniqueConstraint, CheckConstraint, text
)
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.sql import func
from datetime import datetime
from typing import Optional
import enum

from .database import Base
from .utils import ensure_utc, utcnow

DEFAULT_ACTIVITY_ICON = "i-lucide-circle"
DEFAULT_ACTIVITY_COLOR = "#6366f1"
DEFAULT_WEEK_START_DAY = 1  # Monday
DEFAULT_DAY_START_HOUR = 0
MIN_EMOTION_RATING = 1
MAX_EMOTION_RATING = 5

class UTCDateTime(TypeDecorator):
    """
    Timezone-aware DateTime that always loads as UTC.
    SQLite keeps no offset, so values are written in UTC and tagged on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)

class SyncEventType(str, enum.Enum):
    """State transitions a client can queue while offline."""
    SWITCH = "SWITCH"
    STOP = "STOP"

class User(Base):
    """Represents a user of the TimeFlow application."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())

class Activity(Base):
    """A node in the user's activity tree; sessions are always tracked against one."""
    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("activities.id", ondelete="CASCADE"),
        nullable=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default=DEFAULT_ACTIVITY_ICON)
    color: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default=DEFAULT_ACTIVITY_COLOR)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())

class TrackingSession(Base):
    """A contiguous span of time spent on one activity. ended_at is NULL while it is running."""
    __tablename__ = "sessions"
    __table_args__ = (
        # At most one open session per user.
        Index(
            "uq_sessions_one_active_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("ended_at IS NULL"),
            postgresql_where=text("ended_at IS NULL"),
        ),
        Index("ix_sessions_user_started", "user_id", "started_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id", ondelete="CASCADE"), nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    local_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    synced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())

    # Relationships
    activity = relationship("Activity", lazy="joined")

class SyncEvent(Base):
    """Ledger of client events already applied, keyed by (user_id, local_id)."""
    __tablename__ = "sync_events"
    __table_args__ = (
        UniqueConstraint("user_id", "local_id", name="uq_sync_events_user_local_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    local_id: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    from_activity_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("activities.id", ondelete="SET NULL"), nullable=True
    )
    to_activity_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("activities.id", ondelete="SET NULL"), nullable=True
    )
    event_timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())

class Emotion(Base):
    """A mood check-in, optionally tied to the session that was running when it was logged."""
    __tablename__ = "emotions"
    __table_args__ = (
        CheckConstraint(
            f"rating BETWEEN {MIN_EMOTION_RATING} AND {MAX_EMOTION_RATING}",
            name="ck_emotions_rating_range",
        ),
        Index("ix_emotions_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    session_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("sessions.id", ondelete="SET NULL"), nullable=True
    )
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

class UserSettings(Base):
    """Per-user calendar preferences. A user without a row gets the defaults."""
    __tablename__ = "user_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    week_start_day: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_WEEK_START_DAY)  # 0=Sunday
    day_start_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_DAY_START_HOUR)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)
