"""Data models for friend calendar synchronization and recurrence expansion."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .timezone_utils import ensure_utc, format_utc, parse_iso_datetime


class FriendRole(str, Enum):
    """Roles that grant read access to a friend's calendar."""

    VIEWER = "viewer"
    CONTRIBUTOR = "contributor"
    EDITOR = "editor"
    OWNER = "owner"


class FriendshipStatus(str, Enum):
    """Friendship lifecycle states reported by the permission service."""

    ACCEPTED = "accepted"
    PENDING = "pending"
    DECLINED = "declined"
    BLOCKED = "blocked"
    UNFRIENDED = "unfriended"


class SyncState(str, Enum):
    """Per-owner synchronization state."""

    IDLE = "idle"
    FETCHING = "fetching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PURGED = "purged"


# Event source tagging


class LocalSource(BaseModel):
    """Event created locally by the viewer."""

    kind: Literal["local"] = "local"


class ExternalFeedSource(BaseModel):
    """Event pulled from an external calendar feed (Google, iCal)."""

    kind: Literal["external"] = "external"
    feed_id: str


class FriendSource(BaseModel):
    """Event pulled from a friend's calendar."""

    kind: Literal["friend"] = "friend"
    friend_user_id: str
    feed_id: str


EventSource = Annotated[
    Union[LocalSource, ExternalFeedSource, FriendSource],
    Field(discriminator="kind"),
]


class MasterEvent(BaseModel):
    """A calendar event as owned by the external calendar source.

    Carries an optional recurrence rule and the set of exception timestamps
    (EXDATE-style) that remove individual occurrences.
    """

    id: str = Field(..., description="Event ID")
    title: str = Field(default="", description="Event title")
    description: Optional[str] = Field(default=None, description="Event description")
    start: datetime = Field(..., description="Original start")
    end: datetime = Field(..., description="Original end")
    timezone: Optional[str] = Field(default=None, description="IANA timezone identifier")
    is_all_day: bool = Field(default=False, description="All-day event flag")
    recurrence_rule: Optional[str] = Field(default=None, description="RRULE text")
    exception_dates: set[datetime] = Field(default_factory=set, description="Removed starts")
    sequence: int = Field(default=0, description="Modification sequence")
    last_modified: Optional[datetime] = Field(default=None, description="Modification time")

    @field_validator("start", "end", "last_modified", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        return parse_iso_datetime(value) if isinstance(value, str) else value

    @field_validator("exception_dates", mode="before")
    @classmethod
    def _parse_exceptions(cls, value: Any) -> Any:
        if not isinstance(value, (list, set, tuple)):
            return value
        return {parse_iso_datetime(item) if isinstance(item, str) else item for item in value}

    @field_validator("start", "end", "last_modified")
    @classmethod
    def _normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @field_validator("exception_dates")
    @classmethod
    def _normalize_exceptions(cls, value: set[datetime]) -> set[datetime]:
        return {ensure_utc(dt) for dt in value}

    @property
    def duration(self) -> timedelta:
        """Duration preserved by every expanded instance."""
        return self.end - self.start

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_rule and self.recurrence_rule.strip())


class EventInstance(BaseModel):
    """A concrete occurrence derived from a MasterEvent. Never persisted."""

    master: MasterEvent
    instance_start: datetime
    instance_end: datetime
    instance_id: str

    @classmethod
    def from_occurrence(cls, master: MasterEvent, start: datetime) -> "EventInstance":
        start = ensure_utc(start)
        return cls(
            master=master,
            instance_start=start,
            instance_end=start + master.duration,
            instance_id=f"{master.id}:{format_utc(start)}",
        )


class ExpansionOptions(BaseModel):
    """Options accepted by RecurrenceExpander.expand."""

    include_exceptions: bool = True
    max_instances: Optional[int] = Field(default=None, ge=0)


class RawFeedEvent(BaseModel):
    """Raw event record returned by the remote calendar feed."""

    id: str
    title: str = ""
    description: Optional[str] = None
    start_time: datetime = Field(..., alias="startTime")
    end_time: datetime = Field(..., alias="endTime")
    is_all_day: bool = Field(default=False, alias="isAllDay")
    color: Optional[str] = None
    location: Optional[str] = None
    attendees: Optional[list[str]] = None
    external_id: Optional[str] = Field(default=None, alias="externalId")
    timezone: Optional[str] = None
    recurrence_rule: Optional[str] = Field(default=None, alias="recurrenceRule")
    exception_dates: list[datetime] = Field(default_factory=list, alias="exceptionDates")
    sequence: int = 0
    last_modified: Optional[datetime] = Field(default=None, alias="lastModified")

    # Set on records produced by recurrence expansion
    original_event_id: Optional[str] = None
    instance_start: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)

    # Upstream sends ISO-8601 with "Z", offsets, or date-only values
    @field_validator("start_time", "end_time", "last_modified", "instance_start", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        return parse_iso_datetime(value) if isinstance(value, str) else value

    @field_validator("exception_dates", mode="before")
    @classmethod
    def _parse_exceptions(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [parse_iso_datetime(item) if isinstance(item, str) else item for item in value]

    @field_validator("start_time", "end_time", "last_modified", "instance_start")
    @classmethod
    def _normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @field_validator("exception_dates")
    @classmethod
    def _normalize_exceptions(cls, value: list[datetime]) -> list[datetime]:
        return [ensure_utc(dt) for dt in value]

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_rule and self.recurrence_rule.strip())

    def to_master_event(self) -> MasterEvent:
        return MasterEvent(
            id=self.id,
            title=self.title,
            description=self.description,
            start=self.start_time,
            end=self.end_time,
            timezone=self.timezone,
            is_all_day=self.is_all_day,
            recurrence_rule=self.recurrence_rule,
            exception_dates=set(self.exception_dates),
            sequence=self.sequence,
            last_modified=self.last_modified,
        )

    def to_instance(self, instance: EventInstance) -> "RawFeedEvent":
        """Copy of this record positioned at an expanded occurrence."""
        return self.model_copy(
            update={
                "id": instance.instance_id,
                "start_time": instance.instance_start,
                "end_time": instance.instance_end,
                "recurrence_rule": None,
                "exception_dates": [],
                "original_event_id": self.id,
                "instance_start": instance.instance_start,
            }
        )


class FriendCalendarEvent(BaseModel):
    """An event from a friend's calendar, annotated with provenance."""

    id: str
    title: str = ""
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    timezone: Optional[str] = None
    is_all_day: bool = False
    color: str
    location: Optional[str] = None
    attendees: Optional[list[str]] = None

    friend_user_id: str
    friend_display_name: str
    feed_id: str
    feed_name: str
    source: EventSource
    canonical_event_id: str
    original_event_id: str
    is_from_friend: Literal[True] = True
    is_recurring_instance: bool = False
    sequence: int = 0
    last_modified: Optional[datetime] = None

    @field_serializer("start_time", "end_time")
    def serialize_datetime(self, dt: datetime) -> str:
        return dt.isoformat()

    @field_serializer("last_modified", when_used="unless-none")
    def serialize_last_modified(self, dt: datetime) -> str:
        return dt.isoformat()


class FriendProfile(BaseModel):
    """Minimal friend profile used for feed naming."""

    id: str
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    username: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def display_name(self) -> str:
        return self.first_name or self.last_name or self.username or "Friend"


class FriendCalendarFeed(BaseModel):
    """A registered friend calendar feed."""

    id: str
    name: str
    type: Literal["friend"] = "friend"
    friend_user_id: str
    color: str
    is_enabled: bool = True
    last_sync_at: Optional[datetime] = None
    sync_error: Optional[str] = None


class PermissionSnapshot(BaseModel):
    """Result of a single live permission check. Never cached."""

    has_access: bool = Field(default=False, alias="hasAccess")
    permission: Optional[str] = None
    status: Optional[FriendshipStatus] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def role(self) -> Optional[FriendRole]:
        if not self.permission:
            return None
        try:
            return FriendRole(self.permission)
        except ValueError:
            return None


class CacheEntry(BaseModel):
    """Cached event list for one owner and one query window."""

    owner_id: str
    window_key: str
    events: list[FriendCalendarEvent] = Field(default_factory=list)
    written_at: datetime

    @field_validator("written_at")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def age(self, now: datetime) -> timedelta:
        return ensure_utc(now) - self.written_at

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return self.age(now) < ttl


class SyncMetadata(BaseModel):
    """Per-owner sync status, used only for status display."""

    owner_id: str
    state: SyncState = SyncState.IDLE
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_outcome: Optional[SyncState] = None

    @property
    def has_error(self) -> bool:
        return self.last_error is not None
