"""Data models for calendar mirroring."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from dateutil.parser import isoparse
from pydantic import BaseModel, Field, validator
import pytz


class SyncMode(str, Enum):
    """How a calendar is read from the remote service."""

    FULL = "full"
    INCREMENTAL = "incremental"


class SyncPhase(str, Enum):
    """Per-calendar orchestrator states."""

    IDLE = "idle"
    FETCHING = "fetching"
    PAGING = "paging"
    RECONCILING = "reconciling"
    ADVANCING = "advancing"
    ERROR_RECOVERY = "error_recovery"
    DONE = "done"
    FAILED = "failed"


class CalendarRole(str, Enum):
    """Role of a calendar an event was observed on."""

    PRIMARY = "primary"
    SHARED = "shared"


class LocationStatus(str, Enum):
    """Lifecycle of a canonical location."""

    APPROVED = "approved"
    MERGED = "merged"


class MatchType(str, Enum):
    """How a free-text location segment was resolved."""

    EXACT = "exact"
    CODE = "code"
    FUZZY = "fuzzy"
    VARIATION = "variation"  # Fuzzy hit on text already seen for the entity
    CREATED = "created"
    VIRTUAL = "virtual"
    NONE = "none"


class MergeOperation(str, Enum):
    """Outcome of reconciling one remote change record."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


def _parse_remote_datetime(value: Any) -> Optional[datetime]:
    """Parse a remote timestamp, returning None when it cannot be read."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        # Graph style {"dateTime": ..., "timeZone": ...}
        tz_name = value.get("timeZone") or "UTC"
        value = value.get("dateTime")
        if not value:
            return None
        try:
            parsed = isoparse(value)
        except (ValueError, TypeError):
            return None
        if parsed.tzinfo is None:
            try:
                parsed = pytz.timezone(tz_name).localize(parsed)
            except pytz.UnknownTimeZoneError:
                parsed = parsed.replace(tzinfo=pytz.UTC)
        return parsed
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = isoparse(str(value))
        except (ValueError, TypeError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=pytz.UTC)
    return parsed


class RemoteEvent(BaseModel):
    """One change record from the remote delta query."""

    id: str = Field(..., description="Remote (per-mailbox) event id")
    global_uid: Optional[str] = Field(None, description="Cross-mailbox stable UID")
    subject: str = Field("", description="Event title")
    start: Optional[datetime] = Field(None)
    end: Optional[datetime] = Field(None)
    location: Optional[str] = Field(None, description="Free-text location")
    categories: List[str] = Field(default_factory=list)
    body: Optional[str] = Field(None)
    attendees: List[Dict[str, Any]] = Field(default_factory=list)
    last_modified: Optional[datetime] = Field(None)
    change_key: Optional[str] = Field(None)
    removed: bool = Field(False, description="Remote reports the item as deleted")
    original_data: Optional[Dict[str, Any]] = Field(None)

    @validator('start', 'end', 'last_modified', pre=True)
    def parse_lenient(cls, v):
        """Unreadable timestamps become None; the merge path rejects them."""
        return _parse_remote_datetime(v)


@dataclass
class DeltaPage:
    """One page of a delta query response."""

    items: List[RemoteEvent]
    continuation: Optional[str] = None
    new_delta_token: Optional[str] = None
    # Items the service could not read, as {"remote_id", "reason"} entries
    malformed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return self.continuation is None


@dataclass(frozen=True)
class SetupTeardown:
    """Setup and teardown minutes pulled out of event free text; None where not stated."""

    setup_minutes: Optional[int] = None
    teardown_minutes: Optional[int] = None


@dataclass
class SyncWindow:
    """Caller supplied time range, applied client-side on full syncs."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None:
            self.start = self.start.replace(tzinfo=pytz.UTC)
        if self.end.tzinfo is None:
            self.end = self.end.replace(tzinfo=pytz.UTC)
        if self.end <= self.start:
            raise ValueError(f"Window end ({self.end}) must be after start ({self.start})")

    def overlaps(self, start: Optional[datetime], end: Optional[datetime]) -> bool:
        """Whether an event interval intersects the window."""
        if start is None or end is None:
            # Let the merge path decide what to do with incomplete events
            return True
        return start < self.end and end > self.start


class SyncCursor(BaseModel):
    """Persisted delta state for one (owner, calendar)."""

    owner_id: str
    calendar_id: str
    cursor_token: Optional[str] = Field(None, description="Opaque server-issued delta token")
    full_sync_required: bool = Field(True)
    last_synced_at: Optional[datetime] = Field(None)

    @validator('full_sync_required', always=True)
    def token_cleared_when_full_sync(cls, v, values):
        """A cursor that needs a full sync never carries a token."""
        if v and values.get('cursor_token'):
            raise ValueError("cursor_token must be None while full_sync_required is set")
        if not v and not values.get('cursor_token'):
            raise ValueError("cursor_token is required once full_sync_required is cleared")
        return v


class RemoteSnapshot(BaseModel):
    """Fields mirrored verbatim from the remote system."""

    title: str = ""
    start: datetime
    end: datetime
    attendees: List[Dict[str, Any]] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    body: Optional[str] = None
    location_text: Optional[str] = None
    last_modified: Optional[datetime] = None
    change_key: Optional[str] = None

    @validator('start', 'end', 'last_modified', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, str):
            v = isoparse(v)
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v


class Enrichment(BaseModel):
    """Local-only fields the remote calendar knows nothing about."""

    setup_minutes: int = Field(0, ge=0)
    teardown_minutes: int = Field(0, ge=0)
    assigned_staff: Optional[str] = None
    internal_notes: str = ""
    estimated_cost: Optional[float] = None
    actual_cost: Optional[float] = None
    imported: bool = False
    import_source: Optional[str] = None


class SourceCalendar(BaseModel):
    calendar_id: str
    role: CalendarRole = CalendarRole.PRIMARY


class UnifiedEvent(BaseModel):
    """The reconciled local record for one logical event."""

    internal_id: str = Field(default_factory=lambda: str(uuid4()))
    remote_id: str
    global_uid: Optional[str] = None
    owner_id: str
    primary_calendar_id: str
    source_calendars: List[SourceCalendar] = Field(default_factory=list)
    remote_snapshot: RemoteSnapshot
    enrichment: Enrichment = Field(default_factory=Enrichment)
    resolved_locations: List[UUID] = Field(default_factory=list)
    location_display_text: str = ""
    virtual_meeting_url: Optional[str] = None
    virtual_platform: Optional[str] = None
    is_deleted: bool = False
    last_synced_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    storage_id: Optional[UUID] = Field(None, description="Row id assigned by the store")

    def calendar_ids(self) -> List[str]:
        return [source.calendar_id for source in self.source_calendars]


class LocationEntity(BaseModel):
    """Canonical place record free text resolves to."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    display_name: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)
    location_code: Optional[str] = None
    status: LocationStatus = LocationStatus.APPROVED
    merged_into: Optional[UUID] = None
    seen_variations: List[str] = Field(default_factory=list)
    usage_count: int = 0

    @validator('merged_into')
    def merged_only_when_status_merged(cls, v, values):
        if v is not None and values.get('status') != LocationStatus.MERGED:
            raise ValueError("merged_into may only be set on merged locations")
        return v

    @property
    def label(self) -> str:
        return self.display_name or self.name


class LocationMatch(BaseModel):
    """Result of resolving one free-text location segment."""

    segment: str = ""
    entity_id: Optional[UUID] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    match_type: MatchType = MatchType.NONE
    virtual_platform: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.entity_id is not None


@dataclass
class MergeOutcome:
    """Merged record plus what happened to it."""

    event: UnifiedEvent
    operation: MergeOperation


class CalendarSyncSummary(BaseModel):
    """Per-calendar result inside a sync report."""

    calendar_id: str
    mode: SyncMode = SyncMode.FULL
    phase: SyncPhase = SyncPhase.IDLE
    pages: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    filtered: int = Field(0, description="Items outside the caller window on full syncs")
    full_sync_retried: bool = False
    cursor_advanced: bool = False
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    skipped_events: List[Dict[str, str]] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error_type is None

    @property
    def merged_count(self) -> int:
        return self.created + self.updated


class SyncReport(BaseModel):
    """Result object returned for every sync request, even on partial failure."""

    sync_id: UUID = Field(default_factory=uuid4)
    owner_id: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = Field(None)
    force_full_sync: bool = Field(False)
    calendars: List[CalendarSyncSummary] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def merged_event_count(self) -> int:
        return sum(summary.merged_count for summary in self.calendars)

    @property
    def created(self) -> int:
        return sum(summary.created for summary in self.calendars)

    @property
    def updated(self) -> int:
        return sum(summary.updated for summary in self.calendars)

    @property
    def deleted(self) -> int:
        return sum(summary.deleted for summary in self.calendars)

    @property
    def skipped(self) -> int:
        return sum(summary.skipped for summary in self.calendars)

    @property
    def failed_calendars(self) -> List[str]:
        return [summary.calendar_id for summary in self.calendars if not summary.success]

    def summary_for(self, calendar_id: str) -> Optional[CalendarSyncSummary]:
        for summary in self.calendars:
            if summary.calendar_id == calendar_id:
                return summary
        return None

    def to_response(self) -> Dict[str, Any]:
        """Shape returned to the route layer."""
        return {
            'syncId': str(self.sync_id),
            'perCalendarSummary': [s.model_dump(mode='json') for s in self.calendars],
            'mergedEventCount': self.merged_event_count,
            'created': self.created,
            'updated': self.updated,
            'deleted': self.deleted,
            'skipped': self.skipped,
            'errors': list(self.errors),
        }


class BulkLoadResult(BaseModel):
    """Outcome of a batched cache-warming write."""

    persisted_count: int = 0
    skipped: List[Dict[str, str]] = Field(default_factory=list)
    unmatched: List[str] = Field(default_factory=list, description="Remote ids with no existing record")
    storage_ids: Dict[str, str] = Field(default_factory=dict)
