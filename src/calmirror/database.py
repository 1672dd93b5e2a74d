"""Database models and document-store style operations for the local mirror."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import (
    create_engine, bindparam, func, or_, select, text, update, Column, String, DateTime, Boolean,
    Text, Integer, ForeignKey, Index, UniqueConstraint, JSON
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import (
    Enrichment, LocationEntity, LocationStatus, RemoteSnapshot, SourceCalendar, SyncCursor,
    UnifiedEvent
)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return _aware(dt).astimezone(pytz.UTC)


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(str(value)).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(value)
            return value


class SyncCursorDB(Base):
    """Delta cursor for one (owner, calendar)."""

    __tablename__ = 'sync_cursors'

    id = Column(GUID(), primary_key=True, default=uuid4)
    owner_id = Column(String(255), nullable=False)
    calendar_id = Column(String(500), nullable=False)
    cursor_token = Column(Text, nullable=True)               # Opaque delta token
    full_sync_required = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('owner_id', 'calendar_id', name='uq_sync_cursor_owner_calendar'),
        Index('idx_sync_cursor_owner', 'owner_id'),
    )


class UnifiedEventDB(Base):
    """Reconciled local record of a remote event plus its enrichment."""

    __tablename__ = 'unified_events'

    id = Column(GUID(), primary_key=True, default=uuid4)
    internal_id = Column(String(64), nullable=False)
    owner_id = Column(String(255), nullable=False)
    calendar_id = Column(String(500), nullable=False)        # Primary calendar
    remote_id = Column(String(500), nullable=False)
    global_uid = Column(String(500), nullable=True)

    source_calendars = Column(JSON, nullable=False, default=list)
    remote_snapshot = Column(JSON, nullable=False)
    enrichment = Column(JSON, nullable=False, default=dict)
    resolved_locations = Column(JSON, nullable=False, default=list)

    # Flattened display fields
    title = Column(String(500), nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    last_modified = Column(DateTime(timezone=True), nullable=True)
    location_display_text = Column(Text, nullable=True)
    virtual_meeting_url = Column(String(1000), nullable=True)
    virtual_platform = Column(String(100), nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('internal_id', name='uq_unified_event_internal_id'),
        UniqueConstraint('owner_id', 'global_uid', name='uq_unified_event_owner_uid'),
        # Remote ids are only unique among live records
        Index(
            'uq_unified_event_owner_remote_live', 'owner_id', 'remote_id',
            unique=True,
            sqlite_where=text('is_deleted = 0'),
            postgresql_where=text('is_deleted = false'),
        ),
        Index('idx_unified_event_owner_calendar', 'owner_id', 'calendar_id'),
        Index('idx_unified_event_owner_remote', 'owner_id', 'remote_id'),
        Index('idx_unified_event_start', 'start_time'),
        Index('idx_unified_event_deleted', 'is_deleted'),
    )


class LocationDB(Base):
    """Canonical location shared by every owner."""

    __tablename__ = 'locations'

    id = Column(GUID(), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=True)
    location_code = Column(String(32), nullable=True)
    status = Column(String(20), nullable=False, default=LocationStatus.APPROVED.value)
    merged_into_id = Column(GUID(), ForeignKey('locations.id'), nullable=True)
    seen_variations = Column(JSON, nullable=False, default=list)
    usage_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    aliases = relationship(
        "LocationAliasDB", back_populates="location", cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint('name', name='uq_location_name'),
        Index('idx_location_normalized_name', 'normalized_name'),
        Index('idx_location_code', 'location_code'),
        Index('idx_location_status', 'status'),
    )


class LocationAliasDB(Base):
    """One normalized alias; rows are only ever added, never rewritten."""

    __tablename__ = 'location_aliases'

    id = Column(Integer, primary_key=True, autoincrement=True)
    location_id = Column(GUID(), ForeignKey('locations.id'), nullable=False)
    alias = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    location = relationship("LocationDB", back_populates="aliases")

    __table_args__ = (
        UniqueConstraint('location_id', 'alias', name='uq_location_alias'),
        Index('idx_location_alias', 'alias'),
    )


# Columns rewritten by a batched cache-warming update
BULK_UPDATE_COLUMNS = (
    'remote_snapshot', 'resolved_locations', 'title', 'start_time', 'end_time',
    'last_modified', 'location_display_text', 'virtual_meeting_url', 'virtual_platform',
    'last_synced_at', 'updated_at',
)


class DatabaseManager:
    """Database manager exposing the store primitives the sync core needs."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        connect_args = {}
        if settings.database_url.startswith('sqlite'):
            # Route handlers and background tasks run on different threads
            connect_args['check_same_thread'] = False
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            connect_args=connect_args
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    # ------------------------------------------------------------------
    # Sync cursors
    # ------------------------------------------------------------------

    def get_cursor(self, session: Session, owner_id: str, calendar_id: str) -> Optional[SyncCursorDB]:
        return session.query(SyncCursorDB).filter(
            SyncCursorDB.owner_id == owner_id,
            SyncCursorDB.calendar_id == calendar_id
        ).first()

    def upsert_cursor(
        self,
        session: Session,
        owner_id: str,
        calendar_id: str,
        cursor_token: Optional[str],
        full_sync_required: bool,
        last_synced_at: Optional[datetime] = None
    ) -> SyncCursorDB:
        """Create or overwrite the single cursor row for (owner, calendar).

        Args:
            session: Database session
            owner_id: Calendar owner
            calendar_id: Remote calendar id
            cursor_token: Delta token, None when a full sync is required
            full_sync_required: Whether the next run must ignore the token
            last_synced_at: Timestamp of the last completed page loop

        Returns:
            The stored cursor row
        """
        row = self.get_cursor(session, owner_id, calendar_id)
        if row is None:
            row = SyncCursorDB(owner_id=owner_id, calendar_id=calendar_id)
            session.add(row)
        row.cursor_token = cursor_token
        row.full_sync_required = full_sync_required
        if last_synced_at is not None:
            row.last_synced_at = last_synced_at
        row.updated_at = _utcnow()
        try:
            session.commit()
        except IntegrityError:
            # Another request created the row first; write onto theirs
            session.rollback()
            row = self.get_cursor(session, owner_id, calendar_id)
            row.cursor_token = cursor_token
            row.full_sync_required = full_sync_required
            if last_synced_at is not None:
                row.last_synced_at = last_synced_at
            row.updated_at = _utcnow()
            session.commit()
        return row

    def list_cursors(self, session: Session, owner_id: Optional[str] = None) -> List[SyncCursorDB]:
        query = session.query(SyncCursorDB)
        if owner_id:
            query = query.filter(SyncCursorDB.owner_id == owner_id)
        return query.order_by(SyncCursorDB.owner_id, SyncCursorDB.calendar_id).all()

    def to_sync_cursor(self, row: SyncCursorDB) -> SyncCursor:
        return SyncCursor(
            owner_id=row.owner_id,
            calendar_id=row.calendar_id,
            cursor_token=None if row.full_sync_required else row.cursor_token,
            full_sync_required=row.full_sync_required,
            last_synced_at=_aware(row.last_synced_at),
        )

    # ------------------------------------------------------------------
    # Unified events
    # ------------------------------------------------------------------

    def find_event_by_global_uid(self, session: Session, owner_id: str, global_uid: str) -> Optional[UnifiedEventDB]:
        """Find an event by its cross-mailbox UID, deleted records included."""
        return session.query(UnifiedEventDB).filter(
            UnifiedEventDB.owner_id == owner_id,
            UnifiedEventDB.global_uid == global_uid
        ).first()

    def find_event_by_remote_id(
        self,
        session: Session,
        owner_id: str,
        remote_id: str,
        include_deleted: bool = False
    ) -> Optional[UnifiedEventDB]:
        """Find an event by remote id, preferring the live record."""
        query = session.query(UnifiedEventDB).filter(
            UnifiedEventDB.owner_id == owner_id,
            UnifiedEventDB.remote_id == remote_id
        )
        if not include_deleted:
            query = query.filter(UnifiedEventDB.is_deleted == False)  # noqa: E712
        return query.order_by(UnifiedEventDB.is_deleted, UnifiedEventDB.updated_at.desc()).first()

    def find_event_by_internal_id(self, session: Session, owner_id: str, internal_id: str) -> Optional[UnifiedEventDB]:
        return session.query(UnifiedEventDB).filter(
            UnifiedEventDB.owner_id == owner_id,
            UnifiedEventDB.internal_id == internal_id
        ).first()

    def find_events(
        self,
        session: Session,
        owner_id: str,
        calendar_id: Optional[str] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None
    ) -> List[UnifiedEventDB]:
        """Find events for an owner, optionally scoped to one calendar."""
        query = session.query(UnifiedEventDB).filter(UnifiedEventDB.owner_id == owner_id)
        if calendar_id:
            query = query.filter(UnifiedEventDB.calendar_id == calendar_id)
        if not include_deleted:
            query = query.filter(UnifiedEventDB.is_deleted == False)  # noqa: E712
        query = query.order_by(UnifiedEventDB.start_time)
        if limit:
            query = query.limit(limit)
        return query.all()

    def find_events_by_remote_ids(
        self,
        session: Session,
        owner_id: str,
        remote_ids: Sequence[str]
    ) -> List[UnifiedEventDB]:
        """Single query for every live event matching any of the remote ids."""
        if not remote_ids:
            return []
        return session.query(UnifiedEventDB).filter(
            UnifiedEventDB.owner_id == owner_id,
            UnifiedEventDB.remote_id.in_(list(remote_ids)),
            UnifiedEventDB.is_deleted == False  # noqa: E712
        ).all()

    def replace_event(
        self,
        session: Session,
        event: UnifiedEvent,
        row: Optional[UnifiedEventDB] = None
    ) -> UnifiedEventDB:
        """Write the full document for an event; every column is rewritten.

        Args:
            session: Database session
            event: Merged record
            row: Existing row resolved by identity lookup, or None to insert

        Returns:
            The stored row
        """
        if row is None:
            row = UnifiedEventDB(created_at=_utcnow())
            session.add(row)
        for key, value in self.event_values(event).items():
            setattr(row, key, value)
        row.updated_at = _utcnow()
        session.commit()
        return row

    def soft_delete_by_remote_id(self, session: Session, owner_id: str, remote_id: str) -> bool:
        """Mark the live record deleted. Returns False when there was nothing to delete."""
        row = self.find_event_by_remote_id(session, owner_id, remote_id)
        if row is None:
            return False
        row.is_deleted = True
        row.last_synced_at = _utcnow()
        row.updated_at = _utcnow()
        session.commit()
        return True

    def bulk_update_events(self, session: Session, owner_id: str, rows: List[Dict[str, Any]]) -> None:
        """One executemany UPDATE, matched on (owner, remote id) of live records only.

        Rows that no longer match are left alone; nothing is inserted.
        """
        if not rows:
            return
        table = UnifiedEventDB.__table__
        stmt = (
            update(table)
            .where(table.c.owner_id == bindparam('b_owner_id'))
            .where(table.c.remote_id == bindparam('b_remote_id'))
            .where(table.c.is_deleted == False)  # noqa: E712
            .values({column: bindparam(f'v_{column}') for column in BULK_UPDATE_COLUMNS})
        )
        params = []
        for row in rows:
            entry = {'b_owner_id': owner_id, 'b_remote_id': row['remote_id']}
            entry.update({f'v_{column}': row[column] for column in BULK_UPDATE_COLUMNS})
            params.append(entry)
        session.execute(stmt, params)
        session.commit()

    def distinct_calendar_ids(self, session: Session, owner_id: str) -> List[str]:
        rows = session.query(UnifiedEventDB.calendar_id).filter(
            UnifiedEventDB.owner_id == owner_id
        ).distinct().all()
        return sorted(row[0] for row in rows)

    def count_events(self, session: Session, owner_id: str, include_deleted: bool = False) -> int:
        query = session.query(func.count(UnifiedEventDB.id)).filter(UnifiedEventDB.owner_id == owner_id)
        if not include_deleted:
            query = query.filter(UnifiedEventDB.is_deleted == False)  # noqa: E712
        return query.scalar() or 0

    def event_values(self, event: UnifiedEvent) -> Dict[str, Any]:
        """Column values for a merged record."""
        snapshot = event.remote_snapshot
        return {
            'internal_id': event.internal_id,
            'owner_id': event.owner_id,
            'calendar_id': event.primary_calendar_id,
            'remote_id': event.remote_id,
            'global_uid': event.global_uid,
            'source_calendars': [s.model_dump(mode='json') for s in event.source_calendars],
            'remote_snapshot': snapshot.model_dump(mode='json'),
            'enrichment': event.enrichment.model_dump(mode='json'),
            'resolved_locations': [str(location_id) for location_id in event.resolved_locations],
            'title': snapshot.title,
            'start_time': to_utc(snapshot.start),
            'end_time': to_utc(snapshot.end),
            'last_modified': to_utc(snapshot.last_modified),
            'location_display_text': event.location_display_text,
            'virtual_meeting_url': event.virtual_meeting_url,
            'virtual_platform': event.virtual_platform,
            'is_deleted': event.is_deleted,
            'last_synced_at': event.last_synced_at,
        }

    def to_unified_event(self, row: UnifiedEventDB) -> UnifiedEvent:
        return UnifiedEvent(
            internal_id=row.internal_id,
            remote_id=row.remote_id,
            global_uid=row.global_uid,
            owner_id=row.owner_id,
            primary_calendar_id=row.calendar_id,
            source_calendars=[SourceCalendar(**s) for s in (row.source_calendars or [])],
            remote_snapshot=RemoteSnapshot(**row.remote_snapshot),
            enrichment=Enrichment(**(row.enrichment or {})),
            resolved_locations=[UUID(str(value)) for value in (row.resolved_locations or [])],
            location_display_text=row.location_display_text or "",
            virtual_meeting_url=row.virtual_meeting_url,
            virtual_platform=row.virtual_platform,
            is_deleted=row.is_deleted,
            last_synced_at=_aware(row.last_synced_at) or _utcnow(),
            storage_id=row.id,
        )

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------

    def get_location(self, session: Session, location_id: UUID) -> Optional[LocationDB]:
        return session.query(LocationDB).filter(LocationDB.id == location_id).first()

    def find_location_by_name(self, session: Session, name: str) -> Optional[LocationDB]:
        return session.query(LocationDB).filter(LocationDB.name == name).first()

    def find_locations_by_normalized(self, session: Session, normalized: Iterable[str]) -> List[LocationDB]:
        """Locations whose normalized name or any alias is in the given set (one query)."""
        values = sorted({value for value in normalized if value})
        if not values:
            return []
        alias_ids = select(LocationAliasDB.location_id).where(LocationAliasDB.alias.in_(values))
        return session.query(LocationDB).filter(
            or_(LocationDB.normalized_name.in_(values), LocationDB.id.in_(alias_ids))
        ).all()

    def get_locations(self, session: Session, include_merged: bool = True) -> List[LocationDB]:
        query = session.query(LocationDB)
        if not include_merged:
            query = query.filter(LocationDB.status != LocationStatus.MERGED.value)
        return query.order_by(LocationDB.name).all()

    def create_location(
        self,
        session: Session,
        name: str,
        normalized_name: str,
        display_name: Optional[str] = None,
        location_code: Optional[str] = None,
        seen_variations: Optional[List[str]] = None
    ) -> LocationDB:
        """Create a location, or return the existing one holding the same exact name."""
        existing = self.find_location_by_name(session, name)
        if existing is not None:
            return existing
        location = LocationDB(
            name=name,
            normalized_name=normalized_name,
            display_name=display_name or name,
            location_code=location_code,
            status=LocationStatus.APPROVED.value,
            seen_variations=list(seen_variations or []),
            usage_count=0,
        )
        session.add(location)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return self.find_location_by_name(session, name)
        return location

    def add_alias(self, session: Session, location_id: UUID, alias: str) -> bool:
        """Add-if-absent. Returns True when a new alias row was written."""
        if not alias:
            return False
        exists = session.query(LocationAliasDB.id).filter(
            LocationAliasDB.location_id == location_id,
            LocationAliasDB.alias == alias
        ).first()
        if exists:
            return False
        session.add(LocationAliasDB(location_id=location_id, alias=alias))
        try:
            session.commit()
        except IntegrityError:
            # Added concurrently; the alias is there either way
            session.rollback()
            return False
        return True

    def record_location_use(self, session: Session, location: LocationDB, variation: Optional[str] = None) -> None:
        """Count a resolution and remember the literal text that produced it."""
        session.execute(
            update(LocationDB.__table__)
            .where(LocationDB.__table__.c.id == location.id)
            .values(usage_count=LocationDB.__table__.c.usage_count + 1, updated_at=_utcnow())
        )
        if variation and variation not in (location.seen_variations or []):
            location.seen_variations = list(location.seen_variations or []) + [variation]
        session.commit()
        session.refresh(location)

    def mark_location_merged(self, session: Session, source: LocationDB, target: LocationDB) -> None:
        source.status = LocationStatus.MERGED.value
        source.merged_into_id = target.id
        source.updated_at = _utcnow()
        session.commit()

    def to_location_entity(self, row: LocationDB) -> LocationEntity:
        return LocationEntity(
            id=row.id,
            name=row.name,
            display_name=row.display_name,
            aliases=sorted(alias.alias for alias in row.aliases),
            location_code=row.location_code,
            status=LocationStatus(row.status),
            merged_into=row.merged_into_id,
            seen_variations=list(row.seen_variations or []),
            usage_count=row.usage_count or 0,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_sync_statistics(self, session: Session, owner_id: str) -> Dict[str, Any]:
        """Counts used by the status surfaces."""
        cursors = self.list_cursors(session, owner_id)
        return {
            'owner_id': owner_id,
            'active_events': self.count_events(session, owner_id),
            'deleted_events': self.count_events(session, owner_id, include_deleted=True)
            - self.count_events(session, owner_id),
            'calendars': self.distinct_calendar_ids(session, owner_id),
            'cursors': len(cursors),
            'cursors_needing_full_sync': len([c for c in cursors if c.full_sync_required]),
            'locations': session.query(func.count(LocationDB.id)).filter(
                LocationDB.status != LocationStatus.MERGED.value
            ).scalar() or 0,
        }
