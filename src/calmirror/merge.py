"""Reconciliation of remote change records into unified local events."""

import logging
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import uuid4

import pytz
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings
from .database import DatabaseManager, UnifiedEventDB
from .enrichment import apply_registration_text, calendar_role, default_enrichment, is_registration_calendar
from .locations import LocationResolution, LocationResolver
from .models import (
    Enrichment, MergeOperation, MergeOutcome, RemoteEvent, RemoteSnapshot, SourceCalendar, UnifiedEvent
)

logger = logging.getLogger(__name__)


class MalformedEventError(ValueError):
    """A remote change record that cannot be turned into a local event."""

    def __init__(self, message: str, remote_id: Optional[str] = None):
        super().__init__(message)
        self.remote_id = remote_id


def validate_remote_event(remote_event: RemoteEvent) -> None:
    """Reject records the store cannot hold.

    Raises:
        MalformedEventError: Missing id, missing or unreadable start/end, or end not after start
    """
    if not remote_event.id:
        raise MalformedEventError("Remote event has no id")
    if remote_event.start is None or remote_event.end is None:
        raise MalformedEventError(f"Event {remote_event.id} is missing a start or end", remote_event.id)
    if remote_event.end <= remote_event.start:
        raise MalformedEventError(
            f"Event {remote_event.id} ends ({remote_event.end}) before it starts ({remote_event.start})",
            remote_event.id,
        )


def snapshot_from_remote(remote_event: RemoteEvent) -> RemoteSnapshot:
    return RemoteSnapshot(
        title=remote_event.subject or "",
        start=remote_event.start,
        end=remote_event.end,
        attendees=remote_event.attendees,
        categories=remote_event.categories,
        body=remote_event.body,
        location_text=remote_event.location,
        last_modified=remote_event.last_modified,
        change_key=remote_event.change_key,
    )


class IdentityResolver:
    """Two-step lookup yielding the one stored record an incoming event maps to.

    The cross-mailbox UID wins because it survives remote recreation; the
    per-mailbox remote id is the fallback.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def resolve(self, session: Session, owner_id: str, remote_event: RemoteEvent) -> Optional[UnifiedEventDB]:
        if remote_event.global_uid:
            row = self.db_manager.find_event_by_global_uid(session, owner_id, remote_event.global_uid)
            if row is not None:
                return row
        return self.db_manager.find_event_by_remote_id(
            session, owner_id, remote_event.id, include_deleted=True
        )


class EventMergeEngine:
    """Produces and writes the unified record for one remote event."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        location_resolver: LocationResolver,
        settings: Settings
    ):
        self.db_manager = db_manager
        self.location_resolver = location_resolver
        self.settings = settings
        self.identity = IdentityResolver(db_manager)
        self.logger = logger.getChild('merge_engine')

    def merge(
        self,
        owner_id: str,
        calendar_id: str,
        remote_event: RemoteEvent,
        known_source_calendars: Optional[Sequence[str]] = None,
        defaults: Optional[Enrichment] = None
    ) -> UnifiedEvent:
        """Merge one remote event and return the stored record."""
        return self.apply(owner_id, calendar_id, remote_event, known_source_calendars, defaults).event

    def apply(
        self,
        owner_id: str,
        calendar_id: str,
        remote_event: RemoteEvent,
        known_source_calendars: Optional[Sequence[str]] = None,
        defaults: Optional[Enrichment] = None
    ) -> MergeOutcome:
        """Merge one remote event and report whether it was created or updated.

        Args:
            owner_id: Owner of the calendar being synced
            calendar_id: Calendar the event was observed on
            remote_event: Incoming change record (not a removal)
            known_source_calendars: Other calendars the caller knows carry this event
            defaults: Enrichment for brand-new records

        Returns:
            The written record and the operation performed

        Raises:
            MalformedEventError: If the record has no usable id or times
        """
        validate_remote_event(remote_event)

        for attempt in range(2):
            with self.db_manager.get_session() as session:
                row = self.identity.resolve(session, owner_id, remote_event)
                existing = self.db_manager.to_unified_event(row) if row is not None else None
                event = self.build_record(
                    existing, owner_id, calendar_id, remote_event, known_source_calendars, defaults
                )
                try:
                    self._release_remote_id(session, event, row)
                    stored = self.db_manager.replace_event(session, event, row)
                except IntegrityError:
                    # A concurrent sync wrote the same identity first; merge onto it
                    session.rollback()
                    if attempt:
                        raise
                    self.logger.info(f"Identity race on {owner_id}/{remote_event.id}, retrying merge")
                    continue
                event.storage_id = stored.id

            operation = MergeOperation.CREATE if row is None else MergeOperation.UPDATE
            self.logger.debug(f"{operation.value} {owner_id}/{calendar_id}/{remote_event.id} -> {event.internal_id}")
            return MergeOutcome(event=event, operation=operation)

    def build_record(
        self,
        existing: Optional[UnifiedEvent],
        owner_id: str,
        calendar_id: str,
        remote_event: RemoteEvent,
        known_source_calendars: Optional[Sequence[str]] = None,
        defaults: Optional[Enrichment] = None
    ) -> UnifiedEvent:
        """Compute the full replacement document for an event."""
        incoming = snapshot_from_remote(remote_event)

        incoming_wins = True
        if existing is not None and calendar_id != existing.primary_calendar_id:
            incoming_wins = not self._is_older(incoming, existing.remote_snapshot)

        if existing is None:
            enrichment = (defaults or default_enrichment(self.settings)).model_copy()
        else:
            enrichment = existing.enrichment.model_copy()
        if is_registration_calendar(calendar_id, self.settings):
            enrichment = apply_registration_text(enrichment, remote_event.subject, remote_event.body)

        if incoming_wins:
            snapshot = incoming
            remote_id = remote_event.id
            primary_calendar_id = calendar_id
        else:
            snapshot = existing.remote_snapshot
            remote_id = existing.remote_id
            primary_calendar_id = existing.primary_calendar_id

        if (
            existing is not None
            and existing.remote_snapshot.location_text == snapshot.location_text
            and self._locations_current(existing)
        ):
            resolution = LocationResolution(
                location_ids=list(existing.resolved_locations),
                display_text=existing.location_display_text,
                virtual_meeting_url=existing.virtual_meeting_url,
                virtual_platform=existing.virtual_platform,
            )
        else:
            resolution = self._resolve_locations(owner_id, calendar_id, remote_event.id, snapshot.location_text)

        return UnifiedEvent(
            internal_id=existing.internal_id if existing is not None else str(uuid4()),
            remote_id=remote_id,
            global_uid=remote_event.global_uid or (existing.global_uid if existing is not None else None),
            owner_id=owner_id,
            primary_calendar_id=primary_calendar_id,
            source_calendars=self._merge_sources(existing, calendar_id, known_source_calendars),
            remote_snapshot=snapshot,
            enrichment=enrichment,
            resolved_locations=resolution.location_ids,
            location_display_text=resolution.display_text,
            virtual_meeting_url=resolution.virtual_meeting_url,
            virtual_platform=resolution.virtual_platform,
            is_deleted=False,
            last_synced_at=datetime.now(pytz.UTC),
        )

    def mark_deleted(self, owner_id: str, remote_id: str) -> bool:
        """Soft delete by remote id; absent or already deleted records are a no-op."""
        with self.db_manager.get_session() as session:
            deleted = self.db_manager.soft_delete_by_remote_id(session, owner_id, remote_id)
        if deleted:
            self.logger.debug(f"Soft deleted {owner_id}/{remote_id}")
        return deleted

    def _merge_sources(
        self,
        existing: Optional[UnifiedEvent],
        calendar_id: str,
        known_source_calendars: Optional[Sequence[str]]
    ) -> List[SourceCalendar]:
        sources = list(existing.source_calendars) if existing is not None else []
        seen = {source.calendar_id for source in sources}
        for candidate in list(known_source_calendars or []) + [calendar_id]:
            if candidate and candidate not in seen:
                sources.append(SourceCalendar(calendar_id=candidate, role=calendar_role(candidate, self.settings)))
                seen.add(candidate)
        return sources

    def _resolve_locations(
        self,
        owner_id: str,
        calendar_id: str,
        remote_id: str,
        location_text: Optional[str]
    ) -> LocationResolution:
        try:
            return self.location_resolver.resolve_event_location(location_text)
        except Exception as e:
            # Never block the event on location matching; keep the raw text
            self.logger.warning(
                f"Location resolution failed for {owner_id}/{calendar_id}/{remote_id}: {e}"
            )
            return LocationResolution(display_text=(location_text or "").strip())

    def _locations_current(self, existing: UnifiedEvent) -> bool:
        """True while every stored location id is still its own live record."""
        if not existing.resolved_locations:
            return True
        try:
            canonical = self.location_resolver.canonical_ids(existing.resolved_locations)
        except Exception as e:
            self.logger.warning(f"Could not check stored locations of {existing.internal_id}: {e}")
            return True
        if canonical != list(existing.resolved_locations):
            self.logger.debug(f"Locations of {existing.internal_id} were merged or removed, re-resolving")
            return False
        return True

    def _release_remote_id(self, session: Session, event: UnifiedEvent, row: Optional[UnifiedEventDB]) -> None:
        """Soft delete any other live record still holding the remote id being bound."""
        holder = self.db_manager.find_event_by_remote_id(session, event.owner_id, event.remote_id)
        if holder is None or (row is not None and holder.id == row.id):
            return
        self.logger.warning(
            f"Remote id {event.remote_id} moved from {holder.internal_id} to {event.internal_id}; "
            f"retiring the stale record"
        )
        holder.is_deleted = True
        session.flush()

    @staticmethod
    def _is_older(incoming: RemoteSnapshot, current: RemoteSnapshot) -> bool:
        if incoming.last_modified is None or current.last_modified is None:
            return False
        return incoming.last_modified < current.last_modified
