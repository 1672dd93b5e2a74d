"""Batched cache-warming writes for already-known events."""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import pytz

from .config import Settings
from .database import DatabaseManager, LocationDB, UnifiedEventDB, to_utc
from .locations import (
    DEFAULT_VIRTUAL_PLATFORM, DISPLAY_SEPARATOR, is_virtual_meeting, normalize_location, split_locations, virtual_platform
)
from .merge import MalformedEventError, snapshot_from_remote, validate_remote_event
from .models import BulkLoadResult, LocationStatus, RemoteEvent

logger = logging.getLogger(__name__)


class BulkPersistenceLayer:
    """Refreshes mirrored fields for a batch of events in a fixed number of queries.

    Update-only: events without a live local record are reported as unmatched
    and left for the per-event merge path to create. Enrichment is never
    touched. Location text is matched against existing aliases only; nothing
    is created here.
    """

    def __init__(self, db_manager: DatabaseManager, settings: Settings):
        self.db_manager = db_manager
        self.settings = settings
        self.logger = logger.getChild('bulk')

    def bulk_load(self, owner_id: str, events: Sequence[RemoteEvent]) -> BulkLoadResult:
        """Write a batch of remote events onto their existing records.

        Args:
            owner_id: Owner of every event in the batch
            events: Remote events, typically one date range reloaded by the UI

        Returns:
            Persisted count, skipped events with reasons, unmatched remote ids
            and the storage id of each written record
        """
        result = BulkLoadResult()

        batch: Dict[str, RemoteEvent] = {}
        for event in events:
            if event.removed:
                result.skipped.append({'remote_id': event.id, 'reason': 'removed upstream'})
                continue
            try:
                validate_remote_event(event)
            except MalformedEventError as e:
                result.skipped.append({'remote_id': event.id or '', 'reason': str(e)})
                continue
            batch[event.id] = event

        if not batch:
            return result

        normalized = set()
        for event in batch.values():
            for segment in split_locations(event.location):
                if not is_virtual_meeting(segment):
                    normalized.add(normalize_location(segment))

        with self.db_manager.get_session() as session:
            existing = {
                row.remote_id: row
                for row in self.db_manager.find_events_by_remote_ids(session, owner_id, list(batch))
            }
            locations = self.db_manager.find_locations_by_normalized(session, normalized)
            index = self._location_index(locations)

            now = datetime.now(pytz.UTC)
            rows = []
            for remote_id, event in batch.items():
                current = existing.get(remote_id)
                if current is None:
                    result.unmatched.append(remote_id)
                    continue
                rows.append(self._row_values(current, event, index, now))

            self.db_manager.bulk_update_events(session, owner_id, rows)

            written = self.db_manager.find_events_by_remote_ids(session, owner_id, [row['remote_id'] for row in rows])
            result.storage_ids = {row.remote_id: str(row.id) for row in written}
            result.persisted_count = len(result.storage_ids)

        self.logger.info(
            f"Bulk load for {owner_id}: {result.persisted_count} written, "
            f"{len(result.skipped)} skipped, {len(result.unmatched)} without a local record"
        )
        return result

    def _row_values(
        self,
        current: UnifiedEventDB,
        event: RemoteEvent,
        index: Dict[str, Tuple[UUID, str]],
        now: datetime
    ) -> Dict:
        snapshot = snapshot_from_remote(event)
        if (current.remote_snapshot or {}).get('location_text') == snapshot.location_text:
            location_ids = list(current.resolved_locations or [])
            display_text = current.location_display_text
            meeting_url = current.virtual_meeting_url
            platform = current.virtual_platform
        else:
            location_ids, display_text, meeting_url, platform = self._resolve_from_index(
                snapshot.location_text, index
            )

        return {
            'remote_id': event.id,
            'remote_snapshot': snapshot.model_dump(mode='json'),
            'resolved_locations': location_ids,
            'title': snapshot.title,
            'start_time': to_utc(snapshot.start),
            'end_time': to_utc(snapshot.end),
            'last_modified': to_utc(snapshot.last_modified),
            'location_display_text': display_text,
            'virtual_meeting_url': meeting_url,
            'virtual_platform': platform,
            'last_synced_at': now,
            'updated_at': now,
        }

    @staticmethod
    def _location_index(locations: List[LocationDB]) -> Dict[str, Tuple[UUID, str]]:
        """Map every normalized name and alias to (live location id, label).

        Merged records point at their target id; the target's label is only
        known when the target itself was part of the batch query.
        """
        by_id = {location.id: location for location in locations}
        index: Dict[str, Tuple[UUID, str]] = {}
        for location in locations:
            target_id = location.id
            label = location.display_name or location.name
            if location.status == LocationStatus.MERGED.value and location.merged_into_id:
                target_id = location.merged_into_id
                target = by_id.get(target_id)
                label = (target.display_name or target.name) if target is not None else label
            for key in [location.normalized_name] + [alias.alias for alias in location.aliases]:
                # Live records take precedence over merged ones for the same key
                if key not in index or location.status != LocationStatus.MERGED.value:
                    index[key] = (target_id, label)
        return index

    @staticmethod
    def _resolve_from_index(
        location_text: Optional[str],
        index: Dict[str, Tuple[UUID, str]]
    ) -> Tuple[List[str], str, Optional[str], Optional[str]]:
        location_ids: List[str] = []
        display_parts: List[str] = []
        meeting_url = None
        platform = None
        for segment in split_locations(location_text):
            if is_virtual_meeting(segment):
                if meeting_url is None:
                    meeting_url, platform = segment, virtual_platform(segment)
                display_parts.append(DEFAULT_VIRTUAL_PLATFORM)
                continue
            hit = index.get(normalize_location(segment))
            if hit is None:
                display_parts.append(segment)
            elif str(hit[0]) not in location_ids:
                location_ids.append(str(hit[0]))
                display_parts.append(hit[1])
        return location_ids, DISPLAY_SEPARATOR.join(display_parts), meeting_url, platform
