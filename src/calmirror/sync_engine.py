"""Delta sync orchestration: cursor lifecycle, paging, and per-event reconciliation."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import pytz
from sqlalchemy.exc import SQLAlchemyError

from .bulk import BulkPersistenceLayer
from .config import Settings
from .cursor_store import DeltaCursorStore
from .database import DatabaseManager
from .locations import LocationResolver
from .merge import EventMergeEngine, MalformedEventError
from .models import (
    BulkLoadResult, CalendarSyncSummary, DeltaPage, LocationMatch, MergeOperation, RemoteEvent,
    SyncCursor, SyncMode, SyncPhase, SyncReport, SyncWindow
)
from .services import (
    BaseCalendarService, GraphCalendarService, CalendarServiceError, AuthenticationError,
    CursorExpiredError, TransientRemoteError
)

logger = logging.getLogger(__name__)


class SyncRequestError(ValueError):
    """The caller asked for something that cannot be synced."""
    pass


def build_window(start: Optional[datetime], end: Optional[datetime]) -> Optional[SyncWindow]:
    """Build a client-side filter window; both bounds or neither."""
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise SyncRequestError("A sync window needs both a start and an end")
    try:
        return SyncWindow(start=start, end=end)
    except ValueError as e:
        raise SyncRequestError(str(e))


class SyncOrchestrator:
    """Drives full/incremental delta syncs for a set of calendars."""

    def __init__(
        self,
        settings: Settings,
        service: Optional[BaseCalendarService] = None,
        db_manager: Optional[DatabaseManager] = None
    ):
        """Initialize the orchestrator.

        Args:
            settings: Application settings
            service: Remote calendar service (Graph when omitted)
            db_manager: Store to write into (built from settings when omitted)
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.service = service or GraphCalendarService(settings)
        self.cursor_store = DeltaCursorStore(self.db_manager)
        self.location_resolver = LocationResolver(self.db_manager, settings)
        self.merge_engine = EventMergeEngine(self.db_manager, self.location_resolver, settings)
        self.bulk_layer = BulkPersistenceLayer(self.db_manager, settings)
        self.logger = logger.getChild('orchestrator')

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        self.db_manager.init_db()
        self.logger.info("Sync orchestrator initialized")

    async def cleanup(self) -> None:
        await self.service.close()
        self.logger.info("Sync orchestrator cleaned up")

    async def sync_calendars(
        self,
        owner_id: str,
        calendar_ids: Sequence[str],
        window: Optional[SyncWindow] = None,
        force_full_sync: bool = False
    ) -> SyncReport:
        """Sync every requested calendar and report per-calendar results.

        Calendars run concurrently up to ``max_concurrent_calendars``; one
        calendar failing never cancels the others.

        Args:
            owner_id: Mailbox owner
            calendar_ids: Calendars to sync
            window: Client-side filter applied on full syncs only
            force_full_sync: Ignore stored cursors

        Returns:
            Report with counts and per-calendar errors, also on partial failure

        Raises:
            SyncRequestError: If no owner or calendars were given
            AuthenticationError: After all calendars finish, if any failed on auth;
                the partial report is attached as ``.report``
        """
        if not owner_id:
            raise SyncRequestError("owner_id is required")
        calendars = list(dict.fromkeys(c for c in (calendar_ids or []) if c))
        if not calendars:
            raise SyncRequestError("At least one calendar id is required")

        report = SyncReport(owner_id=owner_id, force_full_sync=force_full_sync)
        report.calendars = [CalendarSyncSummary(calendar_id=calendar_id) for calendar_id in calendars]
        self.logger.info(
            f"Starting sync {report.sync_id} for {owner_id}: {len(calendars)} calendar(s), "
            f"force_full_sync={force_full_sync}"
        )

        semaphore = asyncio.Semaphore(self.settings.max_concurrent_calendars)

        async def run(summary: CalendarSyncSummary) -> None:
            async with semaphore:
                await self._sync_calendar(summary, owner_id, window, force_full_sync)

        results = await asyncio.gather(*(run(s) for s in report.calendars), return_exceptions=True)

        fatal: Optional[AuthenticationError] = None
        for summary, result in zip(report.calendars, results):
            if isinstance(result, AuthenticationError):
                fatal = fatal or result
            elif isinstance(result, BaseException):
                self.logger.error(f"Unexpected failure syncing {owner_id}/{summary.calendar_id}: {result}")
                self._record_failure(summary, result)
            if summary.error_message:
                report.errors.append(f"{summary.calendar_id}: {summary.error_message}")

        report.completed_at = datetime.now(pytz.UTC)
        self.logger.info(
            f"Sync {report.sync_id} finished: created={report.created} updated={report.updated} "
            f"deleted={report.deleted} skipped={report.skipped} failed={len(report.failed_calendars)}"
        )

        if fatal is not None:
            fatal.report = report
            raise fatal
        return report

    async def _sync_calendar(
        self,
        summary: CalendarSyncSummary,
        owner_id: str,
        window: Optional[SyncWindow],
        force_full_sync: bool
    ) -> None:
        calendar_id = summary.calendar_id
        summary.phase = SyncPhase.FETCHING
        cursor = self.cursor_store.get(owner_id, calendar_id)
        cursor_token = None if force_full_sync else cursor.cursor_token
        summary.mode = SyncMode.INCREMENTAL if cursor_token else SyncMode.FULL
        self.logger.info(f"Syncing {owner_id}/{calendar_id} ({summary.mode.value})")

        try:
            try:
                final_token = await self._run_page_loop(
                    summary, owner_id, cursor_token, window
                )
            except CursorExpiredError as e:
                summary.phase = SyncPhase.ERROR_RECOVERY
                self.logger.warning(
                    f"Delta cursor expired for {owner_id}/{calendar_id}: {e}. "
                    "Clearing cursor and performing full resync."
                )
                self.cursor_store.reset(owner_id, calendar_id)
                summary.full_sync_retried = True
                summary.mode = SyncMode.FULL
                summary.phase = SyncPhase.FETCHING
                final_token = await self._run_page_loop(
                    summary, owner_id, None, window
                )

            summary.phase = SyncPhase.ADVANCING
            if final_token:
                stored = self.cursor_store.advance(owner_id, calendar_id, final_token)
                summary.cursor_advanced = stored.cursor_token == final_token
            else:
                self.logger.warning(f"No delta token returned for {owner_id}/{calendar_id}; cursor unchanged")
            summary.phase = SyncPhase.DONE

        except AuthenticationError as e:
            self.logger.error(f"Authentication failed for {owner_id}/{calendar_id}: {e}")
            self._record_failure(summary, e)
            raise
        except CursorExpiredError as e:
            # Already fell back to a full sync once
            self.logger.error(f"Full resync of {owner_id}/{calendar_id} also lost its cursor: {e}")
            self._record_failure(summary, e)
        except TransientRemoteError as e:
            self.logger.warning(f"Transient failure syncing {owner_id}/{calendar_id}; cursor left as is: {e}")
            self._record_failure(summary, e)
        except (CalendarServiceError, SQLAlchemyError) as e:
            self.logger.error(f"Failed to sync {owner_id}/{calendar_id}: {e}")
            self._record_failure(summary, e)

    async def _run_page_loop(
        self,
        summary: CalendarSyncSummary,
        owner_id: str,
        cursor_token: Optional[str],
        window: Optional[SyncWindow]
    ) -> Optional[str]:
        """Fetch pages until the remote hands back a new delta token."""
        continuation: Optional[str] = None
        while True:
            summary.phase = SyncPhase.PAGING
            page = await self.service.fetch_delta_page(
                owner_id,
                summary.calendar_id,
                cursor_token=cursor_token if continuation is None else None,
                continuation=continuation,
                page_size=self.settings.page_size,
            )
            summary.pages += 1

            summary.phase = SyncPhase.RECONCILING
            self._reconcile_page(summary, owner_id, page, window)

            if page.is_final:
                return page.new_delta_token
            continuation = page.continuation

    def _reconcile_page(
        self,
        summary: CalendarSyncSummary,
        owner_id: str,
        page: DeltaPage,
        window: Optional[SyncWindow]
    ) -> None:
        calendar_id = summary.calendar_id
        for entry in page.malformed:
            self.logger.warning(
                f"Skipping unreadable event {owner_id}/{calendar_id}/{entry.get('remote_id')}: {entry.get('reason')}"
            )
            summary.skipped += 1
            summary.skipped_events.append(entry)

        for item in page.items:
            if item.removed:
                try:
                    if self.merge_engine.mark_deleted(owner_id, item.id):
                        summary.deleted += 1
                except Exception as e:
                    self.logger.error(f"Failed to delete event {owner_id}/{calendar_id}/{item.id}: {e}")
                    self._record_skip(summary, item, e)
                continue

            if summary.mode == SyncMode.FULL and window is not None and not window.overlaps(item.start, item.end):
                summary.filtered += 1
                continue

            try:
                outcome = self.merge_engine.apply(owner_id, calendar_id, item)
            except MalformedEventError as e:
                self.logger.warning(f"Skipping malformed event {owner_id}/{calendar_id}/{item.id}: {e}")
                self._record_skip(summary, item, e)
                continue
            except Exception as e:
                self.logger.error(f"Failed to merge event {owner_id}/{calendar_id}/{item.id}: {e}")
                self._record_skip(summary, item, e)
                continue

            if outcome.operation == MergeOperation.CREATE:
                summary.created += 1
            else:
                summary.updated += 1

    @staticmethod
    def _record_skip(summary: CalendarSyncSummary, item: RemoteEvent, error: Exception) -> None:
        summary.skipped += 1
        summary.skipped_events.append({'remote_id': item.id, 'reason': str(error)})

    @staticmethod
    def _record_failure(summary: CalendarSyncSummary, error: BaseException) -> None:
        summary.phase = SyncPhase.FAILED
        summary.error_type = type(error).__name__
        summary.error_message = str(error) or type(error).__name__

    # ------------------------------------------------------------------
    # Thin operations used by the route layer and CLI
    # ------------------------------------------------------------------

    def reset_cursor(self, owner_id: str, calendar_id: str) -> SyncCursor:
        return self.cursor_store.reset(owner_id, calendar_id)

    def list_cursors(self, owner_id: Optional[str] = None) -> List[SyncCursor]:
        return self.cursor_store.list_cursors(owner_id)

    def resolve_location(self, free_text: str, create_missing: bool = False) -> List[LocationMatch]:
        return self.location_resolver.resolve(free_text, create_missing=create_missing)

    def bulk_load(self, owner_id: str, events: Sequence[RemoteEvent]) -> BulkLoadResult:
        return self.bulk_layer.bulk_load(owner_id, events)

    def get_sync_status(self, owner_id: str) -> Dict[str, Any]:
        """Get current sync status for an owner."""
        with self.db_manager.get_session() as session:
            stats = self.db_manager.get_sync_statistics(session, owner_id)
        stats['cursor_states'] = [
            {
                'calendar_id': cursor.calendar_id,
                'full_sync_required': cursor.full_sync_required,
                'last_synced_at': cursor.last_synced_at.isoformat() if cursor.last_synced_at else None,
            }
            for cursor in self.cursor_store.list_cursors(owner_id)
        ]
        return stats
