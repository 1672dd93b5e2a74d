import pytest
import pytz
from datetime import datetime, timedelta
from sqlalchemy.exc import OperationalError

from calmirror.database import UnifiedEventDB
from calmirror.models import DeltaPage, RemoteEvent, SyncMode, SyncPhase
from calmirror.services import AuthenticationError, CursorExpiredError, TransientRemoteError
from calmirror.sync_engine import SyncOrchestrator, SyncRequestError, build_window

OWNER = 'owner@example.com'


class InMemoryService:
    """Replays scripted delta pages per calendar and records each request."""

    def __init__(self):
        self.scripts = {}
        self.requests = []
        self.closed = False

    def script(self, calendar_id, *responses):
        self.scripts.setdefault(calendar_id, []).extend(responses)

    async def fetch_delta_page(self, owner_id, calendar_id, *, cursor_token=None, continuation=None, page_size=None):
        self.requests.append({
            'calendar_id': calendar_id,
            'cursor_token': cursor_token,
            'continuation': continuation,
        })
        response = self.scripts[calendar_id].pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


def removed(event_id):
    return RemoteEvent(id=event_id, removed=True)


@pytest.fixture
def service():
    return InMemoryService()


@pytest.fixture
def orchestrator(settings, db_manager, service):
    return SyncOrchestrator(settings, service=service, db_manager=db_manager)


def live_rows(db_manager):
    with db_manager.get_session() as session:
        return session.query(UnifiedEventDB).filter(
            UnifiedEventDB.owner_id == OWNER,
            UnifiedEventDB.is_deleted == False  # noqa: E712
        ).all()


@pytest.mark.asyncio
async def test_first_full_sync_pages_and_advances_cursor(orchestrator, service, make_event):
    service.script(
        'cal-1',
        DeltaPage(items=[make_event('e1'), make_event('e2')], continuation='https://graph/next-1'),
        DeltaPage(items=[removed('e3')], new_delta_token='https://graph/delta-1'),
    )

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    summary = report.summary_for('cal-1')
    assert (summary.created, summary.updated, summary.deleted) == (2, 0, 0)
    assert summary.mode == SyncMode.FULL
    assert summary.pages == 2
    assert summary.phase == SyncPhase.DONE
    assert summary.cursor_advanced
    assert report.merged_event_count == 2
    assert report.errors == []
    assert orchestrator.cursor_store.get(OWNER, 'cal-1').cursor_token == 'https://graph/delta-1'
    assert service.requests[0]['cursor_token'] is None
    assert service.requests[1]['continuation'] == 'https://graph/next-1'


@pytest.mark.asyncio
async def test_incremental_sync_uses_stored_cursor(orchestrator, service, db_manager, make_event):
    service.script('cal-1', DeltaPage(items=[make_event('e1')], new_delta_token='delta-1'))
    await orchestrator.sync_calendars(OWNER, ['cal-1'])

    service.script(
        'cal-1',
        DeltaPage(items=[make_event('e1', subject='Renamed'), removed('e1-gone')], new_delta_token='delta-2'),
    )
    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    summary = report.summary_for('cal-1')
    assert summary.mode == SyncMode.INCREMENTAL
    assert (summary.created, summary.updated) == (0, 1)
    assert service.requests[-1]['cursor_token'] == 'delta-1'
    assert orchestrator.cursor_store.get(OWNER, 'cal-1').cursor_token == 'delta-2'
    assert [row.title for row in live_rows(db_manager)] == ['Renamed']


@pytest.mark.asyncio
async def test_removed_items_soft_delete(orchestrator, service, db_manager, make_event):
    service.script('cal-1', DeltaPage(items=[make_event('e1'), make_event('e2')], new_delta_token='d1'))
    await orchestrator.sync_calendars(OWNER, ['cal-1'])

    service.script('cal-1', DeltaPage(items=[removed('e1')], new_delta_token='d2'))
    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    assert report.deleted == 1
    assert [row.remote_id for row in live_rows(db_manager)] == ['e2']


@pytest.mark.asyncio
async def test_expired_cursor_falls_back_to_one_full_sync(orchestrator, service, make_event):
    orchestrator.cursor_store.advance(OWNER, 'cal-1', 'stale-token')
    service.script(
        'cal-1',
        CursorExpiredError("Delta token expired", status_code=410),
        DeltaPage(items=[make_event('e1')], new_delta_token='fresh-token'),
    )

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    summary = report.summary_for('cal-1')
    assert summary.full_sync_retried
    assert summary.mode == SyncMode.FULL
    assert summary.created == 1
    assert summary.error_type is None
    assert [r['cursor_token'] for r in service.requests] == ['stale-token', None]
    assert orchestrator.cursor_store.get(OWNER, 'cal-1').cursor_token == 'fresh-token'


@pytest.mark.asyncio
async def test_second_expiry_is_a_calendar_failure(orchestrator, service):
    orchestrator.cursor_store.advance(OWNER, 'cal-1', 'stale-token')
    service.script('cal-1', CursorExpiredError("expired"), CursorExpiredError("expired again"))

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    assert len(service.requests) == 2
    assert report.failed_calendars == ['cal-1']
    assert orchestrator.cursor_store.get(OWNER, 'cal-1').full_sync_required


@pytest.mark.asyncio
async def test_transient_failure_leaves_cursor_unadvanced(orchestrator, service, make_event):
    orchestrator.cursor_store.advance(OWNER, 'cal-1', 'delta-1')
    service.script(
        'cal-1',
        DeltaPage(items=[make_event('e1')], continuation='next'),
        TransientRemoteError("503 Service Unavailable", status_code=503),
    )

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    summary = report.summary_for('cal-1')
    assert summary.phase == SyncPhase.FAILED
    assert summary.error_type == 'TransientRemoteError'
    assert not summary.cursor_advanced
    assert report.errors == ['cal-1: 503 Service Unavailable']
    assert orchestrator.cursor_store.get(OWNER, 'cal-1').cursor_token == 'delta-1'


@pytest.mark.asyncio
async def test_auth_failure_raises_after_other_calendars_finish(orchestrator, service, make_event):
    service.script('cal-ok', DeltaPage(items=[make_event('e1')], new_delta_token='d-ok'))
    service.script('cal-denied', AuthenticationError("Access denied", status_code=403))

    with pytest.raises(AuthenticationError) as exc_info:
        await orchestrator.sync_calendars(OWNER, ['cal-ok', 'cal-denied'])

    report = exc_info.value.report
    assert report.summary_for('cal-ok').created == 1
    assert report.summary_for('cal-denied').error_type == 'AuthenticationError'
    assert orchestrator.cursor_store.get(OWNER, 'cal-ok').cursor_token == 'd-ok'


@pytest.mark.asyncio
async def test_one_calendar_failure_does_not_stop_others(orchestrator, service, make_event):
    service.script('cal-1', TransientRemoteError("timeout"))
    service.script('cal-2', DeltaPage(items=[make_event('e2')], new_delta_token='d2'))

    report = await orchestrator.sync_calendars(OWNER, ['cal-1', 'cal-2'])

    assert report.failed_calendars == ['cal-1']
    assert report.summary_for('cal-2').created == 1


@pytest.mark.asyncio
async def test_malformed_event_is_skipped(orchestrator, service, make_event):
    start = datetime(2024, 3, 1, 10, tzinfo=pytz.UTC)
    service.script(
        'cal-1',
        DeltaPage(items=[make_event('bad', start=start, end=start - timedelta(hours=1)), make_event('good')],
                  new_delta_token='d1'),
    )

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    summary = report.summary_for('cal-1')
    assert summary.created == 1
    assert summary.skipped == 1
    assert summary.skipped_events[0]['remote_id'] == 'bad'
    assert summary.cursor_advanced


@pytest.mark.asyncio
async def test_failed_removal_does_not_abort_page(orchestrator, service, db_manager, make_event, monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("database is locked"))

    monkeypatch.setattr(db_manager, 'soft_delete_by_remote_id', broken)
    service.script('cal-1', DeltaPage(items=[removed('gone'), make_event('after')], new_delta_token='d1'))

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    summary = report.summary_for('cal-1')
    assert summary.created == 1
    assert summary.skipped == 1
    assert summary.skipped_events[0]['remote_id'] == 'gone'
    assert summary.error_message is None
    assert summary.cursor_advanced


@pytest.mark.asyncio
async def test_unreadable_items_are_counted_as_skipped(orchestrator, service, make_event):
    service.script('cal-1', DeltaPage(
        items=[make_event('good')],
        malformed=[{'remote_id': 'AAMk-broken', 'reason': 'start is not a date'}],
        new_delta_token='d1',
    ))

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    summary = report.summary_for('cal-1')
    assert summary.created == 1
    assert summary.skipped == 1
    assert summary.skipped_events == [{'remote_id': 'AAMk-broken', 'reason': 'start is not a date'}]


@pytest.mark.asyncio
async def test_cursor_write_failure_is_not_reported_as_advanced(orchestrator, service, db_manager, make_event,
                                                                 monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db_manager, 'upsert_cursor', broken)
    service.script('cal-1', DeltaPage(items=[make_event('e1')], new_delta_token='d1'))

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'])

    summary = report.summary_for('cal-1')
    assert summary.created == 1
    assert not summary.cursor_advanced
    assert summary.phase == SyncPhase.DONE


@pytest.mark.asyncio
async def test_window_filters_full_sync_only(orchestrator, service, make_event):
    window = build_window(
        datetime(2024, 3, 1, tzinfo=pytz.UTC),
        datetime(2024, 3, 31, tzinfo=pytz.UTC),
    )
    inside = make_event('inside')
    outside = make_event('outside', start=datetime(2024, 6, 1, 9, tzinfo=pytz.UTC))
    service.script('cal-1', DeltaPage(items=[inside, outside], new_delta_token='d1'))

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'], window=window)

    summary = report.summary_for('cal-1')
    assert (summary.created, summary.filtered) == (1, 1)

    service.script('cal-1', DeltaPage(items=[outside], new_delta_token='d2'))
    report = await orchestrator.sync_calendars(OWNER, ['cal-1'], window=window)

    assert report.summary_for('cal-1').created == 1


@pytest.mark.asyncio
async def test_force_full_sync_ignores_cursor(orchestrator, service, make_event):
    orchestrator.cursor_store.advance(OWNER, 'cal-1', 'delta-1')
    service.script('cal-1', DeltaPage(items=[], new_delta_token='delta-2'))

    report = await orchestrator.sync_calendars(OWNER, ['cal-1'], force_full_sync=True)

    assert report.summary_for('cal-1').mode == SyncMode.FULL
    assert service.requests[0]['cursor_token'] is None


@pytest.mark.asyncio
async def test_duplicate_calendar_ids_sync_once(orchestrator, service):
    service.script('cal-1', DeltaPage(items=[], new_delta_token='d1'))

    report = await orchestrator.sync_calendars(OWNER, ['cal-1', 'cal-1'])

    assert [s.calendar_id for s in report.calendars] == ['cal-1']
    assert len(service.requests) == 1


@pytest.mark.asyncio
async def test_invalid_requests_rejected(orchestrator):
    with pytest.raises(SyncRequestError):
        await orchestrator.sync_calendars(OWNER, [])
    with pytest.raises(SyncRequestError):
        await orchestrator.sync_calendars('', ['cal-1'])


def test_build_window_validation():
    start = datetime(2024, 3, 1, tzinfo=pytz.UTC)

    assert build_window(None, None) is None
    with pytest.raises(SyncRequestError):
        build_window(start, None)
    with pytest.raises(SyncRequestError):
        build_window(start, start - timedelta(days=1))


@pytest.mark.asyncio
async def test_cleanup_closes_service(orchestrator, service):
    async with orchestrator:
        pass

    assert service.closed


def test_sync_status(orchestrator):
    orchestrator.cursor_store.advance(OWNER, 'cal-1', 'd1')
    orchestrator.cursor_store.reset(OWNER, 'cal-2')

    status = orchestrator.get_sync_status(OWNER)

    assert status['cursors'] == 2
    assert status['cursors_needing_full_sync'] == 1
    assert {c['calendar_id'] for c in status['cursor_states']} == {'cal-1', 'cal-2'}
