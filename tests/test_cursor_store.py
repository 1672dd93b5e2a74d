"""Tests for the delta cursor store."""

from sqlalchemy.exc import OperationalError

from calmirror.cursor_store import DeltaCursorStore
from calmirror.database import SyncCursorDB


def _assert_invariant(cursor):
    assert (cursor.cursor_token is not None) != cursor.full_sync_required


def test_get_without_row_returns_full_sync_default(db_manager):
    store = DeltaCursorStore(db_manager)

    cursor = store.get('owner@example.com', 'cal-1')

    assert cursor.full_sync_required
    assert cursor.cursor_token is None
    assert cursor.last_synced_at is None


def test_advance_then_get(db_manager):
    store = DeltaCursorStore(db_manager)

    store.advance('owner', 'cal-1', 'https://graph/delta?token=abc')
    cursor = store.get('owner', 'cal-1')

    assert cursor.cursor_token == 'https://graph/delta?token=abc'
    assert not cursor.full_sync_required
    assert cursor.last_synced_at is not None
    _assert_invariant(cursor)


def test_advance_is_idempotent_upsert(db_manager):
    store = DeltaCursorStore(db_manager)

    store.advance('owner', 'cal-1', 'token-1')
    store.advance('owner', 'cal-1', 'token-1')
    store.advance('owner', 'cal-1', 'token-2')

    with db_manager.get_session() as session:
        rows = session.query(SyncCursorDB).filter_by(owner_id='owner', calendar_id='cal-1').all()
    assert len(rows) == 1
    assert rows[0].cursor_token == 'token-2'


def test_reset_clears_token(db_manager):
    store = DeltaCursorStore(db_manager)
    store.advance('owner', 'cal-1', 'token-1')

    reset = store.reset('owner', 'cal-1')
    cursor = store.get('owner', 'cal-1')

    _assert_invariant(reset)
    assert cursor.full_sync_required
    assert cursor.cursor_token is None
    # The last completed sync time survives a reset
    assert cursor.last_synced_at is not None


def test_reset_of_unknown_calendar_creates_full_sync_row(db_manager):
    store = DeltaCursorStore(db_manager)

    store.reset('owner', 'never-synced')

    assert [c.calendar_id for c in store.list_cursors('owner')] == ['never-synced']
    assert store.get('owner', 'never-synced').full_sync_required


def test_cursors_are_scoped_per_owner_and_calendar(db_manager):
    store = DeltaCursorStore(db_manager)
    store.advance('alice', 'cal-1', 'a1')
    store.advance('alice', 'cal-2', 'a2')
    store.advance('bob', 'cal-1', 'b1')

    assert store.get('alice', 'cal-2').cursor_token == 'a2'
    assert store.get('bob', 'cal-1').cursor_token == 'b1'
    assert [c.calendar_id for c in store.list_cursors('alice')] == ['cal-1', 'cal-2']
    assert len(store.list_cursors()) == 3


def test_storage_failure_degrades_to_full_sync(db_manager, monkeypatch):
    store = DeltaCursorStore(db_manager)
    store.advance('owner', 'cal-1', 'token-1')

    def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_manager, 'get_cursor', broken)

    cursor = store.get('owner', 'cal-1')
    assert cursor.full_sync_required
    assert cursor.cursor_token is None


def test_write_failures_are_logged_not_raised(db_manager, monkeypatch):
    store = DeltaCursorStore(db_manager)
    store.advance('owner', 'cal-1', 'token-1')

    def broken(*args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("database is locked"))

    monkeypatch.setattr(db_manager, 'upsert_cursor', broken)

    advanced = store.advance('owner', 'cal-1', 'token-2')
    reset = store.reset('owner', 'cal-1')

    assert advanced.cursor_token is None
    assert advanced.full_sync_required
    assert reset.full_sync_required
    _assert_invariant(reset)
    # The stored row is untouched
    assert store.get('owner', 'cal-1').cursor_token == 'token-1'
