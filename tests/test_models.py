"""Tests for data models."""

import pytest
from datetime import datetime, timedelta
from uuid import uuid4

import pytz
from pydantic import ValidationError

from calmirror.models import (
    CalendarSyncSummary, DeltaPage, LocationEntity, LocationStatus, RemoteEvent,
    SyncCursor, SyncReport, SyncWindow
)


class TestRemoteEvent:
    """Tests for RemoteEvent parsing."""

    def test_graph_datetime_dict(self):
        """Graph style start/end objects are localized."""
        event = RemoteEvent(
            id="AAMk-1",
            start={"dateTime": "2024-03-01T10:00:00.0000000", "timeZone": "UTC"},
            end={"dateTime": "2024-03-01T11:00:00.0000000", "timeZone": "America/New_York"},
        )

        assert event.start == datetime(2024, 3, 1, 10, 0, tzinfo=pytz.UTC)
        assert event.end.utcoffset() == timedelta(hours=-5)

    def test_naive_datetime_becomes_utc(self):
        event = RemoteEvent(id="x", start=datetime(2024, 1, 1, 9, 0), end="2024-01-01T10:00:00")

        assert event.start.tzinfo == pytz.UTC
        assert event.end.tzinfo is not None

    def test_unreadable_datetime_is_none(self):
        """Bad timestamps are left for the merge path to reject."""
        event = RemoteEvent(id="x", start="not a date", end={"dateTime": None})

        assert event.start is None
        assert event.end is None


class TestSyncCursor:
    """Tests for the cursor invariant."""

    def test_default_requires_full_sync(self):
        cursor = SyncCursor(owner_id="o", calendar_id="c")

        assert cursor.full_sync_required
        assert cursor.cursor_token is None

    def test_token_with_full_sync_rejected(self):
        with pytest.raises(ValidationError):
            SyncCursor(owner_id="o", calendar_id="c", cursor_token="t", full_sync_required=True)

    def test_cleared_flag_requires_token(self):
        with pytest.raises(ValidationError):
            SyncCursor(owner_id="o", calendar_id="c", full_sync_required=False)


class TestSyncWindow:

    def test_inverted_window_rejected(self):
        start = datetime(2024, 1, 2, tzinfo=pytz.UTC)
        with pytest.raises(ValueError):
            SyncWindow(start=start, end=start - timedelta(hours=1))

    def test_overlaps(self):
        window = SyncWindow(start=datetime(2024, 1, 1), end=datetime(2024, 1, 31))

        assert window.overlaps(datetime(2023, 12, 31, 23, tzinfo=pytz.UTC), datetime(2024, 1, 1, 1, tzinfo=pytz.UTC))
        assert not window.overlaps(datetime(2024, 2, 1, tzinfo=pytz.UTC), datetime(2024, 2, 2, tzinfo=pytz.UTC))
        assert window.overlaps(None, None)


def test_delta_page_is_final():
    assert DeltaPage(items=[], new_delta_token="d").is_final
    assert not DeltaPage(items=[], continuation="next").is_final


def test_merged_into_requires_merged_status():
    with pytest.raises(ValidationError):
        LocationEntity(name="Chapel", merged_into=uuid4())

    entity = LocationEntity(name="Chapel", status=LocationStatus.MERGED, merged_into=uuid4())
    assert entity.label == "Chapel"


class TestSyncReport:
    """Tests for SyncReport aggregation."""

    def test_totals_and_response(self):
        report = SyncReport(owner_id="owner")
        report.calendars = [
            CalendarSyncSummary(calendar_id="a", created=2, updated=1, deleted=1),
            CalendarSyncSummary(calendar_id="b", skipped=3, error_type="TransientRemoteError", error_message="503"),
        ]
        report.errors.append("b: 503")

        assert report.merged_event_count == 3
        assert report.failed_calendars == ["b"]
        assert report.summary_for("a").created == 2

        response = report.to_response()
        assert response['mergedEventCount'] == 3
        assert response['skipped'] == 3
        assert response['errors'] == ["b: 503"]
        assert [s['calendar_id'] for s in response['perCalendarSummary']] == ["a", "b"]
