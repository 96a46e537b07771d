"""Tests for diffing and applying create/delete mutations."""

import pytest

from calmirror.models import CalendarEvent, SyncOperation, SyncReport
from calmirror.reconcile import Diff, apply_diff, compute_diff, plural

from conftest import timed


def busy(day, event_id=None, source_event_id="src"):
    resource = timed(day, 12, 13, summary="Busy", extendedProperties={
        'private': {'sourceCalendarId': 'work', 'sourceEventId': source_event_id},
    })
    if event_id:
        resource['id'] = event_id
    return CalendarEvent.from_resource(resource)


def new_report():
    return SyncReport(source_calendar="Work", target_calendar="Private")


def test_plural():
    assert plural(1, "event") == "1 event"
    assert plural(0, "event") == "0 events"
    assert plural(3, "minute") == "3 minutes"


class TestComputeDiff:

    def test_nothing_to_do(self):
        diff = compute_diff([busy(14)], [busy(14, "a")])
        assert diff.is_empty
        assert diff.unchanged == 1

    def test_missing_and_obsolete(self):
        diff = compute_diff([busy(14), busy(15)], [busy(14, "a"), busy(16, "b")])
        assert [e.start.date_time.day for e in diff.missing] == [15]
        assert [e.id for e in diff.obsolete] == ["b"]
        assert diff.unchanged == 1

    def test_duplicates_keep_lowest_id(self):
        diff = compute_diff([busy(14)], [busy(14, "evt0009"), busy(14, "evt0002"), busy(14, "evt0005")])
        assert sorted(e.id for e in diff.obsolete) == ["evt0005", "evt0009"]
        assert diff.missing == []

    def test_lowest_identifier_wins_regardless_of_order(self):
        diff = compute_diff([busy(14)], [busy(14, "b"), busy(14, "a")])
        assert [e.id for e in diff.obsolete] == ["b"]

    def test_obsolete_duplicates_are_all_deleted(self):
        diff = compute_diff([], [busy(14, "a"), busy(14, "b")])
        assert sorted(e.id for e in diff.obsolete) == ["a", "b"]

    def test_equal_desired_events_are_created_once(self):
        diff = compute_diff([busy(14), busy(14)], [])
        assert len(diff.missing) == 1

    def test_desired_events_match_existing_only_once(self):
        diff = compute_diff([busy(14), busy(14)], [busy(14, "a")])
        assert diff.missing == []
        assert diff.unchanged == 1


class TestApplyDiff:

    @pytest.mark.asyncio
    async def test_deletes_then_creates(self, store):
        stale = store.add_event("private", busy(16).to_resource())
        report = new_report()

        await apply_diff(store, "private", Diff(obsolete=[stale], missing=[busy(14)]), report, "Europe/Berlin")

        assert [r.operation for r in report.results] == [SyncOperation.DELETE, SyncOperation.CREATE]
        assert report.created == 1
        assert report.deleted == 1
        assert report.results[0].event_start == "2024-03-16 12:00:00"
        live = store.live("private")
        assert len(live) == 1
        assert live[0].start.date_time.day == 14

    @pytest.mark.asyncio
    async def test_already_deleted_counts_as_deleted(self, store):
        ghost = busy(16, "gone")
        report = new_report()

        await apply_diff(store, "private", Diff(obsolete=[ghost]), report, "Europe/Berlin")

        assert report.deleted == 1
        assert report.failed == 0

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_other_mutations(self, store):
        store.failing_sources.add("bad")
        report = new_report()

        await apply_diff(
            store,
            "private",
            Diff(missing=[busy(14, source_event_id="bad"), busy(15, source_event_id="good")]),
            report,
            "Europe/Berlin",
        )

        assert report.created == 1
        assert report.failed == 1
        assert report.results[0].error_message == "Insert rejected for bad"
        assert len(report.errors) == 1
        assert len(store.live("private")) == 1

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, store):
        stale = store.add_event("private", busy(16).to_resource())
        report = new_report()

        await apply_diff(
            store, "private", Diff(obsolete=[stale], missing=[busy(14)]), report, "Europe/Berlin", dry_run=True
        )

        assert report.created == 1
        assert report.deleted == 1
        assert [e.id for e in store.live("private")] == [stale.id]
