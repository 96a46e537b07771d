"""Tests for data models."""

from datetime import date, datetime

import pytest
import pytz

from calmirror.models import (
    CalendarEvent, EventTime, Linkage, Recurrence, RecurrenceRule,
    SyncOperation, SyncReport, SyncResult, Termination,
    parse_ical_value, format_ical_value,
)


class TestIcalValues:
    """Tests for iCalendar DATE / DATE-TIME helpers."""

    def test_parse_date(self):
        assert parse_ical_value("20240131") == date(2024, 1, 31)

    def test_parse_utc(self):
        value = parse_ical_value("20240131T100000Z")
        assert value == datetime(2024, 1, 31, 10, tzinfo=pytz.UTC)

    def test_parse_with_tzid(self):
        value = parse_ical_value("20240131T100000", "Europe/Berlin")
        assert value.utcoffset().total_seconds() == 3600
        assert value.astimezone(pytz.UTC).hour == 9

    def test_parse_floating(self):
        value = parse_ical_value("20240131T100000")
        assert value.tzinfo is None

    def test_format(self):
        berlin = pytz.timezone("Europe/Berlin").localize(datetime(2024, 7, 1, 10))
        assert format_ical_value(date(2024, 7, 1)) == "20240701"
        assert format_ical_value(berlin) == "20240701T080000Z"
        assert format_ical_value(berlin, "Europe/Berlin") == "20240701T100000"


class TestRecurrence:
    """Tests for RecurrenceRule and Recurrence."""

    def test_rule_termination(self):
        assert RecurrenceRule.parse("FREQ=DAILY;COUNT=3").termination == Termination.COUNT
        assert RecurrenceRule.parse("FREQ=DAILY;UNTIL=20240301").termination == Termination.UNTIL
        assert RecurrenceRule.parse("FREQ=DAILY").termination == Termination.NONE

    def test_rule_without_freq(self):
        with pytest.raises(ValueError, match="without FREQ"):
            RecurrenceRule.parse("COUNT=3")

    def test_rule_text_is_normalized(self):
        rule = RecurrenceRule.parse("UNTIL=20240301T000000Z;BYDAY=MO,WE;FREQ=WEEKLY;INTERVAL=2")
        assert rule.to_text() == "FREQ=WEEKLY;BYDAY=MO,WE;INTERVAL=2;UNTIL=20240301T000000Z"

    def test_from_lines(self):
        recurrence = Recurrence.from_lines([
            "RRULE:FREQ=WEEKLY;BYDAY=MO",
            "EXDATE;TZID=Europe/Berlin:20240318T100000,20240325T100000",
            "RDATE;VALUE=DATE:20240401",
        ])
        assert len(recurrence.rules) == 1
        assert len(recurrence.exclusions) == 2
        assert recurrence.exclusion_zone == "Europe/Berlin"
        assert recurrence.other == ["RDATE;VALUE=DATE:20240401"]
        assert recurrence.to_lines() == [
            "RRULE:FREQ=WEEKLY;BYDAY=MO",
            "EXDATE;TZID=Europe/Berlin:20240318T100000,20240325T100000",
            "RDATE;VALUE=DATE:20240401",
        ]

    def test_all_day_exclusions(self):
        recurrence = Recurrence.from_lines(["RRULE:FREQ=DAILY", "EXDATE;VALUE=DATE:20240302,20240301"])
        assert recurrence.exclusions == [date(2024, 3, 2), date(2024, 3, 1)]
        assert recurrence.to_lines()[1] == "EXDATE;VALUE=DATE:20240301,20240302"

    def test_with_exclusions_deduplicates(self):
        recurrence = Recurrence.from_lines(["RRULE:FREQ=DAILY", "EXDATE;VALUE=DATE:20240301"])
        merged = recurrence.with_exclusions([date(2024, 3, 1), date(2024, 3, 5)])
        assert merged.exclusions == [date(2024, 3, 1), date(2024, 3, 5)]
        assert recurrence.exclusions == [date(2024, 3, 1)]

    def test_canonical_lines_ignore_zone_and_order(self):
        first = Recurrence.from_lines([
            "EXDATE;TZID=Europe/Berlin:20240325T100000,20240318T100000",
            "RRULE:BYDAY=MO;FREQ=WEEKLY",
        ])
        second = Recurrence.from_lines([
            "RRULE:FREQ=WEEKLY;BYDAY=MO",
            "EXDATE:20240318T090000Z,20240325T090000Z",
        ])
        assert first.canonical_lines() == second.canonical_lines()


class TestCalendarEvent:
    """Tests for CalendarEvent model."""

    def test_from_resource_keeps_unknown_fields(self):
        event = CalendarEvent.from_resource({
            'id': 'abc',
            'summary': 'Lunch',
            'colorId': '5',
            'start': {'dateTime': '2024-03-14T12:00:00+01:00', 'timeZone': 'Europe/Berlin'},
            'end': {'dateTime': '2024-03-14T13:00:00+01:00', 'timeZone': 'Europe/Berlin'},
            'recurrence': ['RRULE:FREQ=DAILY;COUNT=2'],
        })
        assert event.is_series
        resource = event.to_resource()
        assert resource['colorId'] == '5'
        assert resource['recurrence'] == ['RRULE:FREQ=DAILY;COUNT=2']
        assert resource['start']['timeZone'] == 'Europe/Berlin'

    def test_all_day_event(self):
        event = CalendarEvent.from_resource({
            'start': {'date': '2024-03-14'},
            'end': {'date': '2024-03-15'},
        })
        assert event.start.is_all_day
        assert event.to_resource()['start'] == {'date': '2024-03-14'}
        assert event.local_start("Europe/Berlin") == "2024-03-14 00:00:00"

    def test_label_and_status(self):
        event = CalendarEvent(status="cancelled")
        assert event.label == "(no title)"
        assert event.is_cancelled

    def test_linkage(self):
        event = CalendarEvent(summary="Busy")
        assert event.linkage is None

        linked = event.with_linkage(Linkage("work", "evt1"))
        assert linked.linkage == Linkage("work", "evt1")
        assert linked.extended_properties['private'] == {
            'sourceCalendarId': 'work',
            'sourceEventId': 'evt1',
        }
        assert event.extended_properties is None

    def test_duration_uses_event_zone(self):
        event = CalendarEvent.from_resource({
            'start': {'dateTime': '2024-03-30T23:00:00', 'timeZone': 'Europe/Berlin'},
            'end': {'dateTime': '2024-03-31T04:00:00', 'timeZone': 'Europe/Berlin'},
        })
        # clocks go forward at 02:00
        assert event.duration("UTC").total_seconds() == 4 * 3600

    def test_event_time_moved_to_keeps_kind(self):
        day = EventTime(date=date(2024, 3, 14))
        moved = day.moved_to(datetime(2024, 3, 20, 0, 0))
        assert moved.day == date(2024, 3, 20)
        assert moved.date_time is None


class TestSyncReport:
    """Tests for SyncReport counters."""

    def test_counts(self):
        report = SyncReport(source_calendar="Work", target_calendar="Private")
        report.results.extend([
            SyncResult(operation=SyncOperation.CREATE),
            SyncResult(operation=SyncOperation.CREATE, success=False, error_message="boom"),
            SyncResult(operation=SyncOperation.DELETE),
            SyncResult(operation=SyncOperation.SKIP),
        ])
        assert report.created == 1
        assert report.deleted == 1
        assert report.skipped_events == 1
        assert report.failed == 1
        assert not report.succeeded
