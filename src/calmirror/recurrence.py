"""Recurrence expansion and windowing of source events.

Series are evaluated on local wall-clock time of the event's zone and
localized afterwards, so instances keep their local time across DST
changes. A series is never materialized into instances on the target: it is
rewritten so that it starts at its first instance inside the window and stops
at the window's end.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Union
import logging

from dateutil.rrule import rrulestr, rruleset
import pytz

from .models import (
    CalendarEvent,
    RecurrenceRule,
    Termination,
    CANCELLED,
    parse_ical_value,
)

logger = logging.getLogger(__name__)

ONE_SECOND = timedelta(seconds=1)
END_OF_DAY = time(23, 59, 59)


@dataclass(frozen=True)
class Window:
    """Half-open time range ``[start, end)`` in a calendar's zone."""

    start: datetime
    end: datetime
    time_zone: str = "UTC"

    @classmethod
    def around(
        cls,
        past_days: int,
        next_days: int,
        time_zone: str,
        now: Optional[datetime] = None
    ) -> "Window":
        """Window from ``past_days`` before today to the end of ``next_days`` after it.

        Boundaries are local midnights of ``time_zone``.
        """
        tz = pytz.timezone(time_zone)
        now = now or datetime.now(pytz.UTC)
        if now.tzinfo is None:
            now = tz.localize(now)
        today = now.astimezone(tz).date()
        start = tz.localize(datetime.combine(today - timedelta(days=past_days), time()))
        end = tz.localize(datetime.combine(today + timedelta(days=next_days + 1), time()))
        return cls(start=start, end=end, time_zone=time_zone)

    @property
    def last_second(self) -> datetime:
        return self.end - ONE_SECOND

    def __str__(self) -> str:
        return f"{self.start.isoformat()} .. {self.end.isoformat()}"


def _local_naive(value: Union[datetime, date], tz, end_of_day: bool = False) -> datetime:
    """Wall-clock time of ``value`` in ``tz`` without tzinfo."""
    if not isinstance(value, datetime):
        return datetime.combine(value, END_OF_DAY if end_of_day else time())
    if value.tzinfo is None:
        return value
    return value.astimezone(tz).replace(tzinfo=None)


def _as_aware(value: Union[datetime, date], tz, end_of_day: bool = False) -> datetime:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value
    return tz.localize(_local_naive(value, tz, end_of_day))


def _rule_text(rule: RecurrenceRule, tz) -> str:
    """RRULE text with UNTIL expressed as local wall-clock time."""
    items = [f"FREQ={rule.freq}"]
    items.extend(f"{key}={value}" for key, value in rule.parts.items())
    if rule.count is not None:
        items.append(f"COUNT={rule.count}")
    if rule.until is not None:
        until = _local_naive(rule.until, tz, end_of_day=True)
        items.append(f"UNTIL={until.strftime('%Y%m%dT%H%M%S')}")
    return ";".join(items)


def _build_rule_set(event: CalendarEvent, tz, dtstart: datetime) -> rruleset:
    rules = rruleset()
    for rule in event.recurrence.rules:
        rules.rrule(rrulestr(_rule_text(rule, tz), dtstart=dtstart))
    for exclusion in event.recurrence.exclusions:
        rules.exdate(_local_naive(exclusion, tz))
    for line in event.recurrence.other:
        head, _, values = line.partition(":")
        if head.upper().startswith("RDATE"):
            params = dict(p.split("=", 1) for p in head.split(";")[1:] if "=" in p)
            for raw in values.split(","):
                rules.rdate(_local_naive(parse_ical_value(raw, params.get("TZID")), tz))
    return rules


def merge_exclusions(events: List[CalendarEvent], default_zone: str) -> List[CalendarEvent]:
    """Fold fetched series instances into their master's exclusions.

    Every instance listed next to its master (cancelled or modified) has its
    original start added to the master's exclusion set. Cancelled instances are
    dropped; modified ones stay as events of their own.
    """
    instances: Dict[str, List[CalendarEvent]] = {}
    for event in events:
        if event.recurring_event_id:
            instances.setdefault(event.recurring_event_id, []).append(event)

    merged = []
    for event in events:
        if event.recurring_event_id:
            if not event.is_cancelled:
                merged.append(event)
            continue

        siblings = instances.get(event.id or "")
        if event.is_series and siblings:
            extra = []
            for instance in siblings:
                original = instance.original_start_time
                if original is None:
                    continue
                extra.append(original.day if original.is_all_day else original.localized(default_zone))
            zone = event.start.time_zone or default_zone
            event = event.model_copy(update={
                'recurrence': event.recurrence.with_exclusions(extra, zone)
            })
        merged.append(event)
    return merged


def expand_series(event: CalendarEvent, window: Window, default_zone: str) -> CalendarEvent:
    """Restrict a series to the instances inside ``window``.

    Returns a cancelled copy when no instance survives. Otherwise the copy
    starts at the first surviving instance, keeps its duration and has every
    rule terminated at the window's end.
    """
    if not event.is_series:
        return event

    tz = event.start.zone(default_zone)
    all_day = event.start.is_all_day
    dtstart = _local_naive(event.start.localized(default_zone), tz)
    lo = _local_naive(window.start, tz)
    hi = _local_naive(window.last_second, tz)

    instances = _build_rule_set(event, tz, dtstart).between(lo, hi, inc=True)
    if not instances:
        logger.debug(f"Series {event.id} has no instance in {window}")
        return event.model_copy(update={'status': CANCELLED})

    first, last = instances[0], instances[-1]
    if all_day:
        start = event.start.model_copy(update={'day': first.date()})
        end = event.end.model_copy(update={'day': first.date() + (event.end.day - event.start.day)})
    else:
        new_start = tz.localize(first)
        start = event.start.moved_to(new_start)
        end = event.end.moved_to(tz.normalize(new_start + event.duration(default_zone)))

    rules = [
        _terminate(rule, tz, dtstart, first, last, hi, window, all_day)
        for rule in event.recurrence.rules
    ]
    return event.model_copy(update={
        'start': start,
        'end': end,
        'recurrence': event.recurrence.model_copy(update={'rules': rules}),
    })


def _terminate(
    rule: RecurrenceRule,
    tz,
    dtstart: datetime,
    first: datetime,
    last: datetime,
    hi: datetime,
    window: Window,
    all_day: bool
) -> RecurrenceRule:
    """Rewrite a rule's termination so it ends inside the window."""
    if rule.termination == Termination.COUNT:
        occurrences = rrulestr(_rule_text(rule, tz), dtstart=dtstart).between(first, hi, inc=True)
        if occurrences:
            return rule.model_copy(update={'count': len(occurrences), 'until': None})

    boundary = min(tz.localize(datetime.combine(last.date(), END_OF_DAY)), window.end)
    if rule.until is not None:
        boundary = min(boundary, _as_aware(rule.until, tz, end_of_day=True))

    if all_day:
        until: Union[datetime, date] = (boundary.astimezone(tz) - ONE_SECOND).date()
    else:
        until = boundary.astimezone(pytz.UTC)
    return rule.model_copy(update={'count': None, 'until': until})


def clip_event(event: CalendarEvent, window: Window, default_zone: str) -> CalendarEvent:
    """Clip a singular event to ``window``; cancelled when nothing is left."""
    if event.is_series or event.start is None or event.end is None:
        return event

    start = event.start.localized(default_zone)
    end = event.end.localized(default_zone)
    clipped_start = max(start, window.start)
    clipped_end = min(end, window.end)
    if clipped_end <= clipped_start:
        return event.model_copy(update={'status': CANCELLED})
    if clipped_start == start and clipped_end == end:
        return event

    return event.model_copy(update={
        'start': event.start.moved_to(clipped_start.astimezone(event.start.zone(default_zone))),
        'end': event.end.moved_to(clipped_end.astimezone(event.end.zone(default_zone))),
    })


def window_events(events: List[CalendarEvent], window: Window, default_zone: str) -> List[CalendarEvent]:
    """Expand series and clip singular events, dropping whatever falls outside."""
    windowed = []
    for event in events:
        if event.is_series:
            event = expand_series(event, window, default_zone)
        else:
            event = clip_event(event, window, default_zone)
        if not event.is_cancelled:
            windowed.append(event)
    return windowed
