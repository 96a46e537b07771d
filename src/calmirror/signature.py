"""Canonical, order-independent event signatures."""

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Union

from dateutil.parser import isoparse
import pytz

from .models import CalendarEvent, Recurrence

# Fields the calendar store maintains on its own; they never make two events differ.
META_FIELDS = frozenset({
    'id',
    'iCalUID',
    'recurringEventId',
    'originalStartTime',
    'sequence',
    'updated',
    'created',
    'creator',
    'organizer',
    'htmlLink',
    'hangoutLink',
    'conferenceData',
    'reminders',
    'etag',
    'eventType',
    'kind',
    'status',
})

EventLike = Union[CalendarEvent, Dict[str, Any]]


def _resource(event: EventLike) -> Dict[str, Any]:
    if isinstance(event, CalendarEvent):
        return event.to_resource()
    return dict(event)


def strip_metadata(resource: Dict[str, Any]) -> Dict[str, Any]:
    """Drop store-maintained fields from an event resource."""
    return {key: value for key, value in resource.items() if key not in META_FIELDS}


def _utc_instant(value: str, zone: str = None) -> str:
    instant = isoparse(value)
    if instant.tzinfo is None:
        instant = pytz.timezone(zone).localize(instant) if zone else pytz.UTC.localize(instant)
    return instant.astimezone(pytz.UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def canonicalize(value: Any) -> Any:
    """Sort keys and arrays, render instants in UTC and normalize recurrence lines."""
    if isinstance(value, dict):
        result = {}
        for key in sorted(value):
            item = value[key]
            if key == 'dateTime' and isinstance(item, str):
                result[key] = _utc_instant(item, value.get('timeZone'))
            elif key == 'dateTime' and isinstance(item, datetime):
                result[key] = _utc_instant(item.isoformat(), value.get('timeZone'))
            elif key == 'recurrence' and isinstance(item, list):
                result[key] = Recurrence.from_lines(item).canonical_lines()
            else:
                result[key] = canonicalize(item)
        return result
    if isinstance(value, (list, tuple)):
        items = [canonicalize(item) for item in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    return value


def canonical_json(event: EventLike) -> str:
    return json.dumps(canonicalize(strip_metadata(_resource(event))), sort_keys=True, separators=(",", ":"))


def signature(event: EventLike) -> str:
    """SHA-256 hex digest of the canonical rendering of ``event``."""
    return hashlib.sha256(canonical_json(event).encode()).hexdigest()


def events_equal(first: EventLike, second: EventLike) -> bool:
    return canonical_json(first) == canonical_json(second)
