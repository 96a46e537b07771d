"""Target event drafts, user transforms and helpers for writing them.

A transform receives the draft target event and the (windowed) source event
and returns the event to create, either as a ``CalendarEvent`` or as a Google
Calendar resource dict. Returning an event with ``status="cancelled"`` skips
the source event::

    from calmirror.transforms import is_busy

    def private_busy(target, source):
        if not is_busy(source):
            target.status = "cancelled"
        return target
"""

import importlib
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Union

from .models import CalendarEvent, Linkage

DEFAULT_SUMMARY = "Busy"

TransformResult = Union[CalendarEvent, Dict[str, Any]]
Transform = Callable[[CalendarEvent, CalendarEvent], Optional[TransformResult]]


def build_draft(source: CalendarEvent, source_calendar_id: str) -> CalendarEvent:
    """Target event carrying only the time span of ``source``.

    Nothing else of the source (title, description, attendees ...) is copied.
    """
    return CalendarEvent(
        summary=DEFAULT_SUMMARY,
        start=source.start.model_copy(deep=True) if source.start else None,
        end=source.end.model_copy(deep=True) if source.end else None,
        recurrence=source.recurrence.model_copy(deep=True) if source.recurrence else None,
    ).with_linkage(Linkage(source_calendar_id, source.id or ""))


def keep_as_is(target: CalendarEvent, source: CalendarEvent) -> CalendarEvent:
    """Default transform: mirror the draft unchanged."""
    return target


def load_transform(path: Optional[str]) -> Transform:
    """Import a transform given as ``package.module:function``.

    Raises:
        ValueError: If the path is malformed or does not name a callable
    """
    if not path:
        return keep_as_is
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Transform must look like 'package.module:function', got '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import transform module '{module_name}': {e}") from e
    transform = getattr(module, attribute, None)
    if not callable(transform):
        raise ValueError(f"Transform '{path}' is not a callable")
    return transform


def _extra(event: CalendarEvent, name: str) -> Any:
    return (event.model_extra or {}).get(name)


def is_all_day(event: CalendarEvent) -> bool:
    """All-day event, or a timed event spanning whole days."""
    if event.start is None or event.end is None:
        return False
    if event.start.is_all_day:
        return True
    return event.duration("UTC") % timedelta(days=1) == timedelta(0)


def is_out_of_office(event: CalendarEvent) -> bool:
    return _extra(event, 'eventType') == 'outOfOffice'


def is_busy(event: CalendarEvent) -> bool:
    """Blocks time: not marked free and not an out-of-office entry."""
    return _extra(event, 'transparency') != 'transparent' and not is_out_of_office(event)


def is_synchronized(event: CalendarEvent) -> bool:
    """Created by a mirror pass itself."""
    return event.linkage is not None


def is_recurring_instance(event: CalendarEvent) -> bool:
    return event.recurring_event_id is not None


def response_status(event: CalendarEvent, email: Optional[str] = None) -> Optional[str]:
    """Response of attendee ``email``, or of the calendar owner when omitted."""
    for attendee in _extra(event, 'attendees') or []:
        matches = attendee.get('self', False) if email is None else attendee.get('email') == email
        if matches:
            return attendee.get('responseStatus')
    return None


def is_declined_by(event: CalendarEvent, email: Optional[str] = None) -> bool:
    """``email`` declined the event; without an email, the calendar owner did."""
    return response_status(event, email) == 'declined'


def is_open_or_tentative_for(event: CalendarEvent, email: Optional[str] = None) -> bool:
    return response_status(event, email) in ('needsAction', 'tentative')


def is_on_weekend(event: CalendarEvent, default_zone: str = "UTC") -> bool:
    if event.start is None:
        return False
    return event.start.localized(default_zone).weekday() >= 5
