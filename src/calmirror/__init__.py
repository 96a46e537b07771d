"""calmirror - one-way mirroring of calendar events into another calendar."""

__version__ = "1.0.0"

from .models import CalendarEvent, EventTime, Recurrence, RecurrenceRule, SyncReport
from .sync_engine import SyncEngine
from .runner import SyncRunner

__all__ = [
    'CalendarEvent',
    'EventTime',
    'Recurrence',
    'RecurrenceRule',
    'SyncReport',
    'SyncEngine',
    'SyncRunner',
]
