"""Shared fixtures: in-memory calendar store, trigger service and settings."""

import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from calmirror.config import Settings
from calmirror.database import DatabaseManager, PropertyStore
from calmirror.models import CalendarEvent, CalendarInfo, CANCELLED
from calmirror.scheduling import SchedulingError, Trigger, TriggerService, handler_name
from calmirror.services.base import (
    BaseCalendarStore,
    CalendarServiceError,
    EventNotFoundError,
    NotFoundError,
    TransientStoreError,
)
from calmirror.sync_engine import SyncEngine


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    __test__ = False

    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='x'*20,
        google_client_secret='y'*20,
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/test.db',
        principal='tester',
        sync_pairs=[{'name': 'work', 'source': 'Work', 'target': 'Private'}],
    )
    values.update(overrides)
    return TestSettings(**values)


class TickingClock:
    """Clock that moves one second forward every time it is read."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryCalendarStore(BaseCalendarStore):
    """Calendar store keeping events in dicts, with Google-like filtering."""

    def __init__(self, settings, clock):
        super().__init__(settings, "memory")
        self.clock = clock
        self.calendars: Dict[str, CalendarInfo] = {}
        self.events: Dict[str, Dict[str, CalendarEvent]] = {}
        self.unavailable = set()
        self.failing_sources = set()
        self.removed: List[str] = []
        self._ids = itertools.count(1)
        self._authenticated = True

    async def authenticate(self):
        self._authenticated = True

    def add_calendar(self, calendar_id, name, timezone="UTC"):
        self.calendars[calendar_id] = CalendarInfo(id=calendar_id, name=name, timezone=timezone)
        self.events.setdefault(calendar_id, {})

    def add_event(self, calendar_id, resource: Dict[str, Any]) -> CalendarEvent:
        event = CalendarEvent.from_resource(resource)
        event = event.model_copy(update={
            'id': event.id or self._next_id(),
            'updated': self.clock(),
        })
        self.events[calendar_id][event.id] = event
        return event

    def live(self, calendar_id) -> List[CalendarEvent]:
        return [e for e in self.events[calendar_id].values() if not e.is_cancelled]

    def _next_id(self) -> str:
        return f"evt{next(self._ids):04d}"

    def _check(self, calendar_id):
        if calendar_id in self.unavailable:
            raise TransientStoreError(f"{calendar_id} unavailable")
        if calendar_id not in self.calendars:
            raise NotFoundError(f"Calendar not found: {calendar_id}")

    @staticmethod
    def _overlaps(event, zone, time_min, time_max) -> bool:
        if event.start is None or event.end is None:
            return True
        if time_max is not None and event.start.localized(zone) >= time_max:
            return False
        if event.is_series:
            return True
        return time_min is None or event.end.localized(zone) > time_min

    async def list_calendars(self):
        return list(self.calendars.values())

    async def list_events(
        self,
        calendar_id,
        *,
        time_min=None,
        time_max=None,
        updated_min=None,
        private_properties=None,
        show_deleted=False,
    ):
        self._check(calendar_id)
        zone = self.calendars[calendar_id].timezone
        events = []
        for event in self.events[calendar_id].values():
            if event.is_cancelled and not (show_deleted or event.recurring_event_id):
                continue
            if updated_min is not None and event.updated < updated_min:
                continue
            if private_properties:
                private = (event.extended_properties or {}).get('private') or {}
                if any(private.get(k) != v for k, v in private_properties.items()):
                    continue
            if not self._overlaps(event, zone, time_min, time_max):
                continue
            events.append(event.model_copy(deep=True))
        return events

    async def list_instances(self, calendar_id, event_id, *, time_min=None, time_max=None):
        self._check(calendar_id)
        return [
            e.model_copy(deep=True) for e in self.events[calendar_id].values()
            if e.recurring_event_id == event_id
        ]

    async def insert_event(self, calendar_id, event):
        self._check(calendar_id)
        linkage = event.linkage
        if linkage is not None and linkage.source_event_id in self.failing_sources:
            raise CalendarServiceError(f"Insert rejected for {linkage.source_event_id}")
        stored = event.model_copy(deep=True, update={'id': self._next_id(), 'updated': self.clock()})
        self.events[calendar_id][stored.id] = stored
        return stored.model_copy(deep=True)

    async def patch_event(self, calendar_id, event_id, changes):
        self._check(calendar_id)
        current = self.events[calendar_id].get(event_id)
        if current is None or current.is_cancelled:
            raise EventNotFoundError(f"Event {event_id} not found")
        resource = current.to_resource()
        resource.update(changes)
        patched = CalendarEvent.from_resource(resource).model_copy(update={'updated': self.clock()})
        self.events[calendar_id][event_id] = patched
        return patched

    async def remove_event(self, calendar_id, event_id):
        self._check(calendar_id)
        current = self.events[calendar_id].get(event_id)
        if current is None or current.is_cancelled:
            raise EventNotFoundError(f"Event {event_id} not found")
        self.events[calendar_id][event_id] = current.model_copy(
            update={'status': CANCELLED, 'updated': self.clock()}
        )
        self.removed.append(event_id)


class RecordingTriggerService(TriggerService):
    """Keeps triggers in a list; optionally fails the first calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.pending: List[Trigger] = []
        self.delays: List[timedelta] = []
        self.calls = 0
        self._ids = itertools.count(1)

    def _maybe_fail(self):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise SchedulingError("trigger backend unavailable")

    def schedule_once(self, func, delay):
        self._maybe_fail()
        trigger = Trigger(id=f"t{next(self._ids)}", handler=handler_name(func))
        self.pending.append(trigger)
        self.delays.append(delay)
        return trigger.id

    def schedule_recurring(self, func, interval):
        return self.schedule_once(func, interval)

    def cancel_all(self, func):
        self._maybe_fail()
        name = handler_name(func)
        before = len(self.pending)
        self.pending = [t for t in self.pending if t.handler != name]
        return before - len(self.pending)

    def list_scheduled(self):
        return list(self.pending)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def properties(db, settings):
    return PropertyStore(db, settings.principal)


@pytest.fixture
def clock():
    # Wednesday; Europe/Berlin is on CET until March 31st
    return TickingClock(datetime(2024, 3, 13, 9, 0, tzinfo=pytz.UTC))


@pytest.fixture
def store(settings, clock):
    store = InMemoryCalendarStore(settings, clock)
    store.add_calendar("work", "Work", "Europe/Berlin")
    store.add_calendar("private", "Private", "Europe/Berlin")
    return store


@pytest.fixture
def engine(settings, store, properties, clock):
    return SyncEngine(settings, store, properties, clock=clock)


def timed(day, start_hour, end_hour, **fields):
    """Resource of a timed Berlin event on March ``day`` 2024 (CET)."""
    resource = {
        'start': {'dateTime': f'2024-03-{day:02d}T{start_hour:02d}:00:00+01:00', 'timeZone': 'Europe/Berlin'},
        'end': {'dateTime': f'2024-03-{day:02d}T{end_hour:02d}:00:00+01:00', 'timeZone': 'Europe/Berlin'},
    }
    resource.update(fields)
    return resource
