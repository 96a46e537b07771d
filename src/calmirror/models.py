"""Data models for calendar mirroring."""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, validator
import pytz


SOURCE_CALENDAR_KEY = "sourceCalendarId"
SOURCE_EVENT_KEY = "sourceEventId"

CONFIRMED = "confirmed"
CANCELLED = "cancelled"


class Termination(str, Enum):
    """How a recurrence rule stops repeating."""

    COUNT = "count"
    UNTIL = "until"
    NONE = "none"


class SyncOperation(str, Enum):
    """Sync operation types."""

    CREATE = "create"
    DELETE = "delete"
    SKIP = "skip"


class PassState(str, Enum):
    """States of a single synchronization pass."""

    START = "start"
    FETCH_SOURCE = "fetch_source"
    EXPAND_RECURRENCE = "expand_recurrence"
    APPLY_TRANSFORM = "apply_transform"
    FETCH_EXISTING_TARGET = "fetch_existing_target"
    DIFF = "diff"
    MUTATE = "mutate"
    PERSIST_WATERMARK = "persist_watermark"
    COMPLETED = "completed"
    FAILED = "failed"


class RunTrigger(str, Enum):
    """What started a run of the sync loop."""

    OPERATOR = "operator"
    SCHEDULE = "schedule"


class RunContext(BaseModel):
    """Invocation context handed from the run loop to each pass."""

    trigger: RunTrigger
    run_id: UUID = Field(default_factory=uuid4)
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))


def parse_ical_value(raw: str, tzid: Optional[str] = None) -> Union[datetime, date]:
    """Parse an iCalendar DATE or DATE-TIME value.

    ``20240131`` becomes a date, ``20240131T100000Z`` an aware UTC datetime,
    and ``20240131T100000`` a naive (floating) datetime unless ``tzid`` names
    the zone it is written in.
    """
    raw = raw.strip()
    if len(raw) == 8:
        return datetime.strptime(raw, "%Y%m%d").date()
    if raw.endswith("Z"):
        return pytz.UTC.localize(datetime.strptime(raw[:-1], "%Y%m%dT%H%M%S"))
    value = datetime.strptime(raw, "%Y%m%dT%H%M%S")
    if tzid:
        return pytz.timezone(tzid).localize(value)
    return value


def format_ical_value(value: Union[datetime, date], zone: Optional[str] = None) -> str:
    """Render a date or datetime as an iCalendar value.

    Aware datetimes are written in UTC (``...Z``) unless ``zone`` is given, in
    which case they are written as local time of that zone.
    """
    if not isinstance(value, datetime):
        return value.strftime("%Y%m%d")
    if value.tzinfo is None:
        return value.strftime("%Y%m%dT%H%M%S")
    if zone:
        return value.astimezone(pytz.timezone(zone)).strftime("%Y%m%dT%H%M%S")
    return value.astimezone(pytz.UTC).strftime("%Y%m%dT%H%M%SZ")


class RecurrenceRule(BaseModel):
    """A single RRULE, with its termination clause split out."""

    freq: str
    count: Optional[int] = None
    until: Optional[Union[datetime, date]] = None
    parts: Dict[str, str] = Field(default_factory=dict)

    @property
    def termination(self) -> Termination:
        if self.count is not None:
            return Termination.COUNT
        if self.until is not None:
            return Termination.UNTIL
        return Termination.NONE

    @classmethod
    def parse(cls, value: str) -> "RecurrenceRule":
        """Parse the value part of an RRULE line (``FREQ=WEEKLY;BYDAY=MO``)."""
        freq = None
        count = None
        until = None
        parts: Dict[str, str] = {}
        for item in value.split(";"):
            if not item:
                continue
            key, _, val = item.partition("=")
            key = key.strip().upper()
            if key == "FREQ":
                freq = val.upper()
            elif key == "COUNT":
                count = int(val)
            elif key == "UNTIL":
                until = parse_ical_value(val)
            else:
                parts[key] = val
        if not freq:
            raise ValueError(f"Recurrence rule without FREQ: {value}")
        return cls(freq=freq, count=count, until=until, parts=parts)

    def items(self) -> List[str]:
        items = [f"FREQ={self.freq}"]
        items.extend(f"{key}={val}" for key, val in sorted(self.parts.items()))
        if self.count is not None:
            items.append(f"COUNT={self.count}")
        if self.until is not None:
            items.append(f"UNTIL={format_ical_value(self.until)}")
        return items

    def to_text(self) -> str:
        return ";".join(self.items())


class Recurrence(BaseModel):
    """Structured recurrence description of a series event."""

    rules: List[RecurrenceRule] = Field(default_factory=list)
    exclusions: List[Union[datetime, date]] = Field(default_factory=list)
    exclusion_zone: Optional[str] = Field(None, description="Zone EXDATE values are written in")
    other: List[str] = Field(default_factory=list, description="RDATE/EXRULE lines passed through")

    @classmethod
    def from_lines(cls, lines: List[str]) -> "Recurrence":
        """Parse the wire format (a list of RRULE/EXDATE/RDATE lines)."""
        rules = []
        exclusions: List[Union[datetime, date]] = []
        exclusion_zone = None
        other = []
        for line in lines:
            head, _, value = line.partition(":")
            name, *params = head.split(";")
            name = name.strip().upper()
            if name == "RRULE":
                rules.append(RecurrenceRule.parse(value))
            elif name == "EXDATE":
                options = dict(p.split("=", 1) for p in params if "=" in p)
                tzid = options.get("TZID")
                if tzid:
                    exclusion_zone = tzid
                exclusions.extend(parse_ical_value(raw, tzid) for raw in value.split(",") if raw)
            else:
                other.append(line)
        return cls(rules=rules, exclusions=exclusions, exclusion_zone=exclusion_zone, other=other)

    def with_exclusions(self, extra: List[Union[datetime, date]], zone: Optional[str] = None) -> "Recurrence":
        merged = list(self.exclusions)
        for value in extra:
            if value not in merged:
                merged.append(value)
        return self.model_copy(update={
            'exclusions': merged,
            'exclusion_zone': self.exclusion_zone or zone,
        })

    def _exdate_lines(self, zone: Optional[str]) -> List[str]:
        dates = sorted({v for v in self.exclusions if not isinstance(v, datetime)})
        aware = sorted({v for v in self.exclusions if isinstance(v, datetime) and v.tzinfo})
        floating = sorted({v for v in self.exclusions if isinstance(v, datetime) and not v.tzinfo})
        lines = []
        if dates:
            lines.append("EXDATE;VALUE=DATE:" + ",".join(format_ical_value(d) for d in dates))
        if aware:
            values = ",".join(format_ical_value(v, zone) for v in aware)
            lines.append(f"EXDATE;TZID={zone}:{values}" if zone else f"EXDATE:{values}")
        if floating:
            lines.append("EXDATE:" + ",".join(format_ical_value(v) for v in floating))
        return lines

    def to_lines(self) -> List[str]:
        """Serialize to the wire format."""
        lines = [f"RRULE:{rule.to_text()}" for rule in self.rules]
        lines.extend(self._exdate_lines(self.exclusion_zone))
        lines.extend(self.other)
        return lines

    def canonical_lines(self) -> List[str]:
        """Order-independent rendering with every instant in UTC."""
        lines = []
        for line in [f"RRULE:{rule.to_text()}" for rule in self.rules] + self._exdate_lines(None) + self.other:
            head, _, value = line.partition(":")
            separator = "," if head.upper().startswith(("EXDATE", "RDATE")) else ";"
            lines.append(f"{head}:{separator.join(sorted(value.split(separator)))}")
        return sorted(lines)


class EventTime(BaseModel):
    """Start or end of an event: an all-day date or a date-time with zone."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    day: Optional[date] = Field(None, alias="date")
    date_time: Optional[datetime] = Field(None, alias="dateTime")
    time_zone: Optional[str] = Field(None, alias="timeZone")

    @property
    def is_all_day(self) -> bool:
        return self.date_time is None and self.day is not None

    def zone(self, default_zone: str):
        return pytz.timezone(self.time_zone or default_zone)

    def localized(self, default_zone: str) -> datetime:
        """Aware datetime in the event's zone (midnight for all-day values)."""
        tz = self.zone(default_zone)
        if self.date_time is None:
            return tz.localize(datetime.combine(self.day, time()))
        if self.date_time.tzinfo is None:
            return tz.localize(self.date_time)
        return self.date_time.astimezone(tz)

    def moved_to(self, value: datetime) -> "EventTime":
        """Copy of this time pointing at ``value``, keeping the all-day kind."""
        if self.is_all_day:
            return self.model_copy(update={'day': value.date()})
        return self.model_copy(update={'date_time': value})


class Linkage(NamedTuple):
    source_calendar_id: str
    source_event_id: str


class CalendarEvent(BaseModel):
    """Calendar event using the Google Calendar resource shape.

    Known fields are typed; any other resource field (``colorId``,
    ``transparency``, ``iCalUID`` ...) is kept as an extra so it round-trips
    and takes part in the signature.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = None
    status: Optional[str] = None
    summary: Optional[str] = None
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None
    recurrence: Optional[Recurrence] = None
    recurring_event_id: Optional[str] = Field(None, alias="recurringEventId")
    original_start_time: Optional[EventTime] = Field(None, alias="originalStartTime")
    extended_properties: Optional[Dict[str, Dict[str, str]]] = Field(None, alias="extendedProperties")
    updated: Optional[datetime] = None

    @validator('recurrence', pre=True)
    def parse_recurrence(cls, v):
        """Accept the wire format list of recurrence lines."""
        if isinstance(v, list):
            return Recurrence.from_lines(v)
        return v

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "CalendarEvent":
        return cls.model_validate(resource)

    def to_resource(self) -> Dict[str, Any]:
        """Serialize to a Google Calendar event resource."""
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json", exclude={'recurrence'})
        if self.recurrence is not None:
            data['recurrence'] = self.recurrence.to_lines()
        return data

    @property
    def is_series(self) -> bool:
        return bool(self.recurrence and self.recurrence.rules)

    @property
    def is_cancelled(self) -> bool:
        return self.status == CANCELLED

    @property
    def label(self) -> str:
        return self.summary or "(no title)"

    @property
    def linkage(self) -> Optional[Linkage]:
        private = (self.extended_properties or {}).get('private') or {}
        if SOURCE_CALENDAR_KEY not in private:
            return None
        return Linkage(private[SOURCE_CALENDAR_KEY], private.get(SOURCE_EVENT_KEY, ""))

    def with_linkage(self, linkage: Linkage) -> "CalendarEvent":
        properties = {k: dict(v) for k, v in (self.extended_properties or {}).items()}
        private = properties.setdefault('private', {})
        private[SOURCE_CALENDAR_KEY] = linkage.source_calendar_id
        private[SOURCE_EVENT_KEY] = linkage.source_event_id
        return self.model_copy(update={'extended_properties': properties})

    def local_start(self, default_zone: str) -> str:
        """Start as local wall-clock text for log lines."""
        if self.start is None:
            return "(no start)"
        return self.start.localized(default_zone).strftime("%Y-%m-%d %H:%M:%S")

    def duration(self, default_zone: str) -> timedelta:
        return self.end.localized(default_zone) - self.start.localized(default_zone)


class CalendarInfo(BaseModel):
    """Calendar information model."""

    id: str = Field(..., description="Calendar ID")
    name: str = Field(..., description="Calendar display name")
    timezone: str = Field("UTC")
    access_role: Optional[str] = Field(None)
    is_primary: bool = Field(False)


class SyncResult(BaseModel):
    """Result of a single mutation (or skip) within a pass."""

    operation: SyncOperation
    event_id: Optional[str] = None
    event_summary: Optional[str] = None
    event_start: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None


class SyncReport(BaseModel):
    """Report of one synchronization pass for a calendar pair."""

    sync_id: UUID = Field(default_factory=uuid4)
    source_calendar: str
    target_calendar: str
    source_calendar_id: Optional[str] = None
    target_calendar_id: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = Field(None)
    dry_run: bool = Field(False)
    state: PassState = Field(PassState.START)
    incremental: bool = Field(False, description="Pass started from a current watermark")
    skipped: bool = Field(False, description="Incremental probe found nothing to do")

    source_events: int = Field(0)
    unchanged: int = Field(0)
    results: List[SyncResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    def _count(self, operation: SyncOperation, success: bool = True) -> int:
        return sum(1 for r in self.results if r.operation == operation and r.success == success)

    @property
    def created(self) -> int:
        return self._count(SyncOperation.CREATE)

    @property
    def deleted(self) -> int:
        return self._count(SyncOperation.DELETE)

    @property
    def skipped_events(self) -> int:
        return self._count(SyncOperation.SKIP)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def succeeded(self) -> bool:
        return self.state == PassState.COMPLETED
