"""One-way mirroring of a source calendar window into a target calendar."""

import hashlib
import json
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union

from dateutil.parser import isoparse
import pytz

from .config import Settings
from .database import PropertyStore
from .days import resolve_days
from .models import (
    CalendarEvent,
    CalendarInfo,
    Linkage,
    PassState,
    RunContext,
    SyncOperation,
    SyncReport,
    SyncResult,
    SOURCE_CALENDAR_KEY,
)
from .recurrence import Window, merge_exclusions, window_events
from .reconcile import Diff, apply_diff, compute_diff, plural
from .services.base import BaseCalendarStore, NotFoundError
from .transforms import Transform, build_draft, keep_as_is

logger = logging.getLogger(__name__)

SYNC_PAIRS_KEY = "syncPairs"
STOPPED_KEY = "stopped"
WATERMARK_PREFIX = "watermark:"
WATERMARK_SCOPE_PREFIX = "watermarkScope:"


def watermark_key(source_id: str, target_id: str) -> str:
    return f"{WATERMARK_PREFIX}{source_id}→{target_id}"


def scope_key(key: str) -> str:
    return WATERMARK_SCOPE_PREFIX + key[len(WATERMARK_PREFIX):]


def watermark_scope(window: Window, transform: Transform) -> str:
    """Fingerprint of what a watermark was taken for: window bounds and transform."""
    name = f"{getattr(transform, '__module__', '')}.{getattr(transform, '__qualname__', repr(transform))}"
    text = f"{window.start.isoformat()}|{window.end.isoformat()}|{name}"
    return hashlib.sha256(text.encode()).hexdigest()[:16]


class TransformError(Exception):
    """The user transform failed or returned nothing; the pass is aborted."""
    pass


class SyncEngine:
    """Runs synchronization passes for calendar pairs."""

    def __init__(
        self,
        settings: Settings,
        store: BaseCalendarStore,
        properties: PropertyStore,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            store: Calendar store holding both calendars
            properties: Durable property store of the principal
            clock: Source of the current UTC time
        """
        self.settings = settings
        self.store = store
        self.properties = properties
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.logger = logger.getChild('sync_engine')

    async def sync(
        self,
        source_name: str,
        target_name: str,
        past_days: Union[int, str] = 7,
        next_days: Union[int, str] = 28,
        transform: Optional[Transform] = None,
        *,
        dry_run: bool = False,
        context: Optional[RunContext] = None
    ) -> SyncReport:
        """Mirror the window of ``source_name`` into ``target_name``.

        Args:
            source_name: Display name of the source calendar
            target_name: Display name of the target calendar
            past_days: Days before today included in the window
            next_days: Days after today included in the window
            transform: Called as ``transform(draft, source_event)`` per source event
            dry_run: Log and report mutations without executing them
            context: Run loop invocation that started this pass

        Returns:
            Report of the pass

        Raises:
            NotFoundError: If a calendar is missing or its name is ambiguous
            TransformError: If the transform fails for any event
            CalendarServiceError: If fetching events fails
        """
        if not source_name:
            raise ValueError("Source calendar name is missing")
        if not target_name:
            raise ValueError("Target calendar name is missing")

        transform = transform or keep_as_is
        started = self.clock()
        report = SyncReport(
            source_calendar=source_name,
            target_calendar=target_name,
            started_at=started,
            dry_run=dry_run,
        )
        via = f" ({context.trigger.value} run {context.run_id})" if context else ""
        self.logger.info(f'Synchronization started from "{source_name}" to "{target_name}"{via}')

        try:
            report.state = PassState.FETCH_SOURCE
            source = await self.store.find_calendar(source_name)
            target = await self.store.find_calendar(target_name)
            if source.id == target.id:
                raise ValueError("Source and target calendar must differ")
            report.source_calendar_id = source.id
            report.target_calendar_id = target.id
            if not dry_run:
                self._register_pair(source.id, target.id)

            local_now = started.astimezone(pytz.timezone(source.timezone))
            window = Window.around(
                resolve_days(past_days, now=local_now),
                resolve_days(next_days, now=local_now),
                source.timezone,
                now=started,
            )
            key = watermark_key(source.id, target.id)
            scope = watermark_scope(window, transform)
            watermark = self._current_watermark(key, scope, started, source.timezone)
            if watermark is not None:
                report.incremental = True
                if not await self._has_changes(source, target, window, watermark):
                    self.logger.info(f"No changes since {watermark.isoformat()}, nothing to do")
                    report.skipped = True
                    return self._complete(report, key, scope, started)

            source_events = await self.store.list_events(
                source.id,
                time_min=window.start,
                time_max=window.end,
            )

            report.state = PassState.EXPAND_RECURRENCE
            source_events = merge_exclusions(source_events, source.timezone)
            source_events = window_events(source_events, window, source.timezone)
            report.source_events = len(source_events)
            self.logger.info(
                f"{plural(len(source_events), 'source event')} found between "
                f"{window.start.strftime('%Y-%m-%d %H:%M:%S')} and {window.end.strftime('%Y-%m-%d %H:%M:%S')}"
            )

            report.state = PassState.APPLY_TRANSFORM
            desired = self._desired_events(source_events, source, transform, report)

            report.state = PassState.FETCH_EXISTING_TARGET
            existing = await self._linked_events(target.id, source.id)
            existing = merge_exclusions(existing, target.timezone)

            report.state = PassState.DIFF
            diff = compute_diff(desired, existing)
            report.unchanged = diff.unchanged

            report.state = PassState.MUTATE
            await apply_diff(self.store, target.id, diff, report, target.timezone, dry_run=dry_run)
        except Exception as e:
            report.state = PassState.FAILED
            report.completed_at = self.clock()
            report.errors.append(str(e))
            self.logger.error(f'Synchronization from "{source_name}" to "{target_name}" failed: {e}')
            raise

        self.logger.info(f"{plural(report.deleted, 'obsolete target event')} deleted")
        self.logger.info(f"{plural(report.created, 'missing target event')} created")
        return self._complete(report, key, scope, started)

    def _complete(self, report: SyncReport, key: str, scope: str, started: datetime) -> SyncReport:
        report.state = PassState.PERSIST_WATERMARK
        if not report.dry_run:
            if report.failed:
                self.properties.delete(key)
                self.properties.delete(scope_key(key))
                self.logger.warning(
                    f"{plural(report.failed, 'event')} failed; next pass will fetch the full window"
                )
            else:
                self.properties.set(key, started.astimezone(pytz.UTC).isoformat())
                self.properties.set(scope_key(key), scope)
        report.state = PassState.COMPLETED
        report.completed_at = self.clock()
        self.logger.info("Synchronization completed")
        return report

    def _current_watermark(self, key: str, scope: str, now: datetime, time_zone: str) -> Optional[datetime]:
        """Watermark of the pair, if it was taken earlier today for the same window and transform."""
        raw = self.properties.get(key)
        if not raw:
            return None
        if self.properties.get(scope_key(key)) != scope:
            self.logger.debug("Window or transform changed since the last pass, running a full pass")
            return None
        try:
            watermark = isoparse(raw)
        except ValueError:
            self.logger.warning(f"Ignoring malformed watermark {key}={raw!r}")
            return None
        tz = pytz.timezone(time_zone)
        if watermark.astimezone(tz).date() != now.astimezone(tz).date():
            self.logger.debug(f"Watermark {raw} is from another day, running a full pass")
            return None
        return watermark

    async def _has_changes(
        self,
        source: CalendarInfo,
        target: CalendarInfo,
        window: Window,
        watermark: datetime
    ) -> bool:
        """Probe both calendars for modifications since ``watermark``."""
        changed = await self.store.list_events(
            source.id,
            time_min=window.start,
            time_max=window.end,
            updated_min=watermark,
            show_deleted=True,
        )
        if changed:
            self.logger.debug(f"{plural(len(changed), 'source event')} changed since {watermark.isoformat()}")
            return True
        changed = await self.store.list_events(
            target.id,
            updated_min=watermark,
            private_properties={SOURCE_CALENDAR_KEY: source.id},
            show_deleted=True,
        )
        if changed:
            self.logger.debug(f"{plural(len(changed), 'target event')} changed since {watermark.isoformat()}")
            return True
        return False

    def _desired_events(
        self,
        source_events: List[CalendarEvent],
        source: CalendarInfo,
        transform: Transform,
        report: SyncReport
    ) -> List[CalendarEvent]:
        desired = []
        for event in source_events:
            draft = build_draft(event, source.id)
            try:
                result = transform(draft, event)
            except Exception as e:
                raise TransformError(f'Transform failed for event "{event.label}": {e}') from e
            if result is None:
                raise TransformError(f'Transform returned nothing for event "{event.label}"')
            if isinstance(result, dict):
                result = CalendarEvent.from_resource(result)

            if result.is_cancelled:
                start = event.local_start(source.timezone)
                self.logger.info(f'Skipped event "{event.label}" at {start}')
                report.results.append(SyncResult(
                    operation=SyncOperation.SKIP,
                    event_id=event.id,
                    event_summary=event.label,
                    event_start=start,
                ))
                continue
            desired.append(result.with_linkage(Linkage(source.id, event.id or "")))
        return desired

    async def _linked_events(self, target_id: str, source_id: str) -> List[CalendarEvent]:
        """Target events created from ``source_id``; anything else is left alone."""
        events = await self.store.list_events(
            target_id,
            private_properties={SOURCE_CALENDAR_KEY: source_id},
        )
        return [
            event for event in events
            if event.linkage is not None and event.linkage.source_calendar_id == source_id
        ]

    def registered_pairs(self) -> List[Tuple[str, str]]:
        """(source id, target id) pairs ever synchronized."""
        raw = self.properties.get(SYNC_PAIRS_KEY)
        if not raw:
            return []
        return [(source_id, target_id) for source_id, target_id in json.loads(raw)]

    def _register_pair(self, source_id: str, target_id: str) -> None:
        pairs = self.registered_pairs()
        if (source_id, target_id) not in pairs:
            pairs.append((source_id, target_id))
            self.properties.set(SYNC_PAIRS_KEY, json.dumps([list(pair) for pair in pairs]))

    def watermarks(self) -> Dict[str, datetime]:
        return {
            key[len(WATERMARK_PREFIX):]: isoparse(self.properties.get(key))
            for key in self.properties.keys(WATERMARK_PREFIX)
        }

    def reset_watermarks(self) -> int:
        """Forget all watermarks so every pair runs a full pass next time."""
        keys = self.properties.keys(WATERMARK_PREFIX)
        for key in keys:
            self.properties.delete(key)
            self.properties.delete(scope_key(key))
        self.logger.info(f"{plural(len(keys), 'watermark')} removed")
        return len(keys)

    async def clean(self) -> int:
        """Delete every mirrored event of every registered pair and reset all properties.

        Returns:
            Number of deleted target events
        """
        self.logger.info("Cleanup started")
        zones = {calendar.id: calendar.timezone for calendar in await self.store.list_calendars()}
        deleted = 0
        failed = 0
        for source_id, target_id in self.registered_pairs():
            try:
                linked = await self._linked_events(target_id, source_id)
            except NotFoundError:
                self.logger.warning(f"Target calendar {target_id} no longer exists, skipping")
                continue
            report = SyncReport(source_calendar=source_id, target_calendar=target_id)
            await apply_diff(self.store, target_id, Diff(obsolete=linked), report, zones.get(target_id, "UTC"))
            deleted += report.deleted
            failed += report.failed

        self.logger.info(f"{plural(deleted, 'obsolete target event')} deleted")
        if failed:
            self.logger.error(
                f"{plural(failed, 'event')} could not be deleted; properties kept so clean can be repeated"
            )
            return deleted
        self.properties.clear()
        self.logger.info("User properties reset done")
        self.logger.info("Cleanup completed")
        return deleted
