"""Create/delete reconciliation between desired and existing target events."""

from dataclasses import dataclass, field
from typing import Dict, List
import logging

from .models import CalendarEvent, SyncOperation, SyncReport, SyncResult
from .services.base import BaseCalendarStore, EventNotFoundError
from .signature import signature

logger = logging.getLogger(__name__)


def plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


@dataclass
class Diff:
    """Mutations needed to turn the existing target events into the desired ones."""

    obsolete: List[CalendarEvent] = field(default_factory=list)
    missing: List[CalendarEvent] = field(default_factory=list)
    unchanged: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.obsolete and not self.missing


def compute_diff(desired: List[CalendarEvent], existing: List[CalendarEvent]) -> Diff:
    """Compare desired and existing events by canonical signature.

    An existing event is obsolete when no desired event shares its signature,
    or when an existing event with the same signature and a lower identifier
    exists. A desired event is missing when no existing event shares its
    signature; equal desired events are created once.
    """
    desired_signatures = {signature(event) for event in desired}

    keepers: Dict[str, CalendarEvent] = {}
    for event in existing:
        sig = signature(event)
        if sig in keepers and (keepers[sig].id or "") <= (event.id or ""):
            continue
        keepers[sig] = event

    diff = Diff()
    for event in existing:
        sig = signature(event)
        if sig not in desired_signatures or keepers[sig] is not event:
            diff.obsolete.append(event)

    seen = set(keepers)
    for event in desired:
        sig = signature(event)
        if sig in seen:
            if sig in keepers:
                diff.unchanged += 1
                keepers.pop(sig)
            continue
        seen.add(sig)
        diff.missing.append(event)
    return diff


async def apply_diff(
    store: BaseCalendarStore,
    calendar_id: str,
    diff: Diff,
    report: SyncReport,
    default_zone: str,
    dry_run: bool = False
) -> None:
    """Delete obsolete events, then create missing ones.

    Each mutation is attempted independently; a failure is logged and recorded
    in ``report`` without stopping the others.
    """
    prefix = "[dry run] " if dry_run else ""

    for event in diff.obsolete:
        result = SyncResult(
            operation=SyncOperation.DELETE,
            event_id=event.id,
            event_summary=event.label,
            event_start=event.local_start(default_zone),
        )
        try:
            if not dry_run:
                await store.remove_event(calendar_id, event.id)
            logger.info(f'{prefix}Deleted event "{result.event_summary}" at {result.event_start}')
        except EventNotFoundError:
            logger.info(f'Event "{result.event_summary}" at {result.event_start} was already deleted')
        except Exception as e:
            logger.error(f'Failed to delete event "{result.event_summary}" at {result.event_start}: {e}')
            result.success = False
            result.error_message = str(e)
            report.errors.append(f"Delete {event.id}: {e}")
        report.results.append(result)

    for event in diff.missing:
        result = SyncResult(
            operation=SyncOperation.CREATE,
            event_summary=event.label,
            event_start=event.local_start(default_zone),
        )
        try:
            if not dry_run:
                created = await store.insert_event(calendar_id, event)
                result.event_id = created.id
            logger.info(f'{prefix}Created event "{result.event_summary}" at {result.event_start}')
        except Exception as e:
            logger.error(f'Failed to create event "{result.event_summary}" at {result.event_start}: {e}')
            result.success = False
            result.error_message = str(e)
            report.errors.append(f"Create {result.event_summary}: {e}")
        report.results.append(result)
