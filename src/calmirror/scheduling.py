"""Trigger scheduling for the run loop."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import uuid4
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
import pytz

logger = logging.getLogger(__name__)


class SchedulingError(Exception):
    """A trigger could not be created, listed or removed."""
    pass


@dataclass
class Trigger:
    """A pending invocation of a handler."""

    id: str
    handler: str
    next_run_time: Optional[datetime] = None


def handler_name(func: Callable) -> str:
    return f"{func.__module__}.{func.__qualname__}"


class TriggerService(ABC):
    """Schedules deferred invocations of handlers."""

    @abstractmethod
    def schedule_once(self, func: Callable, delay: timedelta) -> str:
        """Run ``func`` once after ``delay``; returns the trigger id."""
        pass

    @abstractmethod
    def schedule_recurring(self, func: Callable, interval: timedelta) -> str:
        """Run ``func`` every ``interval``; returns the trigger id."""
        pass

    @abstractmethod
    def cancel_all(self, func: Callable) -> int:
        """Remove every pending trigger of ``func``; returns how many were removed."""
        pass

    @abstractmethod
    def list_scheduled(self) -> List[Trigger]:
        pass


class APSchedulerTriggerService(TriggerService):
    """Trigger service on top of APScheduler's asyncio scheduler."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone=pytz.UTC)
        self.logger = logger.getChild('apscheduler')

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            self.logger.info("Trigger scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("Trigger scheduler stopped")

    def _add(self, func: Callable, trigger: str, **trigger_args) -> str:
        name = handler_name(func)
        job_id = f"{name}-{uuid4().hex}"
        try:
            self.scheduler.add_job(
                func,
                trigger,
                id=job_id,
                name=name,
                misfire_grace_time=None,
                coalesce=True,
                **trigger_args
            )
        except Exception as e:
            raise SchedulingError(f"Failed to schedule {name}: {e}") from e
        return job_id

    def schedule_once(self, func: Callable, delay: timedelta) -> str:
        return self._add(func, 'date', run_date=datetime.now(pytz.UTC) + delay)

    def schedule_recurring(self, func: Callable, interval: timedelta) -> str:
        return self._add(func, 'interval', seconds=interval.total_seconds())

    def cancel_all(self, func: Callable) -> int:
        name = handler_name(func)
        removed = 0
        try:
            for job in self.scheduler.get_jobs():
                if job.name == name:
                    job.remove()
                    removed += 1
        except Exception as e:
            raise SchedulingError(f"Failed to cancel triggers of {name}: {e}") from e
        return removed

    def list_scheduled(self) -> List[Trigger]:
        try:
            jobs = self.scheduler.get_jobs()
        except Exception as e:
            raise SchedulingError(f"Failed to list triggers: {e}") from e
        return [
            Trigger(id=job.id, handler=job.name, next_run_time=getattr(job, 'next_run_time', None))
            for job in jobs
        ]
