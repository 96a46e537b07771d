"""Run loop: periodic passes with a backstop trigger and a durable stop flag."""

import asyncio
import logging
from datetime import timedelta
from typing import Callable, List, Optional

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, wait_exponential

from .config import Settings, SyncPairConfig
from .database import DatabaseLock, DatabaseManager
from .models import RunContext, RunTrigger, SyncReport
from .reconcile import plural
from .scheduling import SchedulingError, TriggerService
from .sync_engine import STOPPED_KEY, SyncEngine
from .transforms import load_transform

logger = logging.getLogger(__name__)

LOCK_NAME = "sync"

__all__ = ['RunContext', 'RunTrigger', 'SyncRunner']


class SyncRunner:
    """Drives sync passes from operator commands and scheduled triggers.

    Every run schedules a backstop trigger first, so the loop keeps going even
    if the run dies before it can schedule its successor. Passes of all
    processes sharing the database are serialized by a lease lock.
    """

    def __init__(
        self,
        settings: Settings,
        engine: SyncEngine,
        triggers: TriggerService,
        db: DatabaseManager,
        pairs: Optional[List[SyncPairConfig]] = None,
        retry_wait=None
    ):
        self.settings = settings
        self.engine = engine
        self.properties = engine.properties
        self.triggers = triggers
        self.db = db
        self.pairs = pairs if pairs is not None else settings.enabled_pairs
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, max=60)
        self.logger = logger.getChild('runner')
        self._in_flight = 0

    @property
    def is_stopped(self) -> bool:
        return self.properties.get(STOPPED_KEY) == "true"

    async def start(self) -> None:
        """Operator entry point: clear the stop flag and run now."""
        self.properties.delete(STOPPED_KEY)
        await self._with_retry(lambda: self.triggers.cancel_all(self.resume))
        await self._invoke(RunContext(trigger=RunTrigger.OPERATOR))

    async def resume(self) -> None:
        """Trigger entry point."""
        if self.is_stopped:
            self.logger.info("Synchronization is stopped, ignoring trigger")
            return
        await self._invoke(RunContext(trigger=RunTrigger.SCHEDULE))

    async def stop(self) -> None:
        """Cancel pending triggers and keep future ones from running passes."""
        await self._with_retry(lambda: self.triggers.cancel_all(self.resume))
        self.properties.set(STOPPED_KEY, "true")
        self.logger.info("The synchronization will not run again")
        self.logger.info("If a synchronization is currently running, it will complete")
        self.logger.info("You might want to delete all synchronized events with clean")

    async def _with_retry(self, operation: Callable):
        """Call a scheduling operation until it succeeds."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(SchedulingError),
            wait=self.retry_wait,
            before_sleep=before_sleep_log(self.logger, logging.WARNING),
            reraise=True
        ):
            with attempt:
                return operation()

    async def _invoke(self, context: RunContext) -> None:
        self._in_flight += 1
        try:
            backstop = timedelta(minutes=self.settings.max_execution_minutes)
            await self._with_retry(lambda: self.triggers.schedule_once(self.resume, backstop))

            try:
                await self.run_pass(context)
            except Exception as e:
                self.logger.exception(f"Synchronization run failed: {e}")

            await self._with_retry(lambda: self.triggers.cancel_all(self.resume))
            if self.is_stopped:
                self.logger.info("Synchronization was stopped, no further run scheduled")
                return

            minutes = self.settings.sync_interval_minutes
            await self._with_retry(
                lambda: self.triggers.schedule_once(self.resume, timedelta(minutes=minutes))
            )
            self.logger.info(f"Synchronization will run again in approximately {plural(minutes, 'minute')}")
        finally:
            self._in_flight -= 1

    async def run_pass(
        self,
        context: Optional[RunContext] = None,
        dry_run: bool = False,
        pair_name: Optional[str] = None
    ) -> List[SyncReport]:
        """Run every enabled pair once, under the sync lock.

        Pairs run one after another; a failing pair does not stop the others.

        Raises:
            LockTimeoutError: If another pass holds the lock for too long
        """
        context = context or RunContext(trigger=RunTrigger.OPERATOR)
        pairs = [p for p in self.pairs if pair_name is None or pair_name in (p.name, p.label)]
        if pair_name is not None and not pairs:
            raise ValueError(f"No enabled sync pair named '{pair_name}'")

        lock = DatabaseLock(
            self.db,
            LOCK_NAME,
            lease=timedelta(minutes=self.settings.max_execution_minutes)
        )
        reports = []
        async with lock.hold(timeout=self.settings.lock_timeout_minutes * 60):
            for pair in pairs:
                try:
                    report = await self.engine.sync(
                        pair.source,
                        pair.target,
                        pair.past_days,
                        pair.next_days,
                        load_transform(pair.transform),
                        dry_run=dry_run,
                        context=context,
                    )
                except Exception as e:
                    self.logger.error(f"Sync pair {pair.label} failed: {e}")
                    continue
                reports.append(report)
        return reports

    async def wait_until_idle(self, poll_interval: float = 1.0) -> None:
        """Return once no run is in flight and no trigger is pending."""
        idle_checks = 0
        while idle_checks < 2:
            await asyncio.sleep(poll_interval)
            if self._in_flight or self.triggers.list_scheduled():
                idle_checks = 0
            else:
                idle_checks += 1
