"""
Interval job scheduling for the connector.

Each job runs on its own timer. If an invocation is still running when
the next tick arrives, that tick is skipped rather than queued, so a job
never has more than one invocation in flight. Jobs run concurrently with
each other.

Jobs:
- Connector Heartbeat: every 5 minutes, immediately on startup (production only)
- Groups Partial Sync: every 15 minutes
- Users Partial Sync: every 15 minutes
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .config import APP_ID, ConnectorSettings, JsonConfigStore
from .sync import SyncAction, SyncOrchestrator
from .telemetry import LogPipeline
from .transport import SyncTransport

logger = logging.getLogger(__name__)

TYPE_HEARTBEAT = "heartbeat"

JobTask = Callable[[], Awaitable[None]]


class IntervalJob:
    """
    A task run every `interval` seconds with overrun prevention.

    Failures are logged and counted; they never stop the timer.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        task: JobTask,
        run_immediately: bool = False,
        on_complete: Optional[JobTask] = None
    ):
        """
        Initialize job.

        Args:
            name: Job name used in logs
            interval: Seconds between ticks
            task: Coroutine function run on each tick
            run_immediately: Also run once when the job starts
            on_complete: Coroutine function run after every invocation,
                successful or not (e.g. telemetry flush)
        """
        self.name = name
        self.interval = interval
        self.task = task
        self.run_immediately = run_immediately
        self.on_complete = on_complete

        self._busy = False
        self._current: Optional[asyncio.Task] = None

        self.stats = {
            "runs": 0,
            "failures": 0,
            "skipped": 0,
        }

    @property
    def busy(self) -> bool:
        return self._busy

    def tick(self) -> Optional[asyncio.Task]:
        """
        Start an invocation unless one is already in flight.

        Returns:
            The started task, or None if the tick was skipped
        """
        if self._busy:
            self.stats["skipped"] += 1
            logger.debug(f"Job '{self.name}' is still running, skipping this tick")
            return None

        self._busy = True
        self._current = asyncio.create_task(self._invoke())
        return self._current

    async def _invoke(self):
        try:
            await self.task()
            self.stats["runs"] += 1
        except Exception as e:
            self.stats["failures"] += 1
            logger.error(
                f"Job '{self.name}' failed: {e}",
                extra={"context": {"job": self.name, "error": str(e)}}
            )
        finally:
            self._busy = False

        if self.on_complete is not None:
            try:
                await self.on_complete()
            except Exception as e:
                logger.warning(f"Job '{self.name}' completion hook failed: {e}")

    async def run(self, shutdown_event: asyncio.Event):
        """Tick every interval until shutdown is signaled."""
        logger.info(f"Job '{self.name}' started (interval: {self.interval}s)")

        if self.run_immediately:
            self.tick()

        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
                break  # Shutdown signaled
            except asyncio.TimeoutError:
                self.tick()

        logger.info(f"Job '{self.name}' stopped")

    async def wait_idle(self):
        """Wait for the in-flight invocation, if any."""
        if self._current is not None and not self._current.done():
            await asyncio.gather(self._current, return_exceptions=True)


class JobScheduler:
    """Runs a set of interval jobs until stopped."""

    def __init__(self):
        self.jobs: List[IntervalJob] = []
        self._shutdown_event = asyncio.Event()
        self._loops: List[asyncio.Task] = []

    def add_job(self, job: IntervalJob) -> None:
        self.jobs.append(job)

    @property
    def running(self) -> bool:
        return bool(self._loops) and not self._shutdown_event.is_set()

    def start(self) -> None:
        """Start a timer task per job."""
        if self._loops:
            logger.warning("Scheduler already running")
            return

        self._shutdown_event.clear()
        for job in self.jobs:
            self._loops.append(asyncio.create_task(job.run(self._shutdown_event)))

        logger.info(f"Scheduler started with {len(self.jobs)} job(s)")

    async def stop(self) -> None:
        """
        Stop ticking and wait for in-flight invocations to finish.

        In-flight invocations are not cancelled: a sync that already
        submitted its file is driven to confirmation or failure.
        """
        self._shutdown_event.set()

        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
            self._loops = []

        for job in self.jobs:
            await job.wait_idle()

        logger.info("Scheduler stopped")


def build_connector_jobs(
    settings: ConnectorSettings,
    transport: SyncTransport,
    orchestrator: SyncOrchestrator,
    config_store: JsonConfigStore,
    pipeline: LogPipeline
) -> List[IntervalJob]:
    """
    Build the connector's recurring jobs.

    The heartbeat is only registered in production runtime mode.

    Returns:
        Jobs ready to be added to a JobScheduler
    """

    async def heartbeat():
        logger.debug("Attempting to send a heartbeat signal.")

        # Raises on rejection; the job logs the failure
        await transport.post_webhook(
            {"id": config_store.get(APP_ID), "type": TYPE_HEARTBEAT},
            sign=True
        )

        logger.debug("Heartbeat signal successfully sent.")

    def scheduled_sync(action: SyncAction) -> JobTask:
        async def run():
            logger.debug(f"Attempting to perform a scheduled {action.value} sync.")

            await orchestrator.sync(action)

            try:
                config_store.save()
            except OSError as e:
                logger.error(
                    f"There was a problem while trying to update the connector's config after sync: {e}",
                    extra={"context": {"action": action.value, "error": str(e)}}
                )

            logger.debug(f"Scheduled {action.value} sync successfully completed.")

        return run

    jobs = []

    if settings.is_production:
        jobs.append(IntervalJob(
            "Connector Heartbeat",
            settings.heartbeat_interval,
            heartbeat,
            run_immediately=True,
            on_complete=pipeline.flush
        ))
    else:
        logger.info(f"Heartbeat disabled in {settings.runtime_mode} mode")

    jobs.append(IntervalJob(
        "Groups Partial Sync",
        settings.sync_interval,
        scheduled_sync(SyncAction.PARTIAL_GROUPS),
        on_complete=pipeline.flush
    ))

    jobs.append(IntervalJob(
        "Users Partial Sync",
        settings.sync_interval,
        scheduled_sync(SyncAction.PARTIAL_USERS),
        on_complete=pipeline.flush
    ))

    return jobs
