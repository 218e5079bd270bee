"""
Telemetry log pipeline.

Buffers diagnostic events in process and ships them to the backend in
batches. A batch is flushed when:
- the queue holds flush_size events, or
- at least flush_seconds passed between the previous event and the new one

Both checks run on append, so a quiet period does not flush by itself;
call flush() to drain explicitly (end of a job run, shutdown).

Delivery is best effort. A failed flush is dropped and never raised.
"""

import asyncio
import logging
import math
import threading
import time
from contextvars import ContextVar
from email.utils import formatdate
from typing import Any, Callable, Dict, List, Optional, Set

from .config import APP_ID, STATE, JsonConfigStore
from .models import LogEvent
from .transport import SyncTransport

logger = logging.getLogger(__name__)

TYPE_LOGS = "logs"

UNAVAILABLE_CONNECTOR_ID = (
    "Unavailable. Connector is not configured. Connector's config is attached."
)

LEVEL_NUMBERS = {
    "debug": 100,
    "error": 400,
}

# Set while a batch is being sent so records logged by the transport
# during the flush are not queued again
_sending: ContextVar[bool] = ContextVar("telemetry_sending", default=False)


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


class LogPipeline:
    """
    In-process queue of telemetry events with size/time flush policy.

    Safe to append from any job: the queue is guarded by a single lock,
    and a flush detaches the batch and resets the queue before the
    network call is issued.
    """

    def __init__(
        self,
        transport: SyncTransport,
        config_store: JsonConfigStore,
        flush_size: int = 20,
        flush_seconds: int = 20,
        signed: bool = False,
        retries: int = 3,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize pipeline.

        Args:
            transport: Transport used to ship batches
            config_store: Source of connector ID and state
            flush_size: Flush once the queue holds this many events
            flush_seconds: Flush when this many seconds passed since the previous event
            signed: Sign telemetry batches
            retries: Transport retries per flush
            clock: Returns current unix time (injectable for tests)
        """
        self.transport = transport
        self.config_store = config_store
        self.flush_size = flush_size
        self.flush_seconds = flush_seconds
        self.signed = signed
        self.retries = retries
        self.clock = clock

        self._queue: List[LogEvent] = []
        self._lock = threading.Lock()
        self._pending: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.stats = {
            "batches_sent": 0,
            "batches_failed": 0,
            "events_sent": 0,
        }

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop used for flushes triggered from threads without one."""
        self._loop = loop

    @property
    def queue(self) -> List[LogEvent]:
        with self._lock:
            return list(self._queue)

    def debug(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Queue a debug event."""
        self._append("debug", message, context)

    def error(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Queue an error event."""
        self._append("error", message, context)

    def _prepare(
        self,
        level: str,
        message: str,
        context: Optional[Dict[str, Any]]
    ) -> LogEvent:
        """Stamp the event and attach connector identity to its context."""
        now = self.clock()
        connector_id = self.config_store.get(APP_ID)

        if connector_id:
            merged = {"connectorID": connector_id}
        else:
            merged = {
                "connectorID": UNAVAILABLE_CONNECTOR_ID,
                "connectorState": self.config_store.get(STATE),
            }
        merged.update(_jsonable(context or {}))

        return LogEvent(
            timestamp=math.ceil(now),
            message=f"{formatdate(now, usegmt=True)} | {message}",
            levelName=level,
            levelNumber=LEVEL_NUMBERS[level],
            context=merged
        )

    def _should_flush(self) -> bool:
        """Evaluate flush policy; caller holds the lock."""
        if len(self._queue) >= self.flush_size:
            return True

        if len(self._queue) > 1:
            elapsed = self._queue[-1].timestamp - self._queue[-2].timestamp
            return elapsed >= self.flush_seconds

        return False

    def _detach(self) -> List[LogEvent]:
        """Take the current batch and reset the queue; caller holds the lock."""
        batch = self._queue
        self._queue = []
        return batch

    def _append(self, level: str, message: str, context: Optional[Dict[str, Any]]):
        event = self._prepare(level, message, context)

        batch = None
        with self._lock:
            self._queue.append(event)
            if self._should_flush():
                batch = self._detach()

        if batch:
            self._dispatch(batch)

    def _dispatch(self, batch: List[LogEvent]) -> None:
        """Send a detached batch in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(self._send(batch))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        elif self._loop is not None and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(self._send(batch), self._loop)
        else:
            # No loop to send on yet; keep the events for the next flush
            with self._lock:
                self._queue[:0] = batch

    async def _send(self, batch: List[LogEvent]) -> bool:
        token = _sending.set(True)
        try:
            payload = {
                "id": self.config_store.get(APP_ID),
                "type": TYPE_LOGS,
                "payload": [event.model_dump() for event in batch],
            }
            response = await self.transport.send_webhook(
                payload,
                sign=self.signed,
                retries=self.retries
            )
            if response.ok:
                self.stats["batches_sent"] += 1
                self.stats["events_sent"] += len(batch)
                return True

            self.stats["batches_failed"] += 1
            logger.warning(f"Telemetry flush of {len(batch)} event(s) rejected: {response.message}")
            return False

        except Exception as e:
            self.stats["batches_failed"] += 1
            logger.warning(f"Telemetry flush of {len(batch)} event(s) failed: {e}")
            return False
        finally:
            _sending.reset(token)

    async def flush(self) -> None:
        """
        Send everything queued and wait for in-flight flushes.

        No network call is made when the queue is empty.
        """
        with self._lock:
            batch = self._detach()

        if batch:
            await self._send(batch)

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class TelemetryHandler(logging.Handler):
    """
    Forwards stdlib log records into a LogPipeline.

    Records below WARNING become debug events, WARNING and above become
    error events. Context passed as extra={"context": {...}} is merged
    into the event context.
    """

    def __init__(self, pipeline: LogPipeline, level: int = logging.DEBUG):
        super().__init__(level)
        self.pipeline = pipeline

    def emit(self, record: logging.LogRecord) -> None:
        if _sending.get() or record.name == __name__:
            return

        try:
            context = dict(getattr(record, "context", None) or {})
            context.setdefault("logger", record.name)
            if record.exc_info and record.exc_info[1] is not None:
                context.setdefault("error", str(record.exc_info[1]))

            message = record.getMessage()
            if record.levelno >= logging.WARNING:
                self.pipeline.error(message, context)
            else:
                self.pipeline.debug(message, context)
        except Exception:
            self.handleError(record)
