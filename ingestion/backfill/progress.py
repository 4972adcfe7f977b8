"""
Backfill Progress Streaming

Progress events emitted by the orchestrator, the cooperative cancellation
token shared between a running job and its consumer, and the streamer that
turns a backfill run into an async iterator of events.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from core.database.query_helpers import utc_now

if TYPE_CHECKING:
    from .orchestrator import BackfillOrchestrator, BackfillRequest

logger = logging.getLogger(__name__)


class ProgressEventType(Enum):
    """Types of progress events."""
    START = "start"
    PROGRESS = "progress"
    CREATED = "created"
    SKIPPED = "skipped"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass
class ProgressEvent:
    """Individual progress event with the job's cumulative counters."""
    event_type: ProgressEventType
    job_id: str
    processed: int = 0
    total: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    current_unit: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return {
            'type': self.event_type.value,
            'jobId': self.job_id,
            'timestamp': self.timestamp.isoformat() + 'Z',
            'processed': self.processed,
            'total': self.total,
            'created': self.created,
            'skipped': self.skipped,
            'failed': self.failed,
            'currentUnit': self.current_unit,
            **self.data
        }

    def to_json_line(self) -> str:
        """One NDJSON line."""
        return json.dumps(self.to_dict(), default=str) + "\n"


ProgressListener = Callable[[ProgressEvent], None]


class CancellationToken:
    """
    Cooperative cancellation signal.

    Cancelled explicitly via ``cancel()`` or when any registered async
    checker (e.g. a client-disconnect probe) reports True. The orchestrator
    polls it between units.
    """

    def __init__(self, checker: Optional[Callable[[], Awaitable[bool]]] = None):
        self._event = asyncio.Event()
        self._checkers: List[Callable[[], Awaitable[bool]]] = []
        if checker is not None:
            self._checkers.append(checker)

    def add_checker(self, checker: Callable[[], Awaitable[bool]]):
        self._checkers.append(checker)

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        for checker in self._checkers:
            if await checker():
                logger.info("Cancellation requested by checker")
                self._event.set()
                return True
        return False


_DONE = object()


class ProgressStreamer:
    """Runs a backfill in the background and yields its events in order."""

    def __init__(self, orchestrator: 'BackfillOrchestrator'):
        self.orchestrator = orchestrator

    async def stream(self,
                     request: 'BackfillRequest',
                     cancellation: Optional[CancellationToken] = None) -> AsyncIterator[ProgressEvent]:
        """
        Yield progress events for one backfill run.

        Closing the iterator early cancels the run cooperatively and waits
        for the unit in flight to finish; no complete event follows. Errors
        that abort the run (e.g. a failed gap scan) are re-raised here.
        """
        token = cancellation or CancellationToken()
        queue: asyncio.Queue = asyncio.Queue()

        async def run():
            try:
                return await self.orchestrator.run(request, listener=queue.put_nowait, cancellation=token)
            finally:
                queue.put_nowait(_DONE)

        task = asyncio.create_task(run())
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
            await task
        finally:
            if not task.done():
                token.cancel()
                logger.info(f"Progress stream for {request.symbol} closed early, cancelling backfill")
                try:
                    await task
                except Exception as e:
                    logger.warning(f"Backfill for {request.symbol} ended with error after cancellation: {e}")
