"""In-process invocation queue using asyncio.

Runs processor invocations one at a time in a background task. A processor
that runs out of time submits its continuation back onto this queue, so the
next invocation starts fresh once the current one has returned.
No external dependencies (Redis, Celery) needed.
"""

import asyncio
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from repose_worker.jobs.dispatcher import JobDispatcher
from repose_worker.jobs.models import InvocationRecord, InvocationStatus, ProcessRequest

logger = logging.getLogger(__name__)


class InProcessQueue(JobDispatcher):
    """Local async invocation queue. Processes invocations sequentially."""

    def __init__(self, worker_fn: Callable[[ProcessRequest], Awaitable[Any]]):
        """
        worker_fn: async callable(request: ProcessRequest) -> result
            Runs one processor invocation. The result's ``outcome``
            attribute, if present, is recorded on the invocation.
        """
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._records: Dict[str, InvocationRecord] = {}
        self._worker_fn = worker_fn
        self._task: Optional[asyncio.Task] = None
        self._timers: Set[asyncio.Task] = set()
        self._running = False

    async def submit(self, request: ProcessRequest) -> str:
        record = InvocationRecord(request=request)
        self._records[record.id] = record
        if request.delay_seconds:
            timer = asyncio.create_task(self._enqueue_later(record.id, request.delay_seconds))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
            logger.info(
                "scheduled invocation %s for batch %s in %.0fs",
                record.id, request.batch_id, request.delay_seconds,
            )
            return record.id
        await self._queue.put(record.id)
        logger.info("queued invocation %s for batch %s", record.id, request.batch_id)
        return record.id

    async def _enqueue_later(self, invocation_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put(invocation_id)

    async def get_status(self, invocation_id: str) -> Optional[InvocationRecord]:
        return self._records.get(invocation_id)

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        self._running = False
        for timer in list(self._timers):
            timer.cancel()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def join(self) -> None:
        """Wait until every submitted invocation, continuations and follow-ups included, has run."""
        while True:
            while self._timers:
                await asyncio.gather(*self._timers)
            await self._queue.join()
            # An invocation that just ran may have scheduled a delayed follow-up.
            if not self._timers:
                return

    async def _worker_loop(self) -> None:
        """Process invocations one at a time from the queue."""
        while self._running:
            try:
                invocation_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self._run_one(invocation_id)
            finally:
                self._queue.task_done()

    async def _run_one(self, invocation_id: str) -> None:
        record = self._records.get(invocation_id)
        if record is None:
            return

        record.status = InvocationStatus.RUNNING
        record.started_at = datetime.now(timezone.utc)

        try:
            result = await self._worker_fn(record.request)
            outcome = getattr(result, "outcome", None)
            record.outcome = getattr(outcome, "value", outcome)
            record.status = InvocationStatus.COMPLETED
        except Exception as e:
            logger.exception("invocation %s crashed", invocation_id)
            record.status = InvocationStatus.FAILED
            record.error = f"{type(e).__name__}: {str(e)}\n{traceback.format_exc()}"
        record.completed_at = datetime.now(timezone.utc)
