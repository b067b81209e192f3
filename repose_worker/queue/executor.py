"""Output executor: drives outputs through the generator with bounded concurrency."""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel

from repose_worker.queue.generator import OutputGenerator, is_retryable
from repose_worker.queue.limits import Deadline, QueueLimits
from repose_worker.queue.records import OutputRecord
from repose_worker.queue.store import ReposeStore
from repose_worker.queue.sweeper import utcnow

logger = logging.getLogger(__name__)


class OutputResult(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # claimed by someone else, or already terminal


class ExecutionSummary(BaseModel):
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    not_started: int = 0
    interrupted: bool = False


class OutputExecutor:
    """Processes outputs in slices of at most ``concurrency`` in-flight calls.

    Each slice is awaited as a group before the next one starts, so the
    generator never sees more than ``concurrency`` concurrent requests from
    one executor. The owning run's heartbeat is written after every slice.
    """

    def __init__(
        self,
        store: ReposeStore,
        generator: OutputGenerator,
        limits: QueueLimits,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._generator = generator
        self._limits = limits
        self._now = now
        self._sleep = sleep

    async def execute(
        self,
        outputs: List[OutputRecord],
        model: str,
        deadline: Optional[Deadline] = None,
        run_id: Optional[str] = None,
        image_size: Optional[str] = None,
        concurrency: Optional[int] = None,
    ) -> ExecutionSummary:
        size = max(1, concurrency or self._limits.output_concurrency)
        summary = ExecutionSummary()

        for start in range(0, len(outputs), size):
            if deadline is not None and deadline.expired():
                summary.interrupted = True
                summary.not_started = len(outputs) - start
                logger.info(
                    "time budget reached with %d outputs not started%s",
                    summary.not_started, f" (run {run_id})" if run_id else "",
                )
                break

            chunk = outputs[start:start + size]
            logger.info(
                "slice %d: processing %d outputs in parallel", start // size + 1, len(chunk)
            )
            results = await asyncio.gather(
                *(self._process_output(o, model, image_size) for o in chunk),
                return_exceptions=True,
            )
            for output, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    logger.error("output %s: unexpected error: %s", output.id, result)
                    summary.failed += 1
                elif result is OutputResult.SUCCEEDED:
                    summary.succeeded += 1
                elif result is OutputResult.FAILED:
                    summary.failed += 1
                else:
                    summary.skipped += 1

            if run_id is not None:
                await self._store.touch_run(run_id, self._now())

            if start + size < len(outputs):
                await self._sleep(self._limits.inter_batch_delay_seconds)

        return summary

    async def _process_output(
        self, output: OutputRecord, model: str, image_size: Optional[str]
    ) -> OutputResult:
        if not await self._store.claim_output(output.id, self._now()):
            return OutputResult.SKIPPED

        last_error: Optional[Exception] = None
        for attempt in range(self._limits.max_retries + 1):
            if attempt > 0:
                logger.info("output %s: retry %d", output.id, attempt)
                await self._sleep(self._limits.retry_delay_seconds * attempt)
            try:
                result_url = await self._generator.generate(output.id, model, image_size=image_size)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "output %s: generation attempt %d failed: %s", output.id, attempt + 1, exc
                )
                if is_retryable(exc):
                    continue
                break
            await self._store.complete_output(output.id, result_url)
            return OutputResult.SUCCEEDED

        message = str(last_error) if last_error else "Unknown error after retries"
        logger.error("output %s: giving up: %s", output.id, message)
        await self._store.fail_output(output.id, message)
        return OutputResult.FAILED
