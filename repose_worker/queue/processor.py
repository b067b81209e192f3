"""Batch run processor: the self-continuing main loop.

One invocation sweeps abandoned work, dispatches queued runs a slice at a
time, drains outputs left queued outside of any run dispatch, and finalizes
the batch. Before the time budget runs out it hands the remaining work to a
fresh invocation through the dispatcher, carrying the ids of runs it has
already finished.

All liveness and progress state lives in the store, never in memory, so a
killed invocation loses nothing a later sweep cannot recover.
"""

import asyncio
import logging
import random
import time
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from pydantic import BaseModel, Field

from repose_worker.jobs.dispatcher import JobDispatcher
from repose_worker.jobs.models import ProcessRequest, ResumeContext
from repose_worker.queue.executor import OutputExecutor
from repose_worker.queue.expander import ExpansionError, RunExpander
from repose_worker.queue.generator import OutputGenerator
from repose_worker.queue.limits import Deadline, QueueLimits
from repose_worker.queue.records import (
    HALT_STATUSES,
    BatchStatus,
    OutputStatus,
    PipelineJobStatus,
    RunRecord,
    RunStatus,
    StatusCounts,
)
from repose_worker.queue.store import ReposeStore
from repose_worker.queue.sweeper import LivenessSweeper, utcnow

logger = logging.getLogger(__name__)


class InvocationOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CONTINUED = "continued"
    HALTED = "halted"
    PENDING = "pending"  # outputs still owned by another invocation


class InvocationResult(BaseModel):
    outcome: InvocationOutcome
    processed_run_ids: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class _Step(str, Enum):
    DONE = "done"
    CONTINUE = "continue"
    HALT = "halt"


class _Invocation:
    """Per-invocation state. Only the processed-run set survives a continuation."""

    def __init__(self, request: ProcessRequest, deadline: Deadline, started: float):
        self.request = request
        self.deadline = deadline
        self.processed: Set[str] = set(request.processed_run_ids())
        self.last_log = started

    @property
    def batch_id(self) -> str:
        return self.request.batch_id

    @property
    def job_id(self) -> str:
        return self.request.pipeline_job_id

    @property
    def targeted(self) -> bool:
        return bool(self.request.output_ids)


class BatchRunProcessor:
    """Runs one time-bounded invocation over a batch."""

    def __init__(
        self,
        store: ReposeStore,
        generator: OutputGenerator,
        limits: QueueLimits,
        dispatcher: Optional[JobDispatcher] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._store = store
        self._limits = limits
        self._clock = clock
        self._now = now
        self._sleep = sleep
        self._sweeper = LivenessSweeper(store, limits.stale_threshold_seconds, now)
        self._expander = RunExpander(store, rng)
        self._executor = OutputExecutor(store, generator, limits, now, sleep)
        # Receives the continuation when the time budget runs out.
        self.dispatcher = dispatcher

    async def run(self, request: ProcessRequest) -> InvocationResult:
        deadline = Deadline(self._limits.max_processing_seconds, self._clock)
        ctx = _Invocation(request, deadline, self._clock())
        logger.info(
            "starting batch %s, job %s, model %s (%d runs already processed)",
            ctx.batch_id, ctx.job_id, request.model, len(ctx.processed),
        )

        if await self._halted(ctx):
            return self._result(ctx, InvocationOutcome.HALTED)
        if request.delay_seconds is not None and await self._already_finished(ctx):
            return self._result(ctx, InvocationOutcome.COMPLETED, "Job already finished")

        try:
            await self._store.update_job(ctx.job_id, {
                "status": PipelineJobStatus.RUNNING.value,
                "progress_message": "Processing queue...",
            })
            if not ctx.targeted:
                await self._store.set_batch_status(ctx.batch_id, BatchStatus.RUNNING)

            sweep = await self._sweeper.sweep(ctx.batch_id)
            # Reclaimed runs are eligible again even if a previous invocation listed them.
            ctx.processed.difference_update(sweep.run_ids)

            if ctx.targeted:
                step = await self._drain_outputs(ctx, self._limits.render_concurrency)
            else:
                step = await self._dispatch_runs(ctx)
                if step is _Step.DONE:
                    step = await self._drain_outputs(ctx, self._limits.output_concurrency)

            if step is _Step.CONTINUE:
                await self._continue(ctx)
                return self._result(ctx, InvocationOutcome.CONTINUED)
            if step is _Step.HALT:
                return self._result(ctx, InvocationOutcome.HALTED)

            if not ctx.targeted:
                await self._settle_open_runs(ctx)
            return await self._finalize(ctx)
        except Exception as exc:
            logger.exception("batch %s: invocation failed", ctx.batch_id)
            await self._mark_failed(ctx, str(exc) or type(exc).__name__)
            return self._result(ctx, InvocationOutcome.FAILED, str(exc))

    # Dispatching

    async def _dispatch_runs(self, ctx: _Invocation) -> _Step:
        while True:
            if ctx.deadline.expired():
                return _Step.CONTINUE
            await self._maybe_log_heartbeat(ctx)
            if await self._halted(ctx):
                return _Step.HALT

            runs = await self._store.fetch_queued_runs(
                ctx.batch_id, self._limits.run_concurrency, exclude_ids=sorted(ctx.processed)
            )
            if not runs:
                logger.info("batch %s: no more queued runs", ctx.batch_id)
                return _Step.DONE

            logger.info("batch %s: processing %d runs", ctx.batch_id, len(runs))
            await asyncio.gather(*(self._process_run(ctx, run) for run in runs))
            await self._update_progress(ctx)

    async def _process_run(self, ctx: _Invocation, run: RunRecord) -> None:
        if not await self._store.claim_run(run.id, self._now()):
            logger.info("run %s: already claimed, skipping", run.id)
            return

        try:
            existing = await self._store.list_run_outputs(run.id)
            if existing:
                pending = [o for o in existing if o.status == OutputStatus.QUEUED]
                logger.info(
                    "run %s: resuming with %d queued of %d outputs",
                    run.id, len(pending), len(existing),
                )
            else:
                logger.info("run %s: expanding look %s", run.id, run.look_id)
                pending = await self._expander.expand(run)
                if not pending:
                    await self._store.finish_run(run.id, RunStatus.COMPLETE, 0, None, self._now())
                    ctx.processed.add(run.id)
                    return

            summary = await self._executor.execute(
                pending, ctx.request.model, ctx.deadline, run_id=run.id
            )
            if summary.interrupted:
                await self._store.release_run(run.id)
                logger.info("run %s: released with %d outputs not started", run.id, summary.not_started)
                return

            await self._finalize_run(ctx, run.id)
        except ExpansionError as exc:
            logger.warning("run %s: expansion failed: %s", run.id, exc)
            await self._fail_run(ctx, run.id, str(exc))
        except Exception as exc:
            logger.exception("run %s: failed", run.id)
            await self._abandon_run(ctx, run.id, str(exc) or type(exc).__name__)

    async def _fail_run(self, ctx: _Invocation, run_id: str, message: str) -> None:
        await self._store.finish_run(run_id, RunStatus.FAILED, 0, message, self._now())
        ctx.processed.add(run_id)

    async def _abandon_run(self, ctx: _Invocation, run_id: str, message: str) -> None:
        """Stop working on a run after an unexpected error.

        A run that already has outputs goes back to queued and is left out of
        further dispatch; the orphan drain finishes its outputs and the settle
        pass finalizes it. A run without outputs fails outright.
        """
        counts = await self._store.count_outputs(ctx.batch_id, run_id=run_id)
        if not counts.total:
            await self._fail_run(ctx, run_id, message)
            return
        await self._store.release_run(run_id)
        ctx.processed.add(run_id)
        logger.info(
            "run %s: released after error (%s), %d outputs left to the drain",
            run_id, message, counts.pending,
        )

    async def _finalize_run(self, ctx: _Invocation, run_id: str) -> bool:
        """Finish a run once every one of its outputs is terminal."""
        counts = await self._store.count_outputs(ctx.batch_id, run_id=run_id)
        if counts.pending:
            logger.info("run %s: %d outputs still open, not finalizing", run_id, counts.pending)
            return False

        all_failed = counts.total > 0 and counts.failed == counts.total
        status = RunStatus.FAILED if all_failed else RunStatus.COMPLETE
        error_message = f"{counts.failed} outputs failed" if counts.failed else None
        await self._store.finish_run(run_id, status, counts.complete, error_message, self._now())
        ctx.processed.add(run_id)
        logger.info(
            "run %s %s: %d success, %d failed", run_id, status.value, counts.complete, counts.failed
        )
        return True

    # Orphan draining

    async def _drain_outputs(self, ctx: _Invocation, concurrency: int) -> _Step:
        """Process outputs still queued after run dispatch (or a targeted set)."""
        output_ids = ctx.request.output_ids or None
        while True:
            if ctx.deadline.expired():
                return _Step.CONTINUE
            await self._maybe_log_heartbeat(ctx)
            if await self._halted(ctx):
                return _Step.HALT

            outputs = await self._store.fetch_queued_outputs(
                ctx.batch_id, concurrency, output_ids=output_ids
            )
            if not outputs:
                return _Step.DONE

            logger.info("batch %s: draining %d queued outputs", ctx.batch_id, len(outputs))
            await self._executor.execute(
                outputs,
                ctx.request.model,
                ctx.deadline,
                image_size=ctx.request.image_size,
                concurrency=concurrency,
            )
            await self._update_progress(ctx)
            await self._sleep(self._limits.inter_batch_delay_seconds)

    async def _settle_open_runs(self, ctx: _Invocation) -> None:
        """Finalize open runs whose outputs were all finished by the drain pass."""
        open_statuses = [RunStatus.QUEUED.value, RunStatus.RUNNING.value]
        for run in await self._store.list_runs(ctx.batch_id, open_statuses):
            counts = await self._store.count_outputs(ctx.batch_id, run_id=run.id)
            if counts.total and not counts.pending:
                await self._finalize_run(ctx, run.id)

    # Progress, continuation, finalization

    async def _output_counts(self, ctx: _Invocation) -> StatusCounts:
        return await self._store.count_outputs(ctx.batch_id, output_ids=ctx.request.output_ids or None)

    async def _update_progress(self, ctx: _Invocation) -> None:
        outputs = await self._output_counts(ctx)
        if ctx.targeted:
            message = f"Rendering: {outputs.complete}/{outputs.total}"
        else:
            runs = await self._store.count_runs(ctx.batch_id)
            message = (
                f"Processed {runs.complete + runs.failed}/{runs.total} looks, "
                f"{outputs.complete}/{outputs.total} images"
            )
        await self._store.update_job(ctx.job_id, {
            "progress_done": outputs.complete,
            "progress_failed": outputs.failed,
            "progress_total": outputs.total,
            "progress_message": message,
        })

    async def _maybe_log_heartbeat(self, ctx: _Invocation) -> None:
        if self._clock() - ctx.last_log <= self._limits.log_interval_seconds:
            return
        runs = await self._store.count_runs(ctx.batch_id)
        logger.info(
            "batch %s heartbeat: %d complete, %d running, %d queued, %d failed, elapsed %ds",
            ctx.batch_id, runs.complete, runs.running, runs.queued, runs.failed,
            round(ctx.deadline.elapsed()),
        )
        ctx.last_log = self._clock()

    async def _halted(self, ctx: _Invocation) -> bool:
        job = await self._store.get_job(ctx.job_id)
        if job is not None and (job.status or "").upper() in HALT_STATUSES:
            logger.info("job %s is %s, stopping", ctx.job_id, job.status)
            return True
        return False

    async def _continue(self, ctx: _Invocation) -> None:
        if self.dispatcher is None:
            raise RuntimeError("Time budget exhausted and no dispatcher is configured")
        logger.info(
            "batch %s: approaching time limit after %.1fs, continuing in new worker",
            ctx.batch_id, ctx.deadline.elapsed(),
        )
        await self._update_progress(ctx)
        await self.dispatcher.submit(self._next_request(ctx))

    def _next_request(self, ctx: _Invocation, delay_seconds: Optional[float] = None) -> ProcessRequest:
        return ProcessRequest(
            batch_id=ctx.batch_id,
            pipeline_job_id=ctx.job_id,
            model=ctx.request.model,
            resume_context=ResumeContext(processed_run_ids=sorted(ctx.processed)),
            output_ids=ctx.request.output_ids,
            image_size=ctx.request.image_size,
            delay_seconds=delay_seconds,
        )

    async def _already_finished(self, ctx: _Invocation) -> bool:
        job = await self._store.get_job(ctx.job_id)
        finished = {PipelineJobStatus.COMPLETED.value, PipelineJobStatus.FAILED.value}
        if job is not None and (job.status or "").upper() in finished:
            logger.info("follow-up for job %s skipped, job is %s", ctx.job_id, job.status)
            return True
        return False

    async def _finalize(self, ctx: _Invocation) -> InvocationResult:
        await self._maybe_log_heartbeat(ctx)
        outputs = await self._output_counts(ctx)
        failed_runs = 0 if ctx.targeted else (await self._store.count_runs(ctx.batch_id)).failed
        fields = {
            "progress_done": outputs.complete,
            "progress_failed": outputs.failed,
            "progress_total": outputs.total,
        }

        if outputs.pending:
            # Another invocation still holds outputs; it or a later sweep finishes them.
            fields["status"] = PipelineJobStatus.RUNNING.value
            fields["progress_message"] = f"In progress: {outputs.pending} outputs remaining"
            await self._store.update_job(ctx.job_id, fields)
            if self.dispatcher is not None:
                # Look again once the holder's claims would have gone stale.
                delay = self._limits.stale_threshold_seconds
                logger.info("batch %s: %d outputs held elsewhere, checking again in %.0fs",
                            ctx.batch_id, outputs.pending, delay)
                await self.dispatcher.submit(self._next_request(ctx, delay_seconds=delay))
            return self._result(ctx, InvocationOutcome.PENDING, fields["progress_message"])

        if outputs.complete == 0 and (outputs.failed or failed_runs):
            job_status, batch_status = PipelineJobStatus.FAILED, BatchStatus.FAILED
            message = f"Failed: {outputs.failed} outputs failed"
            if failed_runs:
                message += f", {failed_runs} looks failed"
            outcome = InvocationOutcome.FAILED
        else:
            job_status, batch_status = PipelineJobStatus.COMPLETED, BatchStatus.COMPLETE
            message = f"Completed: {outputs.complete} images generated"
            if outputs.failed:
                message += f", {outputs.failed} failed"
            if failed_runs:
                message += f", {failed_runs} looks failed"
            outcome = InvocationOutcome.COMPLETED

        fields["status"] = job_status.value
        fields["progress_message"] = message
        fields["completed_at"] = self._now()
        await self._store.update_job(ctx.job_id, fields)
        if not ctx.targeted:
            await self._store.set_batch_status(ctx.batch_id, batch_status)

        logger.info("batch %s: job %s finished with status %s", ctx.batch_id, ctx.job_id, job_status.value)
        return self._result(ctx, outcome, message)

    async def _mark_failed(self, ctx: _Invocation, message: str) -> None:
        await self._store.update_job(ctx.job_id, {
            "status": PipelineJobStatus.FAILED.value,
            "completed_at": self._now(),
            "progress_message": message,
        })
        if not ctx.targeted:
            await self._store.set_batch_status(ctx.batch_id, BatchStatus.FAILED)

    @staticmethod
    def _result(
        ctx: _Invocation, outcome: InvocationOutcome, message: Optional[str] = None
    ) -> InvocationResult:
        return InvocationResult(
            outcome=outcome, processed_run_ids=sorted(ctx.processed), message=message
        )
