"""Liveness sweeper: reclaims work abandoned by a killed invocation."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List

from pydantic import BaseModel, Field

from repose_worker.queue.store import ReposeStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SweepResult(BaseModel):
    run_ids: List[str] = Field(default_factory=list)
    output_ids: List[str] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.run_ids and not self.output_ids


class LivenessSweeper:
    """Resets ``running`` runs and outputs with no recent activity to ``queued``.

    A run proves liveness through ``heartbeat_at``; an output through
    ``started_running_at`` (or ``created_at`` if it never started). Anything
    older than the stale threshold belongs to a dead invocation.
    """

    def __init__(
        self,
        store: ReposeStore,
        stale_threshold_seconds: float = 120.0,
        now: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._stale_after = timedelta(seconds=stale_threshold_seconds)
        self._now = now

    async def sweep(self, batch_id: str) -> SweepResult:
        threshold = self._now() - self._stale_after
        run_ids = await self._store.reclaim_stale_runs(batch_id, threshold)
        output_ids = await self._store.reclaim_stale_outputs(batch_id, threshold)

        if run_ids:
            logger.info("batch %s: reset %d stale running runs", batch_id, len(run_ids))
        if output_ids:
            logger.info("batch %s: reset %d stale running outputs", batch_id, len(output_ids))
        return SweepResult(run_ids=run_ids, output_ids=output_ids)
