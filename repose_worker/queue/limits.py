"""Queue limits and the per-invocation time budget."""

import time
from typing import Callable

from pydantic import BaseModel


class QueueLimits(BaseModel):
    max_processing_seconds: float = 50.0
    run_concurrency: int = 3
    output_concurrency: int = 10
    render_concurrency: int = 2
    max_retries: int = 2
    retry_delay_seconds: float = 3.0
    inter_batch_delay_seconds: float = 0.1
    stale_threshold_seconds: float = 120.0
    log_interval_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings) -> "QueueLimits":
        return cls(**{name: getattr(settings, name) for name in cls.model_fields})


class Deadline:
    """Wall-clock budget for one invocation, measured on a monotonic clock."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._budget = budget_seconds
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def expired(self) -> bool:
        return self.elapsed() > self._budget
