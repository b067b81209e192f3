"""Shared pytest fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from repose_worker.queue.generator import OutputGenerator
from repose_worker.queue.limits import QueueLimits
from repose_worker.queue.memory_store import InMemoryReposeStore
from repose_worker.queue.records import ClayImage, LibraryPose

T0 = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Drives both wall-clock timestamps and the monotonic budget clock."""

    def __init__(self, start: datetime = T0):
        self.current = start
        self.elapsed = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.elapsed += seconds


class FakeGenerator(OutputGenerator):
    """Records calls and in-flight concurrency; fails on request."""

    def __init__(self):
        self.calls: List[str] = []
        self.image_sizes: List[Optional[str]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.permanent: Dict[str, Exception] = {}
        self.fail_all: Optional[Exception] = None
        self.on_call: Optional[Callable[[str], None]] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def fail_times(self, output_id: str, *errors: Exception) -> None:
        self.failures[output_id] = list(errors)

    async def generate(self, output_id, model, image_size=None):
        self.calls.append(output_id)
        self.image_sizes.append(image_size)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.on_call:
                self.on_call(output_id)
            if self.fail_all is not None:
                raise self.fail_all
            if output_id in self.permanent:
                raise self.permanent[output_id]
            queued = self.failures.get(output_id)
            if queued:
                raise queued.pop(0)
            return f"https://cdn.example.com/{output_id}.png"
        finally:
            self.in_flight -= 1


class RecordingDispatcher:
    """Collects continuation requests instead of running them."""

    def __init__(self):
        self.submitted = []

    async def submit(self, request):
        self.submitted.append(request)
        return f"invocation-{len(self.submitted)}"

    async def get_status(self, invocation_id):
        return None


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_pose(pose_id: str, slot: str, product_type: Optional[str] = None, status: str = "approved") -> LibraryPose:
    return LibraryPose(
        id=pose_id,
        slot=slot,
        product_type=product_type,
        curation_status=status,
        clay_image=ClayImage(id=f"clay-{pose_id}", stored_url=f"https://cdn.example.com/clay/{pose_id}.png"),
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> InMemoryReposeStore:
    return InMemoryReposeStore(now=clock.now)


@pytest.fixture()
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def limits() -> QueueLimits:
    return QueueLimits(
        max_processing_seconds=50.0,
        run_concurrency=3,
        output_concurrency=10,
        render_concurrency=2,
        max_retries=2,
        retry_delay_seconds=3.0,
        inter_batch_delay_seconds=0.1,
        stale_threshold_seconds=120.0,
        log_interval_seconds=10.0,
    )


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def pose_factory() -> Callable[..., LibraryPose]:
    return make_pose
