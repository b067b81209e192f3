"""Unit tests for LivenessSweeper."""

import asyncio
from datetime import timedelta

from repose_worker.queue.records import OutputRecord, OutputStatus, RunRecord, RunStatus
from repose_worker.queue.sweeper import LivenessSweeper


def _run(store, run_id, status=RunStatus.RUNNING, heartbeat=None, batch_id="batch-1"):
    return store.add_run(RunRecord(
        id=run_id, batch_id=batch_id, look_id="look-1", status=status,
        started_at=heartbeat, heartbeat_at=heartbeat,
    ))


def _output(store, output_id, created, started=None, status=OutputStatus.RUNNING):
    return store.add_output(OutputRecord(
        id=output_id, batch_id="batch-1", run_id="run-x", status=status,
        created_at=created, started_running_at=started,
    ))


class TestLivenessSweeperRuns:
    def test_reclaims_runs_with_stale_heartbeat(self, store, clock) -> None:
        _run(store, "stale", heartbeat=clock.now() - timedelta(minutes=3))
        _run(store, "fresh", heartbeat=clock.now() - timedelta(seconds=30))
        sweeper = LivenessSweeper(store, 120, now=clock.now)

        result = asyncio.run(sweeper.sweep("batch-1"))

        assert result.run_ids == ["stale"]
        assert store.runs["stale"].status == RunStatus.QUEUED
        assert store.runs["stale"].heartbeat_at is None
        assert store.runs["stale"].started_at is None
        assert store.runs["fresh"].status == RunStatus.RUNNING

    def test_reclaims_running_runs_without_heartbeat(self, store, clock) -> None:
        _run(store, "crashed", heartbeat=None)
        sweeper = LivenessSweeper(store, 120, now=clock.now)

        result = asyncio.run(sweeper.sweep("batch-1"))

        assert result.run_ids == ["crashed"]
        assert store.runs["crashed"].status == RunStatus.QUEUED

    def test_leaves_terminal_and_other_batches_alone(self, store, clock) -> None:
        old = clock.now() - timedelta(hours=1)
        _run(store, "done", status=RunStatus.COMPLETE, heartbeat=old)
        _run(store, "other", heartbeat=old, batch_id="batch-2")
        sweeper = LivenessSweeper(store, 120, now=clock.now)

        result = asyncio.run(sweeper.sweep("batch-1"))

        assert result.empty
        assert store.runs["done"].status == RunStatus.COMPLETE
        assert store.runs["other"].status == RunStatus.RUNNING

    def test_second_sweep_changes_nothing(self, store, clock) -> None:
        _run(store, "stale", heartbeat=clock.now() - timedelta(minutes=5))
        _output(store, "out-1", created=clock.now() - timedelta(minutes=5))
        sweeper = LivenessSweeper(store, 120, now=clock.now)

        first = asyncio.run(sweeper.sweep("batch-1"))
        snapshot = (
            {k: v.model_dump() for k, v in store.runs.items()},
            {k: v.model_dump() for k, v in store.outputs.items()},
        )
        second = asyncio.run(sweeper.sweep("batch-1"))

        assert not first.empty
        assert second.empty
        assert snapshot == (
            {k: v.model_dump() for k, v in store.runs.items()},
            {k: v.model_dump() for k, v in store.outputs.items()},
        )


class TestLivenessSweeperOutputs:
    def test_reclaims_outputs_with_old_activity(self, store, clock) -> None:
        now = clock.now()
        _output(store, "old-start", created=now - timedelta(minutes=10), started=now - timedelta(minutes=3))
        _output(store, "never-started", created=now - timedelta(minutes=3))
        _output(store, "recent-start", created=now - timedelta(minutes=10), started=now - timedelta(seconds=20))
        _output(store, "recent-create", created=now - timedelta(seconds=20))
        sweeper = LivenessSweeper(store, 120, now=clock.now)

        result = asyncio.run(sweeper.sweep("batch-1"))

        assert sorted(result.output_ids) == ["never-started", "old-start"]
        assert store.outputs["old-start"].status == OutputStatus.QUEUED
        assert store.outputs["recent-start"].status == OutputStatus.RUNNING
        assert store.outputs["recent-create"].status == OutputStatus.RUNNING

    def test_never_touches_terminal_outputs(self, store, clock) -> None:
        old = clock.now() - timedelta(hours=1)
        _output(store, "done", created=old, started=old, status=OutputStatus.COMPLETE)
        _output(store, "failed", created=old, started=old, status=OutputStatus.FAILED)
        sweeper = LivenessSweeper(store, 120, now=clock.now)

        asyncio.run(sweeper.sweep("batch-1"))

        assert store.outputs["done"].status == OutputStatus.COMPLETE
        assert store.outputs["failed"].status == OutputStatus.FAILED
