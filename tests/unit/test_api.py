"""Unit tests for the repose queue HTTP API."""

from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from repose_worker.api.v1 import queue as queue_api
from repose_worker.api.v1.router import v1_router
from repose_worker.auth.supabase_auth import SERVICE_PRINCIPAL, verify_jwt
from repose_worker.config import settings
from repose_worker.jobs.models import InvocationRecord, InvocationStatus, ProcessRequest
from repose_worker.queue.records import PipelineJob


class StatusDispatcher:
    """Dispatcher that only answers status lookups."""

    def __init__(self, records):
        self.records = {r.id: r for r in records}

    async def submit(self, request):
        raise AssertionError("not expected")

    async def get_status(self, invocation_id):
        return self.records.get(invocation_id)


def _app() -> FastAPI:
    app = FastAPI()
    app.include_router(v1_router)
    return app


@pytest.fixture()
def client(monkeypatch, store, dispatcher) -> TestClient:
    monkeypatch.setattr(queue_api, "_dispatcher", dispatcher)
    monkeypatch.setattr(queue_api, "_store", store)
    app = _app()
    app.dependency_overrides[verify_jwt] = lambda: SERVICE_PRINCIPAL
    return TestClient(app)


class TestProcessEndpoint:
    def test_accepts_request_and_submits_invocation(self, client, dispatcher) -> None:
        response = client.post("/api/v1/repose/process", json={
            "batchId": "batch-1",
            "pipelineJobId": "job-1",
            "model": "model-x",
            "resumeContext": {"processedRunIds": ["run-1"]},
        })

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "pipelineJobId": "job-1",
            "invocationId": "invocation-1",
            "message": "Queue processing started in background",
        }
        submitted = dispatcher.submitted[0]
        assert submitted.batch_id == "batch-1"
        assert submitted.processed_run_ids() == ["run-1"]

    def test_missing_model_uses_default(self, client, dispatcher) -> None:
        client.post("/api/v1/repose/process", json={"batchId": "batch-1", "pipelineJobId": "job-1"})

        assert dispatcher.submitted[0].model == settings.default_model

    def test_targeted_render_fields_are_forwarded(self, client, dispatcher) -> None:
        client.post("/api/v1/repose/process", json={
            "batchId": "batch-1", "pipelineJobId": "job-1", "outputIds": ["out-1"], "imageSize": "4K",
        })

        assert dispatcher.submitted[0].output_ids == ["out-1"]
        assert dispatcher.submitted[0].image_size == "4K"

    def test_follow_up_delay_is_forwarded(self, client, dispatcher) -> None:
        client.post("/api/v1/repose/process", json={
            "batchId": "batch-1", "pipelineJobId": "job-1", "delaySeconds": 120,
        })

        assert dispatcher.submitted[0].delay_seconds == 120.0

    @pytest.mark.parametrize("body", [{}, {"batchId": "batch-1"}, {"pipelineJobId": "job-1"}])
    def test_missing_identifiers_are_rejected(self, client, dispatcher, body) -> None:
        response = client.post("/api/v1/repose/process", json=body)

        assert response.status_code == 400
        assert response.json()["detail"] == "batchId and pipelineJobId are required"
        assert dispatcher.submitted == []

    def test_unavailable_without_dispatcher(self, client, monkeypatch) -> None:
        monkeypatch.setattr(queue_api, "_dispatcher", None)

        response = client.post("/api/v1/repose/process", json={"batchId": "b", "pipelineJobId": "j"})

        assert response.status_code == 503


class TestJobEndpoints:
    def test_resume_resets_job_and_submits(self, client, store, dispatcher) -> None:
        store.add_job(PipelineJob(
            id="job-1", type="REPOSE_GENERATION", status="FAILED", origin_context={"batchId": "batch-1"},
        ))
        store.add_batch("batch-1")

        response = client.post("/api/v1/repose/jobs/job-1/resume", json={"model": "model-y"})

        assert response.status_code == 200
        assert response.json()["message"] == "Job resume started in background"
        assert dispatcher.submitted[0].model == "model-y"
        assert store.jobs["job-1"].status == "RUNNING"

    def test_resume_unknown_job_is_404(self, client) -> None:
        response = client.post("/api/v1/repose/jobs/missing/resume")

        assert response.status_code == 404

    def test_resume_wrong_job_type_is_400(self, client, store) -> None:
        store.add_job(PipelineJob(id="job-1", type="UPSCALE", origin_context={"batchId": "batch-1"}))

        response = client.post("/api/v1/repose/jobs/job-1/resume")

        assert response.status_code == 400

    def test_job_progress(self, client, store) -> None:
        store.add_job(PipelineJob(
            id="job-1", status="RUNNING", progress_done=3, progress_failed=1, progress_total=8,
            progress_message="Processed 1/2 looks, 3/8 images",
            started_at=datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc),
        ))

        response = client.get("/api/v1/repose/jobs/job-1")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "RUNNING"
        assert body["progress"] == {
            "done": 3, "failed": 1, "total": 8, "message": "Processed 1/2 looks, 3/8 images",
        }
        assert body["started_at"] == "2026-01-20T12:00:00+00:00"
        assert body["completed_at"] is None

    def test_invocation_status(self, client, monkeypatch) -> None:
        record = InvocationRecord(
            id="inv-1",
            request=ProcessRequest(batch_id="batch-1", pipeline_job_id="job-1", model="model-x"),
            status=InvocationStatus.COMPLETED,
            outcome="continued",
        )
        monkeypatch.setattr(queue_api, "_dispatcher", StatusDispatcher([record]))

        found = client.get("/api/v1/repose/invocations/inv-1")
        missing = client.get("/api/v1/repose/invocations/other")

        assert found.status_code == 200
        assert found.json()["outcome"] == "continued"
        assert found.json()["status"] == "completed"
        assert missing.status_code == 404


class TestAuth:
    @pytest.fixture()
    def open_client(self, monkeypatch, store, dispatcher) -> TestClient:
        monkeypatch.setattr(queue_api, "_dispatcher", dispatcher)
        monkeypatch.setattr(queue_api, "_store", store)
        monkeypatch.setattr(settings, "supabase_service_role_key", "service-key")
        monkeypatch.setattr(settings, "supabase_url", "")
        return TestClient(_app())

    def test_missing_token_is_401(self, open_client) -> None:
        response = open_client.post("/api/v1/repose/process", json={"batchId": "b", "pipelineJobId": "j"})

        assert response.status_code == 401

    def test_service_role_key_is_accepted(self, open_client, dispatcher) -> None:
        response = open_client.post(
            "/api/v1/repose/process",
            json={"batchId": "b", "pipelineJobId": "j"},
            headers={"Authorization": "Bearer service-key"},
        )

        assert response.status_code == 200
        assert len(dispatcher.submitted) == 1

    def test_unverifiable_token_is_401(self, open_client) -> None:
        response = open_client.get(
            "/api/v1/repose/jobs/job-1", headers={"Authorization": "Bearer not-a-user-token"}
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"


class TestHealth:
    def test_reports_queue_configuration(self) -> None:
        response = TestClient(_app()).get("/api/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["limits"]["run_concurrency"] == settings.run_concurrency
