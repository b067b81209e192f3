"""Dispatcher that re-invokes the processor endpoint over authenticated HTTP.

Used when each invocation must run in a fresh process (serverless hosts
that kill a request after a fixed wall-clock limit). The receiving instance
queues the invocation locally and answers immediately.
"""

import logging
from typing import Optional

import httpx

from repose_worker.jobs.dispatcher import JobDispatcher
from repose_worker.jobs.models import InvocationRecord, ProcessRequest

logger = logging.getLogger(__name__)

PROCESS_PATH = "/api/v1/repose/process"


class HttpSelfDispatcher(JobDispatcher):
    """POSTs invocations to ``{base_url}/api/v1/repose/process``."""

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = f"{base_url.rstrip('/')}{PROCESS_PATH}"
        self._headers = {"Authorization": f"Bearer {service_role_key}"}
        self._timeout = timeout_seconds
        self._transport = transport

    async def submit(self, request: ProcessRequest) -> str:
        body = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._url, json=body, headers=self._headers)
        response.raise_for_status()
        invocation_id = response.json().get("invocationId", "")
        logger.info(
            "re-invoked processor for batch %s (invocation %s)", request.batch_id, invocation_id
        )
        return invocation_id

    async def get_status(self, invocation_id: str) -> Optional[InvocationRecord]:
        # Remote invocations are tracked by the instance that received them.
        return None
