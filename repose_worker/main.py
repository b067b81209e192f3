"""Repose Batch Worker - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from repose_worker.config import settings
from repose_worker.api.v1.router import v1_router
from repose_worker.api.v1.health import router as health_root_router
from repose_worker.api.v1 import queue as queue_api
from repose_worker.jobs.models import ProcessRequest
from repose_worker.jobs.in_process_queue import InProcessQueue
from repose_worker.jobs.http_dispatcher import HttpSelfDispatcher
from repose_worker.queue.generator import EdgeFunctionGenerator
from repose_worker.queue.limits import QueueLimits
from repose_worker.queue.memory_store import InMemoryReposeStore
from repose_worker.queue.processor import BatchRunProcessor, InvocationResult
from repose_worker.queue.store import ReposeStore
from repose_worker.queue.supabase_store import SupabaseReposeStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def build_store() -> ReposeStore:
    if settings.store_backend == "memory":
        return InMemoryReposeStore()
    return SupabaseReposeStore.from_settings(settings)


def build_continuation(local_queue: InProcessQueue):
    """Where a processor sends its continuation when time runs out."""
    if settings.continuation_mode == "http":
        if not settings.public_base_url:
            raise RuntimeError("PUBLIC_BASE_URL must be set when CONTINUATION_MODE=http")
        return HttpSelfDispatcher(settings.public_base_url, settings.supabase_service_role_key)
    return local_queue


# Global processor reference
_processor: BatchRunProcessor | None = None


async def run_invocation(request: ProcessRequest) -> InvocationResult:
    """Worker function: runs one processor invocation.

    Called by the InProcessQueue, one invocation at a time.
    """
    if _processor is None:
        raise RuntimeError("Processor not initialized")
    return await _processor.run(request)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    global _processor

    logger.info("Starting Repose Batch Worker on port %s", settings.compute_port)
    logger.info("Store backend: %s", settings.store_backend)
    logger.info("Continuation mode: %s", settings.continuation_mode)

    store = build_store()
    generator = EdgeFunctionGenerator(
        settings.supabase_url,
        settings.supabase_service_role_key,
        function_name=settings.generator_function,
        timeout_seconds=settings.generator_timeout_seconds,
    )

    dispatcher = InProcessQueue(worker_fn=run_invocation)
    _processor = BatchRunProcessor(
        store,
        generator,
        QueueLimits.from_settings(settings),
        dispatcher=build_continuation(dispatcher),
    )
    await dispatcher.start()
    logger.info("Job dispatcher started")

    # Wire dispatcher and store into API endpoints
    queue_api.set_dispatcher(dispatcher)
    queue_api.set_store(store)

    yield

    # Shutdown
    logger.info("Shutting down Repose Batch Worker")
    await dispatcher.stop()


app = FastAPI(
    title="Repose Batch Worker",
    description="Self-continuing batch processor for repose image generation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: frontend dev servers and any configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.compute_port)
