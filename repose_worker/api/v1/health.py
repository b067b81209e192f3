"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from repose_worker.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and queue configuration."""
    return {
        "status": "healthy",
        "store_backend": settings.store_backend,
        "continuation_mode": settings.continuation_mode,
        "limits": {
            "max_processing_seconds": settings.max_processing_seconds,
            "run_concurrency": settings.run_concurrency,
            "output_concurrency": settings.output_concurrency,
            "max_retries": settings.max_retries,
        },
        "python_version": sys.version,
        "platform": platform.platform(),
    }
