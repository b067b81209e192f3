"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Persistence backend
    store_backend: str = "supabase"  # "supabase" or "memory"

    # Continuation dispatch
    continuation_mode: str = "local"  # "local" or "http"
    public_base_url: Optional[str] = None  # only when continuation_mode=http
    compute_port: int = 8001

    # Generation
    generator_function: str = "generate-repose-single"
    generator_timeout_seconds: float = 400.0
    default_model: str = "google/gemini-3-pro-image-preview"

    # Queue limits
    max_processing_seconds: float = 50.0
    run_concurrency: int = 3
    output_concurrency: int = 10
    render_concurrency: int = 2
    max_retries: int = 2
    retry_delay_seconds: float = 3.0
    inter_batch_delay_seconds: float = 0.1
    stale_threshold_seconds: float = 120.0
    log_interval_seconds: float = 10.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
