"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./clipforge.db", alias="DATABASE_URL"
    )
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Redis (queue, remote cache tier, pub/sub)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    redis_max_retries: int = Field(default=10, alias="REDIS_MAX_RETRIES")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    run_workers: bool = Field(default=True, alias="RUN_WORKERS")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")
    admin_token: str = Field(default="", alias="ADMIN_TOKEN")

    # Replicate (video predictions + prompt enhancement)
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_api_url: str = Field(default="https://api.replicate.com/v1", alias="REPLICATE_API_URL")
    replicate_webhook_secret: str = Field(default="", alias="REPLICATE_WEBHOOK_SECRET")
    prompt_enhancer_model: str = Field(
        default="meta/meta-llama-3-8b-instruct", alias="PROMPT_ENHANCER_MODEL"
    )
    provider_request_timeout_seconds: float = Field(
        default=30.0, alias="PROVIDER_REQUEST_TIMEOUT_SECONDS"
    )
    provider_max_retries: int = Field(default=3, alias="PROVIDER_MAX_RETRIES")
    provider_retry_delay_seconds: float = Field(default=2.0, alias="PROVIDER_RETRY_DELAY_SECONDS")
    provider_bucket_capacity: int = Field(default=100, alias="PROVIDER_BUCKET_CAPACITY")
    provider_refill_per_second: float = Field(default=10.0, alias="PROVIDER_REFILL_PER_SECOND")

    # Artifact storage (object store REST API)
    storage_url: str = Field(default="", alias="STORAGE_URL")
    storage_service_key: str = Field(default="", alias="STORAGE_SERVICE_KEY")
    storage_bucket: str = Field(default="generations", alias="STORAGE_BUCKET")

    # Queue / Worker
    queue_name: str = Field(default="video-generation", alias="QUEUE_NAME")
    queue_max_concurrent: int = Field(default=3, alias="QUEUE_MAX_CONCURRENT")
    worker_rate_limit_max: int = Field(default=10, alias="WORKER_RATE_LIMIT_MAX")
    worker_rate_limit_window_seconds: float = Field(
        default=60.0, alias="WORKER_RATE_LIMIT_WINDOW_SECONDS"
    )
    queue_poll_interval_seconds: float = Field(default=1.0, alias="QUEUE_POLL_INTERVAL_SECONDS")
    job_lock_duration_seconds: int = Field(default=300, alias="JOB_LOCK_DURATION_SECONDS")
    stalled_interval_seconds: float = Field(default=30.0, alias="STALLED_INTERVAL_SECONDS")
    max_stalled_count: int = Field(default=1, alias="MAX_STALLED_COUNT")
    job_max_retries: int = Field(default=3, alias="JOB_MAX_RETRIES")
    job_backoff_seconds: float = Field(default=2.0, alias="JOB_BACKOFF_SECONDS")
    keep_completed_jobs: int = Field(default=100, alias="KEEP_COMPLETED_JOBS")
    keep_failed_jobs: int = Field(default=50, alias="KEEP_FAILED_JOBS")
    keep_cancelled_jobs: int = Field(default=50, alias="KEEP_CANCELLED_JOBS")
    prediction_timeout_seconds: float = Field(default=300.0, alias="PREDICTION_TIMEOUT_SECONDS")
    prediction_poll_interval_seconds: float = Field(
        default=3.0, alias="PREDICTION_POLL_INTERVAL_SECONDS"
    )

    # Cache
    cache_default_ttl_seconds: int = Field(default=3600, alias="CACHE_DEFAULT_TTL_SECONDS")
    cache_max_keys: int = Field(default=1000, alias="CACHE_MAX_KEYS")
    cache_namespace: str = Field(default="cache", alias="CACHE_NAMESPACE")
    progress_snapshot_ttl_seconds: int = Field(
        default=3600, alias="PROGRESS_SNAPSHOT_TTL_SECONDS"
    )

    # Admission rate limiting (per user)
    admission_rate_limit_max: int = Field(default=10, alias="ADMISSION_RATE_LIMIT_MAX")
    admission_rate_limit_window_seconds: int = Field(
        default=60, alias="ADMISSION_RATE_LIMIT_WINDOW_SECONDS"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def webhook_url(self) -> str:
        """Public URL the provider calls back when a prediction settles."""
        return f"{self.public_base_url.rstrip('/')}/webhooks/provider"

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test/development environments.
        """
        if self.app_env in ("test", "testing", "development"):
            return self

        missing = []

        if not self.replicate_api_token:
            missing.append(
                "REPLICATE_API_TOKEN: Get your API token from https://replicate.com/account/api-tokens"
            )

        if not self.storage_url or not self.storage_service_key:
            missing.append("STORAGE_URL / STORAGE_SERVICE_KEY: Object storage for finished videos")

        if not self.admin_token:
            missing.append("ADMIN_TOKEN: Shared secret for queue operator endpoints")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability

    Context variables (trace_id, generation_id) bound during a request or job
    are merged into every log line.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.app_env == "production":
        processors = shared_processors + [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
