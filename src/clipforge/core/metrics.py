"""Prometheus metrics for the generation pipeline."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# HTTP
REQUEST_COUNT = Counter(
    "clipforge_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "clipforge_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# Jobs
JOBS_TOTAL = Counter(
    "clipforge_video_jobs_total",
    "Video generation jobs by terminal status",
    ["status", "model"],
)

JOB_RETRIES = Counter(
    "clipforge_video_job_retries_total",
    "Video generation job retries",
    ["model"],
)

JOB_DURATION = Histogram(
    "clipforge_video_job_duration_seconds",
    "Wall time from dequeue to terminal state",
    ["model"],
    buckets=[30, 60, 120, 180, 300, 420, 600, 900],
)

ACTIVE_JOBS = Gauge("clipforge_active_video_jobs", "Jobs currently held by this worker pool")

QUEUE_WAITING = Gauge("clipforge_queue_waiting_jobs", "Jobs waiting in the pending set")

# Provider
PROVIDER_CALLS = Counter(
    "clipforge_provider_calls_total",
    "Provider API calls",
    ["operation", "status"],
)

PROVIDER_LATENCY = Histogram(
    "clipforge_provider_call_duration_seconds",
    "Provider API call latency",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

RATE_LIMIT_WAITS = Counter(
    "clipforge_rate_limit_waits_total",
    "Times a caller slept waiting for a rate limiter",
    ["limiter"],
)

# Cache
CACHE_REQUESTS = Counter(
    "clipforge_cache_requests_total",
    "Cache lookups by tier and result",
    ["tier", "result"],
)


def render_latest() -> tuple[bytes, str]:
    """Serialize the default registry for the /metrics endpoint."""
    return generate_latest(), CONTENT_TYPE_LATEST
