"""
Metrics Module
Prometheus instrumentation for the scheduler, sync jobs, the rate limiter,
platform requests and notification delivery.

All metrics live in one registry owned by this module and are exposed in the
text exposition format by ``render()``.
"""

from typing import Optional, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, ProcessCollector, generate_latest
)

REGISTRY = CollectorRegistry()
ProcessCollector(namespace='sync_service', registry=REGISTRY)

SCHEDULER_RUNNING = Gauge(
    'sync_scheduler_running',
    'Whether periodic batches are scheduled (1) or not (0)',
    registry=REGISTRY
)
SCHEDULER_EXECUTIONS = Counter(
    'sync_scheduler_executions',
    'Scheduler batch runs by outcome',
    ['status'],
    registry=REGISTRY
)
SYNC_JOBS = Counter(
    'sync_jobs',
    'Repository sync jobs by outcome',
    ['repository_id', 'sync_type', 'status'],
    registry=REGISTRY
)
SYNC_JOB_DURATION = Histogram(
    'sync_job_duration_seconds',
    'Duration of repository sync jobs',
    ['sync_type'],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800),
    registry=REGISTRY
)
SYNC_RECORDS = Counter(
    'sync_records_processed',
    'Records upserted by sync jobs',
    ['sync_type'],
    registry=REGISTRY
)
RATE_LIMIT_HITS = Counter(
    'sync_rate_limit_hits',
    'Throttling events: local limiter waits, limiter timeouts and remote 429 responses',
    ['type'],
    registry=REGISTRY
)
RATE_LIMIT_DELAYS = Histogram(
    'sync_rate_limit_delay_seconds',
    'Time spent waiting for rate limiter tokens',
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300),
    registry=REGISTRY
)
PLATFORM_REQUESTS = Counter(
    'sync_platform_api_requests',
    'Requests to the source-control platform API',
    ['endpoint', 'status'],
    registry=REGISTRY
)
PLATFORM_REQUEST_DURATION = Histogram(
    'sync_platform_api_duration_seconds',
    'Duration of platform API requests',
    ['endpoint'],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30),
    registry=REGISTRY
)
NOTIFICATIONS_SENT = Counter(
    'sync_notifications_sent',
    'Notification deliveries by channel and outcome',
    ['channel', 'status'],
    registry=REGISTRY
)


def record_sync_job(repository_id: int, sync_type: str, status: str,
                    duration: Optional[float] = None, records: int = 0) -> None:
    SYNC_JOBS.labels(repository_id=str(repository_id), sync_type=sync_type, status=status).inc()
    if duration is not None:
        SYNC_JOB_DURATION.labels(sync_type=sync_type).observe(duration)
    if records:
        SYNC_RECORDS.labels(sync_type=sync_type).inc(records)


def record_rate_limit(kind: str, delay: Optional[float] = None) -> None:
    """kind: 'local' (waited for tokens), 'timeout' (gave up) or 'remote' (HTTP 429)."""
    RATE_LIMIT_HITS.labels(type=kind).inc()
    if delay is not None:
        RATE_LIMIT_DELAYS.observe(delay)


def record_platform_request(endpoint: str, status: str, duration: float) -> None:
    PLATFORM_REQUESTS.labels(endpoint=endpoint, status=status).inc()
    PLATFORM_REQUEST_DURATION.labels(endpoint=endpoint).observe(duration)


def record_scheduler_execution(status: str) -> None:
    SCHEDULER_EXECUTIONS.labels(status=status).inc()


def set_scheduler_running(is_running: bool) -> None:
    SCHEDULER_RUNNING.set(1 if is_running else 0)


def record_notification(channel: str, status: str) -> None:
    NOTIFICATIONS_SENT.labels(channel=channel, status=status).inc()


def sample(name: str, **labels) -> float:
    """Current value of one sample, 0 when it has not been recorded yet."""
    return REGISTRY.get_sample_value(name, labels) or 0.0


def render() -> Tuple[bytes, str]:
    """Registry contents in the Prometheus text format, with its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
