"""
Prometheus metrics for the passkey gateway.
Exposes ceremony outcomes, latency and rate-limit rejections.
"""

from functools import wraps
import time

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
import structlog

logger = structlog.get_logger()

passkey_ceremonies_total = Counter(
    'passkey_gate_ceremonies_total',
    'Passkey ceremony steps by outcome',
    ['step', 'outcome']
)

passkey_ceremony_duration_seconds = Histogram(
    'passkey_gate_ceremony_duration_seconds',
    'Passkey ceremony step duration in seconds',
    ['step'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

rate_limit_rejections_total = Counter(
    'passkey_gate_rate_limit_rejections_total',
    'Requests rejected by the rate limiter',
    ['prefix']
)


def track_ceremony_metrics(step: str):
    """Decorator recording duration and outcome of a ceremony step."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()
            outcome = "success"
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                outcome = getattr(e, "code", "internal_error")
                raise
            finally:
                passkey_ceremonies_total.labels(step=step, outcome=outcome).inc()
                passkey_ceremony_duration_seconds.labels(step=step).observe(time.time() - start_time)
        return wrapper
    return decorator


def record_rate_limit_rejection(prefix: str):
    rate_limit_rejections_total.labels(prefix=prefix).inc()


async def get_metrics():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
