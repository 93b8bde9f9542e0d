"""
Bounded retry for calls to the panel and the hosted gateway.

Network errors and 5xx are retried with backoff; 4xx and schema errors are
final. Every attempt goes through the upstream's circuit breaker.
"""
import logging
import random
import time
from typing import Any, Callable

import httpx
import pybreaker

from vpnshop.core.config import settings
from vpnshop.core.errors import UpstreamFailure
from vpnshop.utils.metrics import upstream_request_duration_seconds, upstream_requests_total

logger = logging.getLogger(__name__)


def classify_response(resp: httpx.Response, error_cls: type[UpstreamFailure], upstream: str) -> None:
    """Raise error_cls for non-2xx; 5xx and 429 are retryable."""
    if resp.is_success:
        return
    retryable = resp.status_code >= 500 or resp.status_code == 429
    raise error_cls(
        f"{upstream} responded with HTTP {resp.status_code}",
        retryable=retryable,
        status_code=resp.status_code,
    )


def call_with_retry(
    func: Callable[[], Any],
    *,
    upstream: str,
    breaker: pybreaker.CircuitBreaker,
    error_cls: type[UpstreamFailure],
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
) -> Any:
    max_attempts = max_attempts or settings.upstream_retry_max_attempts
    backoff_seconds = (
        settings.upstream_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
    )

    attempt = 0
    while True:
        attempt += 1
        start = time.time()
        try:
            result = breaker.call(func)
            upstream_requests_total.labels(upstream=upstream, status="success").inc()
            return result
        except pybreaker.CircuitBreakerError:
            upstream_requests_total.labels(upstream=upstream, status="circuit_open").inc()
            raise error_cls(f"{upstream} is temporarily unavailable", retryable=True)
        except httpx.HTTPError as e:
            upstream_requests_total.labels(upstream=upstream, status="network_error").inc()
            err = error_cls(f"{upstream} request failed: {type(e).__name__}", retryable=True)
        except UpstreamFailure as e:
            upstream_requests_total.labels(upstream=upstream, status="error").inc()
            err = e
        finally:
            upstream_request_duration_seconds.labels(upstream=upstream).observe(time.time() - start)

        if not err.retryable or attempt >= max_attempts:
            logger.warning(
                "upstream_call_failed",
                extra={"url": upstream, "attempt": attempt, "error": err.message, "status_code": err.status_code},
            )
            raise err

        delay = backoff_seconds * attempt
        if delay:
            delay += random.uniform(0, delay / 2)
        logger.info(
            "upstream_retry_scheduled",
            extra={"url": upstream, "attempt": attempt, "error": err.message},
        )
        time.sleep(delay)
