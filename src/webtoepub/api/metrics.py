"""Prometheus metrics for the WebToEpub scraper engine.

All metrics are module-level singletons registered on the default
``REGISTRY``.  They are safe to import from multiple modules because the
module is only executed once per process.

Metrics defined here:

  outbound_fetches_total{outcome}
      Counter - logical outbound fetches (all redirect hops count as one)
      by outcome: success, blocked, too_large, failed.

  unsafe_targets_blocked_total
      Counter - fetches refused because a hop resolved to a blocked address.

  novel_jobs_total{status}
      Counter - novel-analysis jobs reaching a terminal state
      (completed, failed).

  chapter_fetches_total{status}
      Counter - per-chapter outcomes inside batch requests
      (success, failed).

  http_requests_total{method, path, status}
      Counter - HTTP requests handled by the FastAPI application.

  http_request_duration_seconds{method, path}
      Histogram - HTTP request latency in seconds.

Usage::

    from webtoepub.api.metrics import novel_jobs_total
    novel_jobs_total.labels(status="completed").inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# Outbound fetch metrics (populated in scraper/http_fetcher.py)
# ---------------------------------------------------------------------------

outbound_fetches_total: Counter = Counter(
    "outbound_fetches_total",
    "Logical outbound fetches by outcome.",
    labelnames=["outcome"],
)
"""Labels:
  outcome: one of success, blocked, too_large, failed
"""

unsafe_targets_blocked_total: Counter = Counter(
    "unsafe_targets_blocked_total",
    "Outbound fetches refused because a hop resolved to a blocked address.",
)

# ---------------------------------------------------------------------------
# Job metrics (populated in scraper/tasks.py and scraper/batch.py)
# ---------------------------------------------------------------------------

novel_jobs_total: Counter = Counter(
    "novel_jobs_total",
    "Novel-analysis jobs by terminal status.",
    labelnames=["status"],
)
"""Labels:
  status: completed or failed
"""

chapter_fetches_total: Counter = Counter(
    "chapter_fetches_total",
    "Per-chapter outcomes inside batch requests.",
    labelnames=["status"],
)
"""Labels:
  status: success or failed
"""

# ---------------------------------------------------------------------------
# HTTP metrics (populated by middleware in main.py)
# ---------------------------------------------------------------------------

http_requests_total: Counter = Counter(
    "http_requests_total",
    "HTTP requests handled by the FastAPI application.",
    labelnames=["method", "path", "status"],
)
"""Labels:
  method: HTTP method (GET, POST, …)
  path:   route template where available, raw path otherwise
  status: HTTP response status code as string (e.g. '200', '404')
"""

http_request_duration_seconds: Histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)


# ---------------------------------------------------------------------------
# Response helper
# ---------------------------------------------------------------------------


def get_metrics_response() -> tuple[bytes, str]:
    """Generate a Prometheus text-format metrics response.

    Returns:
        A tuple of (body_bytes, content_type_string) suitable for constructing
        a FastAPI ``Response`` object.
    """
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest  # noqa: PLC0415

    return generate_latest(), CONTENT_TYPE_LATEST
