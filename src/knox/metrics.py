"""Prometheus metrics definitions for knox.

All knox metrics use the ``knox_`` prefix. Metrics are opt-in: until
``init_metrics()`` runs, the module-level references stay ``None`` and the
``record_*`` helpers do nothing, so importing knox never touches the global
registry.
"""

from __future__ import annotations

from prometheus_client import Counter

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Request counter  (labels: method, status)
# ---------------------------------------------------------------------------
requests_total: Counter | None = None

# ---------------------------------------------------------------------------
# Byte counter
# ---------------------------------------------------------------------------
bytes_sent_total: Counter | None = None

# ---------------------------------------------------------------------------
# Multipart counters  (label: outcome)
# ---------------------------------------------------------------------------
multipart_parts_total: Counter | None = None
multipart_uploads_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; only the first call registers collectors.
    """
    global _initialized
    global requests_total, bytes_sent_total
    global multipart_parts_total, multipart_uploads_total

    if _initialized:
        return

    requests_total = Counter(
        "knox_requests_total",
        "Total requests sent to the storage service by method and status",
        ["method", "status"],
    )

    bytes_sent_total = Counter(
        "knox_bytes_sent_total",
        "Total bytes sent in request bodies",
    )

    multipart_parts_total = Counter(
        "knox_multipart_parts_total",
        "Multipart part uploads by outcome",
        ["outcome"],
    )

    multipart_uploads_total = Counter(
        "knox_multipart_uploads_total",
        "Multipart uploads by outcome",
        ["outcome"],
    )

    _initialized = True


def record_request(method: str, status: int | str, sent: int = 0) -> None:
    if requests_total is not None:
        requests_total.labels(method=method, status=str(status)).inc()
    if bytes_sent_total is not None and sent:
        bytes_sent_total.inc(sent)


def record_part(outcome: str) -> None:
    if multipart_parts_total is not None:
        multipart_parts_total.labels(outcome=outcome).inc()


def record_upload(outcome: str) -> None:
    if multipart_uploads_total is not None:
        multipart_uploads_total.labels(outcome=outcome).inc()
