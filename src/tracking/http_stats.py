# src/tracking/http_stats.py — v1
"""Append-only accumulation of HTTP statistics within a run.

Adapters report per-call deltas (requests, status codes, latency, bytes).
Calls that raised instead of returning are recorded here from their
symptom bundle so every attempt is counted exactly once.
"""

from __future__ import annotations

from scrapegate.classification.error_classifier import is_content_type_mismatch
from scrapegate.core.models import HttpStats, SymptomBundle

BLOCK_STATUS_CODES = (403, 429)


def merge_stats(total: HttpStats, delta: HttpStats) -> None:
    """Fold ``delta`` into ``total`` in place. Counters only ever grow."""
    total.total_requests += delta.total_requests
    total.failed_requests += delta.failed_requests
    for code, count in delta.status_codes.items():
        total.status_codes[code] = total.status_codes.get(code, 0) + count
    for kind, count in delta.exception_kinds.items():
        total.exception_kinds[kind] = total.exception_kinds.get(kind, 0) + count
    total.timeouts += delta.timeouts
    total.latency_total_ms += delta.latency_total_ms
    total.latency_max_ms = max(total.latency_max_ms, delta.latency_max_ms)
    total.latency_count += delta.latency_count
    total.bytes_downloaded += delta.bytes_downloaded
    total.unexpected_content_types += delta.unexpected_content_types
    if delta.last_error:
        total.last_error = delta.last_error


def record_response(
    stats: HttpStats,
    status: int,
    latency_ms: float = 0.0,
    size_bytes: int = 0,
) -> None:
    """Record one completed HTTP response (helper for adapters).

    Block statuses (403/429) are not counted as failed requests; the scorer
    weighs them separately through the block rate.
    """
    _count_status(stats, status)
    stats.latency_total_ms += latency_ms
    stats.latency_max_ms = max(stats.latency_max_ms, latency_ms)
    stats.latency_count += 1
    stats.bytes_downloaded += size_bytes


def record_exception(stats: HttpStats, symptoms: SymptomBundle) -> None:
    """Record one request that raised instead of returning.

    Clients that raise on 4xx/5xx still carry the response status; it is
    counted like a returned response so 403/429 feed the block rate. A
    raised call with a non-error status still counts as failed.
    """
    kind = symptoms.exception_kind or "unknown"
    if symptoms.http_status is not None:
        _count_status(stats, symptoms.http_status)
        if symptoms.http_status < 400:
            stats.failed_requests += 1
    else:
        stats.total_requests += 1
        stats.failed_requests += 1
    stats.exception_kinds[kind] = stats.exception_kinds.get(kind, 0) + 1
    if "timeout" in kind:
        stats.timeouts += 1
    if symptoms.message:
        stats.last_error = symptoms.message


def _count_status(stats: HttpStats, status: int) -> None:
    stats.total_requests += 1
    stats.status_codes[status] = stats.status_codes.get(status, 0) + 1
    if status >= 400 and status not in BLOCK_STATUS_CODES:
        stats.failed_requests += 1


def record_symptoms(stats: HttpStats, symptoms: SymptomBundle) -> None:
    """Record content-level symptoms of a returned response."""
    if is_content_type_mismatch(
        symptoms.expected_content_type, symptoms.actual_content_type
    ):
        stats.unexpected_content_types += 1
    if symptoms.message:
        stats.last_error = symptoms.message


def block_rate(stats: HttpStats) -> float:
    return stats.status_count(*BLOCK_STATUS_CODES) / max(stats.total_requests, 1)


def error_rate(stats: HttpStats) -> float:
    return stats.failed_requests / max(stats.total_requests, 1)
