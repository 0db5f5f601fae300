# src/classification/error_classifier.py — v1
"""Map raw failure symptoms to exactly one canonical failure type.

Precedence, highest first:
  1. config errors (short-circuit before any network call)
  2. budget breach
  3. network layer: timeout, proxy, 429, block statuses / block pages,
     upstream 5xx and connection failures
  4. infrastructure: database, storage
  5. content layer: content-type mismatch (anti fake-success), parse,
     validation, zero items
  6. success

classify() is pure: same bundle, same answer.
"""

from __future__ import annotations

from scrapegate.core.models import FailureType, Stage, SymptomBundle

TIMEOUT_KINDS = frozenset({
    "timeout", "read_timeout", "connect_timeout", "pool_timeout",
    "timeouterror", "readtimeout", "connecttimeout",
})
PROXY_KINDS = frozenset({
    "proxy", "proxy_error", "proxyerror", "tunnel", "socks",
})
CONNECTION_KINDS = frozenset({
    "connection", "connection_error", "connectionerror", "connection_reset",
    "dns", "ssl", "remote_protocol",
})
BLOCK_STATUSES = frozenset({401, 403, 451})

_STRUCTURED_TYPES = ("json", "xml", "csv")
_MARKUP_TYPES = ("text/html", "application/xhtml")

# Failure types judged on what was parsed rather than on transport
CONTENT_LAYER = frozenset({
    FailureType.PARSE_ERROR, FailureType.VALIDATION_ERROR,
    FailureType.EMPTY_RESPONSE,
})


class ErrorClassifier:
    """Pure symptom → failure-type classifier.

    Args:
        block_page_hashes: Body hashes of known interstitial / captcha pages.
            A match classifies as blocked even on a 200.
    """

    def __init__(self, block_page_hashes: set[str] | frozenset[str] | None = None) -> None:
        self._block_page_hashes = frozenset(block_page_hashes or ())

    def classify(self, symptoms: SymptomBundle) -> FailureType:
        if symptoms.config_errors:
            return FailureType.CONFIG_ERROR
        if symptoms.budget_breach:
            return FailureType.BUDGET_EXCEEDED

        network = self._classify_network(symptoms)
        if network is not None:
            return network

        if symptoms.database_failure:
            return FailureType.DATABASE_ERROR
        if symptoms.storage_failure:
            return FailureType.STORAGE_ERROR

        return self._classify_content(symptoms)

    def _classify_network(self, symptoms: SymptomBundle) -> FailureType | None:
        kind = _normalize_kind(symptoms.exception_kind)
        if kind in TIMEOUT_KINDS:
            return FailureType.TIMEOUT
        if kind in PROXY_KINDS:
            return FailureType.PROXY_ERROR

        status = symptoms.http_status
        if status == 429:
            return FailureType.RATE_LIMITED
        if status in BLOCK_STATUSES:
            return FailureType.BLOCKED
        if symptoms.body_hash and symptoms.body_hash in self._block_page_hashes:
            return FailureType.BLOCKED
        if kind in CONNECTION_KINDS:
            return FailureType.DEPENDENCY_ERROR
        if status is not None and status >= 500:
            return FailureType.DEPENDENCY_ERROR
        if kind is not None:
            # Unknown exception kinds with no usable response
            return FailureType.DEPENDENCY_ERROR
        return None

    def _classify_content(self, symptoms: SymptomBundle) -> FailureType:
        if is_content_type_mismatch(
            symptoms.expected_content_type, symptoms.actual_content_type
        ):
            return FailureType.BLOCKED
        if symptoms.parse_outcome == "failed":
            return FailureType.PARSE_ERROR
        if symptoms.parse_outcome == "invalid":
            return FailureType.VALIDATION_ERROR
        if symptoms.items_extracted == 0:
            return FailureType.EMPTY_RESPONSE
        if symptoms.items_extracted is None and symptoms.body_length == 0:
            return FailureType.EMPTY_RESPONSE
        return FailureType.SUCCESS


def _normalize_kind(kind: str | None) -> str | None:
    if kind is None:
        return None
    return kind.strip().lower().replace("-", "_")


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def is_content_type_mismatch(expected: str | None, actual: str | None) -> bool:
    """True when structured data was expected but markup was received."""
    if not expected or not actual:
        return False
    expected_mt = _media_type(expected)
    actual_mt = _media_type(actual)
    if expected_mt == actual_mt:
        return False
    wants_structured = any(t in expected_mt for t in _STRUCTURED_TYPES)
    got_markup = actual_mt.startswith(_MARKUP_TYPES)
    return wants_structured and got_markup


def symptoms_from_exception(exc: BaseException) -> SymptomBundle:
    """Build a symptom bundle from a raised exception.

    Uses type-name and message heuristics so adapters built on any HTTP
    client (requests, httpx, aiohttp, playwright) map to the same kinds.
    """
    name = type(exc).__name__.lower()
    msg = str(exc).lower()

    if isinstance(exc, TimeoutError) or "timeout" in name or "timed out" in msg:
        kind = "timeout"
    elif "proxy" in name or "proxy" in msg or "tunnel" in msg:
        kind = "proxy"
    elif isinstance(exc, ConnectionError) or "connect" in name or "dns" in msg:
        kind = "connection"
    elif "ssl" in name:
        kind = "ssl"
    else:
        kind = name

    status = getattr(getattr(exc, "response", None), "status_code", None)
    return SymptomBundle(
        exception_kind=kind,
        http_status=status if isinstance(status, int) else None,
        message=f"{type(exc).__name__}: {exc}"[:500],
    )


def terminal_stage_failure(stage: Stage, failure_type: FailureType) -> bool:
    """Whether a failure type at a stage ends the run (after retries)."""
    if failure_type is FailureType.SUCCESS:
        return False
    if failure_type is FailureType.EMPTY_RESPONSE and stage is Stage.FETCH_DETAILS:
        # An empty detail page only costs that one item
        return False
    return True
