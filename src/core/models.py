# src/core/models.py — v1
"""Shared Pydantic domain models used across modules.

No module redefines these types: runs, source configuration, locks,
checkpoints, HTTP stats, symptom bundles and job items all live here.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware UTC now (single clock helper for default factories)."""
    return datetime.now(timezone.utc)


# === ENUMS ===


class FailureType(str, Enum):
    """Closed set of canonical run outcome classifications."""

    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    PROXY_ERROR = "proxy_error"
    TIMEOUT = "timeout"
    PARSE_ERROR = "parse_error"
    VALIDATION_ERROR = "validation_error"
    EMPTY_RESPONSE = "empty_response"
    DATABASE_ERROR = "database_error"
    STORAGE_ERROR = "storage_error"
    CONFIG_ERROR = "config_error"
    BUDGET_EXCEEDED = "budget_exceeded"
    DEPENDENCY_ERROR = "dependency_error"
    SUCCESS = "success"


class RunStatus(str, Enum):
    """Run status: every failure type plus the in-flight and partial states."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    PROXY_ERROR = "proxy_error"
    TIMEOUT = "timeout"
    PARSE_ERROR = "parse_error"
    VALIDATION_ERROR = "validation_error"
    EMPTY_RESPONSE = "empty_response"
    DATABASE_ERROR = "database_error"
    STORAGE_ERROR = "storage_error"
    CONFIG_ERROR = "config_error"
    BUDGET_EXCEEDED = "budget_exceeded"
    DEPENDENCY_ERROR = "dependency_error"

    @classmethod
    def from_failure(cls, failure_type: FailureType) -> RunStatus:
        return cls(failure_type.value)

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING

    @property
    def is_success_class(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.PARTIAL_SUCCESS)


class Stage(str, Enum):
    """Run pipeline stages, in nominal execution order."""

    INIT = "init"
    FETCH_LIST = "fetch_list"
    PARSE_LIST = "parse_list"
    FETCH_DETAILS = "fetch_details"
    CLASSIFY = "classify"
    SCORE = "score"
    FINALIZE = "finalize"


class MutationTier(str, Enum):
    """Score-gated mutation permission for the finalize stage."""

    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


# === HTTP STATS ===


class HttpStats(BaseModel):
    """Append-only HTTP statistics accumulated within a run."""

    total_requests: int = 0
    failed_requests: int = 0
    status_codes: dict[int, int] = Field(default_factory=dict)
    exception_kinds: dict[str, int] = Field(default_factory=dict)
    timeouts: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0
    bytes_downloaded: int = 0
    unexpected_content_types: int = 0
    last_error: str | None = None

    @property
    def latency_avg_ms(self) -> float:
        if self.latency_count == 0:
            return 0.0
        return self.latency_total_ms / self.latency_count

    def status_count(self, *codes: int) -> int:
        return sum(self.status_codes.get(c, 0) for c in codes)


# === SOURCE CONFIGURATION ===


class BudgetLimits(BaseModel):
    """Per-run resource ceilings. None disables a ceiling."""

    max_requests: int | None = 500
    max_runtime_s: float | None = 1800.0
    max_bytes: int | None = 200 * 1024 * 1024


class SourceConfig(BaseModel):
    """Per-source configuration and kill-switch health record.

    ``version`` is bumped on every persisted write; writers pass the version
    they read and the gateway rejects stale writes.
    """

    source_key: str
    adapter: str = ""
    enabled: bool = True
    safe_mode: bool = False
    manually_disabled: bool = False
    disabled_reason: str | None = None
    auto_disabled_at: datetime | None = None
    auto_disabled_reason: Literal["consecutive_failures", "low_confidence"] | None = None
    retry_after: datetime | None = None
    expected_min_jobs: int | None = None
    expected_max_jobs: int | None = None
    fetch_details: bool = False
    expected_content_type: str = "application/json"
    budget: BudgetLimits = Field(default_factory=BudgetLimits)
    adapter_options: dict[str, Any] = Field(default_factory=dict)

    # Kill-switch history
    consecutive_failures: int = 0
    consecutive_low_confidence: int = 0
    last_status: RunStatus | None = None
    last_run_at: datetime | None = None
    version: int = 0


# === LOCKS ===


class Lock(BaseModel):
    """Per-source mutual exclusion lease."""

    source_key: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

    @model_validator(mode="after")
    def _expiry_after_acquire(self) -> Lock:
        if self.expires_at <= self.acquired_at:
            raise ValueError("expires_at must be later than acquired_at")
        return self

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


# === JOBS ===


class JobItem(BaseModel):
    """A single job posting extracted from a source listing."""

    job_id: str
    title: str = ""
    url: str | None = None
    location: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    detail_ref: str | None = None


class UpsertResult(BaseModel):
    """Outcome of an idempotent job upsert."""

    new: int = 0
    updated: int = 0


# === CLASSIFICATION ===


class SymptomBundle(BaseModel):
    """Raw observable symptoms of one request or stage outcome."""

    http_status: int | None = None
    exception_kind: str | None = None
    expected_content_type: str | None = None
    actual_content_type: str | None = None
    body_length: int | None = None
    body_hash: str | None = None
    parse_outcome: Literal["ok", "failed", "invalid"] | None = None
    items_extracted: int | None = None
    retry_after_s: float | None = None
    config_errors: list[str] = Field(default_factory=list)
    budget_breach: str | None = None
    database_failure: bool = False
    storage_failure: bool = False
    message: str | None = None


class Failure(BaseModel):
    """Tagged failure: one canonical type plus structured context."""

    type: FailureType
    stage: Stage
    message: str = ""
    attempts: int = 1
    context: dict[str, Any] = Field(default_factory=dict)


# === CHECKPOINTS ===


class RunCounts(BaseModel):
    """Item tallies of a run. skipped = invalid + parse_failed.

    retries counts request retries taken by the retry executor.
    """

    fetched: int = 0
    processed: int = 0
    invalid: int = 0
    parse_failed: int = 0
    skipped: int = 0
    details: int = 0
    new: int = 0
    updated: int = 0
    inactive: int = 0
    retries: int = 0


class CheckpointPayload(BaseModel):
    """Progress state sufficient to resume a run without redoing work."""

    completed_stages: list[Stage] = Field(default_factory=list)
    cursor: str | None = None
    listing: list[dict[str, Any]] | None = None
    listing_ref: str | None = None
    items: list[JobItem] | None = None
    items_ref: str | None = None
    detail_done_ids: list[str] = Field(default_factory=list)
    counts: RunCounts = Field(default_factory=RunCounts)
    http_stats: HttpStats = Field(default_factory=HttpStats)
    stage_durations: dict[str, float] = Field(default_factory=dict)


class Checkpoint(BaseModel):
    """Stage-level progress marker embedded in a run record."""

    run_id: str
    stage: Stage
    sequence: int
    written_at: datetime = Field(default_factory=utcnow)
    payload: CheckpointPayload = Field(default_factory=CheckpointPayload)


# === RUNS ===


class Run(BaseModel):
    """One execution attempt of the pipeline for a single source."""

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source_key: str
    holder_id: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    stage: Stage = Stage.INIT
    confidence_score: float | None = Field(default=None, ge=0.0, le=1.0)
    tier: MutationTier | None = None
    safe_mode: bool = False
    counts: RunCounts = Field(default_factory=RunCounts)
    http_stats: HttpStats = Field(default_factory=HttpStats)
    stage_durations: dict[str, float] = Field(default_factory=dict)
    failure: Failure | None = None
    checkpoint: Checkpoint | None = None
    resumed_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal and self.finished_at is not None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()


class SkippedAttempt(BaseModel):
    """A scheduled attempt that did not start a run (normal outcome)."""

    source_key: str
    reason: Literal["locked", "disabled", "cooling_down", "unknown_source", "lease_lost"]
    detail: str = ""
    at: datetime = Field(default_factory=utcnow)


class NotificationEvent(BaseModel):
    """Event published to the notification sink."""

    kind: Literal["run_terminal", "source_disabled", "source_enabled", "source_cooldown_cleared"]
    source_key: str
    run_id: str | None = None
    status: RunStatus | None = None
    confidence_score: float | None = None
    detail: str = ""
    at: datetime = Field(default_factory=utcnow)
