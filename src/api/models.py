# src/api/models.py — v1
"""API-level models: source status snapshot and scheduler batch result."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from scrapegate.core.models import Lock, Run, RunStatus, SkippedAttempt, SourceConfig, utcnow


class SourceStatus(BaseModel):
    """Operator view of one source: health record, lease and recent runs."""

    config: SourceConfig
    lock: Lock | None = None
    recent_runs: list[Run] = Field(default_factory=list)
    aggregates: dict[str, object] | None = None

    @property
    def state(self) -> str:
        if self.config.manually_disabled:
            return "manually_disabled"
        if not self.config.enabled:
            return "cooling_down" if self.config.retry_after else "auto_disabled"
        return "safe_mode" if self.config.safe_mode else "enabled"


class SourceFailure(BaseModel):
    """A source whose attempt raised instead of producing a run."""

    source_key: str
    error: str


class BatchResult(BaseModel):
    """Return value of scheduler.run_sources()."""

    runs: list[Run] = Field(default_factory=list)
    skipped: list[SkippedAttempt] = Field(default_factory=list)
    errors: list[SourceFailure] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()

    def count_by_status(self) -> dict[RunStatus, int]:
        counts: dict[RunStatus, int] = {}
        for run in self.runs:
            counts[run.status] = counts.get(run.status, 0) + 1
        return counts
