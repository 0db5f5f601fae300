# src/logging/context.py — v1
"""Contextual logging support: attach source_key, run_id, stage to log records.

Context variables are per-task under asyncio, so concurrent runs for
different sources never see each other's context.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

_source_key: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "source_key", default=None
)
_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "run_id", default=None
)
_stage: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "stage", default=None
)
_attempt: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "attempt", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    source_key: str | None = None
    run_id: str | None = None
    stage: str | None = None
    attempt: int | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        source_key=_source_key.get(),
        run_id=_run_id.get(),
        stage=_stage.get(),
        attempt=_attempt.get(),
    )


def set_run_context(source_key: str, run_id: str | None = None) -> None:
    """Set run-level context (called once per run)."""
    _source_key.set(source_key)
    _run_id.set(run_id)


def set_stage_context(stage: str | None, attempt: int | None = None) -> None:
    """Set stage-level context (called on every stage transition / retry)."""
    _stage.set(stage)
    _attempt.set(attempt)


def clear_context() -> None:
    """Reset all context variables."""
    _source_key.set(None)
    _run_id.set(None)
    _stage.set(None)
    _attempt.set(None)
