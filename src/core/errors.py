# src/core/errors.py — v1
"""Exceptions raised across module boundaries.

Every anticipated failure maps to a FailureType; these exceptions only
carry that classification from where it is detected to the run state
machine, which records it as a terminal status.
"""

from __future__ import annotations

from scrapegate.core.models import Failure, FailureType, Stage


class ScrapegateError(Exception):
    """Base class for all scrapegate errors."""


class StageFailed(ScrapegateError):
    """A stage hit an unrecoverable, classified failure."""

    def __init__(self, failure: Failure) -> None:
        self.failure = failure
        super().__init__(
            f"{failure.stage.value} failed with {failure.type.value} "
            f"after {failure.attempts} attempt(s): {failure.message}"
        )

    @classmethod
    def of(
        cls,
        failure_type: FailureType,
        stage: Stage,
        message: str = "",
        attempts: int = 1,
        **context: object,
    ) -> StageFailed:
        return cls(Failure(
            type=failure_type,
            stage=stage,
            message=message,
            attempts=attempts,
            context=dict(context),
        ))


class PersistenceError(ScrapegateError):
    """Persistence gateway failure (classified as database_error)."""


class BlobStoreError(ScrapegateError):
    """Blob store failure (classified as storage_error)."""


class StaleSourceConfigError(PersistenceError):
    """Versioned SourceConfig write lost a compare-and-set race."""

    def __init__(self, source_key: str, expected: int, actual: int | None) -> None:
        self.source_key = source_key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"SourceConfig '{source_key}' version mismatch: "
            f"expected {expected}, found {actual}"
        )


class RunImmutableError(PersistenceError):
    """Attempt to overwrite a run record that already reached a terminal status."""


class CheckpointOrderError(PersistenceError):
    """Checkpoint write arrived with a non-increasing sequence number."""


class UnknownSourceError(ScrapegateError):
    """No SourceConfig exists for the requested source key."""


class LeaseLostError(ScrapegateError):
    """The writer no longer holds the source lease for this run."""

    def __init__(self, run_id: str, holder_id: str | None, owner: str | None) -> None:
        self.run_id = run_id
        self.holder_id = holder_id
        self.owner = owner
        super().__init__(f"Run {run_id} is held by {owner}, not {holder_id}")
