# src/budget/budget_guard.py — v1
"""Per-run resource ceilings: requests, wall-clock runtime, bytes downloaded.

Checked after every request and at each stage boundary. A breach aborts the
run into budget_exceeded; nothing fetched under a breach is persisted.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from scrapegate.core.errors import ScrapegateError
from scrapegate.core.models import BudgetLimits, HttpStats

logger = logging.getLogger(__name__)


class BudgetExceeded(ScrapegateError):
    """A per-run resource ceiling was breached."""

    def __init__(self, resource: str, used: float, limit: float) -> None:
        self.resource = resource
        self.used = used
        self.limit = limit
        super().__init__(f"Budget exceeded: {resource} {used:g} > {limit:g}")


class BudgetGuard:
    """Enforce BudgetLimits against a run's accumulated HttpStats.

    Args:
        limits: Ceilings from the source configuration.
        clock: Monotonic clock in seconds (injected in tests).
        elapsed_offset_s: Runtime already consumed before a resume.
    """

    def __init__(
        self,
        limits: BudgetLimits,
        clock: Callable[[], float] = time.monotonic,
        elapsed_offset_s: float = 0.0,
    ) -> None:
        self._limits = limits
        self._clock = clock
        self._started = clock()
        self._offset = elapsed_offset_s

    @property
    def elapsed_s(self) -> float:
        return self._offset + (self._clock() - self._started)

    def check(self, stats: HttpStats) -> None:
        """Raise BudgetExceeded if any ceiling is breached."""
        limits = self._limits
        if limits.max_requests is not None and stats.total_requests > limits.max_requests:
            self._breach("requests", stats.total_requests, limits.max_requests)
        if limits.max_bytes is not None and stats.bytes_downloaded > limits.max_bytes:
            self._breach("bytes", stats.bytes_downloaded, limits.max_bytes)
        if limits.max_runtime_s is not None and self.elapsed_s > limits.max_runtime_s:
            self._breach("runtime_s", round(self.elapsed_s, 3), limits.max_runtime_s)

    def _breach(self, resource: str, used: float, limit: float) -> None:
        logger.warning("Budget breach on %s: %g > %g", resource, used, limit)
        raise BudgetExceeded(resource, used, limit)
