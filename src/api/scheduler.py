# src/api/scheduler.py — v1
"""Batch execution of many sources under a concurrency bound.

Runs for different sources interleave cooperatively on one event loop; the
semaphore caps how many are in flight. One source's exception is recorded
in the batch result and never stops the others.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from scrapegate.api.models import BatchResult, SourceFailure
from scrapegate.core.models import Run, SkippedAttempt, utcnow

if TYPE_CHECKING:
    from scrapegate.api.facade import Engine

logger = logging.getLogger(__name__)


async def run_sources(
    engine: Engine,
    source_keys: list[str] | None = None,
    max_concurrent: int | None = None,
) -> BatchResult:
    """Run one attempt per source, at most ``max_concurrent`` at a time.

    Args:
        engine: Wired engine.
        source_keys: Sources to run. Defaults to every stored source.
        max_concurrent: Concurrency bound. Defaults to MAX_CONCURRENT_RUNS.
    """
    if source_keys is None:
        source_keys = [c.source_key for c in await engine.gateway.list_source_configs()]
    limit = max_concurrent or engine.settings.max_concurrent_runs
    semaphore = asyncio.Semaphore(limit)
    result = BatchResult()

    async def _one(key: str) -> Run | SkippedAttempt:
        async with semaphore:
            return await engine.machine.execute(key)

    logger.info("Batch of %d source(s), max %d concurrent", len(source_keys), limit)
    outcomes = await asyncio.gather(
        *(_one(key) for key in source_keys), return_exceptions=True
    )
    for key, outcome in zip(source_keys, outcomes):
        if isinstance(outcome, Run):
            result.runs.append(outcome)
        elif isinstance(outcome, SkippedAttempt):
            result.skipped.append(outcome)
        elif isinstance(outcome, asyncio.CancelledError):
            raise outcome
        else:
            logger.error("Source '%s' raised: %s", key, outcome)
            result.errors.append(SourceFailure(source_key=key, error=f"{type(outcome).__name__}: {outcome}"))

    result.finished_at = utcnow()
    logger.info(
        "Batch complete: %d run(s), %d skipped, %d error(s) in %.1fs",
        len(result.runs), len(result.skipped), len(result.errors), result.duration_seconds,
    )
    return result
