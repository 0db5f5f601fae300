# src/scoring/confidence.py — v1
"""Confidence score for a completed run.

Ordered multiplicative combination where a zero signal dominates:
  1. nothing fetched -> 0.0, stop
  2. fetched below low_yield_ratio x expected minimum -> x low_yield_penalty
  3. x parse rate (processed / fetched)
  4. x (1 - http error rate)
  5. x (1 - block_weight x block rate)
  6. any unexpected content type -> x content_type_penalty
  7. clamp to [0, 1]

The low-yield and content-type penalties are independent multipliers and
compound when both apply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from scrapegate.core.models import HttpStats
from scrapegate.tracking.http_stats import block_rate, error_rate

if TYPE_CHECKING:
    from scrapegate.config.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoringWeights:
    """Multipliers and ratios used by the scorer."""

    low_yield_ratio: float = 0.5
    low_yield_penalty: float = 0.6
    block_weight: float = 2.0
    content_type_penalty: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings | None) -> ScoringWeights:
        if settings is None:
            return cls()
        return cls(
            low_yield_ratio=settings.low_yield_ratio,
            low_yield_penalty=settings.low_yield_penalty,
            block_weight=settings.block_weight,
            content_type_penalty=settings.content_type_penalty,
        )


@dataclass
class ScoreBreakdown:
    """Score plus the factors that produced it (kept for run diagnosis)."""

    score: float
    factors: dict[str, float] = field(default_factory=dict)


def compute_confidence(
    stats: HttpStats,
    fetched: int,
    processed: int,
    expected_min: int | None = None,
    unexpected_content_type: bool | None = None,
    weights: ScoringWeights | None = None,
) -> ScoreBreakdown:
    """Compute a run's confidence score in [0, 1].

    Args:
        stats: Final HTTP stats of the run.
        fetched: Listing items fetched.
        processed: Items successfully parsed and validated.
        expected_min: Configured minimum expected job count.
        unexpected_content_type: Override for the content-type flag; by
            default derived from ``stats.unexpected_content_types``.
        weights: Scorer multipliers.
    """
    w = weights or ScoringWeights()

    if fetched <= 0:
        return ScoreBreakdown(score=0.0, factors={"empty": 0.0})

    factors: dict[str, float] = {}
    score = 1.0

    if expected_min and fetched < w.low_yield_ratio * expected_min:
        factors["low_yield"] = w.low_yield_penalty
        score *= w.low_yield_penalty

    parse_rate = min(processed, fetched) / fetched
    factors["parse_rate"] = parse_rate
    score *= parse_rate

    http_term = 1.0 - error_rate(stats)
    factors["http_error"] = http_term
    score *= http_term

    block_term = 1.0 - w.block_weight * block_rate(stats)
    factors["block"] = block_term
    score *= block_term

    if unexpected_content_type is None:
        unexpected_content_type = stats.unexpected_content_types > 0
    if unexpected_content_type:
        factors["content_type"] = w.content_type_penalty
        score *= w.content_type_penalty

    score = max(0.0, min(1.0, score))
    logger.debug("Confidence %.3f from factors %s", score, factors)
    return ScoreBreakdown(score=score, factors=factors)
