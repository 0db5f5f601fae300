# tests/unit/scoring/test_confidence.py — v1
"""Tests for scoring/confidence.py."""

from __future__ import annotations

import pytest

from scrapegate.config.settings import Settings
from scrapegate.core.models import HttpStats, MutationTier
from scrapegate.scoring.confidence import ScoringWeights, compute_confidence
from scrapegate.scoring.gating import GatePolicy
from scrapegate.tracking.http_stats import record_response


def _stats(**counts: int) -> HttpStats:
    """Stats from status-code counts, e.g. _stats(s200=40, s403=2)."""
    stats = HttpStats()
    for key, count in counts.items():
        for _ in range(count):
            record_response(stats, int(key[1:]), latency_ms=20.0, size_bytes=500)
    return stats


class TestComputeConfidence:
    def test_nothing_fetched_scores_zero(self):
        breakdown = compute_confidence(_stats(s200=3), fetched=0, processed=0, expected_min=10)
        assert breakdown.score == 0.0
        assert breakdown.factors == {"empty": 0.0}

    def test_clean_run_scores_one(self):
        assert compute_confidence(_stats(s200=5), fetched=100, processed=100).score == 1.0

    def test_mixed_statuses_reach_full_tier(self):
        stats = _stats(s200=40, s403=2, s429=1, s500=2)
        breakdown = compute_confidence(stats, fetched=150, processed=150, expected_min=50)
        assert breakdown.factors["block"] == pytest.approx(1 - 2 * 3 / 45)
        assert breakdown.factors["http_error"] == pytest.approx(1 - 2 / 45)
        assert breakdown.score == pytest.approx(0.828, abs=1e-3)
        assert GatePolicy().tier_for(breakdown.score) is MutationTier.FULL

    def test_parse_rate(self):
        breakdown = compute_confidence(_stats(s200=1), fetched=100, processed=60)
        assert breakdown.score == pytest.approx(0.6)

    def test_low_yield_never_raises_score(self):
        stats = _stats(s200=10, s500=1)
        previous = None
        for fetched in range(80, 0, -1):
            score = compute_confidence(stats, fetched=fetched, processed=fetched, expected_min=50).score
            if previous is not None:
                assert score <= previous
            previous = score

    def test_low_yield_penalty_applies_below_ratio(self):
        stats = _stats(s200=2)
        assert compute_confidence(stats, fetched=25, processed=25, expected_min=50).score == 1.0
        assert compute_confidence(stats, fetched=24, processed=24, expected_min=50).score == pytest.approx(0.6)

    def test_penalties_compound(self):
        stats = _stats(s200=2)
        stats.unexpected_content_types = 1
        breakdown = compute_confidence(stats, fetched=10, processed=10, expected_min=100)
        assert breakdown.score == pytest.approx(0.6 * 0.5)

    def test_heavy_blocking_clamps_to_zero(self):
        breakdown = compute_confidence(_stats(s200=1, s403=3), fetched=5, processed=5)
        assert breakdown.score == 0.0

    def test_weights_from_settings(self):
        settings = Settings(_env_file=None, low_yield_penalty=0.9, content_type_penalty=0.1)
        weights = ScoringWeights.from_settings(settings)
        assert weights.low_yield_penalty == 0.9
        assert weights.content_type_penalty == 0.1
        assert ScoringWeights.from_settings(None) == ScoringWeights()
