# tests/unit/scoring/test_gating.py — v1
"""Tests for scoring/gating.py — score-gated mutation tiers."""

from __future__ import annotations

import pytest

from scrapegate.config.settings import Settings
from scrapegate.core.models import FailureType, MutationTier
from scrapegate.scoring.gating import (
    GatePolicy,
    allows_aggregates,
    allows_inactive_marking,
    allows_upsert,
)


class TestGatePolicy:
    @pytest.mark.parametrize(
        "score, tier",
        [
            (1.0, MutationTier.FULL),
            (0.81, MutationTier.FULL),
            (0.8, MutationTier.FULL),
            (0.79, MutationTier.PARTIAL),
            (0.5, MutationTier.PARTIAL),
            (0.49, MutationTier.NONE),
            (0.0, MutationTier.NONE),
        ],
    )
    def test_tiers(self, score, tier):
        assert GatePolicy().tier_for(score) is tier

    def test_only_full_tier_marks_inactive(self):
        gate = GatePolicy()
        assert not allows_inactive_marking(gate.tier_for(0.79))
        assert allows_inactive_marking(gate.tier_for(0.81))

    def test_safe_mode_caps_at_partial(self):
        assert GatePolicy().tier_for(0.95, safe_mode=True) is MutationTier.PARTIAL
        assert GatePolicy().tier_for(0.3, safe_mode=True) is MutationTier.NONE

    def test_failure_classification_permits_nothing(self):
        assert GatePolicy().tier_for(0.99, FailureType.BLOCKED) is MutationTier.NONE

    def test_missing_score_permits_nothing(self):
        assert GatePolicy().tier_for(None) is MutationTier.NONE

    def test_thresholds_from_settings(self):
        gate = GatePolicy.from_settings(
            Settings(_env_file=None, gate_full_threshold=0.9, gate_partial_threshold=0.6)
        )
        assert gate.tier_for(0.85) is MutationTier.PARTIAL
        assert gate.tier_for(0.55) is MutationTier.NONE


class TestPermissions:
    def test_matrix(self):
        assert allows_upsert(MutationTier.FULL) and allows_aggregates(MutationTier.FULL)
        assert allows_upsert(MutationTier.PARTIAL)
        assert not allows_aggregates(MutationTier.PARTIAL)
        assert not allows_inactive_marking(MutationTier.PARTIAL)
        assert not allows_upsert(MutationTier.NONE)
