# src/scoring/gating.py — v1
"""Score-gated mutation policy for the finalize stage.

  score >= full threshold     full     upsert, mark unseen inactive, aggregates
  partial <= score < full     partial  upsert only
  score < partial threshold   none     nothing persisted
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from scrapegate.core.models import FailureType, MutationTier

if TYPE_CHECKING:
    from scrapegate.config.settings import Settings


@dataclass(frozen=True)
class GatePolicy:
    full_threshold: float = 0.8
    partial_threshold: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings | None) -> GatePolicy:
        if settings is None:
            return cls()
        return cls(
            full_threshold=settings.gate_full_threshold,
            partial_threshold=settings.gate_partial_threshold,
        )

    def tier_for(
        self,
        score: float | None,
        classification: FailureType = FailureType.SUCCESS,
        safe_mode: bool = False,
    ) -> MutationTier:
        """Resolve the permitted mutation tier.

        Anything but a success classification, or a missing score, permits
        nothing. Safe mode caps the tier at partial.
        """
        if classification is not FailureType.SUCCESS or score is None:
            return MutationTier.NONE
        if score >= self.full_threshold:
            tier = MutationTier.FULL
        elif score >= self.partial_threshold:
            tier = MutationTier.PARTIAL
        else:
            return MutationTier.NONE
        if safe_mode and tier is MutationTier.FULL:
            return MutationTier.PARTIAL
        return tier


def allows_upsert(tier: MutationTier) -> bool:
    return tier in (MutationTier.FULL, MutationTier.PARTIAL)


def allows_inactive_marking(tier: MutationTier) -> bool:
    return tier is MutationTier.FULL


def allows_aggregates(tier: MutationTier) -> bool:
    return tier is MutationTier.FULL
