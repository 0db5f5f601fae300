# src/killswitch/controller.py — v1
"""Automatic and manual source disablement.

Rules:
  - consecutive terminal failures in COUNTED_FAILURES reaching the failure
    threshold auto-disable the source with a timed cooldown (retry_after)
  - consecutive confidence scores below the low-confidence score reaching
    their threshold auto-disable it until a manual enable
  - a manual disable overrides everything and only manual_enable clears it
  - safe mode is an independent flag; automatic transitions never touch it

Every SourceConfig update is a versioned compare-and-set write, retried on
a lost race against a fresh read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from scrapegate.core.errors import StaleSourceConfigError, UnknownSourceError
from scrapegate.core.models import (
    NotificationEvent,
    RunStatus,
    SkippedAttempt,
    SourceConfig,
    utcnow,
)
from scrapegate.gateway.base_notifier import BaseNotificationSink, notify_safely

if TYPE_CHECKING:
    from scrapegate.config.settings import Settings
    from scrapegate.gateway.base_persistence import BasePersistenceGateway

logger = logging.getLogger(__name__)

COUNTED_FAILURES = frozenset({
    RunStatus.BLOCKED,
    RunStatus.RATE_LIMITED,
    RunStatus.PARSE_ERROR,
    RunStatus.DEPENDENCY_ERROR,
})

MAX_CAS_ATTEMPTS = 5


@dataclass
class Eligibility:
    """Outcome of an eligibility check: a config to run, or a skip."""

    config: SourceConfig | None = None
    skipped: SkippedAttempt | None = None

    @property
    def eligible(self) -> bool:
        return self.config is not None and self.skipped is None


class KillSwitchController:
    """Maintain per-source health history and the disabled/cooldown state.

    Args:
        gateway: Persistence gateway holding SourceConfigs.
        notifier: Sink for enable/disable transitions.
        failure_threshold: Consecutive counted failures before auto-disable.
        low_confidence_threshold: Consecutive low scores before auto-disable.
        low_confidence_score: Scores strictly below this count as low.
        cooldown: Timed cooldown after a failure-driven auto-disable.
        clock: Timezone-aware UTC clock (injected in tests).
    """

    def __init__(
        self,
        gateway: BasePersistenceGateway,
        notifier: BaseNotificationSink | None = None,
        failure_threshold: int = 3,
        low_confidence_threshold: int = 5,
        low_confidence_score: float = 0.5,
        cooldown: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._notifier = notifier
        self.failure_threshold = failure_threshold
        self.low_confidence_threshold = low_confidence_threshold
        self.low_confidence_score = low_confidence_score
        self.cooldown = cooldown
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        gateway: BasePersistenceGateway,
        notifier: BaseNotificationSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> KillSwitchController:
        return cls(
            gateway,
            notifier,
            failure_threshold=settings.killswitch_failure_threshold,
            low_confidence_threshold=settings.killswitch_low_confidence_threshold,
            low_confidence_score=settings.killswitch_low_confidence_score,
            cooldown=timedelta(hours=settings.killswitch_cooldown_hours),
            clock=clock,
        )

    # --- Eligibility ---

    async def check_eligibility(
        self, source_key: str, now: datetime | None = None
    ) -> Eligibility:
        """Decide whether a scheduled attempt may start.

        A failure cooldown whose retry_after has passed is cleared here,
        resetting the failure counter.
        """
        now = now or self._clock()
        config = await self._gateway.get_source_config(source_key)
        if config is None:
            return Eligibility(skipped=SkippedAttempt(
                source_key=source_key, reason="unknown_source",
                detail="no source configuration", at=now,
            ))
        if config.manually_disabled:
            return Eligibility(skipped=SkippedAttempt(
                source_key=source_key, reason="disabled",
                detail=config.disabled_reason or "manually disabled", at=now,
            ))
        if config.enabled:
            return Eligibility(config=config)

        if config.retry_after is not None:
            if now < config.retry_after:
                return Eligibility(skipped=SkippedAttempt(
                    source_key=source_key, reason="cooling_down",
                    detail=f"retry after {config.retry_after.isoformat()}", at=now,
                ))
            cleared = await self._update(source_key, _clear_cooldown)
            if not cleared.enabled:
                return Eligibility(skipped=SkippedAttempt(
                    source_key=source_key, reason="disabled",
                    detail=cleared.disabled_reason or "disabled", at=now,
                ))
            logger.info("Cooldown on '%s' expired, source re-enabled", source_key)
            await notify_safely(self._notifier, NotificationEvent(
                kind="source_cooldown_cleared", source_key=source_key,
                detail="cooldown expired", at=now,
            ))
            return Eligibility(config=cleared)

        return Eligibility(skipped=SkippedAttempt(
            source_key=source_key, reason="disabled",
            detail=config.disabled_reason or config.auto_disabled_reason or "disabled",
            at=now,
        ))

    # --- Run outcomes ---

    async def record_outcome(
        self,
        source_key: str,
        status: RunStatus,
        score: float | None,
        run_id: str | None = None,
        now: datetime | None = None,
    ) -> SourceConfig:
        """Fold one terminal run into the source's history.

        success and partial_success reset the failure counter; failures in
        COUNTED_FAILURES increment it; any other status leaves it alone.
        The low-confidence counter moves only when a score exists.
        """
        now = now or self._clock()
        transition: list[str] = []

        def apply(config: SourceConfig) -> SourceConfig:
            transition.clear()
            failures = config.consecutive_failures
            if status.is_success_class:
                failures = 0
            elif status in COUNTED_FAILURES:
                failures += 1

            low = config.consecutive_low_confidence
            if score is not None:
                low = low + 1 if score < self.low_confidence_score else 0

            update: dict[str, object] = {
                "consecutive_failures": failures,
                "consecutive_low_confidence": low,
                "last_status": status,
                "last_run_at": now,
            }
            if config.enabled and not config.manually_disabled:
                if low >= self.low_confidence_threshold:
                    update.update(
                        enabled=False,
                        auto_disabled_at=now,
                        auto_disabled_reason="low_confidence",
                        retry_after=None,
                    )
                    transition.append(
                        f"{low} consecutive runs scored below {self.low_confidence_score:g}"
                    )
                elif failures >= self.failure_threshold:
                    update.update(
                        enabled=False,
                        auto_disabled_at=now,
                        auto_disabled_reason="consecutive_failures",
                        retry_after=now + self.cooldown,
                    )
                    transition.append(
                        f"{failures} consecutive failures, last {status.value}"
                    )
            return config.model_copy(update=update)

        stored = await self._update(source_key, apply)
        if transition:
            logger.warning(
                "Source '%s' auto-disabled: %s (retry_after=%s)",
                source_key, transition[0],
                stored.retry_after.isoformat() if stored.retry_after else "manual",
            )
            await notify_safely(self._notifier, NotificationEvent(
                kind="source_disabled", source_key=source_key, run_id=run_id,
                status=status, confidence_score=score, detail=transition[0], at=now,
            ))
        return stored

    # --- Manual controls ---

    async def manual_disable(self, source_key: str, reason: str = "") -> SourceConfig:
        """Disable a source until manual_enable is called."""
        stored = await self._update(
            source_key,
            lambda c: c.model_copy(update={
                "enabled": False,
                "manually_disabled": True,
                "disabled_reason": reason or "manually disabled",
            }),
        )
        logger.warning("Source '%s' manually disabled: %s", source_key, stored.disabled_reason)
        await notify_safely(self._notifier, NotificationEvent(
            kind="source_disabled", source_key=source_key,
            detail=stored.disabled_reason or "", at=self._clock(),
        ))
        return stored

    async def manual_enable(self, source_key: str) -> SourceConfig:
        """Clear manual and automatic disablement and reset both counters."""
        stored = await self._update(
            source_key,
            lambda c: c.model_copy(update={
                "enabled": True,
                "manually_disabled": False,
                "disabled_reason": None,
                "auto_disabled_at": None,
                "auto_disabled_reason": None,
                "retry_after": None,
                "consecutive_failures": 0,
                "consecutive_low_confidence": 0,
            }),
        )
        logger.info("Source '%s' manually enabled", source_key)
        await notify_safely(self._notifier, NotificationEvent(
            kind="source_enabled", source_key=source_key,
            detail="manually enabled", at=self._clock(),
        ))
        return stored

    async def set_safe_mode(self, source_key: str, enabled: bool) -> SourceConfig:
        """Toggle safe mode. Independent of the disabled state."""
        stored = await self._update(
            source_key, lambda c: c.model_copy(update={"safe_mode": enabled})
        )
        logger.info("Safe mode %s for '%s'", "on" if enabled else "off", source_key)
        return stored

    # --- Internals ---

    async def _update(
        self,
        source_key: str,
        apply: Callable[[SourceConfig], SourceConfig],
    ) -> SourceConfig:
        """Read-modify-write with compare-and-set, retrying lost races."""
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            current = await self._gateway.get_source_config(source_key)
            if current is None:
                raise UnknownSourceError(f"Unknown source '{source_key}'")
            updated = apply(current)
            try:
                return await self._gateway.save_source_config(
                    updated, expected_version=current.version
                )
            except StaleSourceConfigError:
                if attempt == MAX_CAS_ATTEMPTS:
                    raise
                logger.debug(
                    "SourceConfig '%s' changed concurrently, retrying (%d/%d)",
                    source_key, attempt, MAX_CAS_ATTEMPTS,
                )
        raise AssertionError("unreachable")


def _clear_cooldown(config: SourceConfig) -> SourceConfig:
    if config.manually_disabled:
        return config
    return config.model_copy(update={
        "enabled": True,
        "auto_disabled_at": None,
        "auto_disabled_reason": None,
        "retry_after": None,
        "consecutive_failures": 0,
    })
