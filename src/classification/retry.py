# src/classification/retry.py — v1
"""Classification-driven retry policy as explicit bounded iteration.

Each failure type maps to one RetryPolicy. The executor calls a stage
operation, classifies the outcome, and either returns, retries (logging the
attempt count and the next delay) or raises StageFailed.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal

from scrapegate.classification.error_classifier import (
    ErrorClassifier,
    symptoms_from_exception,
)
from scrapegate.core.errors import ScrapegateError, StageFailed
from scrapegate.core.models import FailureType, Stage, SymptomBundle
from scrapegate.logging.context import set_stage_context

if TYPE_CHECKING:
    from scrapegate.config.settings import Settings
    from scrapegate.gateway.base_adapter import AdapterResult

logger = logging.getLogger(__name__)

Strategy = Literal["none", "exponential", "linear", "rotate", "escalate_timeout"]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy for a specific failure type."""

    max_attempts: int
    strategy: Strategy = "none"
    base_delay_s: float = 0.0
    max_delay_s: float = 300.0
    honor_wait_hint: bool = False
    jitter: bool = False

    @property
    def retries(self) -> bool:
        return self.max_attempts > 1

    def delay_for(self, attempt: int, wait_hint_s: float | None = None) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        if self.strategy == "exponential":
            delay = self.base_delay_s * (2 ** (attempt - 1))
        elif self.strategy == "linear":
            delay = self.base_delay_s * attempt
        else:
            delay = 0.0
        if self.honor_wait_hint and wait_hint_s is not None:
            delay = max(delay, wait_hint_s)
        if self.jitter and delay > 0:
            delay *= 0.5 + random.random()  # noqa: S311
        return min(delay, self.max_delay_s)


NO_RETRY = RetryPolicy(max_attempts=1)


def build_policies(settings: Settings | None = None) -> dict[FailureType, RetryPolicy]:
    """Build the failure-type → retry policy table from settings."""
    rl_attempts = 3 if settings is None else settings.rate_limit_max_attempts
    rl_delay = 2.0 if settings is None else settings.rate_limit_base_delay_s
    rl_max = 120.0 if settings is None else settings.rate_limit_max_delay_s
    blocked = 3 if settings is None else settings.blocked_circuit_threshold
    proxy = 3 if settings is None else settings.proxy_max_attempts
    infra = 3 if settings is None else settings.infra_max_attempts
    infra_step = 1.0 if settings is None else settings.infra_backoff_step_s

    infra_policy = RetryPolicy(
        max_attempts=infra, strategy="linear", base_delay_s=infra_step
    )
    return {
        FailureType.RATE_LIMITED: RetryPolicy(
            max_attempts=rl_attempts,
            strategy="exponential",
            base_delay_s=rl_delay,
            max_delay_s=rl_max,
            honor_wait_hint=True,
        ),
        FailureType.BLOCKED: RetryPolicy(max_attempts=blocked, strategy="rotate"),
        FailureType.PROXY_ERROR: RetryPolicy(max_attempts=proxy, strategy="rotate"),
        FailureType.TIMEOUT: RetryPolicy(max_attempts=3, strategy="escalate_timeout"),
        FailureType.PARSE_ERROR: NO_RETRY,
        FailureType.VALIDATION_ERROR: NO_RETRY,
        FailureType.EMPTY_RESPONSE: NO_RETRY,
        FailureType.DATABASE_ERROR: infra_policy,
        FailureType.STORAGE_ERROR: infra_policy,
        FailureType.DEPENDENCY_ERROR: infra_policy,
        FailureType.CONFIG_ERROR: NO_RETRY,
        FailureType.BUDGET_EXCEEDED: NO_RETRY,
    }


@dataclass(frozen=True)
class RequestOptions:
    """Per-attempt request hints handed to the source adapter."""

    attempt: int = 1
    rotate_egress: bool = False
    timeout_s: float = 30.0
    pacing_factor: float = 1.0


class BlockedCircuit:
    """Counts consecutive blocked outcomes for one source within a run."""

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = threshold
        self.consecutive = 0

    def record(self, failure_type: FailureType) -> bool:
        """Record an outcome; return True when the circuit is open."""
        if failure_type is FailureType.BLOCKED:
            self.consecutive += 1
        else:
            self.consecutive = 0
        return self.consecutive >= self.threshold

    @property
    def is_open(self) -> bool:
        return self.consecutive >= self.threshold


class RetryExecutor:
    """Run adapter calls under the classification-to-policy table.

    Args:
        classifier: Symptom classifier.
        policies: Failure type → policy table.
        circuit: Blocked circuit shared by all calls of one run.
        timeout_baseline_s: Baseline request timeout ceiling.
        timeout_max_multiplier: Cap for escalating timeouts.
        pacing_factor: Request pacing multiplier (raised in safe mode).
        sleep: Awaitable sleeper (injected in tests).
        retry_count: Retries the run already spent, when resuming.
    """

    def __init__(
        self,
        classifier: ErrorClassifier,
        policies: dict[FailureType, RetryPolicy],
        circuit: BlockedCircuit,
        timeout_baseline_s: float = 30.0,
        timeout_max_multiplier: float = 3.0,
        pacing_factor: float = 1.0,
        sleep: Sleeper = asyncio.sleep,
        retry_count: int = 0,
    ) -> None:
        self._classifier = classifier
        self._policies = policies
        self._circuit = circuit
        self._timeout_baseline_s = timeout_baseline_s
        self._timeout_max_multiplier = timeout_max_multiplier
        self._pacing_factor = pacing_factor
        self._sleep = sleep
        self.retry_count = retry_count

    async def call(
        self,
        stage: Stage,
        fn: Callable[[RequestOptions], Awaitable[AdapterResult]],
        on_result: Callable[[AdapterResult | None, SymptomBundle | None], None],
        label: str = "",
    ) -> AdapterResult:
        """Call ``fn`` until it succeeds or its failure class is exhausted.

        ``on_result`` sees every attempt (stats merge, budget check) before
        classification; exceptions it raises propagate untouched.

        Raises:
            StageFailed: Unrecoverable classified failure.
        """
        options = RequestOptions(
            timeout_s=self._timeout_baseline_s, pacing_factor=self._pacing_factor
        )
        attempt = 1
        while True:
            set_stage_context(stage.value, attempt)
            result: AdapterResult | None = None
            try:
                result = await fn(options)
                symptoms = result.symptoms
            except ScrapegateError:
                raise
            except Exception as exc:  # adapter boundary: classify, never leak
                symptoms = symptoms_from_exception(exc)

            on_result(result, symptoms)

            failure_type = (
                FailureType.SUCCESS if symptoms is None
                else self._classifier.classify(symptoms)
            )
            if failure_type is FailureType.SUCCESS and result is None:
                # A call that raised is never a success
                failure_type = FailureType.DEPENDENCY_ERROR
            circuit_open = self._circuit.record(failure_type)
            if failure_type is FailureType.SUCCESS and result is not None:
                return result

            message = (symptoms.message if symptoms else None) or failure_type.value
            if failure_type is FailureType.BLOCKED and circuit_open:
                logger.error(
                    "%s%s blocked %d consecutive times, circuit open",
                    stage.value, _suffix(label), self._circuit.consecutive,
                )
                raise StageFailed.of(
                    failure_type, stage, message, attempts=attempt,
                    circuit_open=True, http_status=symptoms.http_status if symptoms else None,
                )

            policy = self._policies.get(failure_type, NO_RETRY)
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s%s failed with %s after %d attempt(s), giving up",
                    stage.value, _suffix(label), failure_type.value, attempt,
                )
                raise StageFailed.of(
                    failure_type, stage, message, attempts=attempt,
                    http_status=symptoms.http_status if symptoms else None,
                )

            delay = policy.delay_for(attempt, symptoms.retry_after_s if symptoms else None)
            attempt += 1
            self.retry_count += 1
            options = self._next_options(options, policy, attempt)
            logger.warning(
                "%s%s got %s, retrying (attempt %d/%d) in %.1fs%s",
                stage.value, _suffix(label), failure_type.value, attempt,
                policy.max_attempts, delay,
                " with egress rotation" if options.rotate_egress else "",
            )
            if delay > 0:
                await self._sleep(delay)

    def _next_options(
        self, options: RequestOptions, policy: RetryPolicy, attempt: int
    ) -> RequestOptions:
        if policy.strategy == "rotate":
            return replace(options, attempt=attempt, rotate_egress=True)
        if policy.strategy == "escalate_timeout":
            multiplier = min(float(attempt), self._timeout_max_multiplier)
            return replace(
                options,
                attempt=attempt,
                rotate_egress=False,
                timeout_s=self._timeout_baseline_s * multiplier,
            )
        return replace(options, attempt=attempt, rotate_egress=False)


async def retry_infrastructure(
    stage: Stage,
    fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    errors: Mapping[type[Exception], FailureType],
    sleep: Sleeper = asyncio.sleep,
    label: str = "",
) -> Any:
    """Fixed-count, linear-backoff retry for persistence and blob calls.

    ``errors`` maps retryable exception classes to the failure type they
    surface as; the first matching entry wins.

    Raises:
        StageFailed: With the mapped failure type once attempts are exhausted.
    """
    retryable = tuple(errors)
    attempt = 1
    while True:
        try:
            return await fn()
        except retryable as exc:
            failure_type = next(ft for cls, ft in errors.items() if isinstance(exc, cls))
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s%s %s after %d attempt(s): %s",
                    stage.value, _suffix(label), failure_type.value, attempt, exc,
                )
                raise StageFailed.of(
                    failure_type, stage, str(exc), attempts=attempt
                ) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s%s %s (attempt %d/%d), retrying in %.1fs: %s",
                stage.value, _suffix(label), failure_type.value, attempt,
                policy.max_attempts, delay, exc,
            )
            attempt += 1
            if delay > 0:
                await sleep(delay)


def _suffix(label: str) -> str:
    return f" [{label}]" if label else ""
