# tests/unit/classification/test_retry.py — v1
"""Tests for classification/retry.py — policy table, executor, infra retry."""

from __future__ import annotations

import pytest

from scrapegate.classification.error_classifier import ErrorClassifier
from scrapegate.classification.retry import (
    BlockedCircuit,
    RequestOptions,
    RetryExecutor,
    RetryPolicy,
    build_policies,
    retry_infrastructure,
)
from scrapegate.config.settings import Settings
from scrapegate.core.errors import PersistenceError, StageFailed, UnknownSourceError
from scrapegate.core.models import FailureType, Stage, SymptomBundle
from scrapegate.gateway.base_adapter import AdapterResult


class Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _scripted(*steps):
    """Adapter call returning/raising each step in turn, recording options."""
    seen: list[RequestOptions] = []
    queue = list(steps)

    async def call(options: RequestOptions) -> AdapterResult:
        seen.append(options)
        step = queue.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    return call, seen


def _executor(sleeps: Sleeps, threshold: int = 3) -> RetryExecutor:
    return RetryExecutor(
        ErrorClassifier(),
        build_policies(Settings(_env_file=None)),
        BlockedCircuit(threshold),
        sleep=sleeps,
    )


OK = AdapterResult(records=[{"id": "1"}])


def _status(code: int, retry_after: float | None = None) -> AdapterResult:
    return AdapterResult(symptoms=SymptomBundle(http_status=code, retry_after_s=retry_after))


class TestRetryPolicy:
    def test_exponential(self):
        policy = RetryPolicy(max_attempts=4, strategy="exponential", base_delay_s=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_linear(self):
        policy = RetryPolicy(max_attempts=3, strategy="linear", base_delay_s=1.5)
        assert policy.delay_for(2) == 3.0

    def test_wait_hint_raises_delay(self):
        policy = RetryPolicy(
            max_attempts=3, strategy="exponential", base_delay_s=2.0, honor_wait_hint=True
        )
        assert policy.delay_for(1, wait_hint_s=30.0) == 30.0
        assert policy.delay_for(1, wait_hint_s=0.5) == 2.0

    def test_capped(self):
        policy = RetryPolicy(max_attempts=9, strategy="exponential", base_delay_s=10.0, max_delay_s=25.0)
        assert policy.delay_for(5) == 25.0

    def test_content_and_control_never_retry(self):
        policies = build_policies()
        for failure_type in (
            FailureType.PARSE_ERROR, FailureType.VALIDATION_ERROR,
            FailureType.EMPTY_RESPONSE, FailureType.CONFIG_ERROR,
            FailureType.BUDGET_EXCEEDED,
        ):
            assert not policies[failure_type].retries


class TestRetryExecutor:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        sleeps = Sleeps()
        fn, seen = _scripted(OK)
        observed = []
        result = await _executor(sleeps).call(
            Stage.FETCH_LIST, fn, lambda r, s: observed.append((r, s))
        )
        assert result is OK
        assert len(observed) == 1
        assert seen[0].attempt == 1 and sleeps.delays == []

    @pytest.mark.asyncio
    async def test_rate_limited_backs_off_then_succeeds(self):
        sleeps = Sleeps()
        fn, seen = _scripted(_status(429), _status(429, retry_after=10.0), OK)
        executor = _executor(sleeps)
        result = await executor.call(Stage.FETCH_LIST, fn, lambda r, s: None)
        assert result is OK
        assert sleeps.delays == [2.0, 10.0]
        assert [o.attempt for o in seen] == [1, 2, 3]
        assert executor.retry_count == 2

    @pytest.mark.asyncio
    async def test_retry_count_continues_from_resumed_run(self):
        fn, _ = _scripted(_status(429), OK)
        executor = RetryExecutor(
            ErrorClassifier(),
            build_policies(Settings(_env_file=None)),
            BlockedCircuit(3),
            sleep=Sleeps(),
            retry_count=4,
        )
        await executor.call(Stage.FETCH_LIST, fn, lambda r, s: None)
        assert executor.retry_count == 5

    @pytest.mark.asyncio
    async def test_rate_limited_exhausted(self):
        fn, _ = _scripted(_status(429), _status(429), _status(429))
        with pytest.raises(StageFailed) as exc_info:
            await _executor(Sleeps()).call(Stage.FETCH_LIST, fn, lambda r, s: None)
        failure = exc_info.value.failure
        assert failure.type is FailureType.RATE_LIMITED
        assert failure.attempts == 3
        assert failure.context["http_status"] == 429

    @pytest.mark.asyncio
    async def test_blocked_rotates_egress_and_opens_circuit(self):
        fn, seen = _scripted(_status(403), _status(403), _status(403))
        with pytest.raises(StageFailed) as exc_info:
            await _executor(Sleeps()).call(Stage.FETCH_LIST, fn, lambda r, s: None)
        assert exc_info.value.failure.type is FailureType.BLOCKED
        assert exc_info.value.failure.context["circuit_open"] is True
        assert [o.rotate_egress for o in seen] == [False, True, True]

    @pytest.mark.asyncio
    async def test_circuit_is_shared_across_calls(self):
        policies = build_policies()
        policies[FailureType.BLOCKED] = RetryPolicy(max_attempts=2, strategy="rotate")
        executor = RetryExecutor(
            ErrorClassifier(), policies, BlockedCircuit(3), sleep=Sleeps()
        )
        fn, _ = _scripted(_status(403), _status(403))
        with pytest.raises(StageFailed) as first:
            await executor.call(Stage.FETCH_DETAILS, fn, lambda r, s: None)
        assert "circuit_open" not in first.value.failure.context

        fn2, seen = _scripted(_status(403))
        with pytest.raises(StageFailed) as second:
            await executor.call(Stage.FETCH_DETAILS, fn2, lambda r, s: None)
        assert second.value.failure.context["circuit_open"] is True
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_timeout_escalates_up_to_cap(self):
        fn, seen = _scripted(TimeoutError("t"), TimeoutError("t"), TimeoutError("t"))
        with pytest.raises(StageFailed) as exc_info:
            await _executor(Sleeps()).call(Stage.FETCH_LIST, fn, lambda r, s: None)
        assert exc_info.value.failure.type is FailureType.TIMEOUT
        assert [o.timeout_s for o in seen] == [30.0, 60.0, 90.0]

    @pytest.mark.asyncio
    async def test_parse_failure_is_not_retried(self):
        fn, seen = _scripted(AdapterResult(symptoms=SymptomBundle(parse_outcome="failed")))
        with pytest.raises(StageFailed) as exc_info:
            await _executor(Sleeps()).call(Stage.FETCH_LIST, fn, lambda r, s: None)
        assert exc_info.value.failure.type is FailureType.PARSE_ERROR
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_adapter_exception_is_classified_and_observed(self):
        fn, _ = _scripted(ConnectionError("refused"), OK)
        observed: list[SymptomBundle | None] = []
        result = await _executor(Sleeps()).call(
            Stage.FETCH_LIST, fn, lambda r, s: observed.append(s)
        )
        assert result is OK
        assert observed[0].exception_kind == "connection"
        assert observed[1] is None

    @pytest.mark.asyncio
    async def test_internal_errors_pass_through(self):
        fn, _ = _scripted(UnknownSourceError("gone"))
        with pytest.raises(UnknownSourceError):
            await _executor(Sleeps()).call(Stage.FETCH_LIST, fn, lambda r, s: None)

    @pytest.mark.asyncio
    async def test_observer_exception_propagates(self):
        fn, _ = _scripted(OK)

        def observer(result, symptoms):
            raise RuntimeError("budget")

        with pytest.raises(RuntimeError, match="budget"):
            await _executor(Sleeps()).call(Stage.FETCH_LIST, fn, observer)


class TestRetryInfrastructure:
    @pytest.mark.asyncio
    async def test_recovers_with_linear_backoff(self):
        sleeps = Sleeps()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise PersistenceError("locked")
            return "ok"

        result = await retry_infrastructure(
            Stage.FINALIZE, flaky,
            RetryPolicy(max_attempts=3, strategy="linear", base_delay_s=1.0),
            {PersistenceError: FailureType.DATABASE_ERROR},
            sleep=sleeps,
        )
        assert result == "ok"
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_maps_failure_type(self):
        async def broken():
            raise PersistenceError("disk I/O error")

        with pytest.raises(StageFailed) as exc_info:
            await retry_infrastructure(
                Stage.FINALIZE, broken, RetryPolicy(max_attempts=2, strategy="linear"),
                {PersistenceError: FailureType.DATABASE_ERROR}, sleep=Sleeps(),
            )
        assert exc_info.value.failure.type is FailureType.DATABASE_ERROR
        assert exc_info.value.failure.attempts == 2
        assert isinstance(exc_info.value.__cause__, PersistenceError)

    @pytest.mark.asyncio
    async def test_unmapped_errors_propagate(self):
        async def bug():
            raise KeyError("x")

        with pytest.raises(KeyError):
            await retry_infrastructure(
                Stage.FINALIZE, bug, RetryPolicy(max_attempts=3),
                {PersistenceError: FailureType.DATABASE_ERROR}, sleep=Sleeps(),
            )
