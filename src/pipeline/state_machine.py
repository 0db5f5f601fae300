# src/pipeline/state_machine.py — v1
"""Run state machine: one scheduled attempt for one source, end to end.

  init → fetch_list → parse_list → [fetch_details] → classify → score
       → finalize → terminal

init checks eligibility, takes the source lock, creates or resumes the run
record and validates the source configuration. Any stage may short-circuit
to a terminal failure; classify and score run once the listing has been
fetched and parsed, even on partial data. Runs that fail earlier are scored
from whatever they gathered; only config and budget failures end unscored.
finalize applies the score-gated mutation, updates the kill-switch history,
writes the immutable terminal record and notifies. The lock is released on
every path.

The lease is renewed at stage boundaries, at every checkpoint and between
requests once a third of the TTL has passed. A holder that finds its lease
gone stops where it is: the run now belongs to whoever took the lock, so it
writes no terminal record and leaves the kill switch alone. Run and
checkpoint writes are conditional on the holder, so a late write from the
old holder is rejected by the gateway.

A run left in ``running`` by a crashed holder is resumed by the next holder
when it carries a checkpoint, and closed as dependency_error otherwise.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from scrapegate.budget.budget_guard import BudgetExceeded, BudgetGuard
from scrapegate.checkpoint.checkpoint_store import CheckpointStore
from scrapegate.classification.error_classifier import (
    CONTENT_LAYER,
    ErrorClassifier,
    terminal_stage_failure,
)
from scrapegate.classification.retry import (
    BlockedCircuit,
    RetryExecutor,
    build_policies,
    retry_infrastructure,
)
from scrapegate.config.settings import Settings
from scrapegate.config.sources import validate_source_config
from scrapegate.core.errors import (
    BlobStoreError,
    LeaseLostError,
    PersistenceError,
    StageFailed,
    UnknownSourceError,
)
from scrapegate.core.models import (
    CheckpointPayload,
    Failure,
    FailureType,
    JobItem,
    MutationTier,
    NotificationEvent,
    Run,
    RunStatus,
    SkippedAttempt,
    SourceConfig,
    Stage,
    SymptomBundle,
    utcnow,
)
from scrapegate.gateway.adapter_registry import AdapterRegistry
from scrapegate.gateway.base_adapter import AdapterResult, BaseSourceAdapter, ItemValidationError
from scrapegate.gateway.base_blob_store import BaseBlobStore
from scrapegate.gateway.base_notifier import BaseNotificationSink, notify_safely
from scrapegate.gateway.base_persistence import BasePersistenceGateway
from scrapegate.killswitch.controller import KillSwitchController
from scrapegate.locking.lock_manager import LockManager, generate_holder_id
from scrapegate.logging.context import clear_context, set_run_context, set_stage_context
from scrapegate.pipeline.stages import check_transition, stages_after
from scrapegate.scoring.confidence import ScoringWeights, compute_confidence
from scrapegate.scoring.gating import (
    GatePolicy,
    allows_aggregates,
    allows_inactive_marking,
    allows_upsert,
)
from scrapegate.tracking.http_stats import merge_stats, record_exception, record_symptoms

logger = logging.getLogger(__name__)

_DB_ERRORS = {PersistenceError: FailureType.DATABASE_ERROR}
_BLOB_ERRORS = {BlobStoreError: FailureType.STORAGE_ERROR}
_CHECKPOINT_ERRORS = {
    BlobStoreError: FailureType.STORAGE_ERROR,
    PersistenceError: FailureType.DATABASE_ERROR,
}
# Outcomes that end a run without a confidence score
UNSCORED = frozenset({FailureType.CONFIG_ERROR, FailureType.BUDGET_EXCEEDED})


@dataclass
class RunContext:
    """Mutable working state of one executing run."""

    run: Run
    config: SourceConfig
    budget: BudgetGuard
    executor: RetryExecutor
    classifier: ErrorClassifier
    adapter: BaseSourceAdapter | None = None
    resume_from: CheckpointPayload | None = None
    completed: list[Stage] = field(default_factory=list)
    cursor: str | None = None
    listing: list[dict[str, Any]] = field(default_factory=list)
    items: list[JobItem] = field(default_factory=list)
    detail_done: list[str] = field(default_factory=list)
    classification: FailureType = FailureType.SUCCESS
    since_checkpoint: int = 0
    lease_renewed_at: datetime | None = None

    @property
    def source(self) -> BaseSourceAdapter:
        if self.adapter is None:
            raise StageFailed.of(
                FailureType.CONFIG_ERROR, Stage.INIT, f"adapter '{self.config.adapter}' not resolved"
            )
        return self.adapter

    def payload(self, include_data: bool = True) -> CheckpointPayload:
        self.run.counts.retries = self.executor.retry_count
        return CheckpointPayload(
            completed_stages=list(self.completed),
            cursor=self.cursor,
            listing=list(self.listing) if include_data and self.listing else None,
            items=[i.model_copy() for i in self.items] if include_data and self.items else None,
            detail_done_ids=list(self.detail_done),
            counts=self.run.counts.model_copy(),
            http_stats=self.run.http_stats.model_copy(deep=True),
            stage_durations=dict(self.run.stage_durations),
        )


class RunStateMachine:
    """Execute runs for sources under lock, budget, scoring and kill-switch control.

    Args:
        gateway: Persistence gateway.
        locks: Lock manager.
        checkpoints: Checkpoint store bound to the same gateway.
        killswitch: Kill-switch controller.
        registry: Adapter registry.
        settings: Application settings.
        blob_store: Detail page storage. Required by sources with fetch_details.
        notifier: Notification sink for terminal run events.
        clock: Timezone-aware UTC clock.
        monotonic: Monotonic clock in seconds, for durations and budgets.
        sleep: Awaitable sleeper used between retries.
    """

    def __init__(
        self,
        gateway: BasePersistenceGateway,
        locks: LockManager,
        checkpoints: CheckpointStore,
        killswitch: KillSwitchController,
        registry: AdapterRegistry,
        settings: Settings | None = None,
        blob_store: BaseBlobStore | None = None,
        notifier: BaseNotificationSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._gateway = gateway
        self._locks = locks
        self._checkpoints = checkpoints
        self._killswitch = killswitch
        self._registry = registry
        self._settings = settings if settings is not None else Settings(_env_file=None)
        self._blob_store = blob_store
        self._notifier = notifier
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

        self._policies = build_policies(self._settings)
        self._gate = GatePolicy.from_settings(self._settings)
        self._weights = ScoringWeights.from_settings(self._settings)
        self._lock_ttl = timedelta(minutes=self._settings.lock_ttl_minutes)
        self._renew_every = self._lock_ttl / 3
        self._interval = self._settings.checkpoint_interval_items

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self, source_key: str, holder_id: str | None = None) -> Run | SkippedAttempt:
        """Run one scheduled attempt for a source.

        Returns the terminal Run, or a SkippedAttempt when the source is
        disabled, cooling down, unknown or locked by another holder.

        Raises:
            asyncio.CancelledError: After the run was recorded as cancelled.
            Exception: Unexpected defects, after the run was recorded.
        """
        holder_id = holder_id or generate_holder_id()
        set_run_context(source_key)
        try:
            eligibility = await self._killswitch.check_eligibility(source_key, self._clock())
            if eligibility.skipped is not None or eligibility.config is None:
                skipped = eligibility.skipped or SkippedAttempt(
                    source_key=source_key, reason="unknown_source", at=self._clock()
                )
                logger.info(
                    "Skipping '%s': %s (%s)", source_key, skipped.reason, skipped.detail
                )
                return skipped

            lock = await self._locks.acquire(source_key, holder_id, self._lock_ttl)
            if lock is None:
                return SkippedAttempt(
                    source_key=source_key, reason="locked",
                    detail="another holder owns the source lock", at=self._clock(),
                )
            try:
                return await self._run_locked(eligibility.config, holder_id)
            finally:
                await self._release(source_key, holder_id)
        finally:
            clear_context()

    async def _run_locked(
        self, config: SourceConfig, holder_id: str
    ) -> Run | SkippedAttempt:
        ctx: RunContext | None = None
        lease_lost = False
        try:
            ctx = await self._open(config, holder_id)
            set_run_context(config.source_key, ctx.run.run_id)
            await self._drive(ctx)
            return ctx.run
        except LeaseLostError as exc:
            lease_lost = True
            logger.warning("Stopping run of '%s', lease lost: %s", config.source_key, exc)
            return SkippedAttempt(
                source_key=config.source_key, reason="lease_lost", detail=str(exc),
                at=self._clock(),
            )
        except asyncio.CancelledError:
            if ctx is not None and not ctx.run.is_terminal:
                logger.warning("Run %s cancelled during %s", ctx.run.run_id, ctx.run.stage.value)
                await self._finish_after_abort(ctx, "cancelled", update_killswitch=False)
            raise
        except StageFailed as exc:
            logger.error("Run of '%s' could not be recorded: %s", config.source_key, exc)
            raise
        except Exception as exc:
            logger.exception("Run of '%s' hit an unexpected defect", config.source_key)
            if ctx is not None and not ctx.run.is_terminal:
                await self._finish_after_abort(
                    ctx, f"defect: {type(exc).__name__}: {exc}", update_killswitch=True
                )
            raise
        finally:
            if ctx is not None and not lease_lost:
                self._checkpoints.forget(ctx.run.run_id)

    async def _drive(self, ctx: RunContext) -> None:
        try:
            await self._stages(ctx)
        except StageFailed as exc:
            await self._fail(ctx, exc.failure)
        except BudgetExceeded as exc:
            await self._fail(
                ctx,
                Failure(
                    type=FailureType.BUDGET_EXCEEDED,
                    stage=ctx.run.stage,
                    message=str(exc),
                    context={"resource": exc.resource, "used": exc.used, "limit": exc.limit},
                ),
                discard=True,
            )

    async def _stages(self, ctx: RunContext) -> None:
        self._validate(ctx)
        if ctx.resume_from is not None:
            await self._restore(ctx, ctx.resume_from)

        if Stage.FETCH_LIST not in ctx.completed:
            await self._in_stage(ctx, Stage.FETCH_LIST, self._fetch_list)
        if Stage.PARSE_LIST not in ctx.completed:
            await self._in_stage(ctx, Stage.PARSE_LIST, self._parse_list)
        if self._wants_details(ctx) and Stage.FETCH_DETAILS not in ctx.completed:
            await self._in_stage(ctx, Stage.FETCH_DETAILS, self._fetch_details)
        await self._in_stage(ctx, Stage.CLASSIFY, self._classify)
        await self._in_stage(ctx, Stage.SCORE, self._score)
        await self._in_stage(ctx, Stage.FINALIZE, self._finalize)

    async def _in_stage(
        self,
        ctx: RunContext,
        stage: Stage,
        fn: Callable[[RunContext], Awaitable[None]],
    ) -> None:
        check_transition(ctx.run.stage, stage)
        ctx.run.stage = stage
        set_stage_context(stage.value)
        await self._renew(ctx)
        ctx.budget.check(ctx.run.http_stats)

        started = self._monotonic()
        try:
            await fn(ctx)
        finally:
            elapsed = self._monotonic() - started
            durations = ctx.run.stage_durations
            durations[stage.value] = durations.get(stage.value, 0.0) + elapsed
        logger.debug("Stage %s done in %.2fs", stage.value, elapsed)

    # ------------------------------------------------------------------
    # init
    # ------------------------------------------------------------------

    async def _open(self, config: SourceConfig, holder_id: str) -> RunContext:
        """Create a run, or take over the newest abandoned run with a checkpoint."""
        now = self._clock()
        open_runs = await self._db(
            Stage.INIT, lambda: self._gateway.find_open_runs(config.source_key), "open runs"
        )
        resumable = next((r for r in reversed(open_runs) if r.checkpoint is not None), None)
        for stale in open_runs:
            if stale is not resumable:
                await self._close_abandoned(
                    stale, config, holder_id, now, superseded=resumable is not None
                )

        if resumable is None or resumable.checkpoint is None:
            run = Run(
                source_key=config.source_key,
                holder_id=holder_id,
                started_at=now,
                safe_mode=config.safe_mode,
            )
            await self._db(Stage.INIT, lambda: self._gateway.save_run(run), "create run")
            logger.info(
                "Run %s started for '%s'%s",
                run.run_id, config.source_key, " in safe mode" if run.safe_mode else "",
            )
            return self._context(run, config)

        payload = resumable.checkpoint.payload
        completed = list(payload.completed_stages)
        run = resumable.model_copy(update={
            "holder_id": holder_id,
            "resumed_count": resumable.resumed_count + 1,
            "safe_mode": config.safe_mode,
            "stage": completed[-1] if completed else Stage.INIT,
            "counts": payload.counts.model_copy(),
            "http_stats": payload.http_stats.model_copy(deep=True),
            "stage_durations": dict(payload.stage_durations),
        })
        await self._db(
            Stage.INIT,
            lambda: self._gateway.save_run(run, previous_holder=resumable.holder_id),
            "resume run",
        )
        logger.info(
            "Resuming run %s of '%s' (previous holder %s) after %s, remaining: %s",
            run.run_id, config.source_key, resumable.holder_id, run.stage.value,
            ", ".join(s.value for s in stages_after(run.stage)),
        )
        ctx = self._context(run, config, elapsed_offset_s=sum(payload.stage_durations.values()))
        ctx.resume_from = payload
        return ctx

    def _context(
        self, run: Run, config: SourceConfig, elapsed_offset_s: float = 0.0
    ) -> RunContext:
        settings = self._settings
        classifier = ErrorClassifier(config.adapter_options.get("block_page_hashes"))
        executor = RetryExecutor(
            classifier,
            self._policies,
            BlockedCircuit(settings.blocked_circuit_threshold),
            timeout_baseline_s=settings.timeout_baseline_s,
            timeout_max_multiplier=settings.timeout_max_multiplier,
            pacing_factor=settings.safe_mode_pacing_factor if run.safe_mode else 1.0,
            sleep=self._sleep,
            retry_count=run.counts.retries,
        )
        budget = BudgetGuard(config.budget, clock=self._monotonic, elapsed_offset_s=elapsed_offset_s)
        return RunContext(
            run=run, config=config, budget=budget, executor=executor, classifier=classifier
        )

    async def _close_abandoned(
        self, run: Run, config: SourceConfig, holder_id: str, now: datetime, superseded: bool
    ) -> None:
        message = (
            "superseded by a newer resumable run" if superseded
            else "abandoned by its holder without a checkpoint"
        )
        score = run.confidence_score
        if score is None:
            score = self._partial_score(run, config)
        closed = run.model_copy(update={
            "holder_id": holder_id,
            "status": RunStatus.DEPENDENCY_ERROR,
            "finished_at": now,
            "tier": MutationTier.NONE,
            "confidence_score": score,
            "failure": Failure(
                type=FailureType.DEPENDENCY_ERROR,
                stage=run.stage,
                message=message,
                context={"holder_id": run.holder_id},
            ),
        })
        await self._db(
            Stage.INIT,
            lambda: self._gateway.save_run(closed, previous_holder=run.holder_id),
            "close abandoned run",
        )
        logger.warning(
            "Closed run %s of '%s' as dependency_error: %s",
            run.run_id, run.source_key, message,
        )
        await notify_safely(self._notifier, NotificationEvent(
            kind="run_terminal", source_key=run.source_key, run_id=run.run_id,
            status=RunStatus.DEPENDENCY_ERROR, detail=message, at=now,
        ))

    def _validate(self, ctx: RunContext) -> None:
        set_stage_context(Stage.INIT.value)
        errors = validate_source_config(
            ctx.config, self._registry, blob_store_available=self._blob_store is not None
        )
        if errors:
            failure_type = ctx.classifier.classify(SymptomBundle(config_errors=errors))
            logger.error("Invalid configuration for '%s': %s", ctx.config.source_key, errors)
            raise StageFailed.of(failure_type, Stage.INIT, "; ".join(errors), errors=errors)
        ctx.adapter = self._registry.get(ctx.config.adapter)

    async def _restore(self, ctx: RunContext, payload: CheckpointPayload) -> None:
        ctx.completed = list(payload.completed_stages)
        ctx.cursor = payload.cursor
        ctx.detail_done = list(payload.detail_done_ids)
        ctx.listing = await retry_infrastructure(
            Stage.INIT, lambda: self._checkpoints.load_listing(payload),
            self._policies[FailureType.STORAGE_ERROR], _BLOB_ERRORS,
            sleep=self._sleep, label="restore listing",
        ) or []
        ctx.items = await retry_infrastructure(
            Stage.INIT, lambda: self._checkpoints.load_items(payload),
            self._policies[FailureType.STORAGE_ERROR], _BLOB_ERRORS,
            sleep=self._sleep, label="restore items",
        ) or []
        ctx.resume_from = None

    # ------------------------------------------------------------------
    # fetch_list / parse_list / fetch_details
    # ------------------------------------------------------------------

    async def _fetch_list(self, ctx: RunContext) -> None:
        adapter = ctx.source
        page = 0
        while True:
            page += 1
            await self._keep_lease(ctx)
            cursor = ctx.cursor
            result = await ctx.executor.call(
                Stage.FETCH_LIST,
                lambda options, cursor=cursor: adapter.fetch_list_page(ctx.config, cursor, options),
                lambda r, s: self._observe(ctx, r, s),
                label=f"page {page}",
            )
            ctx.listing.extend(result.records)
            ctx.run.counts.fetched = len(ctx.listing)
            ctx.since_checkpoint += len(result.records)
            ctx.cursor = result.next_cursor
            if ctx.cursor is None:
                break
            if ctx.since_checkpoint >= self._interval:
                await self._checkpoint(ctx, Stage.FETCH_LIST)

        ctx.completed.append(Stage.FETCH_LIST)
        await self._checkpoint(ctx, Stage.FETCH_LIST)
        logger.info("Listing fetched: %d record(s) over %d page(s)", len(ctx.listing), page)

    async def _parse_list(self, ctx: RunContext) -> None:
        adapter = ctx.source
        counts = ctx.run.counts
        start = counts.processed + counts.skipped
        for index in range(start, len(ctx.listing)):
            try:
                item = adapter.parse_item(ctx.config, ctx.listing[index])
            except ItemValidationError as exc:
                counts.invalid += 1
                logger.debug("Record %d invalid: %s", index, exc)
            except Exception as exc:  # adapter boundary: a bad record costs only itself
                counts.parse_failed += 1
                logger.debug("Record %d unparseable: %s: %s", index, type(exc).__name__, exc)
            else:
                ctx.items.append(item)
                counts.processed += 1
                ctx.since_checkpoint += 1
            counts.skipped = counts.invalid + counts.parse_failed
            if ctx.since_checkpoint >= self._interval:
                await self._checkpoint(ctx, Stage.PARSE_LIST)

        ctx.completed.append(Stage.PARSE_LIST)
        await self._checkpoint(ctx, Stage.PARSE_LIST)
        if counts.skipped:
            logger.warning(
                "%d of %d record(s) skipped (%d invalid, %d unparseable)",
                counts.skipped, counts.fetched, counts.invalid, counts.parse_failed,
            )

    def _wants_details(self, ctx: RunContext) -> bool:
        if not ctx.config.fetch_details:
            return False
        if ctx.run.safe_mode:
            logger.info("Safe mode: skipping fetch_details for '%s'", ctx.config.source_key)
            return False
        return True

    async def _fetch_details(self, ctx: RunContext) -> None:
        adapter = ctx.source
        blob_store = self._blob_store
        if blob_store is None:
            raise StageFailed.of(
                FailureType.CONFIG_ERROR, Stage.FETCH_DETAILS, "fetch_details needs a blob store"
            )
        source_key = ctx.config.source_key
        done = set(ctx.detail_done)

        for index, item in enumerate(ctx.items):
            if item.job_id in done:
                continue
            await self._keep_lease(ctx)
            try:
                result = await ctx.executor.call(
                    Stage.FETCH_DETAILS,
                    lambda options, item=item: adapter.fetch_detail(ctx.config, item, options),
                    lambda r, s: self._observe(ctx, r, s),
                    label=f"detail {item.job_id}",
                )
            except StageFailed as exc:
                if terminal_stage_failure(Stage.FETCH_DETAILS, exc.failure.type):
                    raise
                logger.info("Detail for %s is empty, keeping listing data", item.job_id)
            else:
                if result.detail_text:
                    text = result.detail_text
                    ref = await retry_infrastructure(
                        Stage.FETCH_DETAILS,
                        lambda item=item, text=text: blob_store.store_detail(
                            source_key, item.job_id, text
                        ),
                        self._policies[FailureType.STORAGE_ERROR],
                        _BLOB_ERRORS,
                        sleep=self._sleep,
                        label=f"store {item.job_id}",
                    )
                    ctx.items[index] = item.model_copy(update={"detail_ref": ref})
                    ctx.run.counts.details += 1

            ctx.detail_done.append(item.job_id)
            done.add(item.job_id)
            ctx.since_checkpoint += 1
            if ctx.since_checkpoint >= self._interval:
                await self._checkpoint(ctx, Stage.FETCH_DETAILS)

        ctx.completed.append(Stage.FETCH_DETAILS)
        await self._checkpoint(ctx, Stage.FETCH_DETAILS)
        logger.info("Details stored for %d of %d item(s)", ctx.run.counts.details, len(ctx.items))

    def _observe(
        self, ctx: RunContext, result: AdapterResult | None, symptoms: SymptomBundle | None
    ) -> None:
        """Fold one attempt into the run's stats, then enforce the budget."""
        stats = ctx.run.http_stats
        if result is not None:
            merge_stats(stats, result.stats)
        elif symptoms is not None:
            record_exception(stats, symptoms)
        if symptoms is not None:
            if symptoms.expected_content_type is None and symptoms.actual_content_type:
                symptoms.expected_content_type = ctx.config.expected_content_type
            if result is not None:
                record_symptoms(stats, symptoms)
        ctx.budget.check(stats)

    # ------------------------------------------------------------------
    # classify / score
    # ------------------------------------------------------------------

    async def _classify(self, ctx: RunContext) -> None:
        counts = ctx.run.counts
        outcome = "ok"
        if counts.processed == 0 and counts.skipped > 0:
            outcome = "failed" if counts.parse_failed >= counts.invalid else "invalid"
        ctx.classification = ctx.classifier.classify(SymptomBundle(
            parse_outcome=outcome,
            items_extracted=counts.processed,
        ))
        logger.info(
            "Classified as %s (fetched=%d processed=%d)",
            ctx.classification.value, counts.fetched, counts.processed,
        )

    async def _score(self, ctx: RunContext) -> None:
        run, config = ctx.run, ctx.config
        breakdown = compute_confidence(
            run.http_stats,
            fetched=run.counts.fetched,
            processed=run.counts.processed,
            expected_min=config.expected_min_jobs,
            weights=self._weights,
        )
        run.confidence_score = breakdown.score
        run.tier = self._gate.tier_for(breakdown.score, ctx.classification, run.safe_mode)
        if config.expected_max_jobs is not None and run.counts.fetched > config.expected_max_jobs:
            logger.warning(
                "Fetched %d job(s), above expected maximum %d",
                run.counts.fetched, config.expected_max_jobs,
            )
        logger.info(
            "Confidence %.3f → tier %s %s",
            breakdown.score, run.tier.value, breakdown.factors,
        )

    # ------------------------------------------------------------------
    # finalize / terminal
    # ------------------------------------------------------------------

    async def _finalize(self, ctx: RunContext) -> None:
        run = ctx.run
        tier = run.tier or MutationTier.NONE
        key = ctx.config.source_key

        if allows_upsert(tier):
            await self._checkpoint(ctx, Stage.FINALIZE)
            result = await self._db(
                Stage.FINALIZE,
                lambda: self._gateway.upsert_jobs(key, ctx.items, run.run_id),
                "upsert",
            )
            run.counts.new = result.new
            run.counts.updated = result.updated
        if allows_inactive_marking(tier):
            seen = {item.job_id for item in ctx.items}
            run.counts.inactive = await self._db(
                Stage.FINALIZE,
                lambda: self._gateway.mark_inactive(key, seen, run.started_at, run.run_id),
                "mark inactive",
            )
        if allows_aggregates(tier):
            await self._db(
                Stage.FINALIZE, lambda: self._gateway.update_aggregates(key, run), "aggregates"
            )

        status, failure = self._terminal_status(ctx)
        await self._finish(ctx, status, failure)

    def _terminal_status(self, ctx: RunContext) -> tuple[RunStatus, Failure | None]:
        run = ctx.run
        if ctx.classification is not FailureType.SUCCESS:
            return RunStatus.from_failure(ctx.classification), Failure(
                type=ctx.classification,
                stage=Stage.CLASSIFY,
                message=f"run classified as {ctx.classification.value}",
                context={"fetched": run.counts.fetched, "processed": run.counts.processed},
            )
        if run.tier is MutationTier.FULL:
            return RunStatus.SUCCESS, None
        if run.tier is MutationTier.PARTIAL:
            return RunStatus.PARTIAL_SUCCESS, None
        return RunStatus.VALIDATION_ERROR, Failure(
            type=FailureType.VALIDATION_ERROR,
            stage=Stage.SCORE,
            message=(
                f"confidence {run.confidence_score or 0.0:.3f} below "
                f"partial threshold {self._gate.partial_threshold:g}"
            ),
        )

    async def _fail(self, ctx: RunContext, failure: Failure, discard: bool = False) -> None:
        run = ctx.run
        logger.warning(
            "Run %s failed at %s with %s: %s",
            run.run_id, failure.stage.value, failure.type.value, failure.message,
        )
        if failure.type in UNSCORED:
            run.confidence_score = None
        elif failure.type in CONTENT_LAYER or run.confidence_score is None:
            run.confidence_score = self._partial_score(run, ctx.config)
        run.tier = MutationTier.NONE

        if discard and run.checkpoint is not None:
            ctx.listing, ctx.items = [], []
            try:
                await self._checkpoint(ctx, run.stage, include_data=False)
            except StageFailed as exc:
                logger.error("Could not discard checkpoint data of run %s: %s", run.run_id, exc)

        await self._finish(ctx, RunStatus.from_failure(failure.type), failure)

    async def _finish_after_abort(
        self, ctx: RunContext, message: str, update_killswitch: bool
    ) -> None:
        failure = Failure(
            type=FailureType.DEPENDENCY_ERROR, stage=ctx.run.stage, message=message
        )
        ctx.run.tier = MutationTier.NONE
        if ctx.run.confidence_score is None:
            ctx.run.confidence_score = self._partial_score(ctx.run, ctx.config)
        try:
            await self._finish(
                ctx, RunStatus.DEPENDENCY_ERROR, failure, update_killswitch=update_killswitch
            )
        except LeaseLostError as exc:
            logger.warning("Run %s left to its new holder: %s", ctx.run.run_id, exc)
        except Exception:
            logger.exception("Could not record terminal status of run %s", ctx.run.run_id)

    async def _finish(
        self,
        ctx: RunContext,
        status: RunStatus,
        failure: Failure | None,
        update_killswitch: bool = True,
    ) -> None:
        """Immutable terminal record, kill-switch update, notification.

        The record goes first: a holder that lost the run must not touch the
        kill-switch history.
        """
        run = ctx.run
        run.status = status
        run.failure = failure
        run.finished_at = self._clock()
        run.counts.retries = ctx.executor.retry_count
        if run.tier is None:
            run.tier = MutationTier.NONE

        await self._db(Stage.FINALIZE, lambda: self._gateway.save_run(run), "terminal record")
        if update_killswitch:
            try:
                await self._killswitch.record_outcome(
                    run.source_key, status, run.confidence_score, run.run_id, run.finished_at
                )
            except (PersistenceError, UnknownSourceError) as exc:
                logger.error("Kill-switch update for '%s' failed: %s", run.source_key, exc)
        logger.info(
            "Run %s finished %s: score=%s tier=%s fetched=%d processed=%d new=%d "
            "inactive=%d requests=%d retries=%d in %.1fs",
            run.run_id, status.value,
            "n/a" if run.confidence_score is None else f"{run.confidence_score:.3f}",
            run.tier.value, run.counts.fetched, run.counts.processed, run.counts.new,
            run.counts.inactive, run.http_stats.total_requests, run.counts.retries,
            run.duration_seconds,
        )
        await notify_safely(self._notifier, NotificationEvent(
            kind="run_terminal", source_key=run.source_key, run_id=run.run_id,
            status=status, confidence_score=run.confidence_score,
            detail=failure.message if failure else "", at=run.finished_at,
        ))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _checkpoint(self, ctx: RunContext, stage: Stage, include_data: bool = True) -> None:
        await self._renew(ctx)
        payload = ctx.payload(include_data)
        run = ctx.run
        run.checkpoint = await retry_infrastructure(
            stage,
            lambda: self._checkpoints.put(run.run_id, stage, payload, holder_id=run.holder_id),
            self._policies[FailureType.DATABASE_ERROR],
            _CHECKPOINT_ERRORS,
            sleep=self._sleep,
            label="checkpoint",
        )
        ctx.since_checkpoint = 0

    def _partial_score(self, run: Run, config: SourceConfig) -> float:
        return compute_confidence(
            run.http_stats,
            fetched=run.counts.fetched,
            processed=run.counts.processed,
            expected_min=config.expected_min_jobs,
            weights=self._weights,
        ).score

    async def _db(self, stage: Stage, fn: Callable[[], Awaitable[Any]], label: str) -> Any:
        return await retry_infrastructure(
            stage, fn, self._policies[FailureType.DATABASE_ERROR], _DB_ERRORS,
            sleep=self._sleep, label=label,
        )

    async def _renew(self, ctx: RunContext) -> None:
        run = ctx.run
        now = self._clock()
        if not await self._locks.renew(run.source_key, run.holder_id, self._lock_ttl):
            current = await self._locks.current(run.source_key)
            raise LeaseLostError(
                run.run_id, run.holder_id, current.holder_id if current else None
            )
        ctx.lease_renewed_at = now

    async def _keep_lease(self, ctx: RunContext) -> None:
        """Renew between requests once a third of the TTL has gone by."""
        last = ctx.lease_renewed_at
        if last is None or self._clock() - last >= self._renew_every:
            await self._renew(ctx)

    async def _release(self, source_key: str, holder_id: str) -> None:
        try:
            await self._locks.release(source_key, holder_id)
        except Exception:
            logger.exception(
                "Lock release on '%s' failed, lease expiry will free it", source_key
            )
