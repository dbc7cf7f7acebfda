"""
Extraction Run Orchestrator.

Owns the lifecycle of one extraction run:

    pending -> running -> {paused <-> running} -> {completed | failed | cancelled}

A failed run may be resumed: it re-enters running under the same run id
with a new job, and only the emails without an extraction record are
dispatched again.

Flow:
1. prepare_run() / prepare_resume() validate synchronously and allocate
   the run and job. Precondition errors are raised before any write.
2. execute() is an async generator of progress events. It dispatches
   fixed-size windows of concurrent extraction calls, buffers outcomes,
   and flushes through the BatchCommitter every commit_batch_size emails.
3. run() drives execute() to its terminal event for callers that do not
   stream.

Durable rows are authoritative. The in-process JobRegistry only routes
pause/cancel to live jobs and serves their counters.
"""

import asyncio
import logging
import random
import time
import traceback
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from .. import __version__
from ..config import Config
from ..extractors.base import (
    ExtractionAPIError,
    ExtractionInvoker,
    ExtractionParseError,
    ExtractionTimeoutError,
)
from ..schemas.extraction import ExtractionResult, SchemaValidationError, decimal_to_str
from ..state_store import (
    JobRecord,
    JobStatus,
    PromptRecord,
    RunCounters,
    RunRecord,
    RunStatus,
    SourceRecord,
    StateStore,
)
from .batch_committer import BatchBuffer, BatchCommitter
from .progress import (
    BatchCommittedEvent,
    CompletedEvent,
    ErrorEvent,
    JobRegistry,
    ProgressEvent,
    ProgressUpdate,
    RegistryEntry,
    RunControl,
    StartedEvent,
)

logger = logging.getLogger(__name__)

SOFTWARE_VERSION = __version__
STALE_RUN_MESSAGE = "Job interrupted by server restart"
CANCELLED_MESSAGE = "Job cancelled"


# ============================================================================
# Errors
# ============================================================================


class OrchestrationError(Exception):
    """Base exception for run orchestration."""

    pass


class PreconditionError(OrchestrationError):
    """A run could not be started or resumed. Nothing was written."""

    pass


class MissingInputError(PreconditionError):
    """A required input (set, prompt, model) was not given."""

    pass


class UnknownEntityError(PreconditionError):
    """A referenced set, model, prompt or run does not exist."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class AlreadyExtractedError(PreconditionError):
    """The same set was already fully extracted with the same configuration."""

    def __init__(self, run: RunRecord):
        self.run = run
        super().__init__(
            f"Email set already extracted by run {run.id} (version {run.version}) "
            f"with model {run.model_id} and the same prompt"
        )


class RunNotResumableError(PreconditionError):
    """Resume was requested for a run that is not failed."""

    pass


class JobCancelledError(OrchestrationError):
    """Raised inside the dispatch loop when cancellation is observed."""

    pass


def classify_error(exc: BaseException) -> str:
    """
    Map a per-record failure to an error type for the extraction log.

    Known exception types are mapped directly; anything else is
    classified by keywords in its message.
    """
    if isinstance(exc, SchemaValidationError):
        return "schema_validation"
    if isinstance(exc, (ExtractionTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(exc, ExtractionAPIError):
        return "api_error"
    if isinstance(exc, ExtractionParseError):
        return "parse_error"

    message = str(exc).lower()
    if "schema" in message or "no object generated" in message:
        return "schema_validation"
    if "api" in message or "rate limit" in message or "429" in message:
        return "api_error"
    if "timeout" in message or "timed out" in message:
        return "timeout"
    if "parse" in message or "json" in message:
        return "parse_error"
    return "unknown"


# ============================================================================
# Run plan and state
# ============================================================================


@dataclass
class RunPlan:
    """A validated, allocated run ready for execute()."""

    run: RunRecord
    job: JobRecord
    prompt: PromptRecord
    email_ids: list[str]
    concurrency: int
    is_resume: bool = False
    base: RunCounters = field(default_factory=RunCounters)
    base_stats: dict[str, Any] = field(default_factory=dict)

    @property
    def total_items(self) -> int:
        return self.base.emails_processed + len(self.email_ids)


@dataclass
class _Outcome:
    email_id: str
    result: ExtractionResult | None
    error: Exception | None
    processing_time_ms: int


@dataclass
class _RunState:
    """Per-execution mutable state. Never shared across jobs."""

    counters: RunCounters
    committed: RunCounters
    by_type: dict[str, int]
    confidence_sum: Decimal
    confidence_count: int
    prior_time_ms: int
    committed_by_type: dict[str, int] = field(default_factory=dict)
    committed_confidence_sum: Decimal = Decimal(0)
    committed_confidence_count: int = 0
    started: float = field(default_factory=time.monotonic)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def record_result(self, result: ExtractionResult) -> None:
        self.counters.emails_processed += 1
        if not result.has_transactions:
            self.counters.informational_count += 1
            return
        self.counters.transactions_created += len(result.transactions)
        for candidate in result.transactions:
            key = candidate.transaction_type.value
            self.by_type[key] = self.by_type.get(key, 0) + 1
            if candidate.confidence is not None:
                self.confidence_sum += candidate.confidence
                self.confidence_count += 1

    def record_failure(self) -> None:
        self.counters.emails_processed += 1
        self.counters.error_count += 1

    def mark_committed(self) -> None:
        """Snapshot everything the last flush made durable."""
        self.committed = replace(self.counters)
        self.committed_by_type = dict(self.by_type)
        self.committed_confidence_sum = self.confidence_sum
        self.committed_confidence_count = self.confidence_count


class ExtractionOrchestrator:
    """
    Runs extraction jobs over email sets.

    One instance can drive several jobs concurrently on the same event
    loop; each execute() call keeps its own buffers and account cache.
    """

    def __init__(
        self,
        store: StateStore,
        invoker: ExtractionInvoker,
        config: Config,
        registry: JobRegistry | None = None,
        rng: random.Random | None = None,
    ):
        """
        Args:
            store: Durable state store
            invoker: Extraction invoker (e.g. OllamaExtractor)
            config: Application config (extraction tunables, default model)
            registry: In-process job table; a private one is created if omitted
            rng: Random source for sampling (injectable for tests)
        """
        self.store = store
        self.invoker = invoker
        self.config = config
        self.registry = registry or JobRegistry()
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_stale(self, now: datetime | None = None) -> int:
        """
        Fail runs and jobs left running by a dead process.

        Safe to call redundantly from several processes: only rows whose
        heartbeat is older than extraction.stale_after_minutes are touched.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self.config.extraction.stale_after_minutes)
        swept = self.store.sweep_stale_runs(cutoff, STALE_RUN_MESSAGE)
        if swept:
            logger.info(f"Swept {swept} stale runs to failed")
        return swept

    # ------------------------------------------------------------------
    # Preparation (synchronous, all-or-nothing)
    # ------------------------------------------------------------------

    def _resolve_concurrency(self, concurrency: int | None) -> int:
        value = concurrency if concurrency is not None else self.config.extraction.concurrency
        if value < 1:
            raise PreconditionError("concurrency must be at least 1")
        return value

    def prepare_run(
        self,
        set_id: str | None,
        prompt_id: str | None,
        model_id: str | None = None,
        concurrency: int | None = None,
        sample_size: int | None = None,
        name: str | None = None,
        description: str | None = None,
    ) -> RunPlan:
        """
        Validate and allocate a new run.

        Raises:
            MissingInputError: set or prompt not given
            UnknownEntityError: set, model or prompt does not exist
            AlreadyExtractedError: a completed run with the same configuration exists
            PreconditionError: invalid concurrency, sample size or empty set
        """
        if not set_id:
            raise MissingInputError("An email set is required")
        if not prompt_id:
            raise MissingInputError("A prompt is required")
        model_id = model_id or self.config.llm.default_model
        if not model_id:
            raise MissingInputError("A model is required")
        concurrency = self._resolve_concurrency(concurrency)

        self.sweep_stale()

        if self.store.get_email_set(set_id) is None:
            raise UnknownEntityError("Email set", set_id)
        if self.store.get_model(model_id) is None:
            raise UnknownEntityError("Model", model_id)
        prompt = self.store.get_prompt(prompt_id)
        if prompt is None:
            raise UnknownEntityError("Prompt", prompt_id)

        email_ids = self.store.list_email_ids(set_id)
        if not email_ids:
            raise PreconditionError(f"Email set {set_id} has no emails")

        existing = self.store.find_completed_run(
            set_id, model_id, prompt_id, SOFTWARE_VERSION, prompt.content_hash
        )
        if existing is not None:
            raise AlreadyExtractedError(existing)

        base_stats: dict[str, Any] = {}
        if sample_size is not None:
            if sample_size < 1:
                raise PreconditionError("sample size must be at least 1")
            if sample_size < len(email_ids):
                email_ids = self.rng.sample(email_ids, sample_size)
                base_stats = {"sampleSize": sample_size, "emailIds": list(email_ids)}

        run, job = self.store.create_run_with_job(
            set_id=set_id,
            model_id=model_id,
            prompt_id=prompt_id,
            prompt_hash=prompt.content_hash,
            software_version=SOFTWARE_VERSION,
            total_items=len(email_ids),
            name=name,
            description=description,
        )
        logger.info(
            f"Created run {run.id} (version {run.version}) for set {set_id}: "
            f"{len(email_ids)} emails, model {model_id}, job {job.id}"
        )
        return RunPlan(
            run=run,
            job=job,
            prompt=prompt,
            email_ids=email_ids,
            concurrency=concurrency,
            base_stats=base_stats,
        )

    def prepare_resume(self, run_id: str | None, concurrency: int | None = None) -> RunPlan:
        """
        Validate and re-open a failed run under a new job.

        Raises:
            MissingInputError: no run id given
            UnknownEntityError: run or its prompt does not exist
            RunNotResumableError: run is completed or already running
        """
        if not run_id:
            raise MissingInputError("A run id is required")
        concurrency = self._resolve_concurrency(concurrency)

        self.sweep_stale()

        run = self.store.get_run(run_id)
        if run is None:
            raise UnknownEntityError("Run", run_id)
        if run.status == RunStatus.COMPLETED:
            raise RunNotResumableError("Cannot resume a completed run")
        if run.status == RunStatus.RUNNING:
            raise RunNotResumableError("Run is already in progress")

        prompt = self.store.get_prompt(run.prompt_id)
        if prompt is None:
            raise UnknownEntityError("Prompt", run.prompt_id)
        if run.prompt_hash and prompt.content_hash != run.prompt_hash:
            logger.warning(f"Prompt {prompt.id} changed since run {run.id} started")

        coverage = self.store.get_run_coverage(run.id)
        selected = run.stats.get("emailIds") or self.store.list_email_ids(run.set_id)
        remaining = [e for e in selected if e not in coverage.covered_email_ids]

        job = self.store.attach_job_to_run(run.id, total_items=len(selected))
        if job is None:
            raise RunNotResumableError("Run is no longer in a resumable state")
        run = self.store.get_run(run.id)

        base = RunCounters(
            emails_processed=len(coverage.covered_email_ids),
            transactions_created=coverage.transaction_count,
            informational_count=coverage.informational_count,
            error_count=0,
        )
        logger.info(
            f"Resuming run {run.id} with job {job.id}: "
            f"{len(remaining)} remaining, {base.emails_processed} already recorded"
        )
        return RunPlan(
            run=run,
            job=job,
            prompt=prompt,
            email_ids=remaining,
            concurrency=concurrency,
            is_resume=True,
            base=base,
            base_stats=dict(run.stats),
        )

    # ------------------------------------------------------------------
    # Job controls
    # ------------------------------------------------------------------

    def pause_job(self, job_id: str) -> bool:
        """Pause a running job. Takes effect at the next window boundary."""
        if not self.store.pause_job(job_id):
            return False
        logger.info(f"Pause requested for job {job_id}")
        return True

    def unpause_job(self, job_id: str) -> bool:
        """Resume a paused job."""
        if not self.store.unpause_job(job_id):
            return False
        logger.info(f"Unpause requested for job {job_id}")
        return True

    def cancel_job(self, job_id: str) -> bool:
        """Cancel an active job. Committed batches stand."""
        if not self.store.cancel_job(job_id):
            return False
        entry = self.registry.get(job_id)
        if entry is not None:
            entry.control.cancel()
        logger.info(f"Cancel requested for job {job_id}")
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _extract_one(
        self, plan: RunPlan, email_id: str, record: SourceRecord | None
    ) -> _Outcome:
        """One invoker call. Never raises; failures become outcomes."""
        started = time.monotonic()
        try:
            if record is None:
                raise LookupError(f"Email not found: {email_id}")
            result = await self.invoker.extract(
                record, plan.run.model_id, plan.prompt.content, plan.prompt.json_schema
            )
            error = None
        except Exception as e:
            result = None
            error = e
        return _Outcome(email_id, result, error, int((time.monotonic() - started) * 1000))

    def _handle_failure(self, plan: RunPlan, outcome: _Outcome) -> None:
        error = outcome.error
        error_type = classify_error(error)
        logger.warning(f"Extraction failed for email {outcome.email_id} ({error_type}): {error}")
        self.store.log_extraction_error(
            email_id=outcome.email_id,
            message=str(error) or type(error).__name__,
            error_type=error_type,
            job_id=plan.job.id,
            run_id=plan.run.id,
            stack_trace="".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
            metadata={
                "model_id": plan.run.model_id,
                "invoker": self.invoker.name,
                "processing_time_ms": outcome.processing_time_ms,
            },
        )

    def _stats(
        self,
        plan: RunPlan,
        state: _RunState,
        can_resume: bool,
        committed_only: bool = False,
        **extra: Any,
    ) -> dict[str, Any]:
        stats = dict(plan.base_stats)
        stats.pop("cancelled", None)
        if committed_only:
            by_type = state.committed_by_type
            confidence_sum = state.committed_confidence_sum
            confidence_count = state.committed_confidence_count
        else:
            by_type = state.by_type
            confidence_sum = state.confidence_sum
            confidence_count = state.confidence_count
        avg = None
        if confidence_count:
            avg = (confidence_sum / confidence_count).quantize(Decimal("0.01"))
        stats.update(
            {
                "byType": dict(by_type),
                "avgConfidence": decimal_to_str(avg),
                "confidenceSamples": confidence_count,
                "processingTimeMs": state.prior_time_ms + state.elapsed_ms,
                "isResume": plan.is_resume,
                "canResume": can_resume,
            }
        )
        stats.update(extra)
        return stats

    def _new_state(self, plan: RunPlan) -> _RunState:
        base_stats = plan.base_stats
        samples = int(base_stats.get("confidenceSamples") or 0)
        prior_avg = base_stats.get("avgConfidence")
        state = _RunState(
            counters=replace(plan.base),
            committed=replace(plan.base),
            by_type=dict(base_stats.get("byType") or {}),
            confidence_sum=Decimal(prior_avg) * samples if prior_avg and samples else Decimal(0),
            confidence_count=samples,
            prior_time_ms=int(base_stats.get("processingTimeMs") or 0),
        )
        state.mark_committed()
        return state

    async def execute(self, plan: RunPlan) -> AsyncIterator[ProgressEvent]:
        """
        Dispatch the plan and stream progress events.

        Yields exactly one StartedEvent first and exactly one terminal
        event (CompletedEvent or ErrorEvent) last. Per-record failures
        never end the run; commit failures and cancellation do.
        """
        settings = self.config.extraction
        run_id = plan.run.id
        job_id = plan.job.id
        total = plan.total_items

        state = self._new_state(plan)
        buffer = BatchBuffer()
        committer = BatchCommitter(self.store, run_id, chunk_size=settings.write_chunk_size)
        control = RunControl(self.store, job_id, run_id, poll_interval=settings.pause_poll_seconds)
        self.registry.register(
            RegistryEntry(job_id=job_id, run_id=run_id, control=control, total_items=total)
        )

        yield StartedEvent(
            job_id=job_id,
            run_id=run_id,
            total_items=total,
            model_id=plan.run.model_id,
            is_resume=plan.is_resume,
            already_processed=plan.base.emails_processed,
        )

        try:
            try:
                for start in range(0, len(plan.email_ids), plan.concurrency):
                    if not await control.checkpoint():
                        raise JobCancelledError(CANCELLED_MESSAGE)

                    window = plan.email_ids[start : start + plan.concurrency]
                    records = {r.id: r for r in self.store.get_emails(window)}
                    outcomes = await asyncio.gather(
                        *(self._extract_one(plan, e, records.get(e)) for e in window)
                    )

                    for outcome in outcomes:
                        if outcome.result is not None:
                            buffer.add_result(
                                outcome.email_id, outcome.result, outcome.processing_time_ms
                            )
                            state.record_result(outcome.result)
                        else:
                            buffer.add_failure(
                                outcome.email_id, str(outcome.error) or type(outcome.error).__name__
                            )
                            state.record_failure()
                            self._handle_failure(plan, outcome)

                    counters = state.counters
                    self.registry.update_counters(job_id, counters)
                    self.store.record_progress(run_id, job_id, counters)
                    yield ProgressUpdate(
                        processed_items=counters.emails_processed,
                        total_items=total,
                        failed_items=counters.error_count,
                        informational_items=counters.informational_count,
                        transactions_found=counters.transactions_created,
                    )

                    if len(buffer) >= settings.commit_batch_size:
                        event = self._flush(plan, state, buffer, committer, total)
                        yield event

                if len(buffer):
                    yield self._flush(plan, state, buffer, committer, total)

                self.store.complete_run(
                    run_id, job_id, state.counters, self._stats(plan, state, can_resume=False)
                )
                logger.info(
                    f"Run {run_id} completed: {state.counters.emails_processed} emails, "
                    f"{state.counters.transactions_created} transactions, "
                    f"{state.counters.error_count} errors"
                )
                yield CompletedEvent(
                    run_id=run_id,
                    transactions_created=state.counters.transactions_created,
                    emails_processed=state.counters.emails_processed,
                    processing_time_ms=state.elapsed_ms,
                )

            except JobCancelledError as e:
                buffer.clear()
                logger.info(f"Run {run_id} cancelled (job {job_id})")
                self._terminate(plan, state, str(e), JobStatus.CANCELLED, cancelled=True)
                yield ErrorEvent(error=str(e))

            except Exception as e:
                logger.exception(f"Run {run_id} failed: {e}")
                self._terminate(plan, state, str(e) or type(e).__name__, JobStatus.FAILED)
                yield ErrorEvent(error=str(e) or type(e).__name__)
        finally:
            self.registry.unregister(job_id)

    def _flush(
        self,
        plan: RunPlan,
        state: _RunState,
        buffer: BatchBuffer,
        committer: BatchCommitter,
        total: int,
    ) -> BatchCommittedEvent:
        committed = committer.flush(
            buffer, counters=state.counters, stats=self._stats(plan, state, can_resume=True)
        )
        state.mark_committed()
        return BatchCommittedEvent(
            transactions_committed=committed,
            total_transactions_committed=state.committed.transactions_created,
            processed_items=state.committed.emails_processed,
            total_items=total,
        )

    def _terminate(
        self,
        plan: RunPlan,
        state: _RunState,
        message: str,
        job_status: JobStatus,
        **extra: Any,
    ) -> None:
        """Persist a failed/cancelled terminal state with committed counters only."""
        try:
            self.store.fail_run(
                plan.run.id,
                plan.job.id,
                state.committed,
                self._stats(plan, state, can_resume=True, committed_only=True, **extra),
                message,
                job_status=job_status,
            )
        except Exception:
            # Left running; the stale sweep will fail it later
            logger.exception(f"Could not record failure of run {plan.run.id}")

    async def run(
        self, plan: RunPlan, on_event: Callable[[ProgressEvent], None] | None = None
    ) -> RunRecord:
        """Drive execute() to completion and return the final run record."""
        async for event in self.execute(plan):
            if on_event is not None:
                on_event(event)
        run = self.store.get_run(plan.run.id)
        if run is None:
            raise OrchestrationError(f"Run disappeared during execution: {plan.run.id}")
        return run
