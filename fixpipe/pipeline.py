"""Pipeline phase orchestrator.

Sequences scan → validate → plan → consolidate → exec → verify with
skip, resume and force semantics. Phase logic lives in handlers; the
orchestrator decides which phases run, keeps the run pinned as current,
records the run's phase and aggregates results.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from opentelemetry import trace

from fixpipe import telemetry
from fixpipe.cancellation import CancellationToken
from fixpipe.models import RunMeta
from fixpipe.notifier import Notifier
from fixpipe.state import StateStore

logger = logging.getLogger(__name__)

PipelinePhase = Literal["scan", "validate", "plan", "consolidate", "exec", "verify"]

PHASE_ORDER: list[str] = ["scan", "validate", "plan", "consolidate", "exec", "verify"]


@dataclass
class PipelineOptions:
    start_phase: str = "scan"
    end_phase: str = "verify"
    fail_fast: bool = True
    skip_completed: bool = True
    force: bool = False


@dataclass
class PhaseResult:
    """Outcome of one phase handler.

    Attributes:
        next_phase: Run phase to record afterwards; defaults to the following
            phase on success ("completed" after verify) and to no change on
            failure
        run_id: Run created by the phase (scan)
        details: Phase-specific counters for display
    """

    phase: str
    success: bool
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: float = 0.0
    error: str | None = None
    run_id: str | None = None
    next_phase: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineResult:
    success: bool = True
    phases_completed: list[str] = field(default_factory=list)
    phase_results: list[PhaseResult] = field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_duration_ms: float = 0.0
    stopped_at: str | None = None
    error: str | None = None
    run_id: str | None = None


@dataclass
class PipelineStatus:
    phase: str | None
    pipeline_phase: str | None
    is_complete: bool
    is_failed: bool
    can_resume: bool


@dataclass
class PhaseContext:
    """Everything a phase handler receives."""

    phase: str
    run_id: str | None
    store: StateStore
    token: CancellationToken | None = None

    def load_run(self) -> RunMeta | None:
        return self.store.load_run(self.run_id) if self.run_id else None


PhaseHandler = Callable[[PhaseContext], Awaitable[PhaseResult]]


def add_phase_result(result: PipelineResult, phase_result: PhaseResult) -> PipelineResult:
    """Fold one phase result into the pipeline result."""
    return replace(
        result,
        success=result.success and phase_result.success,
        phases_completed=(
            result.phases_completed + [phase_result.phase]
            if phase_result.success
            else list(result.phases_completed)
        ),
        phase_results=result.phase_results + [phase_result],
        total_input_tokens=result.total_input_tokens + phase_result.input_tokens,
        total_output_tokens=result.total_output_tokens + phase_result.output_tokens,
        total_duration_ms=result.total_duration_ms + phase_result.duration_ms,
        stopped_at=result.stopped_at if phase_result.success else phase_result.phase,
        error=phase_result.error or result.error,
    )


def get_phases_to_execute(options: PipelineOptions) -> list[str]:
    """The phase slice from start to end, or [] for an invalid range."""
    if options.start_phase not in PHASE_ORDER or options.end_phase not in PHASE_ORDER:
        return []
    start = PHASE_ORDER.index(options.start_phase)
    end = PHASE_ORDER.index(options.end_phase)
    if start > end:
        return []
    return PHASE_ORDER[start : end + 1]


def should_skip_phase(phase: str, run_phase: str | None, options: PipelineOptions) -> bool:
    """True when the run has already moved strictly past `phase`.

    "completed" is past every phase; "failed" is past none.
    """
    if options.force or not options.skip_completed or run_phase is None:
        return False
    if run_phase == "completed":
        return True
    if run_phase not in PHASE_ORDER:
        return False
    return PHASE_ORDER.index(run_phase) > PHASE_ORDER.index(phase)


def run_phase_to_pipeline_phase(run_phase: str) -> str | None:
    """Map a recorded run phase to the pipeline phase to resume from."""
    return run_phase if run_phase in PHASE_ORDER else None


def _following_phase(phase: str) -> str:
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[index + 1] if index + 1 < len(PHASE_ORDER) else "completed"


class PipelineOrchestrator:
    """Runs phase handlers in order for one working tree."""

    def __init__(
        self,
        store: StateStore,
        handlers: Mapping[str, PhaseHandler],
        tracer: trace.Tracer | None = None,
        notifier: Notifier | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.store = store
        self.handlers = handlers
        self.tracer = tracer or trace.get_tracer("fixpipe")
        self.notifier = notifier or Notifier()
        self.token = token

    async def run(
        self, options: PipelineOptions | None = None, run_id: str | None = None
    ) -> PipelineResult:
        """Run the selected phases.

        Args:
            options: Phase range and skip/force behavior
            run_id: Run to drive; defaults to the current run. A scan phase
                replaces it with the run it creates.
        """
        options = options or PipelineOptions()
        started = time.monotonic()
        pipeline_run_id = run_id or self.store.current_run_id()
        phases = get_phases_to_execute(options)

        if not phases:
            logger.error(
                f"Invalid phase range: {options.start_phase} → {options.end_phase}"
            )
            return PipelineResult(success=False, error="Invalid phase range")

        logger.info(f"Starting pipeline: {' → '.join(phases)}")
        await self.notifier.pipeline_started(pipeline_run_id, phases)
        result = PipelineResult(run_id=pipeline_run_id)

        with self.tracer.start_as_current_span("fixpipe.pipeline") as span:
            span.set_attribute("pipeline.phases", ",".join(phases))

            for phase in phases:
                if self.token is not None and self.token.cancelled:
                    logger.warning(f"Cancelled before {phase}")
                    result = add_phase_result(
                        result, PhaseResult(phase=phase, success=False, error="cancelled")
                    )
                    break

                # Another process may have switched the current run
                if pipeline_run_id and self.store.current_run_id() != pipeline_run_id:
                    logger.debug(f"Restoring current run: {pipeline_run_id}")
                    self.store.set_current_run(pipeline_run_id)

                run = self.store.load_run(pipeline_run_id) if pipeline_run_id else None
                if should_skip_phase(phase, run.phase if run else None, options):
                    logger.info(f"Skipping {phase} (already completed)")
                    continue

                logger.info(f"Phase: {phase.upper()}")
                if run is not None and phase != "scan":
                    self._record_phase(run.id, phase)

                phase_result = await self._execute_phase(phase, pipeline_run_id)
                result = add_phase_result(result, phase_result)

                if phase == "scan" and phase_result.run_id:
                    pipeline_run_id = phase_result.run_id
                    self.store.set_current_run(pipeline_run_id)
                    result.run_id = pipeline_run_id
                    logger.debug(f"Pipeline run set from scan: {pipeline_run_id}")

                if pipeline_run_id:
                    next_phase = phase_result.next_phase
                    if next_phase is None and phase_result.success:
                        next_phase = _following_phase(phase)
                    if next_phase is not None:
                        self._record_phase(pipeline_run_id, next_phase)

                if not phase_result.success:
                    logger.error(f"Phase {phase} failed: {phase_result.error or 'Unknown error'}")
                    await self.notifier.phase_failed(phase, phase_result.error)
                    if options.fail_fast:
                        logger.warning("Stopping pipeline after failure (fail-fast)")
                        break
                else:
                    logger.info(f"Phase {phase} completed")

            result.total_duration_ms = (time.monotonic() - started) * 1000
            span.set_attribute("pipeline.success", result.success)
            span.set_attribute("pipeline.phases_completed", len(result.phases_completed))
            if result.stopped_at:
                span.set_attribute("pipeline.stopped_at", result.stopped_at)

        await self.notifier.pipeline_completed(
            result.success,
            result.phases_completed,
            result.total_input_tokens + result.total_output_tokens,
            result.total_duration_ms / 1000,
            result.stopped_at,
        )
        return result

    async def _execute_phase(self, phase: str, run_id: str | None) -> PhaseResult:
        handler = self.handlers.get(phase)
        if handler is None:
            return PhaseResult(
                phase=phase, success=False, error=f"No handler for phase {phase}"
            )

        started = time.monotonic()
        with self.tracer.start_as_current_span("fixpipe.phase") as span:
            span.set_attribute("phase.name", phase)
            try:
                phase_result = await handler(
                    PhaseContext(phase=phase, run_id=run_id, store=self.store, token=self.token)
                )
            except Exception as e:
                logger.exception(f"Phase {phase} raised")
                phase_result = PhaseResult(phase=phase, success=False, error=str(e))
            phase_result.duration_ms = (time.monotonic() - started) * 1000
            span.set_attribute("phase.success", phase_result.success)
            span.set_attribute(
                "phase.tokens", phase_result.input_tokens + phase_result.output_tokens
            )

        telemetry.record_phase_duration(phase, phase_result.duration_ms / 1000)
        return phase_result

    def _record_phase(self, run_id: str, phase: str) -> None:
        run = self.store.load_run(run_id)
        if run is None:
            return
        run.phase = phase  # type: ignore[assignment]
        self.store.save_run(run)

    async def resume(self, options: PipelineOptions | None = None) -> PipelineResult:
        """Continue the current run from its recorded phase."""
        options = options or PipelineOptions()
        run = self.store.current_run()

        if run is None:
            logger.info("No previous run found, starting from the beginning")
            return await self.run(options)

        if run.phase == "completed":
            logger.info("Pipeline already completed")
            return PipelineResult(success=True, run_id=run.id)

        if run.phase == "failed":
            logger.warning("Previous run failed, restarting from the beginning")
            return await self.run(replace(options, start_phase="scan", force=True))

        start = run_phase_to_pipeline_phase(run.phase)
        if start is None:
            return await self.run(options, run_id=run.id)

        logger.info(f"Resuming {run.id} from {start}")
        return await self.run(
            replace(options, start_phase=start, skip_completed=False), run_id=run.id
        )

    def status(self, run_id: str | None = None) -> PipelineStatus:
        run = self.store.load_run(run_id) if run_id else self.store.current_run()
        if run is None:
            return PipelineStatus(
                phase=None,
                pipeline_phase=None,
                is_complete=False,
                is_failed=False,
                can_resume=False,
            )
        pipeline_phase = run_phase_to_pipeline_phase(run.phase)
        return PipelineStatus(
            phase=run.phase,
            pipeline_phase=pipeline_phase,
            is_complete=run.phase == "completed",
            is_failed=run.phase == "failed",
            can_resume=pipeline_phase is not None,
        )
