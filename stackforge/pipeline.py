from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .breakpoints import BreakpointController, Decision
from .checkpoint import CheckpointManager
from .config import Configuration
from .executor import FAILURE, SKIPPED, StepExecutor, StepResult
from .state_store import COMPLETED, FAILED, IN_PROGRESS, StateStore
from .steps import RunFlags

logger = logging.getLogger(__name__)

# Phase / run outcomes.
PHASE_COMPLETED = "completed"
PHASE_FAILED = "failed"
PHASE_SKIPPED = "skipped"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_PAUSED = "paused"


@dataclass
class PhaseResult:
    phase_id: str
    status: str
    steps: List[StepResult] = field(default_factory=list)
    decision: Decision = Decision.CONTINUE

    @property
    def failed_step(self) -> Optional[StepResult]:
        for r in self.steps:
            if r.status == FAILURE:
                return r
        return None


@dataclass
class RunResult:
    status: str
    phases: List[PhaseResult] = field(default_factory=list)

    @property
    def failed_phase(self) -> Optional[PhaseResult]:
        for p in self.phases:
            if p.status == PHASE_FAILED:
                return p
        return None

    @property
    def ran_steps(self) -> List[str]:
        return [r.step_id for p in self.phases for r in p.steps if r.status != SKIPPED]

    @property
    def skipped_steps(self) -> List[str]:
        return [r.step_id for p in self.phases for r in p.steps if r.status == SKIPPED]


class PhaseOrchestrator:
    """Runs phases in order with resume/idempotency semantics.

    State, checkpoint and breakpoint handling are injected so the engine can
    be exercised with fakes. In dry-run mode nothing is persisted.
    """

    def __init__(
        self,
        config: Configuration,
        *,
        executor: StepExecutor,
        store: StateStore,
        checkpoint: CheckpointManager,
        breakpoints: BreakpointController,
    ) -> None:
        self.config = config
        self.executor = executor
        self.store = store
        self.checkpoint = checkpoint
        self.breakpoints = breakpoints

    def _progress(self, step_id: str) -> str:
        enabled = self.config.enabled_steps()
        position = enabled.index(step_id) + 1 if step_id in enabled else 0
        return f"[{position}/{len(enabled)}]"

    def run_phase(self, phase_id: str, flags: RunFlags) -> PhaseResult:
        phase = self.config.phase(phase_id)
        persist = not flags.dry_run

        force = flags.force or self.config.resume_mode == "force"
        if not force and self.store.has_succeeded("phase", phase_id):
            logger.info("Skipping phase %s (already completed)", phase_id)
            return PhaseResult(phase_id, PHASE_SKIPPED)

        logger.info("=== Phase %s: %s ===", phase_id, phase.label)
        if persist:
            self.store.mark_result("phase", phase_id, IN_PROGRESS)
            self.checkpoint.save(phase_id, "")

        result = PhaseResult(phase_id, PHASE_COMPLETED)
        for step_id in self.config.enabled_steps(phase_id):
            if persist:
                self.checkpoint.save(phase_id, step_id)
            logger.info("%s %s", self._progress(step_id), step_id)
            step_result = self.executor.run(step_id, self.config, flags)
            result.steps.append(step_result)
            if step_result.status == FAILURE:
                if persist:
                    self.store.mark_result("phase", phase_id, FAILED)
                logger.error("Phase %s failed at step %s: %s", phase_id, step_id, step_result.reason)
                result.status = PHASE_FAILED
                return result

        if persist:
            self.store.mark_result("phase", phase_id, COMPLETED)
        logger.info("Phase %s completed", phase_id)
        result.decision = self.breakpoints.maybe_pause(phase_id, self.config, flags)
        return result

    def run_all(self, flags: RunFlags, *, start_at: Optional[str] = None) -> RunResult:
        if start_at is not None:
            self.config.phase(start_at)

        run = RunResult(RUN_COMPLETED)
        started = start_at is None
        for phase in self.config.phases:
            if not started:
                if phase.phase_id != start_at:
                    continue
                started = True

            phase_result = self.run_phase(phase.phase_id, flags)
            run.phases.append(phase_result)

            if phase_result.status == PHASE_FAILED:
                run.status = RUN_FAILED
                return run
            if phase_result.decision is not Decision.CONTINUE:
                run.status = RUN_PAUSED
                return run

        if not flags.dry_run and self._all_phases_done():
            self.checkpoint.clear()
            logger.info("All phases completed")
        logger.info(
            "Run finished: %d ran, %d skipped",
            len(run.ran_steps),
            len(run.skipped_steps),
            extra={"fields": {"ran": run.ran_steps, "skipped": run.skipped_steps}},
        )
        return run

    def _all_phases_done(self) -> bool:
        return all(self.store.has_succeeded("phase", p.phase_id) for p in self.config.phases)

    def _resume_point(self, checkpoint_phase: str) -> str:
        # Phases before the checkpoint may never have run (single step or
        # single phase invocations), so start at the first unfinished one.
        for phase in self.config.phases:
            if phase.phase_id == checkpoint_phase:
                break
            if not self.store.has_succeeded("phase", phase.phase_id):
                logger.info("Phase %s precedes the checkpoint but never completed", phase.phase_id)
                return phase.phase_id
        return checkpoint_phase

    def resume(self, flags: RunFlags, *, from_phase: Optional[str] = None) -> RunResult:
        start = from_phase
        if start is None:
            cp = self.checkpoint.load()
            if cp is not None and self.config.has_phase(cp.phase):
                logger.info("Resuming from checkpoint %s/%s", cp.phase, cp.step or "-")
                start = self._resume_point(cp.phase)
            elif cp is not None:
                logger.warning("Checkpoint phase %s no longer exists; starting from the beginning", cp.phase)
        return self.run_all(flags, start_at=start)

    def run_step(self, step_id: str, flags: RunFlags) -> StepResult:
        step = self.config.step(step_id)
        if not flags.dry_run:
            self.checkpoint.save(step.phase, step_id)
        return self.executor.run(step_id, self.config, flags)
