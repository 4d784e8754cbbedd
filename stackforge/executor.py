from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import Configuration
from .errors import StepTimeoutError
from .state_store import COMPLETED, FAILED, IN_PROGRESS, StateStore
from .steps import RunFlags, StepRegistry

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"


@dataclass(frozen=True)
class StepResult:
    step_id: str
    status: str
    reason: str = ""
    duration_s: float = 0.0
    returncode: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status != FAILURE


class StepExecutor:
    """Runs one step and records the outcome in the state store."""

    def __init__(
        self,
        store: StateStore,
        registry: StepRegistry,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.registry = registry
        self.clock = clock

    def _emit(self, result: StepResult, *, level: int = logging.INFO) -> StepResult:
        logger.log(
            level,
            "Step %s %s%s (%.1fs)",
            result.step_id,
            result.status,
            f": {result.reason}" if result.reason else "",
            result.duration_s,
            extra={
                "fields": {
                    "step": result.step_id,
                    "status": result.status,
                    "reason": result.reason,
                    "duration_s": round(result.duration_s, 3),
                    "returncode": result.returncode,
                }
            },
        )
        return result

    def run(self, step_id: str, config: Configuration, flags: RunFlags) -> StepResult:
        config.step(step_id)
        step = self.registry.get(step_id)

        if not config.is_enabled(step_id):
            return self._emit(StepResult(step_id, SKIPPED, "disabled by profile"))

        force = flags.force or config.resume_mode == "force"
        if not force and self.store.has_succeeded("step", step_id):
            logger.info("Skipping step %s (already completed)", step_id)
            return StepResult(step_id, SKIPPED, "already completed")

        missing = config.missing_requirements(step_id)

        if flags.dry_run:
            logger.info("[dry-run] %s", step_id)
            for line in step.preview(config, flags):
                logger.info("[dry-run]   %s", line)
            for key in missing:
                logger.warning("[dry-run]   missing required config: %s", key)
            return self._emit(StepResult(step_id, SKIPPED, "dry-run"))

        if missing:
            self.store.mark_result("step", step_id, FAILED)
            return self._emit(
                StepResult(step_id, FAILURE, "missing required config: " + ", ".join(missing)),
                level=logging.ERROR,
            )

        logger.info("Running step %s", step_id)
        self.store.mark_result("step", step_id, IN_PROGRESS)
        started = self.clock()
        try:
            rc = step.run(config, flags)
        except StepTimeoutError as e:
            self.store.mark_result("step", step_id, FAILED)
            return self._emit(
                StepResult(step_id, FAILURE, str(e), self.clock() - started),
                level=logging.ERROR,
            )
        except OSError as e:
            self.store.mark_result("step", step_id, FAILED)
            return self._emit(
                StepResult(step_id, FAILURE, f"could not start: {e}", self.clock() - started),
                level=logging.ERROR,
            )
        duration = self.clock() - started

        if rc != 0:
            self.store.mark_result("step", step_id, FAILED)
            return self._emit(
                StepResult(step_id, FAILURE, f"exit status {rc}", duration, rc),
                level=logging.ERROR,
            )

        self.store.mark_result("step", step_id, COMPLETED)
        return self._emit(StepResult(step_id, SUCCESS, "", duration, rc))
