from __future__ import annotations

import enum
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional, Protocol, TextIO

from .config import Configuration, PhaseDefinition
from .errors import StepTimeoutError
from .lib.command import CmdResult, run_cmd
from .state_store import utc_now, write_atomic
from .steps import RunFlags

logger = logging.getLogger(__name__)

RESUME_COMMAND = "stackforge --resume"


class Decision(enum.Enum):
    CONTINUE = "continue"
    STOP = "stop"
    ABORT = "abort"


class Confirmer(Protocol):
    def confirm(self, phase: PhaseDefinition) -> Decision:
        ...


class AutoConfirmer:
    """Always continues; for unattended runs and tests."""

    def confirm(self, phase: PhaseDefinition) -> Decision:
        return Decision.CONTINUE


class TerminalConfirmer:
    def __init__(self, input_fn: Callable[[str], str] = input) -> None:
        self.input_fn = input_fn

    def confirm(self, phase: PhaseDefinition) -> Decision:
        while True:
            try:
                answer = self.input_fn("Continue to next phase? [Y/n/a(bort)] ").strip().lower()
            except EOFError:
                return Decision.STOP
            if answer in {"", "y", "yes"}:
                return Decision.CONTINUE
            if answer in {"n", "no", "q", "quit"}:
                return Decision.STOP
            if answer in {"a", "abort"}:
                return Decision.ABORT
            print("Please answer y, n or a.")


def read_manifest(path: Path, step_ids: List[str]) -> List[str]:
    """Files recorded in the deployment manifest by the given steps.

    Manifest lines look like ``path|timestamp|step_id``.
    """

    if not path.exists():
        return []
    wanted = set(step_ids)
    files: List[str] = []
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        parts = line.strip().split("|")
        if len(parts) < 3 or parts[2] not in wanted:
            continue
        entry = f"{parts[0]} ({parts[2]})"
        if entry not in files:
            files.append(entry)
    return files


class BreakpointController:
    """Writes handoff notes for breakpoint phases and gates the next phase."""

    def __init__(
        self,
        confirmer: Confirmer,
        *,
        runner: Callable[..., CmdResult] = run_cmd,
        out: Optional[TextIO] = None,
    ) -> None:
        self.confirmer = confirmer
        self.runner = runner
        self.out = out

    def _print(self, text: str) -> None:
        print(text, file=self.out or sys.stdout)

    def _git_changes(self, config: Configuration) -> List[str]:
        if not (config.project_root / ".git").exists():
            return []
        try:
            res = self.runner(
                ["git", "status", "--porcelain"],
                check=False,
                cwd=str(config.project_root),
                timeout_s=60,
            )
        except (OSError, StepTimeoutError) as e:
            logger.warning("Could not list changed files: %s", e)
            return []
        return [line[3:] for line in res.stdout.splitlines() if len(line) > 3]

    def files_touched(self, phase: PhaseDefinition, config: Configuration) -> List[str]:
        return read_manifest(config.manifest_path, list(phase.steps)) or self._git_changes(config)

    def next_actions(self, phase: PhaseDefinition) -> List[str]:
        return list(phase.guidance) + [f"Run `{RESUME_COMMAND}` to continue with the next phase."]

    def render_handoff(self, phase: PhaseDefinition, config: Configuration) -> str:
        lines = [
            f"# Handoff: {phase.label} ({phase.phase_id})",
            "",
            f"- Generated: {utc_now()}",
            f"- Project: {config.project_name} ({config.project_root})",
            f"- Profile: {config.active_profile or 'none'}",
            "",
            "## Steps",
            "",
        ]
        for step_id in phase.steps:
            mark = "x" if config.is_enabled(step_id) else " "
            note = "" if config.is_enabled(step_id) else " (disabled by profile)"
            desc = config.steps[step_id].description
            lines.append(f"- [{mark}] `{step_id}`{' - ' + desc if desc else ''}{note}")

        lines += ["", "## Files touched", ""]
        touched = self.files_touched(phase, config)
        lines += [f"- {f}" for f in touched] or ["- (none recorded)"]

        lines += ["", "## Next actions", ""]
        lines += [f"{i}. {a}" for i, a in enumerate(self.next_actions(phase), start=1)]
        return "\n".join(lines) + "\n"

    def write_handoff(self, phase: PhaseDefinition, config: Configuration) -> Path:
        path = config.handoff_dir / f"{phase.phase_id}.md"
        write_atomic(path, self.render_handoff(phase, config))
        logger.info("Handoff written to %s", path)
        return path

    def maybe_pause(self, phase_id: str, config: Configuration, flags: RunFlags) -> Decision:
        phase = config.phase(phase_id)
        if not phase.breakpoint or flags.skip_breakpoints or flags.dry_run:
            return Decision.CONTINUE

        path = self.write_handoff(phase, config)
        self._print("")
        self._print(f"=== Breakpoint: {phase.label} complete ===")
        for action in self.next_actions(phase):
            self._print(f"  - {action}")
        self._print(f"Handoff notes: {path}")

        if flags.auto_confirm:
            return Decision.CONTINUE

        decision = self.confirmer.confirm(phase)
        if decision is Decision.ABORT:
            logger.warning("Run aborted by operator at breakpoint %s", phase_id)
        elif decision is Decision.STOP:
            logger.info("Paused at breakpoint %s; resume with: %s", phase_id, RESUME_COMMAND)
        return decision
