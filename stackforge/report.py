from __future__ import annotations

from typing import List, Optional

from .breakpoints import RESUME_COMMAND
from .checkpoint import CheckpointManager
from .config import Configuration
from .profiles import list_profiles
from .state_store import COMPLETED, FAILED, IN_PROGRESS, StateStore

ICONS = {
    COMPLETED: "✓",
    IN_PROGRESS: "●",
    FAILED: "✗",
    "disabled": "−",
    "not_started": "○",
}


def _phase_state(store: StateStore, phase_id: str, done: int, total: int) -> str:
    if total == 0:
        return "disabled"
    status: Optional[str] = store.status("phase", phase_id)
    if status in (COMPLETED, FAILED, IN_PROGRESS):
        return status
    return IN_PROGRESS if done else "not_started"


def format_status(config: Configuration, store: StateStore, checkpoint: CheckpointManager) -> str:
    completed = set(store.completed("step"))
    enabled = config.enabled_steps()
    done_total = sum(1 for s in enabled if s in completed)

    lines = [
        f"Project: {config.project_name} ({config.project_root})",
        f"Profile: {config.active_profile or 'none'}",
        f"Progress: {done_total}/{len(enabled)} steps completed",
        "",
    ]
    for phase in config.phases:
        steps = config.enabled_steps(phase.phase_id)
        done = sum(1 for s in steps if s in completed)
        state = _phase_state(store, phase.phase_id, done, len(steps))
        bp = " [breakpoint]" if phase.breakpoint else ""
        lines.append(f"  {ICONS[state]} {phase.phase_id:<16} {phase.label}{bp} [{done}/{len(steps)}]")

    cp = checkpoint.load()
    lines.append("")
    if cp is not None:
        lines.append(f"Checkpoint: {cp.phase}/{cp.step or '-'} at {cp.timestamp}")
        lines.append(f"Resume with: {RESUME_COMMAND}")
    else:
        lines.append("Checkpoint: none")
    return "\n".join(lines)


def format_phase_list(config: Configuration) -> str:
    lines = []
    profiles = list_profiles(config)
    if profiles:
        lines.append("Profiles:")
        lines += [f"  {p}" for p in profiles]
        lines.append("")
    lines.append("Phases:")
    for idx, phase in enumerate(config.phases):
        enabled = len(config.enabled_steps(phase.phase_id))
        bp = " [breakpoint]" if phase.breakpoint else ""
        lines.append(f"  {idx:02d} {phase.phase_id:<16} {phase.label} ({enabled}/{len(phase.steps)} steps){bp}")
    return "\n".join(lines)


def format_step_list(config: Configuration, store: Optional[StateStore] = None) -> str:
    completed = set(store.completed("step")) if store is not None else set()
    lines: List[str] = []
    for phase in config.phases:
        lines.append(f"{phase.phase_id}:")
        for step_id in phase.steps:
            step = config.steps[step_id]
            if not config.is_enabled(step_id):
                icon = ICONS["disabled"]
            elif step_id in completed:
                icon = ICONS[COMPLETED]
            else:
                icon = ICONS["not_started"]
            tags = []
            if step.group:
                tags.append(step.group)
            if step.critical:
                tags.append("critical")
            suffix = f" ({', '.join(tags)})" if tags else ""
            lines.append(f"  {icon} {step_id}{suffix}")
    return "\n".join(lines)
