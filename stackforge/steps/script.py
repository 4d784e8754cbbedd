from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Dict, List

from ..config import Configuration, StepDefinition
from ..lib.command import format_argv, run_cmd
from .base import RunFlags

logger = logging.getLogger(__name__)


def _flag(value: bool) -> str:
    return "true" if value else "false"


def step_environment(config: Configuration, step: StepDefinition, flags: RunFlags) -> Dict[str, str]:
    env: Dict[str, str] = {
        "STACKFORGE_STEP_ID": step.step_id,
        "STACKFORGE_PHASE": step.phase,
        "STACKFORGE_PROJECT_ROOT": str(config.project_root),
        "STACKFORGE_INSTALL_DIR": str(config.install_dir),
        "STACKFORGE_MANIFEST": str(config.manifest_path),
        "APP_NAME": config.project_name,
        "DRY_RUN": _flag(flags.dry_run),
        "FORCE": _flag(flags.force),
        "VERBOSE": _flag(flags.verbose),
    }
    for group, enabled in config.features.items():
        env[f"ENABLE_{group.upper()}"] = _flag(enabled)
    env.update(config.env)
    return env


class ScriptStep:
    """Step backed by an external program under the scripts directory."""

    def __init__(self, definition: StepDefinition, scripts_dir: Path) -> None:
        self.definition = definition
        self.step_id = definition.step_id
        self.scripts_dir = Path(scripts_dir)

    @property
    def script_path(self) -> Path:
        return self.scripts_dir / self.definition.script

    def argv(self) -> List[str]:
        path = self.script_path
        if path.suffix == ".sh":
            cmd = ["bash", str(path)]
        elif path.suffix == ".py":
            cmd = [sys.executable, str(path)]
        else:
            cmd = [str(path)]
        return cmd + list(self.definition.args)

    def preview(self, config: Configuration, flags: RunFlags) -> List[str]:
        lines = [f"would run: {format_argv(self.argv())} (cwd {config.install_dir})"]
        if self.definition.description:
            lines.insert(0, self.definition.description)
        if not self.script_path.exists():
            lines.append(f"warning: script not found: {self.script_path}")
        return lines

    def run(self, config: Configuration, flags: RunFlags) -> int:
        config.install_dir.mkdir(parents=True, exist_ok=True)
        result = run_cmd(
            self.argv(),
            check=False,
            env=step_environment(config, self.definition, flags),
            cwd=str(config.install_dir),
            timeout_s=config.max_cmd_seconds,
            on_output=lambda line: logger.info("[%s] %s", self.step_id, line),
        )
        return result.returncode
