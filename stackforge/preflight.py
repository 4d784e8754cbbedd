from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .config import Configuration, ToolRequirement
from .errors import GitSafetyViolation, PreflightError, StepTimeoutError
from .lib.command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

OK = "ok"
REMEDIATED = "remediated"
FAILED = "failed"

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)*)")

Runner = Callable[..., CmdResult]


def parse_version(text: str) -> Optional[Tuple[int, ...]]:
    m = _VERSION_RE.search(text or "")
    if not m:
        return None
    return tuple(int(part) for part in m.group(1).split("."))


def version_satisfies(found: Tuple[int, ...], minimum: Tuple[int, ...]) -> bool:
    width = max(len(found), len(minimum))
    return found + (0,) * (width - len(found)) >= minimum + (0,) * (width - len(minimum))


@dataclass
class PreflightReport:
    status: str = OK
    missing: List[str] = field(default_factory=list)
    remediated: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    git_dirty: bool = False

    @property
    def ok(self) -> bool:
        return self.status != FAILED

    def raise_for_status(self) -> None:
        if self.status != FAILED:
            return
        if self.git_dirty:
            raise GitSafetyViolation(
                "Working tree has uncommitted changes; commit or stash them, "
                "or set safety.allow_dirty / ALLOW_DIRTY=true"
            )
        raise PreflightError(self.missing)


def porcelain_paths(text: str) -> List[str]:
    """Paths named by `git status --porcelain`, the new name for renames."""
    paths = []
    for line in text.splitlines():
        if len(line) < 4:
            continue
        path = line[3:].split(" -> ")[-1].strip('"')
        paths.append(path.rstrip("/"))
    return paths


def _within(path: Path, parent: Path) -> bool:
    return path == parent or parent in path.parents


class PreflightValidator:
    """Checks tools and the git working tree before any step runs."""

    def __init__(
        self,
        *,
        runner: Runner = run_cmd,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self.runner = runner
        self.which = which

    def probe(self, tool: ToolRequirement) -> Tuple[bool, str]:
        """Return (satisfied, detail) for one requirement."""

        if not tool.version_cmd or self.which(tool.version_cmd[0]) is None:
            return False, "not found"
        try:
            res = self.runner(list(tool.version_cmd), check=False, timeout_s=30)
        except (OSError, StepTimeoutError) as e:
            return False, f"version check failed: {e}"
        if res.returncode != 0:
            return False, f"version check exited {res.returncode}"
        if tool.min_version is None:
            return True, "present"

        found = parse_version(res.stdout + "\n" + res.stderr)
        minimum = parse_version(tool.min_version)
        if found is None or minimum is None:
            return False, "could not determine version"
        version = ".".join(str(p) for p in found)
        if not version_satisfies(found, minimum):
            return False, f"version {version} < {tool.min_version}"
        return True, version

    def remediate(self, tool: ToolRequirement, config: Configuration) -> bool:
        logger.info("Attempting to install %s", tool.name)
        try:
            res = self.runner(list(tool.install_cmd), check=False, timeout_s=config.max_cmd_seconds)
        except (OSError, StepTimeoutError) as e:
            logger.warning("Remediation for %s failed: %s", tool.name, e)
            return False
        if res.returncode != 0:
            logger.warning("Remediation for %s exited %s", tool.name, res.returncode)
            return False
        ok, detail = self.probe(tool)
        if not ok:
            logger.warning("%s still unavailable after remediation: %s", tool.name, detail)
        return ok

    def git_dirty(self, config: Configuration) -> bool:
        if not (config.project_root / ".git").exists():
            return False
        try:
            res = self.runner(
                ["git", "status", "--porcelain"],
                check=False,
                cwd=str(config.project_root),
                timeout_s=60,
            )
        except (OSError, StepTimeoutError) as e:
            logger.warning("Could not inspect git status: %s", e)
            return False
        if res.returncode != 0:
            return False
        # The orchestrator's own logs and state never count as changes.
        own = (config.log_dir, config.state_dir)
        changes = [
            p for p in porcelain_paths(res.stdout)
            if not any(_within(config.project_root / p, d) for d in own)
        ]
        if changes:
            logger.debug("Uncommitted changes: %s", ", ".join(changes[:10]))
        return bool(changes)

    def check(self, config: Configuration, *, dry_run: bool = False) -> PreflightReport:
        opts = config.preflight
        report = PreflightReport()
        hard_missing: List[str] = []

        for tool in opts.tools:
            ok, detail = self.probe(tool)
            if ok:
                logger.debug("Preflight %s: %s", tool.name, detail)
                continue
            if opts.remediate and tool.install_cmd and not dry_run:
                if self.remediate(tool, config):
                    report.remediated.append(tool.name)
                    continue
            if tool.soft:
                report.warnings.append(f"{tool.name}: {detail} (optional)")
                continue
            report.missing.append(f"{tool.name} ({detail})")
            hard_missing.append(tool.name)

        if (
            config.safety.git_safety
            and not config.safety.allow_dirty
            and self.git_dirty(config)
        ):
            report.git_dirty = True

        fatal = bool(hard_missing) and not opts.skip_missing
        if hard_missing and opts.skip_missing:
            report.warnings.append("continuing without: " + ", ".join(hard_missing))

        if dry_run and (fatal or report.git_dirty):
            report.warnings.extend(report.missing)
            if report.git_dirty:
                report.warnings.append("working tree is dirty")
            report.git_dirty = False
            fatal = False

        if fatal or report.git_dirty:
            report.status = FAILED
        elif report.remediated:
            report.status = REMEDIATED

        for w in report.warnings:
            logger.warning("Preflight: %s", w)
        logger.info(
            "Preflight %s",
            report.status,
            extra={"fields": {"missing": report.missing, "remediated": report.remediated}},
        )
        return report
