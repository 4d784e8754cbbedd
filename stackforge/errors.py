from __future__ import annotations

from typing import Iterable, List, Optional, Sequence


class StackforgeError(Exception):
    """Base class for every error the orchestrator raises on purpose."""


class ConfigError(StackforgeError):
    """Configuration is missing, unreadable or fails validation."""

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None) -> None:
        self.problems: List[str] = list(problems or [])
        if self.problems:
            message = message + ":\n" + "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message)


class GitSafetyViolation(StackforgeError):
    """The project working tree is dirty while git safety is enabled."""


class PreflightError(StackforgeError):
    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = list(missing)
        super().__init__("Missing prerequisites: " + ", ".join(self.missing))


class StepTimeoutError(StackforgeError):
    def __init__(self, argv: Sequence[str], timeout_s: float) -> None:
        self.argv = list(argv)
        self.timeout_s = timeout_s
        super().__init__(f"timed out after {timeout_s:g}s")


class StepFailure(StackforgeError):
    def __init__(self, step_id: str, reason: str) -> None:
        self.step_id = step_id
        self.reason = reason
        super().__init__(f"{step_id}: {reason}")


class StateCorruption(StackforgeError):
    """A persisted state record could not be parsed."""


class ConcurrentRunError(StackforgeError):
    """Another orchestrator process holds the run lock."""
