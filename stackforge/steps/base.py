from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol

from ..config import Configuration


@dataclass(frozen=True)
class RunFlags:
    dry_run: bool = False
    force: bool = False
    verbose: bool = False
    auto_confirm: bool = False
    skip_breakpoints: bool = False
    skip_preflight: bool = False


class Step(Protocol):
    """A single idempotent unit of installation work.

    ``run`` returns the exit status (0 means success) and may raise
    StepTimeoutError; ``preview`` describes what ``run`` would do without
    touching anything.
    """

    step_id: str

    def run(self, config: Configuration, flags: RunFlags) -> int:
        ...

    def preview(self, config: Configuration, flags: RunFlags) -> List[str]:
        ...
