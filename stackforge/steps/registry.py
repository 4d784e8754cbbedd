from __future__ import annotations

from typing import Dict, Iterator, List

from ..config import Configuration
from ..errors import ConfigError
from .base import Step
from .script import ScriptStep


class StepRegistry:
    """Steps keyed by id; the orchestrator only ever talks to this."""

    def __init__(self) -> None:
        self._steps: Dict[str, Step] = {}

    def register(self, step: Step) -> None:
        self._steps[step.step_id] = step

    def get(self, step_id: str) -> Step:
        try:
            return self._steps[step_id]
        except KeyError:
            raise ConfigError(f"No step registered for {step_id}") from None

    def ids(self) -> List[str]:
        return list(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)


def build_registry(config: Configuration) -> StepRegistry:
    registry = StepRegistry()
    for step_id in config.order:
        registry.register(ScriptStep(config.steps[step_id], config.scripts_dir))
    return registry
