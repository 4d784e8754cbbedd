from .base import RunFlags, Step
from .registry import StepRegistry, build_registry
from .script import ScriptStep, step_environment

__all__ = [
    "RunFlags",
    "Step",
    "StepRegistry",
    "build_registry",
    "ScriptStep",
    "step_environment",
]
