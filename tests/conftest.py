from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest
import yaml

from stackforge.breakpoints import AutoConfirmer
from stackforge.config import Configuration, load_config
from stackforge.main import build_orchestrator
from stackforge.pipeline import PhaseOrchestrator
from stackforge.steps import StepRegistry

STEP_IDS = ["p1/a", "p1/b", "p1/c", "p2/d", "p3/e"]

BASE_DOC: Dict[str, Any] = {
    "project": {"name": "demo", "root": "project"},
    "credentials": {"db_name": "demo_db", "db_password": "s3cret"},
    "run": {"max_cmd_seconds": 5},
    "paths": {"scripts_dir": "scripts", "state_dir": "state", "log_dir": "logs"},
    "safety": {"git_safety": False},
    "features": {"extras": True},
    "phases": [
        {"id": "p1", "label": "Phase One"},
        {"id": "p2", "label": "Phase Two", "breakpoint": True, "guidance": ["Review the generated files."]},
        {"id": "p3", "label": "Phase Three"},
    ],
    "steps": {
        "p1/a": {"script": "a.sh", "description": "first"},
        "p1/b": {"script": "b.sh"},
        "p1/c": {"script": "c.sh"},
        "p2/d": {"script": "d.sh", "group": "extras"},
        "p3/e": {"script": "e.sh", "group": "extras", "critical": True},
    },
    "order": list(STEP_IDS),
    "profiles": {
        "minimal": {"flags": {"extras": False}},
        "preview": {"dry_run": True, "flags": {}},
    },
}


class FakeStep:
    """In-process step returning scripted exit codes."""

    def __init__(self, step_id: str, returncodes: Iterable[int] = (0,), exc: Optional[BaseException] = None) -> None:
        self.step_id = step_id
        self.returncodes: List[int] = list(returncodes)
        self.exc = exc
        self.calls = 0
        self.previews = 0

    def run(self, config, flags) -> int:
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        return self.returncodes[min(self.calls, len(self.returncodes)) - 1]

    def preview(self, config, flags) -> List[str]:
        self.previews += 1
        return [f"would do {self.step_id}"]


def fake_registry(step_ids: Iterable[str] = STEP_IDS, **overrides: FakeStep) -> StepRegistry:
    registry = StepRegistry()
    for step_id in step_ids:
        registry.register(FakeStep(step_id))
    for step in overrides.values():
        registry.register(step)
    return registry


@pytest.fixture
def doc() -> Dict[str, Any]:
    return copy.deepcopy(BASE_DOC)


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., Path]:
    def _write(data: Dict[str, Any], name: str = "stackforge.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_config(doc, write_config) -> Callable[..., Configuration]:
    def _make(mutate: Optional[Callable[[Dict[str, Any]], None]] = None, environ=None) -> Configuration:
        data = copy.deepcopy(doc)
        if mutate is not None:
            mutate(data)
        return load_config(str(write_config(data)), environ=environ or {})

    return _make


@pytest.fixture
def make_engine() -> Callable[..., PhaseOrchestrator]:
    def _make(config: Configuration, registry: StepRegistry, confirmer=None) -> PhaseOrchestrator:
        return build_orchestrator(config, confirmer=confirmer or AutoConfirmer(), registry=registry)

    return _make


@pytest.fixture(autouse=True)
def _reset_stackforge_logger():
    yield
    logger = logging.getLogger("stackforge")
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
