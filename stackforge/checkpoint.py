from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .state_store import utc_now, write_atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    phase: str
    step: str
    timestamp: str


class CheckpointManager:
    """Single-slot pointer to where the last run got to."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def save(self, phase: str, step: str = "") -> Checkpoint:
        cp = Checkpoint(phase=phase, step=step, timestamp=utc_now())
        write_atomic(
            self.path,
            json.dumps({"phase": cp.phase, "step": cp.step, "ts": cp.timestamp}, sort_keys=True) + "\n",
        )
        return cp

    def load(self) -> Optional[Checkpoint]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", self.path, e)
            return None
        if not isinstance(data, dict) or not isinstance(data.get("phase"), str) or not data["phase"]:
            logger.warning("Ignoring malformed checkpoint %s", self.path)
            return None
        return Checkpoint(phase=data["phase"], step=str(data.get("step") or ""), timestamp=str(data.get("ts") or ""))

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
