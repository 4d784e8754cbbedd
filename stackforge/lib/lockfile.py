from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from ..errors import ConcurrentRunError

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RunLock:
    """PID file guarding a state directory against a second live orchestrator."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.held = False

    def holder(self) -> Optional[int]:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> None:
        pid = self.holder()
        if pid is not None and pid != os.getpid():
            if _pid_alive(pid):
                raise ConcurrentRunError(
                    f"Another run (pid {pid}) is using {self.path.parent}; "
                    f"wait for it or remove {self.path} if it is gone"
                )
            logger.warning("Taking over stale run lock %s (pid %s is not running)", self.path, pid)
        elif self.path.exists() and pid is None:
            logger.warning("Replacing unreadable run lock %s", self.path)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{os.getpid()}\n", encoding="utf-8")
        self.held = True

    def release(self) -> None:
        if self.held and self.holder() == os.getpid():
            self.path.unlink()
        self.held = False

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
