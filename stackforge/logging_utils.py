from __future__ import annotations

import json
import logging
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import LoggingOptions

LOGGER_NAME = "stackforge"
MANIFEST_NAME = "deployment-manifest.log"

LEVEL_ALIASES = {
    "quiet": logging.WARNING,
    "status": logging.INFO,
    "verbose": logging.DEBUG,
}


def resolve_level(name: str) -> int:
    key = (name or "").strip().lower()
    if key in LEVEL_ALIASES:
        return LEVEL_ALIASES[key]
    level = logging.getLevelName(key.upper())
    return level if isinstance(level, int) else logging.INFO


class ConsoleFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(fmt="[%(levelname)s] %(message)s")


class PlainFileFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(fmt="[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, script, msg plus structured fields."""

    def __init__(self, script: str = LOGGER_NAME) -> None:
        super().__init__()
        self.script = script

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "script": self.script,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            for k, v in fields.items():
                entry.setdefault(k, v)
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def default_log_path(log_dir: Path) -> Path:
    return Path(log_dir) / f"bootstrap-{time.strftime('%Y%m%d-%H%M%S')}.log"


def configure_logging(
    options: LoggingOptions,
    *,
    log_dir: Path,
    verbose: bool = False,
    also_console: bool = True,
    log_path: Optional[Path] = None,
) -> str:
    """Configure the ``stackforge`` logger for one run.

    The file handler always records DEBUG; the console follows the
    configured level (``quiet|status|verbose`` or a standard level name),
    forced to DEBUG by ``verbose``. If the log directory is not writable the
    file falls back to the current working directory.

    Returns the actual file path being used.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Re-configuring replaces the previous run's handlers.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    requested = Path(log_path) if log_path else default_log_path(log_dir)
    json_mode = options.format == "json"

    try:
        requested.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(requested, encoding="utf-8")
        chosen = requested
    except OSError:
        chosen = Path.cwd() / requested.name
        file_handler = logging.FileHandler(chosen, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(JsonFormatter() if json_mode else PlainFileFormatter())
    logger.addHandler(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setLevel(logging.DEBUG if verbose else resolve_level(options.level))
        console.setFormatter(JsonFormatter() if json_mode else ConsoleFormatter())
        logger.addHandler(console)

    setattr(logger, "_stackforge_log_path", str(chosen))
    logger.debug("Logging initialized (requested=%s, actual=%s)", requested, chosen)
    return str(chosen)


def current_log_path() -> Optional[str]:
    return getattr(logging.getLogger(LOGGER_NAME), "_stackforge_log_path", None)


def _older_than(path: Path, days: int, now: float) -> bool:
    return now - path.stat().st_mtime > days * 86400


def rotate_logs(log_dir: Path, days: int, *, now: Optional[float] = None) -> List[Path]:
    """Move ``*.log`` files older than ``days`` into ``<log_dir>/archive``."""

    log_dir = Path(log_dir)
    if days <= 0 or not log_dir.is_dir():
        return []
    now = time.time() if now is None else now
    archive = log_dir / "archive"
    moved: List[Path] = []
    for path in sorted(log_dir.glob("*.log")):
        if path.name == MANIFEST_NAME or not _older_than(path, days, now):
            continue
        archive.mkdir(exist_ok=True)
        target = archive / path.name
        shutil.move(str(path), str(target))
        moved.append(target)
    if moved:
        logging.getLogger(__name__).info("Archived %d log file(s) older than %d days", len(moved), days)
    return moved


def cleanup_logs(log_dir: Path, days: int, *, now: Optional[float] = None) -> List[Path]:
    """Delete archived logs older than ``days``."""

    archive = Path(log_dir) / "archive"
    if days <= 0 or not archive.is_dir():
        return []
    now = time.time() if now is None else now
    removed: List[Path] = []
    for path in sorted(archive.iterdir()):
        if path.is_file() and _older_than(path, days, now):
            path.unlink()
            removed.append(path)
    if removed:
        logging.getLogger(__name__).info("Deleted %d archived log file(s) older than %d days", len(removed), days)
    return removed
