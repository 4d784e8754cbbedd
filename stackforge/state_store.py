from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import StateCorruption

logger = logging.getLogger(__name__)

SUBJECT_TYPES = ("step", "phase")

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
STATUSES = (PENDING, IN_PROGRESS, COMPLETED, FAILED)

Key = Tuple[str, str]


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


@dataclass(frozen=True)
class StateEntry:
    subject_type: str
    subject_id: str
    status: str
    timestamp: str

    def to_record(self) -> Dict[str, str]:
        return {
            "type": self.subject_type,
            "id": self.subject_id,
            "status": self.status,
            "ts": self.timestamp,
        }


class StateStore:
    """Ledger of the latest status per (subject type, subject id).

    Persisted as JSON lines; the file is compacted every time it is read
    (last line for a key wins) and rewritten atomically on every mutation.
    """

    def __init__(self, path: Path, *, on_corruption: str = "warn") -> None:
        self.path = Path(path)
        self.on_corruption = on_corruption

    def _corrupt(self, lineno: int, reason: str) -> None:
        msg = f"{self.path}:{lineno}: {reason}"
        if self.on_corruption == "fail":
            raise StateCorruption(msg + " (run with --reset to start over)")
        logger.warning("Ignoring malformed state record %s", msg)

    def _load(self) -> Dict[Key, StateEntry]:
        entries: Dict[Key, StateEntry] = {}
        if not self.path.exists():
            return entries

        text = self.path.read_text(encoding="utf-8", errors="replace")
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                rec = json.loads(line)
            except ValueError:
                self._corrupt(lineno, "not valid JSON")
                continue
            if not isinstance(rec, dict):
                self._corrupt(lineno, "not an object")
                continue
            stype, sid, status = rec.get("type"), rec.get("id"), rec.get("status")
            if stype not in SUBJECT_TYPES or not isinstance(sid, str) or not sid or status not in STATUSES:
                self._corrupt(lineno, "missing or invalid type/id/status")
                continue
            entries[(stype, sid)] = StateEntry(stype, sid, status, str(rec.get("ts") or ""))
        return entries

    def _save(self, entries: Dict[Key, StateEntry]) -> None:
        lines = [json.dumps(e.to_record(), sort_keys=True) for e in entries.values()]
        write_atomic(self.path, "".join(line + "\n" for line in lines))

    def entries(self) -> List[StateEntry]:
        return list(self._load().values())

    def get(self, subject_type: str, subject_id: str) -> Optional[StateEntry]:
        return self._load().get((subject_type, subject_id))

    def status(self, subject_type: str, subject_id: str) -> Optional[str]:
        entry = self.get(subject_type, subject_id)
        return entry.status if entry else None

    def has_succeeded(self, subject_type: str, subject_id: str) -> bool:
        return self.status(subject_type, subject_id) == COMPLETED

    def completed(self, subject_type: str = "step") -> List[str]:
        return [e.subject_id for e in self._load().values() if e.subject_type == subject_type and e.status == COMPLETED]

    def mark_result(self, subject_type: str, subject_id: str, status: str) -> StateEntry:
        if subject_type not in SUBJECT_TYPES:
            raise ValueError(f"Unknown subject type: {subject_type}")
        if status not in STATUSES:
            raise ValueError(f"Unknown status: {status}")

        entries = self._load()
        entry = StateEntry(subject_type, subject_id, status, utc_now())
        # Remove-then-insert keeps the newest record last in the file.
        entries.pop((subject_type, subject_id), None)
        entries[(subject_type, subject_id)] = entry
        self._save(entries)
        logger.debug("State %s:%s -> %s", subject_type, subject_id, status)
        return entry

    def reset(self, subject_type: str, subject_id: str = "*") -> int:
        """Drop entries of ``subject_type``; ``"*"`` matches every id.

        Returns the number of entries removed.
        """

        entries = self._load()
        doomed = [
            k for k in entries
            if (subject_type == "*" or k[0] == subject_type) and (subject_id == "*" or k[1] == subject_id)
        ]
        for k in doomed:
            del entries[k]
        if doomed:
            self._save(entries)
        return len(doomed)

    def reset_phase(self, phase_id: str, step_ids: Iterable[str]) -> int:
        entries = self._load()
        doomed = [("phase", phase_id)] + [("step", s) for s in step_ids]
        removed = 0
        for k in doomed:
            if entries.pop(k, None) is not None:
                removed += 1
        if removed:
            self._save(entries)
        return removed

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
