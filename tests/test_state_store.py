from __future__ import annotations

import json
import logging

import pytest

from stackforge.errors import StateCorruption
from stackforge.state_store import StateStore


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state" / "state.jsonl")


def test_fresh_store_is_empty(store):
    assert store.entries() == []
    assert store.has_succeeded("step", "p1/a") is False
    assert store.status("step", "p1/a") is None


def test_last_writer_wins(store):
    store.mark_result("step", "p1/a", "in_progress")
    store.mark_result("step", "p1/a", "failed")
    store.mark_result("step", "p1/a", "completed")

    assert store.has_succeeded("step", "p1/a")
    lines = store.path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["type"] == "step"
    assert record["id"] == "p1/a"
    assert record["status"] == "completed"
    assert record["ts"]


def test_step_and_phase_keys_are_independent(store):
    store.mark_result("phase", "p1", "completed")
    store.mark_result("step", "p1", "failed")

    assert store.status("phase", "p1") == "completed"
    assert store.status("step", "p1") == "failed"


def test_reset_single_and_wildcard(store):
    store.mark_result("step", "p1/a", "completed")
    store.mark_result("step", "p1/b", "completed")
    store.mark_result("phase", "p1", "completed")

    assert store.reset("step", "p1/a") == 1
    assert store.status("step", "p1/a") is None
    assert store.reset("step", "*") == 1
    assert store.status("phase", "p1") == "completed"
    assert store.reset("*", "*") == 1
    assert store.entries() == []


def test_reset_phase_drops_phase_and_its_steps(store):
    store.mark_result("phase", "p1", "completed")
    store.mark_result("step", "p1/a", "completed")
    store.mark_result("step", "p2/d", "completed")

    assert store.reset_phase("p1", ["p1/a", "p1/b"]) == 2
    assert store.has_succeeded("step", "p2/d")


def test_rejects_unknown_status(store):
    with pytest.raises(ValueError):
        store.mark_result("step", "p1/a", "done")


def test_corrupt_lines_are_skipped_with_warning(store, caplog):
    store.path.parent.mkdir(parents=True)
    store.path.write_text(
        "\n".join(
            [
                '{"type": "step", "id": "p1/a", "status": "completed", "ts": "x"}',
                "not json at all",
                '{"type": "step", "id": "p1/b", "status": "exploded"}',
                '["a", "list"]',
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    with caplog.at_level(logging.WARNING):
        assert store.has_succeeded("step", "p1/a")
        assert store.status("step", "p1/b") is None

    assert caplog.text.count("Ignoring malformed state record") >= 3


def test_rewrite_compacts_away_corrupt_lines(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text("garbage\n", encoding="utf-8")

    store.mark_result("step", "p1/a", "completed")

    assert store.path.read_text(encoding="utf-8").count("\n") == 1


def test_fail_policy_raises(tmp_path):
    path = tmp_path / "state.jsonl"
    path.write_text("{broken\n", encoding="utf-8")

    with pytest.raises(StateCorruption):
        StateStore(path, on_corruption="fail").has_succeeded("step", "p1/a")


def test_clear_removes_file(store):
    store.mark_result("step", "p1/a", "completed")
    store.clear()
    assert not store.path.exists()
