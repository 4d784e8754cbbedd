from __future__ import annotations

from stackforge.checkpoint import CheckpointManager


def test_save_overwrites_single_slot(tmp_path):
    cp = CheckpointManager(tmp_path / "checkpoint.json")

    cp.save("p1", "")
    cp.save("p1", "p1/b")

    loaded = cp.load()
    assert loaded is not None
    assert (loaded.phase, loaded.step) == ("p1", "p1/b")
    assert loaded.timestamp


def test_load_missing_returns_none(tmp_path):
    assert CheckpointManager(tmp_path / "checkpoint.json").load() is None


def test_clear(tmp_path):
    cp = CheckpointManager(tmp_path / "checkpoint.json")
    cp.save("p2", "p2/d")
    cp.clear()
    assert cp.load() is None
    cp.clear()


def test_malformed_checkpoint_is_ignored(tmp_path, caplog):
    path = tmp_path / "checkpoint.json"
    path.write_text("{nope", encoding="utf-8")

    assert CheckpointManager(path).load() is None
    assert "unreadable checkpoint" in caplog.text
