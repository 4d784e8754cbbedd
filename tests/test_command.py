from __future__ import annotations

import sys
import time

import pytest

from stackforge.errors import StepTimeoutError
from stackforge.lib.command import format_argv, run_cmd


def test_captures_output():
    res = run_cmd([sys.executable, "-c", "print('hello')"])
    assert res.returncode == 0
    assert res.stdout.strip() == "hello"


def test_check_raises_on_nonzero():
    with pytest.raises(RuntimeError, match="Command failed"):
        run_cmd([sys.executable, "-c", "import sys; sys.exit(3)"])


def test_nonzero_without_check():
    res = run_cmd([sys.executable, "-c", "import sys; sys.exit(3)"], check=False)
    assert res.returncode == 3


def test_on_output_receives_lines_in_order():
    seen = []
    res = run_cmd(
        [sys.executable, "-c", "import sys; print('one'); print('two', file=sys.stderr)"],
        on_output=seen.append,
    )
    assert res.returncode == 0
    assert sorted(seen) == ["one", "two"]


def test_input_text_is_passed_to_stdin():
    res = run_cmd([sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"], input_text="abc")
    assert res.stdout.strip() == "ABC"


def test_dry_run_does_not_execute(tmp_path):
    marker = tmp_path / "marker"
    res = run_cmd([sys.executable, "-c", f"open({str(marker)!r}, 'w').close()"], dry_run=True)
    assert res.returncode == 0
    assert not marker.exists()


def test_watchdog_kills_hung_process():
    started = time.monotonic()
    with pytest.raises(StepTimeoutError) as exc:
        run_cmd([sys.executable, "-c", "import time; time.sleep(60)"], check=False, timeout_s=0.5)
    assert time.monotonic() - started < 10
    assert "timed out" in str(exc.value)


def test_format_argv_quotes():
    assert format_argv(["echo", "a b"]) == "echo 'a b'"
