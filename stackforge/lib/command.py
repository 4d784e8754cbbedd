from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence

from ..errors import StepTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def _kill_group(proc: subprocess.Popen, fired: threading.Event) -> None:
    fired.set()
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    dry_run: bool = False,
    timeout_s: float | None = None,
    on_output: Optional[Callable[[str], None]] = None,
) -> CmdResult:
    """Run a command with consistent logging and a hard wall-clock limit.

    - Always logs the command.
    - dry_run logs but does not execute.
    - The child runs in its own session; when ``timeout_s`` elapses a
      watchdog timer kills the whole process group and StepTimeoutError is
      raised regardless of ``check``.
    - With ``on_output`` stdout and stderr are merged and handed over line
      by line as they arrive, otherwise both are captured.
    """

    argv_list = list(argv)
    logger.info("CMD %s", format_argv(argv_list))

    if dry_run:
        return CmdResult(argv=argv_list, returncode=0, stdout="", stderr="")

    proc = subprocess.Popen(
        argv_list,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT if on_output else subprocess.PIPE,
        text=True,
        cwd=cwd,
        env=dict(os.environ, **(env or {})),
        start_new_session=True,
    )

    fired = threading.Event()
    timer: Optional[threading.Timer] = None
    if timeout_s:
        timer = threading.Timer(timeout_s, _kill_group, args=(proc, fired))
        timer.daemon = True
        timer.start()

    try:
        if on_output:
            if input_text is not None and proc.stdin:
                proc.stdin.write(input_text)
                proc.stdin.close()
            chunks: list[str] = []
            assert proc.stdout is not None
            for line in proc.stdout:
                chunks.append(line)
                on_output(line.rstrip("\n"))
            proc.wait()
            stdout, stderr = "".join(chunks), ""
        else:
            stdout, stderr = proc.communicate(input=input_text)
    except BaseException:
        # Interrupted while waiting: never leave the child running.
        _kill_group(proc, threading.Event())
        proc.wait()
        raise
    finally:
        if timer is not None:
            timer.cancel()

    if fired.is_set():
        logger.error("Command timed out after %ss: %s", timeout_s, format_argv(argv_list))
        raise StepTimeoutError(argv_list, float(timeout_s or 0))

    if stdout and not on_output:
        logger.debug("STDOUT %s", stdout.strip())
    if stderr:
        logger.debug("STDERR %s", stderr.strip())

    if check and proc.returncode != 0:
        raise RuntimeError(f"Command failed ({proc.returncode}): {format_argv(argv_list)}\n{stderr}")

    return CmdResult(argv=argv_list, returncode=proc.returncode, stdout=stdout or "", stderr=stderr or "")
