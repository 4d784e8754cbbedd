from __future__ import annotations

import json
import logging
import os
import time

from stackforge.config import LoggingOptions
from stackforge.logging_utils import (
    ConsoleFormatter,
    JsonFormatter,
    PlainFileFormatter,
    cleanup_logs,
    configure_logging,
    current_log_path,
    resolve_level,
    rotate_logs,
)


def _record(msg="Hello", level=logging.INFO, **extra):
    record = logging.LogRecord(
        name="stackforge.test", level=level, pathname="", lineno=0,
        msg=msg, args=(), exc_info=None,
    )
    for k, v in extra.items():
        setattr(record, k, v)
    return record


class TestFormatters:
    def test_console_format(self):
        assert ConsoleFormatter().format(_record(level=logging.WARNING)) == "[WARNING] Hello"

    def test_plain_file_format(self):
        out = PlainFileFormatter().format(_record())
        assert out.startswith("[")
        assert out.endswith("] [INFO] Hello")

    def test_json_format_with_fields(self):
        out = JsonFormatter(script="stackforge").format(_record(fields={"step": "p1/a", "duration_s": 1.5}))
        parsed = json.loads(out)
        assert parsed["level"] == "INFO"
        assert parsed["msg"] == "Hello"
        assert parsed["script"] == "stackforge"
        assert parsed["step"] == "p1/a"
        assert parsed["duration_s"] == 1.5
        assert parsed["ts"].endswith("Z")

    def test_json_fields_do_not_clobber_core_keys(self):
        parsed = json.loads(JsonFormatter().format(_record(fields={"msg": "other"})))
        assert parsed["msg"] == "Hello"


class TestLevels:
    def test_aliases(self):
        assert resolve_level("quiet") == logging.WARNING
        assert resolve_level("status") == logging.INFO
        assert resolve_level("verbose") == logging.DEBUG

    def test_standard_names_and_fallback(self):
        assert resolve_level("error") == logging.ERROR
        assert resolve_level("bogus") == logging.INFO


class TestConfigureLogging:
    def test_writes_plain_log_file(self, tmp_path):
        path = configure_logging(LoggingOptions(), log_dir=tmp_path / "logs", also_console=False)

        logging.getLogger("stackforge.demo").info("step done")
        for h in logging.getLogger("stackforge").handlers:
            h.flush()

        assert current_log_path() == path
        assert os.path.basename(path).startswith("bootstrap-")
        assert "[INFO] step done" in open(path, encoding="utf-8").read()

    def test_writes_json_log_file(self, tmp_path):
        log_path = tmp_path / "run.log"
        configure_logging(LoggingOptions(format="json"), log_dir=tmp_path, log_path=log_path, also_console=False)

        logging.getLogger("stackforge.demo").info("hello", extra={"fields": {"phase": "p1"}})
        for h in logging.getLogger("stackforge").handlers:
            h.flush()

        lines = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
        assert {"msg": "hello", "phase": "p1"}.items() <= lines[-1].items()

    def test_reconfigure_replaces_handlers(self, tmp_path):
        configure_logging(LoggingOptions(), log_dir=tmp_path / "a")
        configure_logging(LoggingOptions(), log_dir=tmp_path / "b")
        assert len(logging.getLogger("stackforge").handlers) == 2


class TestRetention:
    def _age(self, path, days):
        old = time.time() - days * 86400
        os.utime(path, (old, old))

    def test_rotate_moves_old_logs_only(self, tmp_path):
        old = tmp_path / "bootstrap-old.log"
        new = tmp_path / "bootstrap-new.log"
        manifest = tmp_path / "deployment-manifest.log"
        for p in (old, new, manifest):
            p.write_text("x", encoding="utf-8")
        self._age(old, 40)
        self._age(manifest, 40)

        moved = rotate_logs(tmp_path, 30)

        assert moved == [tmp_path / "archive" / "bootstrap-old.log"]
        assert new.exists()
        assert manifest.exists()

    def test_cleanup_deletes_old_archives(self, tmp_path):
        archive = tmp_path / "archive"
        archive.mkdir()
        stale = archive / "a.log"
        fresh = archive / "b.log"
        stale.write_text("x", encoding="utf-8")
        fresh.write_text("x", encoding="utf-8")
        self._age(stale, 100)

        assert cleanup_logs(tmp_path, 90) == [stale]
        assert fresh.exists()

    def test_missing_directory_is_fine(self, tmp_path):
        assert rotate_logs(tmp_path / "nope", 30) == []
        assert cleanup_logs(tmp_path / "nope", 90) == []
