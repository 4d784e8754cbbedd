from __future__ import annotations

import json
import os
import sys
import textwrap

from conftest import FakeStep, fake_registry

from stackforge.errors import StepTimeoutError
from stackforge.executor import FAILURE, SKIPPED, SUCCESS, StepExecutor
from stackforge.profiles import resolve_profile
from stackforge.state_store import StateStore
from stackforge.steps import RunFlags, ScriptStep, StepRegistry


def _executor(config, registry):
    store = StateStore(config.state_dir / "state.jsonl")
    return StepExecutor(store, registry), store


def test_success_is_recorded_and_rerun_is_skipped(make_config):
    config = make_config()
    step = FakeStep("p1/a")
    executor, store = _executor(config, fake_registry(a=step))

    first = executor.run("p1/a", config, RunFlags())
    second = executor.run("p1/a", config, RunFlags())

    assert first.status == SUCCESS
    assert second.status == SKIPPED
    assert second.reason == "already completed"
    assert step.calls == 1
    assert store.status("step", "p1/a") == "completed"


def test_force_reruns_completed_step(make_config):
    config = make_config()
    step = FakeStep("p1/a")
    executor, _ = _executor(config, fake_registry(a=step))

    executor.run("p1/a", config, RunFlags())
    result = executor.run("p1/a", config, RunFlags(force=True))

    assert result.status == SUCCESS
    assert step.calls == 2


def test_resume_mode_force_reruns(make_config):
    def mutate(d):
        d["run"]["resume_mode"] = "force"

    config = make_config(mutate)
    step = FakeStep("p1/a")
    executor, _ = _executor(config, fake_registry(a=step))

    executor.run("p1/a", config, RunFlags())
    executor.run("p1/a", config, RunFlags())
    assert step.calls == 2


def test_dry_run_previews_without_state(make_config):
    config = make_config()
    step = FakeStep("p1/a")
    executor, store = _executor(config, fake_registry(a=step))

    result = executor.run("p1/a", config, RunFlags(dry_run=True))

    assert result.status == SKIPPED
    assert result.reason == "dry-run"
    assert step.calls == 0
    assert step.previews == 1
    assert not store.path.exists()


def test_nonzero_exit_records_failure(make_config):
    config = make_config()
    executor, store = _executor(config, fake_registry(a=FakeStep("p1/a", returncodes=[2])))

    result = executor.run("p1/a", config, RunFlags())

    assert result.status == FAILURE
    assert result.returncode == 2
    assert result.reason == "exit status 2"
    assert store.status("step", "p1/a") == "failed"


def test_timeout_records_failure_with_reason(make_config):
    config = make_config()
    step = FakeStep("p1/a", exc=StepTimeoutError(["sleep"], 5))
    executor, store = _executor(config, fake_registry(a=step))

    result = executor.run("p1/a", config, RunFlags())

    assert result.status == FAILURE
    assert "timed out" in result.reason
    assert store.status("step", "p1/a") == "failed"


def test_missing_executable_is_a_failure(make_config):
    config = make_config()
    step = FakeStep("p1/a", exc=FileNotFoundError("no such file"))
    executor, store = _executor(config, fake_registry(a=step))

    result = executor.run("p1/a", config, RunFlags())

    assert result.status == FAILURE
    assert result.reason.startswith("could not start")


def test_missing_required_config_fails_before_running(make_config):
    def mutate(d):
        d["steps"]["p1/a"]["requires"] = ["credentials.db_user"]

    config = make_config(mutate)
    step = FakeStep("p1/a")
    executor, store = _executor(config, fake_registry(a=step))

    result = executor.run("p1/a", config, RunFlags())

    assert result.status == FAILURE
    assert "credentials.db_user" in result.reason
    assert step.calls == 0
    assert store.status("step", "p1/a") == "failed"


def test_disabled_step_is_skipped_without_state(make_config):
    config = resolve_profile(make_config(), "minimal")
    step = FakeStep("p2/d")
    executor, store = _executor(config, fake_registry(d=step))

    result = executor.run("p2/d", config, RunFlags())

    assert result.status == SKIPPED
    assert result.reason == "disabled by profile"
    assert step.calls == 0
    assert store.status("step", "p2/d") is None


def _script_config(make_config, tmp_path, body, max_seconds=5):
    scripts = tmp_path / "scripts"
    scripts.mkdir(exist_ok=True)
    (scripts / "a.py").write_text(textwrap.dedent(body), encoding="utf-8")

    def mutate(d):
        d["steps"]["p1/a"]["script"] = "a.py"
        d["run"]["max_cmd_seconds"] = max_seconds
        d["env"] = {"EXTRA_SETTING": "42"}

    return make_config(mutate)


def test_script_step_runs_external_program(make_config, tmp_path):
    config = _script_config(
        make_config,
        tmp_path,
        """
        import json, os
        keys = ["STACKFORGE_STEP_ID", "STACKFORGE_PHASE", "APP_NAME", "DRY_RUN", "ENABLE_EXTRAS", "EXTRA_SETTING"]
        with open("env.json", "w") as fh:
            json.dump({k: os.environ.get(k) for k in keys}, fh)
        print("wrote env.json")
        """,
    )
    registry = StepRegistry()
    registry.register(ScriptStep(config.steps["p1/a"], config.scripts_dir))
    executor, store = _executor(config, registry)

    result = executor.run("p1/a", config, RunFlags())

    assert result.status == SUCCESS
    env = json.loads((config.project_root / "env.json").read_text(encoding="utf-8"))
    assert env == {
        "STACKFORGE_STEP_ID": "p1/a",
        "STACKFORGE_PHASE": "p1",
        "APP_NAME": "demo",
        "DRY_RUN": "false",
        "ENABLE_EXTRAS": "true",
        "EXTRA_SETTING": "42",
    }


def test_script_step_preview_lists_command(make_config, tmp_path):
    config = _script_config(make_config, tmp_path, "print('hi')\n")
    step = ScriptStep(config.steps["p1/a"], config.scripts_dir)

    lines = step.preview(config, RunFlags(dry_run=True))

    assert lines[0] == "first"
    assert sys.executable in lines[1]
    assert not config.project_root.exists()


def test_script_step_timeout_is_a_failure(make_config, tmp_path):
    config = _script_config(make_config, tmp_path, "import time\ntime.sleep(60)\n", max_seconds=1)
    registry = StepRegistry()
    registry.register(ScriptStep(config.steps["p1/a"], config.scripts_dir))
    executor, store = _executor(config, registry)

    result = executor.run("p1/a", config, RunFlags())

    assert result.status == FAILURE
    assert result.reason == "timed out after 1s"
    assert result.duration_s < 10
    assert store.status("step", "p1/a") == "failed"


def test_script_step_runs_in_install_dir(make_config, tmp_path):
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    (scripts / "a.py").write_text("import os\nopen('cwd.txt', 'w').write(os.getcwd())\n", encoding="utf-8")

    def mutate(d):
        d["steps"]["p1/a"]["script"] = "a.py"
        d["project"]["install_dir"] = "app"

    config = make_config(mutate)
    registry = StepRegistry()
    registry.register(ScriptStep(config.steps["p1/a"], config.scripts_dir))
    executor, _ = _executor(config, registry)

    assert executor.run("p1/a", config, RunFlags()).status == SUCCESS
    assert config.install_dir == config.project_root / "app"
    written = (config.install_dir / "cwd.txt").read_text(encoding="utf-8")
    assert os.path.realpath(written) == os.path.realpath(config.install_dir)
