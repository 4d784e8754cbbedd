from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import shutil
import sys
from typing import Callable, Mapping, Optional

from .breakpoints import RESUME_COMMAND, BreakpointController, Confirmer, TerminalConfirmer
from .checkpoint import CheckpointManager
from .config import DEFAULT_CONFIG_PATH, Configuration, load_config
from .errors import (
    ConcurrentRunError,
    ConfigError,
    GitSafetyViolation,
    PreflightError,
    StateCorruption,
    StepFailure,
)
from .executor import FAILURE, StepExecutor
from .lib.lockfile import RunLock
from .logging_utils import cleanup_logs, configure_logging, current_log_path, rotate_logs
from .pipeline import PHASE_FAILED, RUN_FAILED, PhaseOrchestrator, RunResult
from .preflight import PreflightValidator
from .profiles import get_profile, resolve_profile
from .report import format_phase_list, format_status, format_step_list
from .state_store import StateStore
from .steps import RunFlags, StepRegistry, build_registry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_PREFLIGHT = 3
EXIT_INTERRUPTED = 130

MENU = """\
stackforge: {name} (profile: {profile})

  1) Run remaining steps
  2) Run a single step
  3) Force run all
  4) Dry-run all
  5) List phases and steps
  6) Show status
  7) Reset state
  q) Quit
"""


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="stackforge",
        description="Config-driven, resumable project bootstrap orchestrator.",
    )
    p.add_argument("command", nargs="?", choices=["run"], help="Open the interactive menu (default with no action)")

    actions = p.add_mutually_exclusive_group()
    actions.add_argument("--all", action="store_true", help="Run every phase in order")
    actions.add_argument("--phase", metavar="ID", help="Run one phase")
    actions.add_argument("--script", metavar="ID", help="Run one step")
    actions.add_argument("--resume", action="store_true", help="Continue from the last checkpoint")
    actions.add_argument("--status", action="store_true", help="Show progress")
    actions.add_argument(
        "--reset",
        nargs="?",
        const="*",
        metavar="ID",
        help="Reset state for a step or phase (everything when no ID is given)",
    )
    actions.add_argument("--list-phases", action="store_true", help="List phases and profiles")
    actions.add_argument("--list-scripts", action="store_true", help="List steps per phase")

    p.add_argument("-n", "--dry-run", action="store_true", default=None, help="Preview without changing anything")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose console output")
    p.add_argument("-y", "--yes", action="store_true", help="Auto-confirm breakpoints")
    p.add_argument("--force", action="store_true", help="Re-run steps even if marked completed")
    p.add_argument("--skip-breakpoints", action="store_true", help="Never pause at breakpoints")
    p.add_argument("--skip-preflight", action="store_true", help="Skip prerequisite checks")
    p.add_argument("--from", dest="from_phase", metavar="PHASE", help="Start at this phase (--all/--resume)")
    p.add_argument("-c", "--config", default=None, help=f"Config file (default: {DEFAULT_CONFIG_PATH})")
    p.add_argument("-p", "--profile", default=None, help="Stack profile to apply")
    return p


def build_orchestrator(
    config: Configuration,
    *,
    confirmer: Confirmer,
    registry: Optional[StepRegistry] = None,
) -> PhaseOrchestrator:
    store = StateStore(config.state_dir / "state.jsonl", on_corruption=config.on_corruption)
    executor = StepExecutor(store, registry if registry is not None else build_registry(config))
    return PhaseOrchestrator(
        config,
        executor=executor,
        store=store,
        checkpoint=CheckpointManager(config.state_dir / "checkpoint.json"),
        breakpoints=BreakpointController(confirmer),
    )


def reset_state(orch: PhaseOrchestrator, target: str, *, dry_run: bool = False) -> str:
    config, store = orch.config, orch.store
    if dry_run:
        return _describe_reset(orch, target)
    if target == "*":
        store.clear()
        orch.checkpoint.clear()
        if config.handoff_dir.exists():
            shutil.rmtree(config.handoff_dir)
        return "All state, checkpoint and handoff notes cleared."
    if config.has_phase(target):
        removed = store.reset_phase(target, config.phase(target).steps)
        return f"Phase {target} reset ({removed} record(s) removed)."
    step = config.step(target)
    store.reset("step", target)
    # The phase must run again for the step to be picked up.
    store.reset("phase", step.phase)
    return f"Step {target} reset."


def _describe_reset(orch: PhaseOrchestrator, target: str) -> str:
    config, store = orch.config, orch.store
    if target == "*":
        return (
            f"Would remove {len(store.entries())} state record(s), the checkpoint "
            f"and the handoff notes in {config.handoff_dir}."
        )
    if config.has_phase(target):
        doomed = {("phase", target)} | {("step", s) for s in config.phase(target).steps}
        count = sum(1 for e in store.entries() if (e.subject_type, e.subject_id) in doomed)
        return f"Would reset phase {target} ({count} record(s))."
    step = config.step(target)
    return f"Would reset step {target} and phase {step.phase}."


def _report_failure(result: RunResult) -> None:
    phase = result.failed_phase
    step = phase.failed_step if phase else None
    print("", file=sys.stderr)
    print(
        f"FAILED: phase {phase.phase_id if phase else '?'}, step {step.step_id if step else '?'}"
        f"{': ' + step.reason if step and step.reason else ''}",
        file=sys.stderr,
    )
    print(f"Log file: {current_log_path()}", file=sys.stderr)
    print(f"Resume with: {RESUME_COMMAND}", file=sys.stderr)


def _run_result_code(result: RunResult) -> int:
    if result.status == RUN_FAILED:
        _report_failure(result)
        return EXIT_FAILURE
    return EXIT_OK


def _execute(orch: PhaseOrchestrator, args: argparse.Namespace, flags: RunFlags) -> int:
    if args.all:
        return _run_result_code(orch.run_all(flags, start_at=args.from_phase))
    if args.resume:
        return _run_result_code(orch.resume(flags, from_phase=args.from_phase))
    if args.phase:
        phase_result = orch.run_phase(args.phase, flags)
        if phase_result.status == PHASE_FAILED:
            return _run_result_code(RunResult(RUN_FAILED, [phase_result]))
        return EXIT_OK
    step_result = orch.run_step(args.script, flags)
    if step_result.status == FAILURE:
        raise StepFailure(step_result.step_id, step_result.reason)
    return EXIT_OK


def _preflight(config: Configuration, flags: RunFlags, validator: PreflightValidator) -> None:
    if flags.skip_preflight:
        logger.info("Preflight skipped")
        return
    validator.check(config, dry_run=flags.dry_run).raise_for_status()


def interactive_menu(
    orch: PhaseOrchestrator,
    flags: RunFlags,
    *,
    prompt: Callable[[str], str],
    validator: PreflightValidator,
) -> int:
    config = orch.config
    code = EXIT_OK
    while True:
        print(MENU.format(name=config.project_name, profile=config.active_profile or "none"))
        try:
            choice = prompt("Select: ").strip().lower()
        except EOFError:
            return code

        if choice in {"q", "quit", "exit"}:
            return code
        if choice == "1":
            _preflight(config, flags, validator)
            code = _run_result_code(orch.resume(flags))
        elif choice == "2":
            step_id = prompt("Step id: ").strip()
            if step_id:
                _preflight(config, flags, validator)
                result = orch.run_step(step_id, flags)
                print(f"{step_id}: {result.status}{' (' + result.reason + ')' if result.reason else ''}")
                code = EXIT_FAILURE if result.status == FAILURE else EXIT_OK
        elif choice == "3":
            forced = dataclasses.replace(flags, force=True)
            _preflight(config, forced, validator)
            code = _run_result_code(orch.run_all(forced))
        elif choice == "4":
            preview = dataclasses.replace(flags, dry_run=True)
            code = _run_result_code(orch.run_all(preview))
        elif choice == "5":
            print(format_phase_list(config))
            print(format_step_list(config, orch.store))
        elif choice == "6":
            print(format_status(config, orch.store, orch.checkpoint))
        elif choice == "7":
            if prompt("Reset all state? [y/N] ").strip().lower() in {"y", "yes"}:
                print(reset_state(orch, "*", dry_run=flags.dry_run))
        else:
            print(f"Unknown choice: {choice}")


def run(
    args: argparse.Namespace,
    *,
    environ: Mapping[str, str],
    prompt: Callable[[str], str] = input,
    confirmer: Optional[Confirmer] = None,
    registry: Optional[StepRegistry] = None,
    validator: Optional[PreflightValidator] = None,
) -> int:
    config_path = args.config or environ.get("STACKFORGE_CONFIG") or DEFAULT_CONFIG_PATH
    base = load_config(config_path, environ=environ, prompt=prompt)
    log_path = configure_logging(base.logging, log_dir=base.log_dir, verbose=args.verbose)
    rotate_logs(base.log_dir, base.logging.rotate_after_days)
    cleanup_logs(base.log_dir, base.logging.cleanup_after_days)

    config = resolve_profile(base, args.profile)
    profile = get_profile(config, config.active_profile)
    dry_run = args.dry_run if args.dry_run is not None else bool(profile and profile.dry_run)
    flags = RunFlags(
        dry_run=dry_run,
        force=args.force,
        verbose=args.verbose,
        auto_confirm=args.yes or config.non_interactive,
        skip_breakpoints=args.skip_breakpoints,
        skip_preflight=args.skip_preflight,
    )
    logger.info(
        "stackforge starting (config=%s, profile=%s, dry_run=%s)",
        config.path,
        config.active_profile or "none",
        flags.dry_run,
        extra={"fields": {"log_path": log_path}},
    )

    orch = build_orchestrator(
        config,
        confirmer=confirmer or TerminalConfirmer(prompt),
        registry=registry,
    )
    validator = validator or PreflightValidator()

    if args.list_phases:
        print(format_phase_list(config))
        return EXIT_OK
    if args.list_scripts:
        print(format_step_list(config, orch.store))
        return EXIT_OK
    if args.status:
        print(format_status(config, orch.store, orch.checkpoint))
        return EXIT_OK

    with RunLock(config.state_dir / "run.lock"):
        if args.reset is not None:
            print(reset_state(orch, args.reset, dry_run=flags.dry_run))
            return EXIT_OK

        if args.all or args.resume or args.phase or args.script:
            _preflight(config, flags, validator)
            return _execute(orch, args, flags)

        if config.non_interactive:
            print("No action given and non-interactive mode is on; use --all or --resume.", file=sys.stderr)
            return EXIT_USAGE
        return interactive_menu(orch, flags, prompt=prompt, validator=validator)


def main(
    argv: Optional[list[str]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    prompt: Callable[[str], str] = input,
    confirmer: Optional[Confirmer] = None,
    registry: Optional[StepRegistry] = None,
    validator: Optional[PreflightValidator] = None,
) -> int:
    args = build_parser().parse_args(argv)
    try:
        return run(
            args,
            environ=os.environ if environ is None else environ,
            prompt=prompt,
            confirmer=confirmer,
            registry=registry,
            validator=validator,
        )
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except (GitSafetyViolation, PreflightError, ConcurrentRunError) as e:
        print(f"Preflight failed: {e}", file=sys.stderr)
        return EXIT_PREFLIGHT
    except StepFailure as e:
        print(f"FAILED: step {e}", file=sys.stderr)
        print(f"Log file: {current_log_path()}", file=sys.stderr)
        return EXIT_FAILURE
    except StateCorruption as e:
        print(f"State error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("", file=sys.stderr)
        print("Interrupted.", file=sys.stderr)
        if current_log_path():
            print(f"Log file: {current_log_path()}", file=sys.stderr)
        print(f"Resume with: {RESUME_COMMAND}", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
