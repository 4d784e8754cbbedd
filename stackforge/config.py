from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "stackforge.yaml"
PASSWORD_SENTINEL = "change_me"

RESUME_MODES = {"skip", "force"}
LOG_FORMATS = {"plain", "json"}
CORRUPTION_POLICIES = {"warn", "fail"}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

# environment variable -> (section, key, kind)
ENV_OVERRIDES: Dict[str, Tuple[str, str, str]] = {
    "APP_NAME": ("project", "name", "str"),
    "PROJECT_ROOT": ("project", "root", "str"),
    "INSTALL_DIR": ("project", "install_dir", "str"),
    "DB_NAME": ("credentials", "db_name", "str"),
    "DB_USER": ("credentials", "db_user", "str"),
    "DB_PASSWORD": ("credentials", "db_password", "str"),
    "STACK_PROFILE": ("run", "profile", "str"),
    "NON_INTERACTIVE": ("run", "non_interactive", "bool"),
    "MAX_CMD_SECONDS": ("run", "max_cmd_seconds", "int"),
    "BOOTSTRAP_RESUME_MODE": ("run", "resume_mode", "str"),
    "GIT_SAFETY": ("safety", "git_safety", "bool"),
    "ALLOW_DIRTY": ("safety", "allow_dirty", "bool"),
    "LOG_LEVEL": ("logging", "level", "str"),
    "LOG_FORMAT": ("logging", "format", "str"),
    "PREFLIGHT_REMEDIATE": ("preflight", "remediate", "bool"),
    "PREFLIGHT_SKIP_MISSING": ("preflight", "skip_missing", "bool"),
}


def template_path() -> Path:
    return Path(__file__).resolve().parent / "templates" / "stackforge.example.yaml"


@dataclass(frozen=True)
class StepDefinition:
    step_id: str
    phase: str
    script: str
    args: Tuple[str, ...] = ()
    requires: Tuple[str, ...] = ()
    group: Optional[str] = None
    critical: bool = False
    description: str = ""


@dataclass(frozen=True)
class PhaseDefinition:
    phase_id: str
    label: str
    breakpoint: bool = False
    guidance: Tuple[str, ...] = ()
    steps: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Profile:
    name: str
    flags: Mapping[str, bool]
    description: str = ""
    tagline: str = ""
    recommended: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "status"
    format: str = "plain"
    rotate_after_days: int = 30
    cleanup_after_days: int = 90


@dataclass(frozen=True)
class ToolRequirement:
    name: str
    version_cmd: Tuple[str, ...]
    min_version: Optional[str] = None
    install_cmd: Tuple[str, ...] = ()
    soft: bool = False


@dataclass(frozen=True)
class PreflightOptions:
    remediate: bool = True
    skip_missing: bool = False
    tools: Tuple[ToolRequirement, ...] = ()


@dataclass(frozen=True)
class SafetyOptions:
    git_safety: bool = True
    allow_dirty: bool = False


@dataclass(frozen=True)
class Configuration:
    """Read-only snapshot of one run's settings.

    Built once by :func:`load_config` and narrowed by the profile resolver;
    mapping fields are read-only proxies so nothing downstream can mutate it.
    """

    path: Path
    project_name: str
    project_root: Path
    install_dir: Path
    scripts_dir: Path
    state_dir: Path
    log_dir: Path
    steps: Mapping[str, StepDefinition]
    order: Tuple[str, ...]
    phases: Tuple[PhaseDefinition, ...]
    profiles: Mapping[str, Profile]
    features: Mapping[str, bool]
    raw: Mapping[str, Any]
    pinned_features: FrozenSet[str] = frozenset()
    disabled_steps: FrozenSet[str] = frozenset()
    default_profile: Optional[str] = None
    active_profile: Optional[str] = None
    resume_mode: str = "skip"
    max_cmd_seconds: int = 900
    non_interactive: bool = False
    on_corruption: str = "warn"
    logging: LoggingOptions = field(default_factory=LoggingOptions)
    preflight: PreflightOptions = field(default_factory=PreflightOptions)
    safety: SafetyOptions = field(default_factory=SafetyOptions)
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def handoff_dir(self) -> Path:
        return self.state_dir / "handoffs"

    @property
    def manifest_path(self) -> Path:
        return self.log_dir / "deployment-manifest.log"

    def phase(self, phase_id: str) -> PhaseDefinition:
        for p in self.phases:
            if p.phase_id == phase_id:
                return p
        raise ConfigError(f"Unknown phase: {phase_id}")

    def has_phase(self, phase_id: str) -> bool:
        return any(p.phase_id == phase_id for p in self.phases)

    def step(self, step_id: str) -> StepDefinition:
        try:
            return self.steps[step_id]
        except KeyError:
            raise ConfigError(f"Unknown step: {step_id}") from None

    def is_enabled(self, step_id: str) -> bool:
        return step_id not in self.disabled_steps

    def enabled_steps(self, phase_id: Optional[str] = None) -> List[str]:
        if phase_id is None:
            return [s for p in self.phases for s in p.steps if self.is_enabled(s)]
        return [s for s in self.phase(phase_id).steps if self.is_enabled(s)]

    def lookup(self, dotted: str) -> Any:
        """Resolve ``section.key`` against the raw document."""

        node: Any = self.raw
        for part in dotted.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return None
            node = node[part]
        return node

    def missing_requirements(self, step_id: str) -> List[str]:
        missing = []
        for key in self.step(step_id).requires:
            value = self.lookup(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(key)
        return missing


def compute_disabled_steps(
    steps: Mapping[str, StepDefinition],
    features: Mapping[str, bool],
) -> FrozenSet[str]:
    """Steps whose group is switched off. Critical steps are never disabled."""

    disabled = set()
    for step_id, step in steps.items():
        if step.group is None or features.get(step.group, True):
            continue
        if step.critical:
            logger.warning(
                "Feature %s is disabled but step %s is critical; keeping it enabled",
                step.group,
                step_id,
            )
            continue
        disabled.add(step_id)
    return frozenset(disabled)


def _parse_bool(value: Any, *, where: str, problems: List[str]) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    problems.append(f"{where}: expected a boolean, got {value!r}")
    return False


def _parse_int(value: Any, *, where: str, problems: List[str], default: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        problems.append(f"{where}: expected an integer, got {value!r}")
        return default
    if n <= 0:
        problems.append(f"{where}: must be positive, got {n}")
        return default
    return n


def _section(raw: Dict[str, Any], name: str, problems: List[str]) -> Dict[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        problems.append(f"{name}: must be a mapping")
        return {}
    return value


def _str_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def apply_env_overrides(
    raw: Dict[str, Any],
    environ: Mapping[str, str],
) -> FrozenSet[str]:
    """Overlay environment variables onto the raw document in place.

    Returns the feature names pinned by ``ENABLE_<GROUP>`` variables.
    """

    problems: List[str] = []
    for var, (section, key, kind) in ENV_OVERRIDES.items():
        if var not in environ:
            continue
        value: Any = environ[var]
        if kind == "bool":
            value = _parse_bool(value, where=var, problems=problems)
        elif kind == "int":
            value = _parse_int(value, where=var, problems=problems, default=0)
        target = raw.get(section)
        if not isinstance(target, dict):
            target = raw[section] = {}
        target[key] = value

    pinned = set()
    features = raw.get("features")
    if not isinstance(features, dict):
        features = raw["features"] = {}
    for var, value in environ.items():
        if not var.startswith("ENABLE_") or len(var) <= len("ENABLE_"):
            continue
        name = var[len("ENABLE_"):].lower()
        features[name] = _parse_bool(value, where=var, problems=problems)
        pinned.add(name)

    if problems:
        raise ConfigError("Invalid environment overrides", problems)
    return frozenset(pinned)


def _parse_steps(raw: Dict[str, Any], problems: List[str]) -> Dict[str, StepDefinition]:
    steps: Dict[str, StepDefinition] = {}
    for step_id, body in _section(raw, "steps", problems).items():
        step_id = str(step_id)
        if not isinstance(body, dict):
            problems.append(f"steps.{step_id}: must be a mapping")
            continue
        phase = body.get("phase") or step_id.split("/", 1)[0]
        script = body.get("script")
        if not script:
            problems.append(f"steps.{step_id}: missing 'script'")
            continue
        group = body.get("group")
        steps[step_id] = StepDefinition(
            step_id=step_id,
            phase=str(phase),
            script=str(script),
            args=_str_tuple(body.get("args")),
            requires=_str_tuple(body.get("requires")),
            group=str(group).lower() if group else None,
            critical=_parse_bool(body.get("critical", False), where=f"steps.{step_id}.critical", problems=problems),
            description=str(body.get("description") or ""),
        )
    return steps


def _parse_order(raw: Dict[str, Any], steps: Mapping[str, StepDefinition], problems: List[str]) -> Tuple[str, ...]:
    order_raw = raw.get("order")
    if order_raw is None:
        problems.append("order: missing step ordering list")
        return ()
    if not isinstance(order_raw, list):
        problems.append("order: must be a list of step ids")
        return ()

    order: List[str] = []
    for step_id in (str(s) for s in order_raw):
        if step_id in order:
            problems.append(f"order: step {step_id} listed more than once")
            continue
        if step_id not in steps:
            problems.append(f"order: step {step_id} has no definition")
            continue
        order.append(step_id)

    for step_id in steps:
        if step_id not in order_raw:
            problems.append(f"steps.{step_id}: not referenced by 'order'")
    return tuple(order)


def _parse_phases(
    raw: Dict[str, Any],
    steps: Mapping[str, StepDefinition],
    order: Tuple[str, ...],
    problems: List[str],
) -> Tuple[PhaseDefinition, ...]:
    phases_raw = raw.get("phases")
    if not isinstance(phases_raw, list) or not phases_raw:
        problems.append("phases: must be a non-empty list")
        return ()

    phases: List[PhaseDefinition] = []
    seen = set()
    for idx, body in enumerate(phases_raw):
        if not isinstance(body, dict) or not body.get("id"):
            problems.append(f"phases[{idx}]: needs an 'id'")
            continue
        phase_id = str(body["id"])
        if phase_id in seen:
            problems.append(f"phases: duplicate phase id {phase_id}")
            continue
        seen.add(phase_id)
        phases.append(
            PhaseDefinition(
                phase_id=phase_id,
                label=str(body.get("label") or phase_id),
                breakpoint=_parse_bool(body.get("breakpoint", False), where=f"phases.{phase_id}.breakpoint", problems=problems),
                guidance=_str_tuple(body.get("guidance")),
                steps=tuple(s for s in order if steps[s].phase == phase_id),
            )
        )

    for step_id, step in steps.items():
        if step.phase not in seen:
            problems.append(f"steps.{step_id}: unknown phase {step.phase}")
    return tuple(phases)


def _parse_profiles(raw: Dict[str, Any], problems: List[str]) -> Dict[str, Profile]:
    profiles: Dict[str, Profile] = {}
    for name, body in _section(raw, "profiles", problems).items():
        name = str(name)
        if not isinstance(body, dict):
            problems.append(f"profiles.{name}: must be a mapping")
            continue
        flags: Dict[str, bool] = {}
        for group, enabled in (body.get("flags") or {}).items():
            if not isinstance(enabled, bool):
                problems.append(f"profiles.{name}.flags.{group}: expected true/false")
                continue
            flags[str(group).lower()] = enabled
        profiles[name] = Profile(
            name=name,
            flags=MappingProxyType(flags),
            description=str(body.get("description") or ""),
            tagline=str(body.get("tagline") or ""),
            recommended=bool(body.get("recommended", False)),
            dry_run=bool(body.get("dry_run", False)),
        )
    return profiles


def _parse_preflight(raw: Dict[str, Any], problems: List[str]) -> PreflightOptions:
    section = _section(raw, "preflight", problems)
    tools: List[ToolRequirement] = []
    for idx, body in enumerate(section.get("tools") or []):
        if not isinstance(body, dict) or not body.get("name"):
            problems.append(f"preflight.tools[{idx}]: needs a 'name'")
            continue
        name = str(body["name"])
        version_cmd = body.get("version_cmd") or [name, "--version"]
        if isinstance(version_cmd, str):
            version_cmd = version_cmd.split()
        install_cmd = body.get("install_cmd") or []
        if isinstance(install_cmd, str):
            install_cmd = ["sh", "-c", install_cmd]
        min_version = body.get("min_version")
        tools.append(
            ToolRequirement(
                name=name,
                version_cmd=_str_tuple(version_cmd),
                min_version=str(min_version) if min_version is not None else None,
                install_cmd=_str_tuple(install_cmd),
                soft=bool(body.get("soft", False)),
            )
        )
    return PreflightOptions(
        remediate=_parse_bool(section.get("remediate", True), where="preflight.remediate", problems=problems),
        skip_missing=_parse_bool(section.get("skip_missing", False), where="preflight.skip_missing", problems=problems),
        tools=tuple(tools),
    )


def build_configuration(
    raw: Dict[str, Any],
    *,
    path: Path,
    pinned_features: FrozenSet[str] = frozenset(),
    non_interactive: bool = False,
) -> Configuration:
    """Validate a raw document and turn it into a :class:`Configuration`.

    Every problem is collected before raising so a broken file is reported
    in one go; nothing is returned unless the whole document is valid.
    """

    problems: List[str] = []
    base = path.parent

    project = _section(raw, "project", problems)
    run = _section(raw, "run", problems)
    paths = _section(raw, "paths", problems)
    log_raw = _section(raw, "logging", problems)
    safety_raw = _section(raw, "safety", problems)
    state_raw = _section(raw, "state", problems)
    credentials = _section(raw, "credentials", problems)

    steps = _parse_steps(raw, problems)
    order = _parse_order(raw, steps, problems)
    phases = _parse_phases(raw, steps, order, problems)
    profiles = _parse_profiles(raw, problems)
    preflight = _parse_preflight(raw, problems)

    features: Dict[str, bool] = {}
    for group, enabled in _section(raw, "features", problems).items():
        features[str(group).lower()] = _parse_bool(enabled, where=f"features.{group}", problems=problems)

    resume_mode = str(run.get("resume_mode") or "skip").lower()
    if resume_mode not in RESUME_MODES:
        problems.append(f"run.resume_mode: expected one of {sorted(RESUME_MODES)}, got {resume_mode!r}")

    log_format = str(log_raw.get("format") or "plain").lower()
    if log_format not in LOG_FORMATS:
        problems.append(f"logging.format: expected one of {sorted(LOG_FORMATS)}, got {log_format!r}")

    on_corruption = str(state_raw.get("on_corruption") or "warn").lower()
    if on_corruption not in CORRUPTION_POLICIES:
        problems.append(f"state.on_corruption: expected one of {sorted(CORRUPTION_POLICIES)}, got {on_corruption!r}")

    max_cmd_seconds = _parse_int(run.get("max_cmd_seconds", 900), where="run.max_cmd_seconds", problems=problems, default=900)
    non_interactive = non_interactive or _parse_bool(
        run.get("non_interactive", False), where="run.non_interactive", problems=problems
    )

    password = credentials.get("db_password")
    if non_interactive and password == PASSWORD_SENTINEL:
        problems.append(
            f"credentials.db_password: still set to the placeholder {PASSWORD_SENTINEL!r}; "
            "set it in the config file or via DB_PASSWORD"
        )

    default_profile = run.get("profile")
    if default_profile is not None:
        default_profile = str(default_profile)

    rotate_days = _parse_int(log_raw.get("rotate_after_days", 30), where="logging.rotate_after_days", problems=problems, default=30)
    cleanup_days = _parse_int(log_raw.get("cleanup_after_days", 90), where="logging.cleanup_after_days", problems=problems, default=90)
    git_safety = _parse_bool(safety_raw.get("git_safety", True), where="safety.git_safety", problems=problems)
    allow_dirty = _parse_bool(safety_raw.get("allow_dirty", False), where="safety.allow_dirty", problems=problems)

    env_raw = _section(raw, "env", problems)

    if problems:
        raise ConfigError(f"Invalid configuration {path}", problems)

    project_root = (base / str(project.get("root") or ".")).resolve()
    project_name = str(project.get("name") or project_root.name)
    install_dir = project_root / str(project.get("install_dir") or ".")

    frozen_features = MappingProxyType(features)
    return Configuration(
        path=path,
        project_name=project_name,
        project_root=project_root,
        install_dir=install_dir.resolve(),
        scripts_dir=(base / str(paths.get("scripts_dir") or "scripts")).resolve(),
        state_dir=(base / str(paths.get("state_dir") or ".stackforge")).resolve(),
        log_dir=(base / str(paths.get("log_dir") or "logs")).resolve(),
        steps=MappingProxyType(steps),
        order=order,
        phases=phases,
        profiles=MappingProxyType(profiles),
        features=frozen_features,
        raw=MappingProxyType(raw),
        pinned_features=pinned_features,
        disabled_steps=compute_disabled_steps(steps, frozen_features),
        default_profile=default_profile,
        resume_mode=resume_mode,
        max_cmd_seconds=max_cmd_seconds,
        non_interactive=non_interactive,
        on_corruption=on_corruption,
        logging=LoggingOptions(
            level=str(log_raw.get("level") or "status"),
            format=log_format,
            rotate_after_days=rotate_days,
            cleanup_after_days=cleanup_days,
        ),
        preflight=preflight,
        safety=SafetyOptions(
            git_safety=git_safety,
            allow_dirty=allow_dirty,
        ),
        env=MappingProxyType({str(k): str(v) for k, v in env_raw.items()}),
    )


def _ask(prompt: Callable[[str], str], label: str, default: str) -> str:
    try:
        answer = prompt(f"{label} [{default}]: ").strip()
    except EOFError:
        answer = ""
    return answer or default


def initialize_config(
    path: Path,
    *,
    non_interactive: bool,
    prompt: Callable[[str], str] = input,
) -> None:
    """Create a missing config file from a template.

    Non-interactive runs only accept an explicit ``<name>.example`` sitting
    next to the requested path; interactive runs fall back to the packaged
    template and ask for the handful of values every project must set.
    """

    sibling = path.with_name(path.name + ".example")
    if sibling.exists():
        source = sibling
    elif non_interactive:
        raise ConfigError(
            f"Config file {path} not found and no template {sibling} to copy from (non-interactive mode)"
        )
    else:
        source = template_path()

    path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, path)
    logger.info("Created %s from template %s", path, source)

    if non_interactive:
        return

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    project = raw.setdefault("project", {})
    credentials = raw.setdefault("credentials", {})

    print("First run: a few values are needed before bootstrapping.")
    name = _ask(prompt, "Project name", str(project.get("name") or "app"))
    project["name"] = name
    project["root"] = _ask(prompt, "Install root", str(project.get("root") or "."))
    credentials.setdefault("db_name", f"{name}_db")
    credentials.setdefault("db_user", name)
    credentials["db_password"] = _ask(
        prompt, "Database password", str(credentials.get("db_password") or PASSWORD_SENTINEL)
    )

    path.write_text(yaml.safe_dump(raw, sort_keys=False), encoding="utf-8")


def load_config(
    path: str = DEFAULT_CONFIG_PATH,
    *,
    environ: Optional[Mapping[str, str]] = None,
    non_interactive: Optional[bool] = None,
    prompt: Callable[[str], str] = input,
) -> Configuration:
    env = dict(environ or {})
    if non_interactive is None:
        non_interactive = str(env.get("NON_INTERACTIVE", "")).strip().lower() in _TRUE

    p = Path(path)
    if not p.exists():
        initialize_config(p, non_interactive=non_interactive, prompt=prompt)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigError(f"Config file {p} must be YAML")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {p} is not valid YAML: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {p}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {p} must contain a mapping")

    pinned = apply_env_overrides(raw, env)
    return build_configuration(
        raw,
        path=p.resolve(),
        pinned_features=pinned,
        non_interactive=non_interactive,
    )
