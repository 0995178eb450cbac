"""How the external runner is invoked: which binary, in which directory, with which arguments.

Defaults follow a Maven + Cucumber-JVM project layout. Any command that accepts
the same `-D` properties (or ignores them) can be configured instead.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from bddrun.core import config as config_core
from bddrun.core.clock import parse_duration
from bddrun.core.models import ExecutionType
from bddrun.core.paths import resolve_against
from bddrun.core.process import LaunchError, RunFailure, ensure_tool, run_checked

DEFAULT_COMMAND = "mvn"
DEFAULT_FEATURES_DIR = "src/test/resources/features"
DEFAULT_REPORTS_DIR = "target/cucumber-reports"
DEFAULT_TIMEOUT_SECONDS = 900.0
DEFAULT_HEARTBEAT_SECONDS = 10.0
DEFAULT_PARSER = "cucumber"
WRAPPER_NAMES = ("mvnw", "mvnw.cmd")


@dataclass(frozen=True)
class RunnerSettings:
    command: tuple[str, ...]
    working_dir: Path
    features_dir: Path
    reports_dir: Path
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    prefer_wrapper: bool = True
    parser: str = DEFAULT_PARSER

    def report_path(self, execution_id: str) -> Path:
        return self.reports_dir / f"cucumber-report-{execution_id}.html"


def _as_command(value: object) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(str(part) for part in value)
    return tuple(shlex.split(str(value)))


def _as_seconds(value: object) -> float:
    """Seconds from a number or a duration such as `15m`."""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        return parse_duration(text).total_seconds()


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def load_runner_settings(
    *,
    command: str | None = None,
    working_dir: str | None = None,
    features_dir: str | None = None,
    reports_dir: str | None = None,
    timeout_seconds: float | None = None,
    heartbeat_seconds: float | None = None,
) -> RunnerSettings:
    """Resolve settings from CLI values, `[runner]` config, `BDDRUN_*` env vars and defaults."""

    def setting(cli_value: object | None, env_key: str, key: str, default: object) -> object:
        return config_core.resolve_setting(
            cli_value=cli_value,
            env_key=env_key,
            config_keys=("runner", key),
            default=default,
        )

    base = Path(str(setting(working_dir, "BDDRUN_WORKING_DIR", "working_dir", os.getcwd()))).expanduser().resolve()
    return RunnerSettings(
        command=_as_command(setting(command, "BDDRUN_RUNNER_COMMAND", "command", DEFAULT_COMMAND)),
        working_dir=base,
        features_dir=resolve_against(
            base, str(setting(features_dir, "BDDRUN_FEATURES_DIR", "features_dir", DEFAULT_FEATURES_DIR))
        ),
        reports_dir=resolve_against(
            base, str(setting(reports_dir, "BDDRUN_REPORTS_DIR", "reports_dir", DEFAULT_REPORTS_DIR))
        ),
        timeout_seconds=_as_seconds(
            setting(timeout_seconds, "BDDRUN_TIMEOUT_SECONDS", "timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
        ),
        heartbeat_seconds=_as_seconds(
            setting(heartbeat_seconds, "BDDRUN_HEARTBEAT_SECONDS", "heartbeat_seconds", DEFAULT_HEARTBEAT_SECONDS)
        ),
        prefer_wrapper=_as_bool(setting(None, "BDDRUN_PREFER_WRAPPER", "prefer_wrapper", True)),
        parser=str(setting(None, "BDDRUN_OUTPUT_PARSER", "parser", DEFAULT_PARSER)),
    )


def resolve_command(settings: RunnerSettings) -> list[str]:
    """Executable argv prefix for the runner.

    A Maven wrapper in the working directory wins when the configured command is
    plain `mvn`; otherwise the first word of the configured command must resolve
    on PATH (or be an existing path).
    """
    if not settings.command:
        raise LaunchError("<empty>", "no runner command configured")
    head, *rest = settings.command
    if settings.prefer_wrapper and head == DEFAULT_COMMAND:
        for name in WRAPPER_NAMES:
            wrapper = settings.working_dir / name
            if wrapper.is_file() and os.access(wrapper, os.X_OK):
                return [str(wrapper), *rest]
    candidate = Path(head).expanduser()
    if candidate.parent != Path(".") or candidate.is_absolute():
        resolved = candidate if candidate.is_absolute() else settings.working_dir / candidate
        if not resolved.is_file():
            raise LaunchError(head, f"not found at {resolved}")
        if not os.access(resolved, os.X_OK):
            raise LaunchError(head, "permission denied")
        return [str(resolved), *rest]
    return [ensure_tool(head), *rest]


def build_arguments(
    settings: RunnerSettings,
    *,
    execution_type: ExecutionType,
    execution_id: str,
    feature: str | None = None,
    tag_expression: str | None = None,
) -> list[str]:
    plugin = f"-Dcucumber.plugin=html:{settings.report_path(execution_id)}"
    if execution_type is ExecutionType.ALL:
        return ["clean", "test", plugin]
    if execution_type is ExecutionType.FEATURE:
        if not feature:
            raise ValueError("feature is required for FEATURE runs")
        return ["test", f"-Dcucumber.features={settings.features_dir / feature}", plugin]
    if not tag_expression:
        raise ValueError("tag_expression is required for tag runs")
    return ["test", f"-Dcucumber.filter.tags={tag_expression}", plugin]


def runner_status(settings: RunnerSettings, *, probe: bool = False, timeout: float = 60.0) -> dict:
    """Whether the runner can be started; with `probe`, also ask it for its version."""
    status: dict = {
        "configured": list(settings.command),
        "working_dir": str(settings.working_dir),
        "features_dir": str(settings.features_dir),
        "features_dir_exists": settings.features_dir.is_dir(),
    }
    try:
        command = resolve_command(settings)
    except LaunchError as exc:
        status.update({"available": False, "error": str(exc)})
        return status
    status.update({"available": True, "command": command})
    if probe:
        try:
            result = run_checked([*command, "--version"], timeout=timeout)
        except (LaunchError, RunFailure) as exc:
            status.update({"available": False, "error": str(exc)})
        else:
            lines = result.output.strip().splitlines()
            status["version"] = lines[0] if lines else ""
    return status
