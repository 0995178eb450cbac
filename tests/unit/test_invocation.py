from __future__ import annotations

import sys
from pathlib import Path

import pytest

from bddrun.core import config as config_core
from bddrun.core.invocation import (
    RunnerSettings,
    build_arguments,
    load_runner_settings,
    resolve_command,
    runner_status,
)
from bddrun.core.models import ExecutionType
from bddrun.core.process import LaunchError


def _settings(tmp_path: Path, *command: str, prefer_wrapper: bool = True) -> RunnerSettings:
    return RunnerSettings(
        command=command or ("mvn",),
        working_dir=tmp_path,
        features_dir=tmp_path / "src/test/resources/features",
        reports_dir=tmp_path / "target/cucumber-reports",
        prefer_wrapper=prefer_wrapper,
    )


def test_arguments_per_execution_type(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    plugin = f"-Dcucumber.plugin=html:{tmp_path / 'target/cucumber-reports/cucumber-report-exec_1.html'}"

    assert build_arguments(settings, execution_type=ExecutionType.ALL, execution_id="exec_1") == [
        "clean",
        "test",
        plugin,
    ]
    assert build_arguments(
        settings, execution_type=ExecutionType.FEATURE, execution_id="exec_1", feature="login.feature"
    ) == ["test", f"-Dcucumber.features={settings.features_dir / 'login.feature'}", plugin]
    assert build_arguments(
        settings, execution_type=ExecutionType.TAG_BASED, execution_id="exec_1", tag_expression="@smoke"
    ) == ["test", "-Dcucumber.filter.tags=@smoke", plugin]


def test_arguments_require_their_selection(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    with pytest.raises(ValueError):
        build_arguments(settings, execution_type=ExecutionType.FEATURE, execution_id="exec_1")
    with pytest.raises(ValueError):
        build_arguments(settings, execution_type=ExecutionType.COMPLEX_TAG, execution_id="exec_1")


def test_wrapper_is_preferred(tmp_path: Path) -> None:
    wrapper = tmp_path / "mvnw"
    wrapper.write_text("#!/bin/sh\n", encoding="utf-8")
    wrapper.chmod(0o755)
    assert resolve_command(_settings(tmp_path)) == [str(wrapper)]


def test_wrapper_ignored_when_disabled(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    wrapper = tmp_path / "mvnw"
    wrapper.write_text("#!/bin/sh\n", encoding="utf-8")
    wrapper.chmod(0o755)
    monkeypatch.setenv("PATH", str(tmp_path / "empty-path"))
    with pytest.raises(LaunchError, match="not found on PATH"):
        resolve_command(_settings(tmp_path, prefer_wrapper=False))


def test_explicit_path_command_keeps_its_arguments(tmp_path: Path) -> None:
    assert resolve_command(_settings(tmp_path, sys.executable, "runner.py")) == [sys.executable, "runner.py"]


def test_relative_path_command_resolves_against_working_dir(tmp_path: Path) -> None:
    script = tmp_path / "bin" / "run-suite"
    script.parent.mkdir()
    script.write_text("#!/bin/sh\n", encoding="utf-8")
    script.chmod(0o755)
    assert resolve_command(_settings(tmp_path, "bin/run-suite")) == [str(script)]
    with pytest.raises(LaunchError, match="not found at"):
        resolve_command(_settings(tmp_path, "bin/missing"))


def test_load_settings_precedence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "config.toml"
    config_file.write_text(
        f'[runner]\ncommand = ["python3", "-m", "suite"]\nworking_dir = "{tmp_path.as_posix()}"\ntimeout_seconds = 120\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("BDDRUN_CONFIG_PATH", str(config_file))
    monkeypatch.setenv("BDDRUN_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("BDDRUN_HEARTBEAT_SECONDS", "2.5")
    config_core.reset_config_cache()

    settings = load_runner_settings()
    assert settings.command == ("python3", "-m", "suite")
    assert settings.working_dir == tmp_path.resolve()
    assert settings.features_dir == tmp_path.resolve() / "src/test/resources/features"
    assert settings.timeout_seconds == 120.0
    assert settings.heartbeat_seconds == 2.5

    assert load_runner_settings(timeout_seconds=7).timeout_seconds == 7.0


def test_load_settings_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    settings = load_runner_settings()
    assert settings.command == ("mvn",)
    assert settings.working_dir == tmp_path.resolve()
    assert settings.reports_dir == tmp_path.resolve() / "target/cucumber-reports"
    assert settings.timeout_seconds == 900.0
    assert settings.heartbeat_seconds == 10.0
    assert settings.parser == "cucumber"


def test_runner_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = Path(__file__).resolve().parents[1] / "fixtures" / "fake_runner.py"
    status = runner_status(_settings(tmp_path, sys.executable, str(runner)), probe=True)
    assert status["available"] is True
    assert status["version"] == "Apache Maven 3.9.6 (fake)"

    monkeypatch.setenv("PATH", str(tmp_path / "empty-path"))
    missing = runner_status(_settings(tmp_path, prefer_wrapper=False))
    assert missing["available"] is False
    assert "not found" in missing["error"]


def test_timeouts_accept_durations(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BDDRUN_TIMEOUT_SECONDS", "15m")
    monkeypatch.setenv("BDDRUN_HEARTBEAT_SECONDS", "30s")
    settings = load_runner_settings()
    assert settings.timeout_seconds == 900.0
    assert settings.heartbeat_seconds == 30.0

    monkeypatch.setenv("BDDRUN_TIMEOUT_SECONDS", "soon")
    with pytest.raises(ValueError, match="Invalid duration"):
        load_runner_settings()
