# pytest configuration hooks and shared fixtures.
#
# Policy: No skipped tests. If something cannot run in this environment, use xfail with a
# clear reason (and fix it later).

from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path
from typing import Callable

import pytest

from bddrun.core import config as config_core
from bddrun.core.catalog import CatalogTagValidator, FileFeatureCatalog
from bddrun.core.history import HistoryStore
from bddrun.core.invocation import RunnerSettings
from bddrun.core.orchestrator import ExecutionOrchestrator

# Register pytest-bdd step definitions as a pytest plugin so fixtures are discoverable.
pytest_plugins = ["tests.bdd.steps"]

FAKE_RUNNER = Path(__file__).resolve().parent / "fixtures" / "fake_runner.py"

_BDDRUN_ENV = (
    "BDDRUN_DB_PATH",
    "BDDRUN_TEST_NOW_ISO",
    "BDDRUN_RUNNER_COMMAND",
    "BDDRUN_WORKING_DIR",
    "BDDRUN_FEATURES_DIR",
    "BDDRUN_REPORTS_DIR",
    "BDDRUN_TIMEOUT_SECONDS",
    "BDDRUN_HEARTBEAT_SECONDS",
    "BDDRUN_LOG_LEVEL",
    "BDDRUN_LOG_JSON",
)

FEATURES = {
    "login.feature": "@smoke @ui\nFeature: Login\n\n  Scenario: valid user\n    Given a user\n",
    "checkout.feature": "@smoke @api\nFeature: Checkout\n\n  @payments\n  Scenario: pay\n    Given a cart\n",
    "admin/reports.feature": "@regression\nFeature: Reports\n\n  Scenario: export\n    Given a report\n",
    "legacy.feature": "@legacy @regression\nFeature: Legacy\n\n  Scenario: old\n    Given old code\n",
}

_SKIP_COUNT = 0


def pytest_configure() -> None:
    if "BDDRUN_CONFIG_PATH" not in os.environ:
        path = Path(__file__).resolve().parents[1] / ".bddrun-test-config.toml"
        os.environ["BDDRUN_CONFIG_PATH"] = str(path)


def pytest_runtest_logreport(report: pytest.TestReport) -> None:
    global _SKIP_COUNT
    if report.when == "setup" and report.outcome == "skipped":
        _SKIP_COUNT += 1


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    if _SKIP_COUNT > 0:
        pytest.exit(f"Skipped tests are not allowed (skipped={_SKIP_COUNT}).", returncode=2)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BDDRUN_WORKSPACE_DIR", str(tmp_path / "workspace"))
    for key in _BDDRUN_ENV:
        monkeypatch.delenv(key, raising=False)
    config_core.reset_config_cache()
    yield
    config_core.reset_config_cache()


def write_features(root: Path, features: dict[str, str] = FEATURES) -> Path:
    for name, text in features.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return root


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """A working directory laid out like a Maven project with four feature files."""
    root = tmp_path / "project"
    write_features(root / "src" / "test" / "resources" / "features")
    return root


@pytest.fixture()
def make_settings(project: Path) -> Callable[..., RunnerSettings]:
    def make(*runner_args: str, timeout: float = 30.0, heartbeat: float = 10.0) -> RunnerSettings:
        return RunnerSettings(
            command=(sys.executable, str(FAKE_RUNNER), *runner_args),
            working_dir=project,
            features_dir=project / "src" / "test" / "resources" / "features",
            reports_dir=project / "target" / "cucumber-reports",
            timeout_seconds=timeout,
            heartbeat_seconds=heartbeat,
        )

    return make


@pytest.fixture()
def make_orchestrator(tmp_path: Path, make_settings) -> Callable[..., ExecutionOrchestrator]:
    def make(*runner_args: str, settings: RunnerSettings | None = None, **kwargs) -> ExecutionOrchestrator:
        settings = settings or make_settings(*runner_args, **kwargs)
        catalog = FileFeatureCatalog(settings.features_dir)
        return ExecutionOrchestrator(
            settings=settings,
            catalog=catalog,
            tag_validator=CatalogTagValidator(catalog, inactive=["@legacy"]),
            history=HistoryStore(tmp_path / "history.sqlite3"),
        )

    return make


def cli_env(project: Path | None = None, *runner_args: str) -> dict[str, str]:
    """Environment for `python -m bddrun.cli` subprocesses pointed at the fake runner."""
    env = os.environ.copy()
    src = str(Path(__file__).resolve().parents[1] / "src")
    env["PYTHONPATH"] = os.pathsep.join(p for p in (src, env.get("PYTHONPATH")) if p)
    if project is not None:
        env["BDDRUN_RUNNER_COMMAND"] = shlex.join([sys.executable, str(FAKE_RUNNER), *runner_args])
        env["BDDRUN_WORKING_DIR"] = str(project)
    return env
