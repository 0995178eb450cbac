from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sqlite3

import typer

from bddrun.core import (
    config as config_core,
    db,
    envelope,
    ids,
    invocation,
    paths,
    wiring,
)
from bddrun.core.catalog import FileFeatureCatalog
from bddrun.core.error_types import ValidationError
from bddrun.core.history import DEFAULT_RECENT_LIMIT, HistoryStore
from bddrun.core.jsonio import dumps
from bddrun.core.logging import configure_logging
from bddrun.core.models import ExecutionRecord, ExecutionType, ProgressEvent, TagLogic
from bddrun.core.orchestrator import RunRequest
from bddrun.core.process import LaunchError
from bddrun.core.tags import parse_tag_list

VERSION = "0.1.0"

app = typer.Typer(add_completion=False, help="bddrun - run BDD suites, follow progress, keep history")


def _emit(out: dict) -> None:
    typer.echo(dumps(out))
    if out.get("ok") is True:
        raise typer.Exit(code=0)
    raise typer.Exit(code=1)


def describe_event(event: ProgressEvent) -> str:
    progress = "ERR" if event.progress < 0 else f"{event.progress:>3}%"
    return f"[{event.execution_id}] {progress} {event.message}"


def _record_data(record: ExecutionRecord) -> dict:
    data = record.to_dict()
    data["pass_percentage"] = round(record.pass_percentage, 2)
    data["summary"] = record.summary()
    return data


# ---- Sub-apps (public CLI contract) ----
db_app = typer.Typer(add_completion=False)
features_app = typer.Typer(add_completion=False)
run_app = typer.Typer(add_completion=False, help="Run the suite in the foreground; Ctrl-C cancels.")
history_app = typer.Typer(add_completion=False)

app.add_typer(db_app, name="db")
app.add_typer(features_app, name="features")
app.add_typer(run_app, name="run")
app.add_typer(history_app, name="history")


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG|INFO|WARNING|ERROR"),
    log_json: bool | None = typer.Option(None, "--log-json/--no-log-json", help="JSON log lines on stderr"),
):
    try:
        configure_logging(level=log_level, json_format=log_json)
    except ValueError:
        # Unreadable config file; the command itself reports it.
        configure_logging(level=log_level or "WARNING", json_format=bool(log_json))


# ---- Global commands ----
@app.command()
def version(json_output: bool = typer.Option(False, "--json", help="Output JSON envelope")):
    if json_output:
        _emit(envelope.ok(command="version", data={"version": VERSION}))
    typer.echo(f"bddrun {VERSION}")


@app.command()
def doctor(
    probe: bool = typer.Option(False, "--probe", help="Also run the runner with --version"),
    json_output: bool = typer.Option(True, "--json"),
):
    workspace = paths.workspace_dir()
    db_path = paths.db_path()

    checks: list[dict] = []

    checks.append(
        {
            "name": "workspace.path",
            "ok": True,
            "details": {
                "path": str(workspace),
                "exists": workspace.exists(),
                "override": os.environ.get("BDDRUN_WORKSPACE_DIR"),
            },
        }
    )

    db_details: dict = {"path": str(db_path), "exists": db_path.exists(), "override": os.environ.get("BDDRUN_DB_PATH")}
    db_ok = False
    if db_path.exists():
        try:
            db_details["schema_migrations"] = db.applied_migrations(db_path)
            db_ok = True
        except sqlite3.Error as exc:
            db_details["error"] = str(exc)
    checks.append({"name": "db.status", "ok": db_ok, "details": db_details})

    config_file = config_core.config_path()
    try:
        config_core.load_config()
    except ValueError as exc:
        checks.append({"name": "config", "ok": False, "details": {"path": str(config_file), "error": str(exc)}})
        _emit(envelope.ok(command="doctor", data={"checks": checks}))
    checks.append({"name": "config", "ok": True, "details": {"path": str(config_file), "exists": config_file.exists()}})

    settings = invocation.load_runner_settings()
    runner = invocation.runner_status(settings, probe=probe)
    checks.append({"name": "runner", "ok": bool(runner["available"]), "details": runner})
    checks.append(
        {
            "name": "features.dir",
            "ok": settings.features_dir.is_dir(),
            "details": {
                "path": str(settings.features_dir),
                "count": len(FileFeatureCatalog(settings.features_dir).list_features()),
            },
        }
    )

    _emit(envelope.ok(command="doctor", data={"checks": checks}))


@app.command("new-id")
def new_id(json_output: bool = typer.Option(True, "--json")):
    _emit(envelope.ok(command="new-id", data={"execution_id": ids.execution_id()}))


@app.command()
def status(
    execution_id: str = typer.Argument(..., help="Execution id"),
    json_output: bool = typer.Option(True, "--json"),
):
    try:
        record = HistoryStore().get(execution_id)
    except sqlite3.Error as exc:
        _emit(envelope.err(command="status", error_type="BACKEND_FAILED", message=str(exc)))
    if record is None:
        out = envelope.err(
            command="status",
            error_type="NOT_FOUND",
            message=f"Execution not found: {execution_id}",
            details={"execution_id": execution_id},
        )
    else:
        out = envelope.ok(command="status", data={"execution": _record_data(record)})
    _emit(out)


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
):
    """Serve the HTTP + WebSocket API until interrupted."""
    import uvicorn

    from bddrun import api

    bind_host = config_core.resolve_setting(
        cli_value=host,
        env_key="BDDRUN_HOST",
        config_keys=("server", "host"),
        default="127.0.0.1",
    )
    bind_port = config_core.resolve_setting(
        cli_value=port,
        env_key="BDDRUN_PORT",
        config_keys=("server", "port"),
        default=8000,
    )
    uvicorn.run(api.create_app(), host=str(bind_host), port=int(bind_port), log_config=None)


# ---------------- db ----------------
@db_app.command("init")
def db_init(json_output: bool = typer.Option(True, "--json")):
    db_path = db.init_db()
    _emit(envelope.ok(command="db.init", data={"db_path": str(db_path), "tables": sorted(db.list_tables(db_path))}))


# -------------- features --------------
@features_app.command("list")
def features_list(json_output: bool = typer.Option(True, "--json")):
    try:
        settings = invocation.load_runner_settings()
    except ValueError as exc:
        _emit(envelope.err(command="features.list", error_type="INVALID_ARGUMENT", message=str(exc)))
    catalog = FileFeatureCatalog(settings.features_dir)
    features = [{"name": entry.name, "tags": list(entry.tags)} for entry in catalog.entries()]
    out = envelope.ok(
        command="features.list",
        data={
            "features_dir": str(settings.features_dir),
            "features": features,
            "tags": sorted(catalog.all_tags()),
        },
    )
    _emit(out)


# -------------- run --------------
async def _run_foreground(request: RunRequest, *, timeout: float | None, working_dir: str | None, quiet: bool):
    settings = invocation.load_runner_settings(working_dir=working_dir, timeout_seconds=timeout)
    orchestrator = wiring.build_orchestrator(settings)
    request.execution_id = request.execution_id or orchestrator.new_execution_id()

    remove_listener = None
    if not quiet:
        remove_listener = orchestrator.broadcaster.add_listener(lambda event: typer.echo(describe_event(event), err=True))

    loop = asyncio.get_running_loop()
    handles_sigint = False
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel, request.execution_id)
        handles_sigint = True
    try:
        return await orchestrator.run(request)
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)
        if remove_listener is not None:
            remove_listener()


def _run(
    command: str,
    request: RunRequest,
    *,
    timeout: float | None,
    working_dir: str | None,
    quiet: bool,
) -> None:
    details = {
        "execution_type": request.execution_type.value,
        "feature_files": request.feature_files,
        "tags": request.tags,
        "execution_id": request.execution_id,
    }
    try:
        record = asyncio.run(_run_foreground(request, timeout=timeout, working_dir=working_dir, quiet=quiet))
        out = envelope.ok(command=command, data={"execution": _record_data(record)})
    except ValidationError as exc:
        out = envelope.err(
            command=command,
            error_type=exc.error_type,
            message=str(exc),
            details={**details, **exc.details},
        )
    except LaunchError as exc:
        out = envelope.err(
            command=command,
            error_type=exc.error_type,
            message=str(exc),
            details={**details, "command": exc.command, "reason": exc.reason},
        )
    except ValueError as exc:
        out = envelope.err(command=command, error_type="INVALID_ARGUMENT", message=str(exc), details=details)
    except sqlite3.Error as exc:
        out = envelope.err(command=command, error_type="BACKEND_FAILED", message=str(exc), details=details)
    _emit(out)


@run_app.command("all")
def run_all(
    execution_id: str | None = typer.Option(None, "--execution-id"),
    timeout: float | None = typer.Option(None, "--timeout", help="Seconds before the run is killed"),
    working_dir: str | None = typer.Option(None, "--working-dir"),
    quiet: bool = typer.Option(False, "--quiet", help="No progress lines on stderr"),
    json_output: bool = typer.Option(True, "--json"),
):
    request = RunRequest(execution_type=ExecutionType.ALL, execution_id=execution_id, triggered_by="cli")
    _run("run.all", request, timeout=timeout, working_dir=working_dir, quiet=quiet)


@run_app.command("feature")
def run_feature(
    name: str = typer.Argument(..., help="Feature file, relative to the features directory"),
    execution_id: str | None = typer.Option(None, "--execution-id"),
    timeout: float | None = typer.Option(None, "--timeout", help="Seconds before the run is killed"),
    working_dir: str | None = typer.Option(None, "--working-dir"),
    quiet: bool = typer.Option(False, "--quiet", help="No progress lines on stderr"),
    json_output: bool = typer.Option(True, "--json"),
):
    request = RunRequest(
        execution_type=ExecutionType.FEATURE,
        feature_files=[name],
        execution_id=execution_id,
        triggered_by="cli",
    )
    _run("run.feature", request, timeout=timeout, working_dir=working_dir, quiet=quiet)


@run_app.command("tags")
def run_tags(
    tags: str = typer.Option(..., "--tags", help="Comma-separated tags, e.g. @smoke,@api"),
    logic: str = typer.Option("AND", "--logic", help="AND|OR"),
    execution_id: str | None = typer.Option(None, "--execution-id"),
    timeout: float | None = typer.Option(None, "--timeout", help="Seconds before the run is killed"),
    working_dir: str | None = typer.Option(None, "--working-dir"),
    quiet: bool = typer.Option(False, "--quiet", help="No progress lines on stderr"),
    json_output: bool = typer.Option(True, "--json"),
):
    request = RunRequest(
        execution_type=ExecutionType.TAG_BASED,
        tags=parse_tag_list(tags),
        tag_logic=logic,
        execution_id=execution_id,
        triggered_by="cli",
    )
    _run("run.tags", request, timeout=timeout, working_dir=working_dir, quiet=quiet)


@run_app.command("complex")
def run_complex(
    include: str = typer.Option(..., "--include", help="Comma-separated tags that must all be present"),
    exclude: str | None = typer.Option(None, "--exclude", help="Comma-separated tags (recorded, not applied)"),
    execution_id: str | None = typer.Option(None, "--execution-id"),
    timeout: float | None = typer.Option(None, "--timeout", help="Seconds before the run is killed"),
    working_dir: str | None = typer.Option(None, "--working-dir"),
    quiet: bool = typer.Option(False, "--quiet", help="No progress lines on stderr"),
    json_output: bool = typer.Option(True, "--json"),
):
    request = RunRequest(
        execution_type=ExecutionType.COMPLEX_TAG,
        tags=parse_tag_list(include),
        tag_logic=TagLogic.AND,
        exclude_tags=parse_tag_list(exclude),
        execution_id=execution_id,
        triggered_by="cli",
    )
    _run("run.complex", request, timeout=timeout, working_dir=working_dir, quiet=quiet)


# -------------- history --------------
@history_app.command("list")
def history_list(
    limit: int = typer.Option(DEFAULT_RECENT_LIMIT, "--limit", min=1),
    tag: str | None = typer.Option(None, "--tag"),
    json_output: bool = typer.Option(True, "--json"),
):
    try:
        store = HistoryStore()
        records = store.list_by_tag(tag, limit=limit) if tag else store.list_recent(limit)
    except sqlite3.Error as exc:
        _emit(envelope.err(command="history.list", error_type="BACKEND_FAILED", message=str(exc)))
    out = envelope.ok(
        command="history.list",
        data={"executions": [_record_data(record) for record in records], "count": len(records)},
        limits={"limit": limit, "tag": tag},
    )
    _emit(out)


@history_app.command("delete")
def history_delete(
    execution_id: str = typer.Argument(..., help="Execution id"),
    json_output: bool = typer.Option(True, "--json"),
):
    try:
        deleted = HistoryStore().delete(execution_id)
    except sqlite3.Error as exc:
        _emit(envelope.err(command="history.delete", error_type="BACKEND_FAILED", message=str(exc)))
    if not deleted:
        out = envelope.err(
            command="history.delete",
            error_type="NOT_FOUND",
            message=f"Execution not found: {execution_id}",
            details={"execution_id": execution_id},
        )
    else:
        out = envelope.ok(command="history.delete", data={"execution_id": execution_id, "deleted": True})
    _emit(out)


if __name__ == "__main__":
    app()
