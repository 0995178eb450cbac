from __future__ import annotations

from pathlib import Path

import pytest

from bddrun.core import db
from bddrun.core.error_types import DuplicateExecutionError
from bddrun.core.history import HistoryStore
from bddrun.core.models import ExecutionRecord, ExecutionStatus, ExecutionType, TagLogic


def _finished(execution_id: str, *, status=ExecutionStatus.PASSED, tags=(), **kwargs) -> ExecutionRecord:
    record = ExecutionRecord(
        execution_id=execution_id,
        execution_type=ExecutionType.TAG_BASED if tags else ExecutionType.ALL,
        tags=list(tags),
        tag_logic=TagLogic.AND if tags else None,
        **kwargs,
    )
    record.advance(ExecutionStatus.RUNNING)
    record.advance(status)
    return record


@pytest.fixture()
def store(tmp_path: Path) -> HistoryStore:
    return HistoryStore(tmp_path / "history.sqlite3")


def test_init_applies_migrations_once(tmp_path: Path) -> None:
    path = tmp_path / "history.sqlite3"
    HistoryStore(path)
    HistoryStore(path)
    assert {"schema_migrations", "executions", "execution_tags"} <= set(db.list_tables(path))
    assert db.applied_migrations(path) == 1


def test_append_and_get(store: HistoryStore) -> None:
    record = _finished(
        "exec_1",
        tags=["@smoke"],
        feature_files=["login.feature", "checkout.feature"],
        total_scenarios=2,
        passed_scenarios=2,
        duration="0m1.000s",
        exit_code=0,
        triggered_by="cli",
    )
    store.append(record)
    assert store.exists("exec_1")
    assert store.get("exec_1") == record
    assert store.get("exec_missing") is None


def test_only_terminal_records_are_stored(store: HistoryStore) -> None:
    record = ExecutionRecord(execution_id="exec_1", execution_type=ExecutionType.ALL)
    with pytest.raises(ValueError, match="terminal"):
        store.append(record)


def test_duplicate_append_is_rejected(store: HistoryStore) -> None:
    store.append(_finished("exec_1"))
    with pytest.raises(DuplicateExecutionError):
        store.append(_finished("exec_1", status=ExecutionStatus.FAILED))
    assert store.get("exec_1").status is ExecutionStatus.PASSED
    assert store.count() == 1


def test_recent_is_newest_first(store: HistoryStore) -> None:
    for i in range(5):
        store.append(_finished(f"exec_{i}"))
    assert [r.execution_id for r in store.list_recent(3)] == ["exec_4", "exec_3", "exec_2"]
    with pytest.raises(ValueError):
        store.list_recent(0)


def test_by_tag(store: HistoryStore) -> None:
    store.append(_finished("exec_a", tags=["@smoke", "@api"]))
    store.append(_finished("exec_b", tags=["@regression"]))
    store.append(_finished("exec_c", tags=["@smoke"]))
    assert [r.execution_id for r in store.list_by_tag("smoke")] == ["exec_c", "exec_a"]
    assert [r.execution_id for r in store.list_by_tag("@SMOKE", limit=1)] == ["exec_c"]
    assert store.list_by_tag("@none") == []


def test_delete(store: HistoryStore) -> None:
    store.append(_finished("exec_a", tags=["@smoke"]))
    assert store.delete("exec_a") is True
    assert store.delete("exec_a") is False
    assert store.get("exec_a") is None
    assert store.list_by_tag("@smoke") == []
