"""Durable store of finished execution records (SQLite).

Append-only from the orchestrator's side; deletion is an explicit operation for
external callers. Each call opens its own connection, so the store can be used
from worker threads.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import fields
from pathlib import Path
from typing import Any

from bddrun.core import db
from bddrun.core.error_types import DuplicateExecutionError
from bddrun.core.models import ExecutionRecord, ResultSummary
from bddrun.core.tags import normalize_tag

_COUNTER_COLUMNS = [f.name for f in fields(ResultSummary)]
_LIST_COLUMNS = {"feature_files": "feature_files_json", "tags": "tags_json", "exclude_tags": "exclude_tags_json"}
_SCALAR_COLUMNS = ["duration", "report_path", "tag_logic", "exit_code", "triggered_by", "notes"]

DEFAULT_RECENT_LIMIT = 20


def _row_to_record(row: sqlite3.Row) -> ExecutionRecord:
    data: dict[str, Any] = {
        "execution_id": row["id"],
        "execution_type": row["execution_type"],
        "status": row["status"],
        "timestamp": row["ts"],
    }
    for field_name, column in _LIST_COLUMNS.items():
        data[field_name] = json.loads(row[column] or "[]")
    for column in _SCALAR_COLUMNS + _COUNTER_COLUMNS:
        data[column] = row[column]
    return ExecutionRecord.from_dict(data)


class HistoryStore:
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db.init_db(db_path)

    def _connect(self) -> sqlite3.Connection:
        return db.connect(self.db_path)

    def append(self, record: ExecutionRecord) -> None:
        if not record.is_terminal:
            raise ValueError(f"Only terminal records are stored, got {record.status.value}")
        data = record.to_dict()
        columns = ["id", "execution_type", "status", "ts", *_LIST_COLUMNS.values(), *_SCALAR_COLUMNS, *_COUNTER_COLUMNS]
        values: list[Any] = [data["execution_id"], data["execution_type"], data["status"], data["timestamp"]]
        values.extend(json.dumps(data[name], ensure_ascii=False) for name in _LIST_COLUMNS)
        values.extend(data[name] for name in _SCALAR_COLUMNS)
        values.extend(data[name] for name in _COUNTER_COLUMNS)

        conn = self._connect()
        try:
            placeholders = ", ".join("?" for _ in columns)
            conn.execute(
                f"INSERT INTO executions ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            conn.executemany(
                "INSERT OR IGNORE INTO execution_tags (execution_id, tag) VALUES (?, ?)",
                [(record.execution_id, tag) for tag in record.tags],
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise DuplicateExecutionError(record.execution_id) from exc
        finally:
            conn.close()

    def get(self, execution_id: str) -> ExecutionRecord | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_record(row) if row is not None else None

    def exists(self, execution_id: str) -> bool:
        conn = self._connect()
        try:
            row = conn.execute("SELECT 1 FROM executions WHERE id = ?", (execution_id,)).fetchone()
        finally:
            conn.close()
        return row is not None

    def list_recent(self, limit: int = DEFAULT_RECENT_LIMIT) -> list[ExecutionRecord]:
        """Newest first."""
        if limit < 1:
            raise ValueError("limit must be >= 1")
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM executions ORDER BY rowid DESC LIMIT ?", (limit,)).fetchall()
        finally:
            conn.close()
        return [_row_to_record(row) for row in rows]

    def list_by_tag(self, tag: str, limit: int | None = None) -> list[ExecutionRecord]:
        """Runs that selected `tag`, newest first."""
        sql = (
            "SELECT e.* FROM executions e JOIN execution_tags t ON t.execution_id = e.id "
            "WHERE t.tag = ? ORDER BY e.rowid DESC"
        )
        params: tuple[Any, ...] = (normalize_tag(tag),)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [_row_to_record(row) for row in rows]

    def delete(self, execution_id: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM executions WHERE id = ?", (execution_id,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def count(self) -> int:
        conn = self._connect()
        try:
            row = conn.execute("SELECT COUNT(*) FROM executions").fetchone()
        finally:
            conn.close()
        return int(row[0])
