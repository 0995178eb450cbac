from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Iterable

from bddrun.core import clock, paths


def _migrations_dir() -> Path:
    return Path(__file__).resolve().parents[1] / "migrations"


def _load_migrations() -> list[tuple[str, str]]:
    migrations_dir = _migrations_dir()
    if not migrations_dir.exists():
        raise FileNotFoundError(f"Missing migrations directory: {migrations_dir}")
    return [(path.name, path.read_text(encoding="utf-8")) for path in sorted(migrations_dir.glob("*.sql"))]


def _ensure_migrations_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version TEXT PRIMARY KEY,
          applied_at TEXT NOT NULL
        )
        """
    )


def _applied_versions(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    return {row[0] for row in rows}


def connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def init_db(db_path: Path | None = None) -> Path:
    """Create the database if needed and apply pending migrations. Returns its path."""
    target = Path(db_path) if db_path is not None else paths.db_path()
    target.parent.mkdir(parents=True, exist_ok=True)

    conn = connect(target)
    try:
        _ensure_migrations_table(conn)
        applied = _applied_versions(conn)
        for version, sql in _load_migrations():
            if version in applied:
                continue
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, clock.now_iso()),
            )
        conn.commit()
    finally:
        conn.close()

    return target


def list_tables(db_path: Path) -> Iterable[str]:
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name").fetchall()
        return [row[0] for row in rows]
    finally:
        conn.close()


def applied_migrations(db_path: Path) -> int:
    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()
        return int(row[0]) if row else 0
    finally:
        conn.close()
