from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    channel TEXT NOT NULL,
    published_at TEXT NULL,
    shared_at TEXT NULL,
    vibe TEXT NULL,
    reason TEXT NULL,
    source TEXT NULL,
    metadata_json TEXT NOT NULL,
    repair_attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_videos_shared_at ON videos(shared_at DESC);

CREATE TABLE IF NOT EXISTS deleted_videos (
    video_id TEXT PRIMARY KEY,
    deleted_at TEXT NOT NULL
);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)
            _maybe_add_repair_attempts_column(conn)


def _maybe_add_repair_attempts_column(conn: sqlite3.Connection) -> None:
    # Catalogs seeded before repair tracking lack the counter column.
    columns = _table_columns(conn, "videos")
    if columns and "repair_attempts" not in columns:
        conn.execute(
            "ALTER TABLE videos ADD COLUMN repair_attempts INTEGER NOT NULL DEFAULT 0"
        )


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row["name"]) for row in rows}
