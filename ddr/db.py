from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from .models import utc_now
from .settings import settings


def _resolve_db_path(db_path: str | None = None) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a
    bind-mounted file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(db_path or settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "ddr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect(db_path: str | None = None) -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | None = None) -> None:
    """Create tables if they do not exist."""
    with connect(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              kind TEXT NOT NULL,
              workload TEXT,
              message TEXT NOT NULL,
              data TEXT -- JSON object
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_workload ON events(workload);
            """
        )


def log_event(
    level: str,
    kind: str,
    message: str,
    workload: str | None = None,
    data: dict[str, Any] | None = None,
    db_path: str | None = None,
    ts: str | None = None,
) -> None:
    with connect(db_path) as conn:
        conn.execute(
            "INSERT INTO events (ts, level, kind, workload, message, data) VALUES (?, ?, ?, ?, ?, ?)",
            (ts or utc_now(), level.upper(), kind, workload, message, json.dumps(data or {}, default=str)),
        )


def latest_events(limit: int = 100, workload: str | None = None, db_path: str | None = None) -> list[dict[str, Any]]:
    with connect(db_path) as conn:
        if workload:
            rows = conn.execute(
                "SELECT * FROM events WHERE workload=? ORDER BY id DESC LIMIT ?", (workload, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    out: list[dict[str, Any]] = []
    for r in rows:
        row = dict(r)
        row["data"] = json.loads(row["data"]) if row.get("data") else {}
        out.append(row)
    return out
