"""Local data store — SQLite at ~/.apt-smart/data.db."""

from __future__ import annotations

import json
import os
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from apt_smart.core.models import CommandResult, RunContext, RunResult


_DEFAULT_DB_PATH = os.path.join(
    str(Path.home()), ".apt-smart", "data.db"
)

# Stored command output is capped per step
_MAX_OUTPUT = 64 * 1024

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    variant TEXT NOT NULL,
    codename_before TEXT,
    codename_after TEXT,
    log_file TEXT,
    backup_dir TEXT,
    report_file TEXT,
    outcome TEXT,
    exit_code INTEGER,
    duration_seconds REAL,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS steps (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES runs(id),
    step_number INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    phase TEXT,
    command TEXT NOT NULL,
    success INTEGER NOT NULL,
    exit_code INTEGER,
    output TEXT,
    error TEXT,
    duration_ms INTEGER
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class DataStore:
    """Local SQLite data store."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or _DEFAULT_DB_PATH
        os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ── Config ───────────────────────────────────────────────────────

    def get_config(self, key: str) -> Optional[str]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT value FROM config WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_config(self, key: str, value: str) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)",
            (key, value),
        )
        conn.commit()

    def unset_config(self, key: str) -> None:
        conn = self._get_conn()
        conn.execute("DELETE FROM config WHERE key = ?", (key,))
        conn.commit()

    # ── Runs ─────────────────────────────────────────────────────────

    def create_run(self, context: RunContext) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO runs
               (id, created_at, variant, log_file)
               VALUES (?, ?, ?, ?)""",
            (
                context.run_id,
                context.started_at.isoformat(),
                context.variant.value,
                str(context.log_file),
            ),
        )
        conn.commit()

    def complete_run(self, context: RunContext, result: RunResult) -> None:
        conn = self._get_conn()
        conn.execute(
            """UPDATE runs SET
               updated_at = ?,
               codename_before = ?,
               codename_after = ?,
               backup_dir = ?,
               report_file = ?,
               outcome = ?,
               exit_code = ?,
               duration_seconds = ?,
               error_message = ?
               WHERE id = ?""",
            (
                datetime.now().isoformat(),
                context.codename_before or None,
                context.codename_after or None,
                str(result.backup_dir) if result.backup_dir else None,
                str(result.report_file) if result.report_file else None,
                "success" if result.success else "failed",
                result.exit_code,
                result.duration_seconds,
                result.error_message,
                context.run_id,
            ),
        )
        conn.commit()

    def get_run(self, run_id: str) -> Optional[dict[str, Any]]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM runs WHERE id = ?", (run_id,)
        ).fetchone()
        return dict(row) if row else None

    def recent_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM runs ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [dict(r) for r in rows]

    # ── Steps ────────────────────────────────────────────────────────

    def log_step(
        self,
        run_id: str,
        number: int,
        timestamp: datetime,
        phase: str,
        result: CommandResult,
        duration_ms: int = 0,
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO steps
               (id, run_id, step_number, timestamp, phase, command, success,
                exit_code, output, error, duration_ms)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                str(uuid.uuid4()),
                run_id,
                number,
                timestamp.isoformat(),
                phase,
                json.dumps(result.argv),
                1 if result.success else 0,
                result.exit_code,
                result.output[-_MAX_OUTPUT:],
                result.error,
                duration_ms,
            ),
        )
        conn.commit()

    def get_steps(self, run_id: str) -> list[dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM steps WHERE run_id = ? ORDER BY step_number",
            (run_id,),
        ).fetchall()
        steps = []
        for r in rows:
            d = dict(r)
            d["command"] = json.loads(d["command"])
            steps.append(d)
        return steps
