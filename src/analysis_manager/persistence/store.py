from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional


class SQLiteRunStore:
    """
    SQLite-backed history of tool runs.

    Runs are recorded with their closeout, alongside the throttled status updates
    the state machine publishes and free-form run events.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL UNIQUE,
                    integration TEXT NOT NULL,
                    job INTEGER,
                    dataset TEXT,
                    work_dir TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    status TEXT,
                    closeout_code INTEGER,
                    message TEXT,
                    evaluation_message TEXT,
                    config_json TEXT
                );

                CREATE TABLE IF NOT EXISTS status_updates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    percent_complete REAL,
                    units_processed INTEGER,
                    state_label TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS run_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    message TEXT,
                    payload_json TEXT,
                    created_at TEXT NOT NULL
                );
                """
            )

    def record_run_start(
        self,
        run_id: str,
        integration: str,
        job: int,
        dataset: str,
        work_dir: str,
        config: Dict[str, Any],
    ) -> None:
        self.initialize()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO runs (run_id, integration, job, dataset, work_dir, started_at, status, config_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    integration,
                    job,
                    dataset,
                    work_dir,
                    self._timestamp(),
                    "running",
                    json.dumps(config),
                ),
            )

    def record_run_complete(
        self,
        run_id: str,
        status: str,
        closeout_code: int,
        message: str,
        evaluation_message: str = "",
        completed_at: Optional[datetime] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE runs
                SET completed_at = ?, status = ?, closeout_code = ?, message = ?, evaluation_message = ?
                WHERE run_id = ?
                """,
                (
                    (completed_at or datetime.utcnow()).isoformat(),
                    status,
                    closeout_code,
                    message,
                    evaluation_message,
                    run_id,
                ),
            )

    def record_status(
        self,
        run_id: str,
        percent_complete: float,
        units_processed: int,
        state_label: str,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO status_updates (run_id, percent_complete, units_processed, state_label, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (run_id, percent_complete, units_processed, state_label, self._timestamp()),
            )

    def record_event(
        self,
        run_id: str,
        event_type: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO run_events (run_id, event_type, message, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    event_type,
                    message,
                    json.dumps(payload or {}),
                    self._timestamp(),
                ),
            )

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with closing(self._connect()) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
            return dict(row) if row else None

    def list_status_updates(self, run_id: str) -> List[Dict[str, Any]]:
        with closing(self._connect()) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT percent_complete, units_processed, state_label, created_at FROM status_updates WHERE run_id = ? ORDER BY id",
                (run_id,),
            ).fetchall()
            return [dict(row) for row in rows]

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        return connection

    @staticmethod
    def _timestamp() -> str:
        return datetime.utcnow().isoformat()
