from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable


SCHEMA_VERSION = 1

RUN_STATUSES = ("pending", "running", "passed", "failed")
TERMINAL_RUN_STATUSES = frozenset({"passed", "failed"})
STEP_STATUSES = ("passed", "failed", "skipped")


def _utc_ts() -> float:
    return time.time()


# schema_version -> step that upgrades a database from it to the next version.
_MIGRATIONS: dict[int, Callable[[sqlite3.Cursor], None]] = {}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def new_batch_id() -> str:
    return _new_id("batch")


def default_db_path() -> str:
    return os.getenv("UATCMS_SQLITE_PATH", "data/app.db")


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    batch_id: str | None
    release_id: int | None
    test_set_id: int | None
    test_set_name: str
    environment: str
    base_url: str
    created_at: float
    status: str


@dataclass(frozen=True)
class StepResultRecord:
    run_id: str
    test_step_id: int | None
    scenario_id: int | None
    scenario_name: str
    case_name: str
    step_definition: str
    expected_results: str | None
    status: str
    error_message: str | None
    duration_ms: int


@dataclass(frozen=True)
class TestSetRecord:
    test_set_id: int
    release_id: int
    name: str
    release_number: str


def _run_row_to_dict(r: sqlite3.Row) -> dict[str, Any]:
    return {
        "run_id": r["run_id"],
        "batch_id": r["batch_id"],
        "release_id": int(r["release_id"]) if r["release_id"] is not None else None,
        "test_set_id": int(r["test_set_id"]) if r["test_set_id"] is not None else None,
        "test_set_name": r["test_set_name"],
        "environment": r["environment"],
        "base_url": r["base_url"],
        "executed_by": r["executed_by"],
        "created_at": float(r["created_at"]),
        "started_at": float(r["started_at"]) if r["started_at"] is not None else None,
        "completed_at": float(r["completed_at"]) if r["completed_at"] is not None else None,
        "status": r["status"],
        "duration_ms": int(r["duration_ms"] or 0),
        "total_scenarios": int(r["total_scenarios"] or 0),
        "total_steps": int(r["total_steps"] or 0),
        "passed_steps": int(r["passed_steps"] or 0),
        "failed_steps": int(r["failed_steps"] or 0),
        "failure_details": json.loads(r["failure_details_json"]) if r["failure_details_json"] else [],
        "video_path": r["video_path"],
        "error": r["error"],
    }


_RUN_COLUMNS = """
  run_id, batch_id, release_id, test_set_id, test_set_name, environment, base_url, executed_by,
  created_at, started_at, completed_at, status, duration_ms, total_scenarios, total_steps,
  passed_steps, failed_steps, failure_details_json, video_path, error
"""


class SQLiteStore:
    """SQLite-backed store for test runs, step results and run trace events.

    Design goals:
    - Single-host, single-instance. Batch orchestration state lives in memory;
      only run outcomes are durable.
    - `runs` rows are written by the submission layer (pending) and by the result
      collector (running / terminal). Nothing here deletes runs.
    - The small catalog tables (releases, test_sets, environment_configs) only hold
      what submissions need to resolve; authoring lives elsewhere.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, so result writes from the
        orchestrator and API requests never interleave half-way.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              batch_id TEXT,
              release_id INTEGER,
              test_set_id INTEGER,
              test_set_name TEXT NOT NULL DEFAULT '',
              environment TEXT NOT NULL DEFAULT '',
              base_url TEXT NOT NULL DEFAULT '',
              executed_by TEXT,
              created_at REAL NOT NULL,
              started_at REAL,
              completed_at REAL,
              status TEXT NOT NULL CHECK(status IN ('pending', 'running', 'passed', 'failed')),
              duration_ms INTEGER NOT NULL DEFAULT 0,
              total_scenarios INTEGER NOT NULL DEFAULT 0,
              total_steps INTEGER NOT NULL DEFAULT 0,
              passed_steps INTEGER NOT NULL DEFAULT 0,
              failed_steps INTEGER NOT NULL DEFAULT 0,
              failure_details_json TEXT,
              video_path TEXT,
              error TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS run_steps (
              run_step_id INTEGER PRIMARY KEY AUTOINCREMENT,
              run_id TEXT NOT NULL,
              test_step_id INTEGER,
              scenario_id INTEGER,
              scenario_name TEXT NOT NULL,
              case_name TEXT NOT NULL,
              step_definition TEXT NOT NULL,
              expected_results TEXT,
              status TEXT NOT NULL CHECK(status IN ('passed', 'failed', 'skipped')),
              error_message TEXT,
              duration_ms INTEGER NOT NULL DEFAULT 0,
              FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              event_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
            );
            """
        )
        # Submission catalog: environment URLs and the test sets of each release.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS releases (
              release_id INTEGER PRIMARY KEY,
              release_number TEXT NOT NULL DEFAULT ''
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS test_sets (
              test_set_id INTEGER PRIMARY KEY AUTOINCREMENT,
              release_id INTEGER NOT NULL,
              name TEXT NOT NULL,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS environment_configs (
              environment TEXT NOT NULL,
              release_id INTEGER NOT NULL DEFAULT 0,
              base_url TEXT NOT NULL,
              updated_at REAL NOT NULL,
              PRIMARY KEY (environment, release_id)
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_batch ON runs(batch_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_status_created ON runs(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_run_steps_run ON run_steps(run_id, run_step_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_run_ts ON events(run_id, created_at, event_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_test_sets_release ON test_sets(release_id, name);")

        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", str(int(SCHEMA_VERSION))),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except Exception:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        """Apply `_MIGRATIONS` steps until the database reaches SCHEMA_VERSION."""
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                step = _MIGRATIONS.get(current)
                if step is None:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
                step(cur)
                current += 1
                self._set_schema_version(current)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    # --- Catalog (submission support)
    def upsert_release(self, *, release_id: int, release_number: str = "") -> None:
        self._conn.execute(
            """
            INSERT INTO releases(release_id, release_number) VALUES(?, ?)
            ON CONFLICT(release_id) DO UPDATE SET release_number = excluded.release_number;
            """,
            (int(release_id), str(release_number or "")),
        )
        self._conn.commit()

    def create_test_set(self, *, release_id: int, name: str) -> TestSetRecord:
        created_at = _utc_ts()
        cur = self._conn.execute(
            "INSERT INTO test_sets(release_id, name, created_at) VALUES(?, ?, ?);",
            (int(release_id), name, created_at),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO releases(release_id, release_number) VALUES(?, '');",
            (int(release_id),),
        )
        self._conn.commit()
        test_set_id = int(cur.lastrowid)
        return TestSetRecord(
            test_set_id=test_set_id,
            release_id=int(release_id),
            name=name,
            release_number=self.get_release_number(release_id=int(release_id)),
        )

    def get_release_number(self, *, release_id: int) -> str:
        row = self._conn.execute(
            "SELECT release_number FROM releases WHERE release_id = ? LIMIT 1;",
            (int(release_id),),
        ).fetchone()
        return str(row["release_number"]) if row is not None else ""

    def get_test_set(self, *, test_set_id: int, release_id: int) -> TestSetRecord | None:
        row = self._conn.execute(
            """
            SELECT ts.test_set_id, ts.release_id, ts.name, COALESCE(r.release_number, '') AS release_number
            FROM test_sets ts
            LEFT JOIN releases r ON r.release_id = ts.release_id
            WHERE ts.test_set_id = ? AND ts.release_id = ?
            LIMIT 1;
            """,
            (int(test_set_id), int(release_id)),
        ).fetchone()
        if row is None:
            return None
        return TestSetRecord(
            test_set_id=int(row["test_set_id"]),
            release_id=int(row["release_id"]),
            name=str(row["name"]),
            release_number=str(row["release_number"]),
        )

    def list_test_sets_for_release(self, *, release_id: int) -> list[TestSetRecord]:
        rows = self._conn.execute(
            """
            SELECT ts.test_set_id, ts.release_id, ts.name, COALESCE(r.release_number, '') AS release_number
            FROM test_sets ts
            LEFT JOIN releases r ON r.release_id = ts.release_id
            WHERE ts.release_id = ?
            ORDER BY ts.name, ts.test_set_id;
            """,
            (int(release_id),),
        ).fetchall()
        return [
            TestSetRecord(
                test_set_id=int(r["test_set_id"]),
                release_id=int(r["release_id"]),
                name=str(r["name"]),
                release_number=str(r["release_number"]),
            )
            for r in rows
        ]

    def set_environment_url(self, *, environment: str, base_url: str, release_id: int | None = None) -> None:
        self._conn.execute(
            """
            INSERT INTO environment_configs(environment, release_id, base_url, updated_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(environment, release_id) DO UPDATE SET
              base_url = excluded.base_url,
              updated_at = excluded.updated_at;
            """,
            (environment.strip().lower(), int(release_id or 0), base_url, _utc_ts()),
        )
        self._conn.commit()

    def resolve_environment_url(self, *, environment: str, release_id: int) -> str | None:
        """Release-specific URL wins over the global (release_id=0) entry."""
        row = self._conn.execute(
            """
            SELECT base_url FROM environment_configs
            WHERE environment = ? AND release_id IN (?, 0)
            ORDER BY release_id DESC
            LIMIT 1;
            """,
            (environment.strip().lower(), int(release_id)),
        ).fetchone()
        return str(row["base_url"]) if row is not None else None

    def list_environments(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT environment, release_id, base_url, updated_at FROM environment_configs ORDER BY environment, release_id;"
        ).fetchall()
        return [
            {
                "environment": r["environment"],
                "release_id": int(r["release_id"]) or None,
                "base_url": r["base_url"],
                "updated_at": float(r["updated_at"]),
            }
            for r in rows
        ]

    # --- Runs
    def create_run(
        self,
        *,
        release_id: int,
        test_set_id: int,
        test_set_name: str,
        environment: str,
        base_url: str,
        batch_id: str | None = None,
        executed_by: str | None = None,
        commit: bool = True,
    ) -> RunRecord:
        run_id = _new_id("run")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO runs(
              run_id, batch_id, release_id, test_set_id, test_set_name, environment, base_url,
              executed_by, created_at, status
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                run_id,
                batch_id,
                int(release_id),
                int(test_set_id),
                test_set_name,
                environment,
                base_url,
                executed_by,
                created_at,
                "pending",
            ),
        )
        if commit:
            self._conn.commit()
        return RunRecord(
            run_id=run_id,
            batch_id=batch_id,
            release_id=int(release_id),
            test_set_id=int(test_set_id),
            test_set_name=test_set_name,
            environment=environment,
            base_url=base_url,
            created_at=created_at,
            status="pending",
        )

    def get_run(self, *, run_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ? LIMIT 1;",
            (run_id,),
        ).fetchone()

    def get_run_item(self, *, run_id: str) -> dict[str, Any] | None:
        row = self.get_run(run_id=run_id)
        return _run_row_to_dict(row) if row is not None else None

    def count_runs(self, *, run_id: str) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM runs WHERE run_id = ?;", (run_id,)).fetchone()
        return int(row["n"])

    def list_runs_page(
        self,
        *,
        batch_id: str | None,
        release_id: int | None,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if batch_id:
            where.append("batch_id = ?")
            params.append(batch_id)

        if release_id is not None:
            where.append("release_id = ?")
            params.append(int(release_id))

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, run_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND run_id < ?))")
            params.extend([float(created_at), float(created_at), str(run_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT {_RUN_COLUMNS}
            FROM runs
            WHERE {where_sql}
            ORDER BY created_at DESC, run_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [_run_row_to_dict(r) for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["run_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def list_runs_for_batch(self, *, batch_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE batch_id = ? ORDER BY created_at, run_id;",
            (batch_id,),
        ).fetchall()
        return [_run_row_to_dict(r) for r in rows]

    def run_filter_options(self, *, release_id: int | None = None) -> dict[str, Any]:
        """Distinct environment, executor and test set values recorded on runs."""
        where = "WHERE 1=1"
        params: list[Any] = []
        if release_id is not None:
            where = "WHERE release_id = ?"
            params.append(int(release_id))
        environments = self._conn.execute(
            f"SELECT DISTINCT environment FROM runs {where} AND environment != '' ORDER BY environment;", params
        ).fetchall()
        executed_by = self._conn.execute(
            f"SELECT DISTINCT executed_by FROM runs {where} AND executed_by IS NOT NULL ORDER BY executed_by;", params
        ).fetchall()
        test_sets = self._conn.execute(
            f"""
            SELECT DISTINCT test_set_id, test_set_name FROM runs
            {where} AND test_set_id IS NOT NULL
            ORDER BY test_set_name, test_set_id;
            """,
            params,
        ).fetchall()
        return {
            "environments": [str(r["environment"]) for r in environments],
            "executed_by": [str(r["executed_by"]) for r in executed_by],
            "test_sets": [{"test_set_id": int(r["test_set_id"]), "name": r["test_set_name"]} for r in test_sets],
        }

    def count_runs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM runs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def mark_run_running(self, run_id: str) -> None:
        """Non-terminal transition; never downgrades a terminal run."""
        self._conn.execute(
            """
            UPDATE runs
            SET
              status = 'running',
              started_at = COALESCE(started_at, ?)
            WHERE run_id = ? AND status IN ('pending', 'running');
            """,
            (_utc_ts(), run_id),
        )
        self._conn.commit()

    def write_run_outcome(
        self,
        *,
        run_id: str,
        status: str,
        duration_ms: int,
        total_scenarios: int,
        total_steps: int,
        passed_steps: int,
        failed_steps: int,
        failure_details: list[dict[str, Any]],
        video_path: str | None,
        error: str | None,
        steps: list[StepResultRecord],
    ) -> None:
        """Write the terminal outcome of a run and replace its step results.

        Upserts by run_id, so writing twice leaves one record reflecting the
        latest call and exactly one set of step rows.
        """
        if status not in TERMINAL_RUN_STATUSES:
            raise ValueError(f"Invalid terminal status: {status!r}")
        ts = _utc_ts()
        with self.transaction(mode="IMMEDIATE"):
            self._conn.execute(
                """
                INSERT INTO runs(
                  run_id, created_at, started_at, completed_at, status, duration_ms, total_scenarios,
                  total_steps, passed_steps, failed_steps, failure_details_json, video_path, error
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                  started_at = COALESCE(runs.started_at, excluded.started_at),
                  completed_at = excluded.completed_at,
                  status = excluded.status,
                  duration_ms = excluded.duration_ms,
                  total_scenarios = excluded.total_scenarios,
                  total_steps = excluded.total_steps,
                  passed_steps = excluded.passed_steps,
                  failed_steps = excluded.failed_steps,
                  failure_details_json = excluded.failure_details_json,
                  video_path = excluded.video_path,
                  error = excluded.error;
                """,
                (
                    run_id,
                    ts,
                    ts,
                    ts,
                    status,
                    int(duration_ms),
                    int(total_scenarios),
                    int(total_steps),
                    int(passed_steps),
                    int(failed_steps),
                    _json_dumps(failure_details) if failure_details else None,
                    video_path,
                    error,
                ),
            )
            self._conn.execute("DELETE FROM run_steps WHERE run_id = ?;", (run_id,))
            self._conn.executemany(
                """
                INSERT INTO run_steps(
                  run_id, test_step_id, scenario_id, scenario_name, case_name, step_definition,
                  expected_results, status, error_message, duration_ms
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        run_id,
                        s.test_step_id,
                        s.scenario_id,
                        s.scenario_name,
                        s.case_name,
                        s.step_definition,
                        s.expected_results,
                        s.status,
                        s.error_message,
                        int(s.duration_ms),
                    )
                    for s in steps
                ],
            )

    def list_run_steps(self, *, run_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT
              run_step_id, run_id, test_step_id, scenario_id, scenario_name, case_name,
              step_definition, expected_results, status, error_message, duration_ms
            FROM run_steps
            WHERE run_id = ?
            ORDER BY run_step_id ASC;
            """,
            (run_id,),
        ).fetchall()
        return [
            {
                "run_step_id": int(r["run_step_id"]),
                "run_id": r["run_id"],
                "test_step_id": int(r["test_step_id"]) if r["test_step_id"] is not None else None,
                "scenario_id": int(r["scenario_id"]) if r["scenario_id"] is not None else None,
                "scenario_name": r["scenario_name"],
                "case_name": r["case_name"],
                "step_definition": r["step_definition"],
                "expected_results": r["expected_results"],
                "status": r["status"],
                "error_message": r["error_message"],
                "duration_ms": int(r["duration_ms"]),
            }
            for r in rows
        ]

    # --- Reconcile (manual, after a restart lost in-memory batch state)
    def reconcile_running_runs(self, *, reason: str = "server_restarted") -> int:
        """Mark any 'running' or 'pending' runs as failed.

        Queue and batch state are in memory only, so after a process restart these
        runs will never be picked up again. Returns the number of runs reconciled.
        """
        ts = _utc_ts()
        rows = self._conn.execute(
            "SELECT run_id FROM runs WHERE status IN ('running', 'pending');",
        ).fetchall()
        if not rows:
            return 0

        run_ids = [r["run_id"] for r in rows]
        for run_id in run_ids:
            self._conn.execute(
                """
                UPDATE runs
                SET
                  status = 'failed',
                  completed_at = COALESCE(completed_at, ?),
                  error = COALESCE(error, ?),
                  failure_details_json = COALESCE(failure_details_json, ?)
                WHERE run_id = ? AND status IN ('running', 'pending');
                """,
                (ts, reason, _json_dumps([{"error": reason}]), run_id),
            )
            self._conn.execute(
                """
                INSERT INTO events(event_id, run_id, created_at, event_type, payload_json)
                VALUES(?, ?, ?, ?, ?);
                """,
                (_new_id("evt"), run_id, ts, "run_failed", _json_dumps({"error": reason})),
            )

        self._conn.commit()
        return len(run_ids)

    # --- Events (trace)
    def append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = _new_id("evt")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO events(event_id, run_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, run_id, created_at, event_type, _json_dumps(payload)),
        )
        self._conn.commit()
        return event_id

    def iter_events(self, run_id: str) -> Iterable[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT created_at, event_type, payload_json FROM events WHERE run_id = ? ORDER BY created_at, event_id;",
            (run_id,),
        )
        for r in rows:
            yield {
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }

    def get_latest_event(self, *, run_id: str, event_type: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT event_id, run_id, created_at, event_type, payload_json
            FROM events
            WHERE run_id = ? AND event_type = ?
            ORDER BY created_at DESC, event_id DESC
            LIMIT 1;
            """,
            (run_id, event_type),
        ).fetchone()
