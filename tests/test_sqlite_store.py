from __future__ import annotations

import json
import sqlite3
import tempfile

import pytest

from uatcms.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore, StepResultRecord


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def _create_run(store: SQLiteStore, *, batch_id: str | None = None) -> str:
    ts = store.create_test_set(release_id=1, name="Smoke")
    run = store.create_run(
        release_id=1,
        test_set_id=ts.test_set_id,
        test_set_name=ts.name,
        environment="qa",
        base_url="http://qa.test",
        batch_id=batch_id,
    )
    return run.run_id


def _step(run_id: str, n: int, status: str = "passed") -> StepResultRecord:
    return StepResultRecord(
        run_id=run_id,
        test_step_id=n,
        scenario_id=1,
        scenario_name="Login",
        case_name="Happy",
        step_definition=f"step {n}",
        expected_results=None,
        status=status,
        error_message=None,
        duration_ms=1,
    )


def test_reconcile_running_runs_marks_failed_and_records_event() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            running = _create_run(store)
            pending = _create_run(store)
            done = _create_run(store)
            store.mark_run_running(running)
            store.write_run_outcome(
                run_id=done,
                status="passed",
                duration_ms=1,
                total_scenarios=1,
                total_steps=0,
                passed_steps=0,
                failed_steps=0,
                failure_details=[],
                video_path=None,
                error=None,
                steps=[],
            )

            assert store.reconcile_running_runs(reason="server_restarted") == 2

            for run_id in (running, pending):
                row = store.get_run(run_id=run_id)
                assert row is not None
                assert row["status"] == "failed"
                assert row["error"] == "server_restarted"
                evt = store.get_latest_event(run_id=run_id, event_type="run_failed")
                assert evt is not None
                assert json.loads(evt["payload_json"])["error"] == "server_restarted"
            assert store.get_run_item(run_id=done)["status"] == "passed"
            assert store.reconcile_running_runs() == 0
        finally:
            store.close()


def test_new_database_has_full_schema() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            for name in ("runs", "run_steps", "events", "releases", "test_sets", "environment_configs"):
                assert _table_exists(store._conn, name)
            row = store._conn.execute("SELECT value FROM meta WHERE key = 'schema_version';").fetchone()
            assert int(row["value"]) == SCHEMA_VERSION
        finally:
            store.close()
        # Reopening an up-to-date database is a no-op.
        SQLiteStore(f"{td}/app.db").close()


def test_database_from_a_newer_release_is_refused() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            store._conn.execute("UPDATE meta SET value = ? WHERE key = 'schema_version';", (str(SCHEMA_VERSION + 1),))
            store._conn.commit()
        finally:
            store.close()

        with pytest.raises(RuntimeError, match="newer than code expects"):
            SQLiteStore(f"{td}/app.db")


def test_write_run_outcome_replaces_steps() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run_id = _create_run(store)
            common = dict(
                duration_ms=5,
                total_scenarios=1,
                passed_steps=0,
                failed_steps=0,
                failure_details=[],
                video_path=None,
                error=None,
            )
            store.write_run_outcome(
                run_id=run_id, status="passed", total_steps=3, steps=[_step(run_id, i) for i in range(3)], **common
            )
            store.write_run_outcome(
                run_id=run_id, status="failed", total_steps=1, steps=[_step(run_id, 9, "failed")], **common
            )

            steps = store.list_run_steps(run_id=run_id)
            assert [s["test_step_id"] for s in steps] == [9]
            item = store.get_run_item(run_id=run_id)
            assert item["status"] == "failed"
            # Submission columns survive the upsert.
            assert item["test_set_name"] == "Smoke"
            assert item["environment"] == "qa"
        finally:
            store.close()


def test_write_run_outcome_rejects_non_terminal_status() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run_id = _create_run(store)
            with pytest.raises(ValueError):
                store.write_run_outcome(
                    run_id=run_id,
                    status="running",
                    duration_ms=0,
                    total_scenarios=0,
                    total_steps=0,
                    passed_steps=0,
                    failed_steps=0,
                    failure_details=[],
                    video_path=None,
                    error=None,
                    steps=[],
                )
            assert store.get_run_item(run_id=run_id)["status"] == "pending"
        finally:
            store.close()


def test_mark_run_running_never_downgrades_terminal_runs() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run_id = _create_run(store)
            store.write_run_outcome(
                run_id=run_id,
                status="failed",
                duration_ms=0,
                total_scenarios=0,
                total_steps=0,
                passed_steps=0,
                failed_steps=0,
                failure_details=[{"error": "x"}],
                video_path=None,
                error="x",
                steps=[],
            )
            store.mark_run_running(run_id)
            assert store.get_run_item(run_id=run_id)["status"] == "failed"
        finally:
            store.close()


def test_environment_url_prefers_release_specific_entry() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            store.set_environment_url(environment="QA", base_url="http://global.qa")
            assert store.resolve_environment_url(environment="qa", release_id=5) == "http://global.qa"

            store.set_environment_url(environment="qa", base_url="http://r5.qa", release_id=5)
            assert store.resolve_environment_url(environment="qa", release_id=5) == "http://r5.qa"
            assert store.resolve_environment_url(environment="qa", release_id=6) == "http://global.qa"
            assert store.resolve_environment_url(environment="prod", release_id=5) is None
            assert len(store.list_environments()) == 2
        finally:
            store.close()


def test_list_runs_page_is_newest_first_with_cursor() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            ids = [_create_run(store, batch_id="batch_x") for _ in range(5)]
            _create_run(store)

            page1 = store.list_runs_page(batch_id="batch_x", release_id=None, limit=3, cursor=None, statuses=None)
            assert page1["has_more"] is True
            page2 = store.list_runs_page(
                batch_id="batch_x", release_id=None, limit=3, cursor=page1["next_cursor"], statuses=None
            )
            assert page2["has_more"] is False

            seen = [r["run_id"] for r in page1["items"] + page2["items"]]
            assert sorted(seen) == sorted(ids)
            created = [r["created_at"] for r in page1["items"] + page2["items"]]
            assert created == sorted(created, reverse=True)

            assert store.list_runs_page(
                batch_id=None, release_id=1, limit=50, cursor=None, statuses=["passed"]
            )["items"] == []
        finally:
            store.close()
