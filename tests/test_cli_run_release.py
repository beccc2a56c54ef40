from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

import pytest
from helpers import write_test_config

from uatcms.cli.run_release import main
from uatcms.storage.sqlite_store import SQLiteStore


def _seed(db_path: str, names: list[str]) -> list[int]:
    store = SQLiteStore(db_path)
    try:
        store.upsert_release(release_id=7, release_number="R7")
        store.set_environment_url(environment="staging", base_url="http://staging.test")
        return [store.create_test_set(release_id=7, name=n).test_set_id for n in names]
    finally:
        store.close()


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("FAKE_WORKER_PLAN", "UATCMS_MAX_CONCURRENT", "UATCMS_REPORTS_DIR", "FAKE_WORKER_DELAY_S"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FAKE_WORKER_MODE", "pass")


def test_release_batch_passes(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    _clear_env(monkeypatch)
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "app.db")
        _seed(db_path, ["Auth", "Search"])
        cfg = write_test_config(td, max_concurrent=1)

        code = main(
            [
                "--release-id",
                "7",
                "--environment",
                "Staging",
                "--db-path",
                db_path,
                "--config",
                str(cfg),
                "--executed-by",
                "nightly",
                "--json",
                "--log-level",
                "WARNING",
            ]
        )
        assert code == 0
        snapshot = json.loads(capsys.readouterr().out)
        assert snapshot["status"] == "completed"
        assert (snapshot["total"], snapshot["passed"], snapshot["failed"]) == (2, 2, 0)
        assert Path(snapshot["report_path"]).exists()

        store = SQLiteStore(db_path)
        try:
            runs = store.list_runs_for_batch(batch_id=snapshot["batch_id"])
        finally:
            store.close()
        assert {r["status"] for r in runs} == {"passed"}
        assert {r["executed_by"] for r in runs} == {"nightly"}
        assert {r["base_url"] for r in runs} == {"http://staging.test"}


def test_release_batch_with_failure_exits_non_zero(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _clear_env(monkeypatch)
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "app.db")
        ids = _seed(db_path, ["Auth", "Search", "Checkout"])
        monkeypatch.setenv("FAKE_WORKER_PLAN", json.dumps({str(ids[0]): "crash"}))
        cfg = write_test_config(td)

        code = main(["--release-id", "7", "--base-url", "http://direct.test", "--db-path", db_path, "--config", str(cfg)])
        assert code == 1
        out = capsys.readouterr().out
        assert "failed (2 passed, 1 failed, 3 total)" in out
        assert "Report:" in out


def test_release_without_test_sets_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "app.db")
        _seed(db_path, [])
        cfg = write_test_config(td)
        with pytest.raises(SystemExit, match="has no test sets"):
            main(["--release-id", "7", "--environment", "staging", "--db-path", db_path, "--config", str(cfg)])
        with pytest.raises(SystemExit, match="No URL configured"):
            main(["--release-id", "7", "--environment", "prod", "--db-path", db_path, "--config", str(cfg)])
