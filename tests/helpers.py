from __future__ import annotations

import asyncio
import json
import sqlite3
import sys
from pathlib import Path
from typing import Any

from uatcms.config.load_config import WorkerConfig
from uatcms.runtime.report_merger import MergeResult
from uatcms.runtime.result_collector import CollectedOutcome, ResultCollector
from uatcms.runtime.worker_contract import RunRequest, WorkerOutcome
from uatcms.storage.sqlite_store import SQLiteStore


FAKE_WORKER = Path(__file__).resolve().parent / "fixtures" / "fake_worker.py"


def fake_worker_config(cwd: str) -> WorkerConfig:
    return WorkerConfig(
        command=(sys.executable, str(FAKE_WORKER)),
        cwd=cwd,
        api_base_url="http://api.test",
        max_line_bytes=1 << 20,
        stderr_tail_lines=50,
    )


def passed_result(*, steps: int = 2) -> str:
    return json.dumps(
        {
            "status": "passed",
            "durationMs": 42,
            "totalScenarios": 1,
            "totalSteps": steps,
            "passedSteps": steps,
            "failedSteps": 0,
            "steps": [
                {
                    "testStepId": i + 1,
                    "scenarioId": 1,
                    "scenarioName": "Checkout",
                    "caseName": "Card payment",
                    "stepDefinition": f"step {i + 1}",
                    "status": "passed",
                    "durationMs": 3,
                }
                for i in range(steps)
            ],
        }
    )


def outcome(run_id: str, *, exit_code: int | None = 0, result_raw: str | None = None) -> WorkerOutcome:
    return WorkerOutcome(run_id=run_id, exit_code=exit_code, result_raw=result_raw, duration_ms=5)


def seed_runs(db_path: str, n: int, *, batch_id: str | None = None, release_id: int = 1) -> list[RunRequest]:
    """Create `n` pending runs (one test set each) and return their requests."""
    store = SQLiteStore(db_path)
    try:
        requests: list[RunRequest] = []
        for i in range(n):
            ts = store.create_test_set(release_id=release_id, name=f"set-{i:02d}")
            record = store.create_run(
                release_id=release_id,
                test_set_id=ts.test_set_id,
                test_set_name=ts.name,
                environment="qa",
                base_url="http://app.test",
                batch_id=batch_id,
            )
            requests.append(
                RunRequest(
                    run_id=record.run_id,
                    test_set_id=ts.test_set_id,
                    release_id=release_id,
                    base_url="http://app.test",
                    batch_id=batch_id,
                    test_set_name=ts.name,
                )
            )
        return requests
    finally:
        store.close()


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class GatedLauncher:
    """In-process launcher: each run blocks until the test releases it."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self.batch_flags: list[bool] = []
        self.active = 0
        self.max_active = 0
        self._gates: dict[str, asyncio.Future[WorkerOutcome]] = {}

    def _gate(self, run_id: str) -> asyncio.Future[WorkerOutcome]:
        if run_id not in self._gates:
            self._gates[run_id] = asyncio.get_running_loop().create_future()
        return self._gates[run_id]

    async def run(self, request: RunRequest, *, batch_mode: bool, on_progress: Any = None) -> WorkerOutcome:
        self.started.append(request.run_id)
        self.batch_flags.append(batch_mode)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            return await self._gate(request.run_id)
        finally:
            self.active -= 1

    def finish(self, run_id: str, result: WorkerOutcome) -> None:
        self._gate(run_id).set_result(result)


class RecordingMerger:
    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str]]] = []

    async def merge(self, batch_id: str, run_ids: list[str]) -> MergeResult:
        self.calls.append((batch_id, list(run_ids)))
        return MergeResult(batch_id=batch_id, report_path=Path("/nonexistent") / batch_id, merged_runs=list(run_ids))


def write_test_config(td: str, *, max_concurrent: int = 7, run_timeout_s: float = 30) -> Path:
    """A config whose worker is the fake worker script and whose paths live under `td`."""
    cfg_dir = Path(td) / "config"
    cfg_dir.mkdir(parents=True, exist_ok=True)
    cfg = cfg_dir / "test.toml"
    cfg.write_text(
        "\n".join(
            [
                "[execution]",
                f"max_concurrent = {int(max_concurrent)}",
                "queue_settle_delay_s = 0",
                f"run_timeout_s = {float(run_timeout_s)}",
                "",
                "[worker]",
                f"command = [{json.dumps(sys.executable)}, {json.dumps(str(FAKE_WORKER))}]",
                f"cwd = {json.dumps(td)}",
                'api_base_url = "http://api.test"',
                "max_line_bytes = 1048576",
                "stderr_tail_lines = 50",
                "",
                "[reports]",
                'reports_dir = "reports"',
                "merge_wait_s = 0.3",
                "merge_poll_initial_s = 0.01",
                "merge_poll_max_s = 0.05",
                "",
                "[api]",
                "runs_list_default_limit = 50",
                "runs_list_max_limit = 200",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return cfg


class LockedCollector(ResultCollector):
    """Collector whose writes for chosen runs fail as if the database were locked."""

    def __init__(self, db_path: str, *, lock_mark_running: bool = False, lock_collect: set[str] | None = None) -> None:
        super().__init__(db_path)
        self._lock_mark_running = lock_mark_running
        self._lock_collect = set(lock_collect or ())

    def mark_running(self, request_run_id: str, *, batch_id: str | None = None) -> None:
        if self._lock_mark_running:
            raise sqlite3.OperationalError("database is locked")
        super().mark_running(request_run_id, batch_id=batch_id)

    def collect(self, run_id: str, *args: Any, **kwargs: Any) -> CollectedOutcome:
        if run_id in self._lock_collect:
            raise sqlite3.OperationalError("database is locked")
        return super().collect(run_id, *args, **kwargs)
