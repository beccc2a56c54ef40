from __future__ import annotations

import asyncio
import dataclasses
import os
import tempfile
import time

from helpers import fake_worker_config

from uatcms.runtime.worker_contract import (
    NoiseLine,
    ProgressEvent,
    ProgressLine,
    ResultLine,
    RunRequest,
    WorkerLauncher,
    build_worker_env,
    parse_worker_line,
    progress_from_payload,
)


def _request(run_id: str = "run_abc", test_set_id: int = 7) -> RunRequest:
    return RunRequest(
        run_id=run_id,
        test_set_id=test_set_id,
        release_id=3,
        base_url="http://qa.example.test",
        release_number="2024.10",
    )


def test_parse_worker_line_classifies_markers_and_noise() -> None:
    assert isinstance(parse_worker_line('PROGRESS:{"currentStep": 1}\n'), ProgressLine)

    result = parse_worker_line('RESULT:{"status": "passed"}')
    assert isinstance(result, ResultLine)
    assert result.payload == {"status": "passed"}
    assert result.raw == '{"status": "passed"}'

    noise = parse_worker_line("Launching chromium...\n")
    assert isinstance(noise, NoiseLine)
    assert noise.text == "Launching chromium..."


def test_parse_worker_line_unparsable_markers_are_noise() -> None:
    assert isinstance(parse_worker_line("PROGRESS:{broken"), NoiseLine)
    assert isinstance(parse_worker_line("RESULT:"), NoiseLine)
    # Valid JSON that is not an object does not count either.
    assert isinstance(parse_worker_line("RESULT:[1, 2]"), NoiseLine)
    # Markers only count at the start of the line.
    assert isinstance(parse_worker_line('  RESULT:{"status": "passed"}'), NoiseLine)


def test_progress_from_payload_maps_camel_case_keys() -> None:
    ev = progress_from_payload(
        "run_1",
        {
            "currentScenario": 2,
            "totalScenarios": 4,
            "scenarioName": "Checkout",
            "caseName": "Card",
            "currentStep": "3",
            "totalSteps": 9,
            "stepDefinition": "click pay",
        },
    )
    assert ev == ProgressEvent(
        run_id="run_1",
        current_scenario=2,
        total_scenarios=4,
        scenario_name="Checkout",
        case_name="Card",
        current_step=3,
        total_steps=9,
        step_definition="click pay",
    )
    assert progress_from_payload("run_1", {}).total_steps == 0


def test_build_worker_env_sets_contract_variables() -> None:
    env = build_worker_env(
        _request(),
        batch_mode=True,
        api_base_url="http://api.test",
        reports_dir="/tmp/reports",
        base_env={"PATH": "/usr/bin", "IS_BATCH_RUN": "stale"},
    )
    assert env["PATH"] == "/usr/bin"
    assert env["TEST_RUN_ID"] == "run_abc"
    assert env["TEST_SET_ID"] == "7"
    assert env["RELEASE_ID"] == "3"
    assert env["RELEASE_NUMBER"] == "2024.10"
    assert env["TEST_BASE_URL"] == "http://qa.example.test"
    assert env["API_BASE_URL"] == "http://api.test"
    assert env["IS_BATCH_RUN"] == "true"
    assert env["PLAYWRIGHT_WORKERS"] == "1"
    assert env["REPORTS_DIR"] == "/tmp/reports"

    solo = build_worker_env(_request(), batch_mode=False, api_base_url="x", reports_dir="y", base_env={})
    assert solo["IS_BATCH_RUN"] == "false"


def test_launcher_runs_worker_and_collects_progress_and_result(monkeypatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        monkeypatch.setenv("FAKE_WORKER_MODE", "pass")
        launcher = WorkerLauncher(fake_worker_config(td), reports_dir=os.path.join(td, "reports"))
        progress: list[ProgressEvent] = []

        out = asyncio.run(launcher.run(_request(), batch_mode=False, on_progress=progress.append))

        assert out.exit_code == 0
        assert not out.crashed
        assert out.failure_hint() is None
        assert out.result_raw is not None and '"status": "passed"' in out.result_raw
        assert [p.current_step for p in progress] == [1, 2]
        assert all(p.run_id == "run_abc" for p in progress)
        assert "Launching browser" in out.stdout_tail
        assert os.path.exists(os.path.join(td, "reports", "bdd", "cucumber-run_abc.json"))


def test_launcher_reports_crash_with_stderr_tail(monkeypatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        monkeypatch.setenv("FAKE_WORKER_MODE", "crash")
        launcher = WorkerLauncher(fake_worker_config(td), reports_dir=td)

        out = asyncio.run(launcher.run(_request(), batch_mode=True))

        assert out.exit_code == 3
        assert out.crashed
        assert out.result_raw is None
        hint = out.failure_hint()
        assert hint is not None and "exited with code 3" in hint
        assert "browser exited unexpectedly" in hint


def test_launcher_kills_worker_after_deadline(monkeypatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        monkeypatch.setenv("FAKE_WORKER_MODE", "hang")
        launcher = WorkerLauncher(fake_worker_config(td), reports_dir=td, run_timeout_s=0.5)

        out = asyncio.run(launcher.run(_request(), batch_mode=False))

        assert out.timed_out
        assert out.crashed
        assert out.result_raw is None
        assert "timed out" in (out.failure_hint() or "")


def test_launcher_turns_spawn_failure_into_crash_outcome() -> None:
    with tempfile.TemporaryDirectory() as td:
        cfg = dataclasses.replace(fake_worker_config(td), command=(os.path.join(td, "does-not-exist"),))
        launcher = WorkerLauncher(cfg, reports_dir=td)

        out = asyncio.run(launcher.run(_request(), batch_mode=False))

        assert out.exit_code is None
        assert out.crashed
        assert out.launch_error
        assert (out.failure_hint() or "").startswith("Failed to start worker")


def test_deadline_kills_descendants_holding_the_output_pipe() -> None:
    with tempfile.TemporaryDirectory() as td:
        # The background child inherits stdout and outlives its parent's kill
        # unless the whole process group is terminated.
        cfg = dataclasses.replace(fake_worker_config(td), command=("sh", "-c", "sleep 30 & echo 'PROGRESS:{}'; wait"))
        launcher = WorkerLauncher(cfg, reports_dir=td, run_timeout_s=1.0, exit_grace_s=0.5)

        started = time.monotonic()
        out = asyncio.run(launcher.run(_request(), batch_mode=True))
        elapsed = time.monotonic() - started

        assert elapsed < 10
        assert out.timed_out
        assert out.crashed
        assert "timed out" in (out.failure_hint() or "")


def test_finished_worker_is_not_held_up_by_an_orphaned_descendant() -> None:
    with tempfile.TemporaryDirectory() as td:
        script = "sleep 30 & echo 'RESULT:{\"status\": \"passed\"}'; exit 0"
        cfg = dataclasses.replace(fake_worker_config(td), command=("sh", "-c", script))
        launcher = WorkerLauncher(cfg, reports_dir=td, exit_grace_s=0.5)

        started = time.monotonic()
        out = asyncio.run(launcher.run(_request(), batch_mode=False))
        elapsed = time.monotonic() - started

        assert elapsed < 10
        assert out.exit_code == 0
        assert not out.timed_out
        assert out.result_raw == '{"status": "passed"}'
