from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from uatcms.api.dependencies import find_runtime, get_runtime
from uatcms.api.errors import APIError, not_found
from uatcms.runtime.batch_orchestrator import UnknownBatchError
from uatcms.runtime.execution_runtime import ExecutionRuntime
from uatcms.runtime.report_merger import batch_report_path
from uatcms.runtime.worker_contract import RunRequest
from uatcms.storage.sqlite_store import SQLiteStore, new_batch_id


router = APIRouter()


class SubmitBatchRequest(BaseModel):
    release_id: int = Field(ge=1)
    environment: str = Field(min_length=1)
    executed_by: str | None = Field(default=None)


def _summarize_runs(batch_id: str, runs: list[dict[str, Any]]) -> dict[str, Any]:
    counts = {"pending": 0, "running": 0, "passed": 0, "failed": 0}
    for r in runs:
        counts[str(r["status"])] = counts.get(str(r["status"]), 0) + 1
    completed = counts["passed"] + counts["failed"]
    if completed < len(runs):
        status = "running"
    else:
        status = "failed" if counts["failed"] else "completed"
    started = [float(r["started_at"]) for r in runs if r["started_at"] is not None]
    finished = [float(r["completed_at"]) for r in runs if r["completed_at"] is not None]
    return {
        "batch_id": batch_id,
        "status": status,
        "total": len(runs),
        "completed": completed,
        "passed": counts["passed"],
        "failed": counts["failed"],
        "running": counts["running"],
        "pending": counts["pending"],
        "started_at": min(started) if started else None,
        "completed_at": max(finished) if finished and status != "running" else None,
    }


@router.post("/batches")
async def submit_batch(body: SubmitBatchRequest, runtime: ExecutionRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """Run every test set of a release under one new batch id."""
    store = SQLiteStore()
    try:
        base_url = store.resolve_environment_url(environment=body.environment, release_id=body.release_id)
        if not base_url:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message=f"No URL configured for environment {body.environment!r}.",
                details={"environment": body.environment, "release_id": body.release_id},
            )
        test_sets = store.list_test_sets_for_release(release_id=body.release_id)
        if not test_sets:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message="Release has no test sets to execute.",
                details={"release_id": body.release_id},
            )

        batch_id = new_batch_id()
        requests: list[RunRequest] = []
        with store.transaction():
            for ts in test_sets:
                record = store.create_run(
                    release_id=body.release_id,
                    test_set_id=ts.test_set_id,
                    test_set_name=ts.name,
                    environment=body.environment.strip().lower(),
                    base_url=base_url,
                    batch_id=batch_id,
                    executed_by=body.executed_by,
                    commit=False,
                )
                requests.append(
                    RunRequest(
                        run_id=record.run_id,
                        test_set_id=ts.test_set_id,
                        release_id=body.release_id,
                        base_url=base_url,
                        batch_id=batch_id,
                        release_number=ts.release_number,
                        test_set_name=ts.name,
                    )
                )
    finally:
        store.close()

    state = runtime.orchestrator.start_batch(requests, batch_id=batch_id)
    return {
        "batch_id": state.batch_id,
        "status": state.status,
        "run_ids": list(state.run_ids),
        "total": state.total_count,
        "max_concurrent": runtime.orchestrator.max_concurrent,
    }


@router.get("/batches/active")
def list_active_batches(runtime: ExecutionRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return {"items": runtime.orchestrator.active_batches()}


@router.get("/batches/{batch_id}/status")
def get_batch_status(batch_id: str, request: Request) -> dict[str, Any]:
    """Live status while the batch is in memory; persisted summary afterwards."""
    runtime = find_runtime(request)
    if runtime is not None:
        try:
            return {"batch": runtime.orchestrator.batch_status(batch_id), "live": True}
        except UnknownBatchError:
            pass

    store = SQLiteStore()
    try:
        runs = store.list_runs_for_batch(batch_id=batch_id)
    finally:
        store.close()
    if not runs:
        raise not_found("Batch")
    return {"batch": _summarize_runs(batch_id, runs), "live": False}


@router.get("/batches/{batch_id}")
def get_batch(batch_id: str, request: Request) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        runs = store.list_runs_for_batch(batch_id=batch_id)
    finally:
        store.close()
    if not runs:
        raise not_found("Batch")

    summary = _summarize_runs(batch_id, runs)
    summary["total_duration_ms"] = sum(int(r["duration_ms"] or 0) for r in runs)
    summary["release_id"] = runs[0]["release_id"]
    summary["environment"] = runs[0]["environment"]

    runtime = find_runtime(request)
    report_path = None
    if runtime is not None:
        p = batch_report_path(runtime.config.reports.reports_dir, batch_id)
        report_path = str(p) if p.exists() else None
    summary["report_path"] = report_path

    return {"batch": summary, "runs": runs}
