from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel, Field

from uatcms.api.dependencies import find_runtime, get_runtime
from uatcms.api.errors import APIError, not_found
from uatcms.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor
from uatcms.runtime.execution_runtime import ExecutionRuntime
from uatcms.runtime.progress import CLOSED, HubMessage
from uatcms.runtime.worker_contract import RunRequest
from uatcms.storage.sqlite_store import RUN_STATUSES, TERMINAL_RUN_STATUSES, SQLiteStore


router = APIRouter()


# Seconds between keep-alive comments on an idle progress stream.
STREAM_KEEPALIVE_S = 15.0

# Used when execution is disabled and no config is loaded.
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200

VIDEO_MEDIA_TYPES = {".webm": "video/webm", ".mp4": "video/mp4"}


class SubmitRunRequest(BaseModel):
    test_set_id: int = Field(ge=1)
    release_id: int = Field(ge=1)
    environment: str = Field(min_length=1)
    executed_by: str | None = Field(default=None)


@router.post("/runs")
async def submit_run(body: SubmitRunRequest, runtime: ExecutionRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """Create a pending run and put it on the single-lane queue."""
    store = SQLiteStore()
    try:
        test_set = store.get_test_set(test_set_id=body.test_set_id, release_id=body.release_id)
        if test_set is None:
            raise not_found("Test set", test_set_id=body.test_set_id, release_id=body.release_id)

        base_url = store.resolve_environment_url(environment=body.environment, release_id=body.release_id)
        if not base_url:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message=f"No URL configured for environment {body.environment!r}.",
                details={"environment": body.environment, "release_id": body.release_id},
            )

        record = store.create_run(
            release_id=body.release_id,
            test_set_id=test_set.test_set_id,
            test_set_name=test_set.name,
            environment=body.environment.strip().lower(),
            base_url=base_url,
            executed_by=body.executed_by,
        )
    finally:
        store.close()

    position = runtime.queue.enqueue(
        RunRequest(
            run_id=record.run_id,
            test_set_id=record.test_set_id,
            release_id=record.release_id,
            base_url=base_url,
            release_number=test_set.release_number,
            test_set_name=test_set.name,
        )
    )
    return {
        "run_id": record.run_id,
        "status": "running" if position == 0 else "queued",
        "queue_position": position or None,
        "base_url": base_url,
    }


@router.get("/runs")
def list_runs(
    request: Request,
    batch_id: str | None = Query(default=None),
    release_id: int | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
) -> dict[str, Any]:
    if status:
        unknown = sorted(set(status) - set(RUN_STATUSES))
        if unknown:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message="Unknown run status filter.",
                details={"unknown": unknown, "allowed": list(RUN_STATUSES)},
            )

    default_limit, max_limit = DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT
    runtime = find_runtime(request)
    if runtime is not None:
        default_limit = runtime.config.api.runs_list_default_limit
        max_limit = runtime.config.api.runs_list_max_limit
    limit = min(int(limit or default_limit), max_limit)

    cursor_obj: Cursor | None = None
    if cursor:
        try:
            cursor_obj = decode_cursor(cursor)
        except CursorError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    store = SQLiteStore()
    try:
        page = store.list_runs_page(
            batch_id=(batch_id.strip() if batch_id else None),
            release_id=release_id,
            limit=int(limit),
            cursor=cursor_obj.as_tuple() if cursor_obj is not None else None,
            statuses=status or None,
        )
        next_cursor = page.get("next_cursor")
        if next_cursor is not None:
            created_at, run_id = next_cursor
            page["next_cursor"] = encode_cursor(Cursor(created_at=float(created_at), run_id=str(run_id)))
        return page
    finally:
        store.close()


@router.get("/runs/filter-options")
def get_run_filter_options(release_id: int | None = Query(default=None)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return store.run_filter_options(release_id=release_id)
    finally:
        store.close()


@router.get("/runs/{run_id}")
def get_run(run_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        item = store.get_run_item(run_id=run_id)
        if item is None:
            raise not_found("Run")
        return {"run": item}
    finally:
        store.close()


@router.get("/runs/{run_id}/steps")
def get_run_steps(run_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        if store.get_run(run_id=run_id) is None:
            raise not_found("Run")
        return {"run_id": run_id, "items": store.list_run_steps(run_id=run_id)}
    finally:
        store.close()


@router.get("/runs/{run_id}/video")
def get_run_video(run_id: str, request: Request) -> FileResponse:
    """The recording a worker reported for this run."""
    store = SQLiteStore()
    try:
        item = store.get_run_item(run_id=run_id)
    finally:
        store.close()
    if item is None:
        raise not_found("Run")
    if not item["video_path"]:
        raise not_found("Video", run_id=run_id)

    path = Path(item["video_path"]).expanduser()
    if not path.is_absolute():
        # Workers report paths relative to their own working directory.
        runtime = find_runtime(request)
        base = Path(runtime.config.worker.cwd) if runtime is not None else Path.cwd()
        path = base / path
    if not path.is_file():
        raise not_found("Video file", run_id=run_id, video_path=item["video_path"])
    return FileResponse(path, media_type=VIDEO_MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream"))


@router.get("/runs/{run_id}/status")
def get_run_status(run_id: str, request: Request) -> dict[str, Any]:
    """Persisted record and steps, plus queue position and live progress when available."""
    store = SQLiteStore()
    try:
        item = store.get_run_item(run_id=run_id)
        if item is None:
            raise not_found("Run")
        steps = store.list_run_steps(run_id=run_id)
    finally:
        store.close()

    runtime = find_runtime(request)
    queue: dict[str, Any] | None = None
    progress: dict[str, Any] | None = None
    if runtime is not None:
        queue = {
            "is_running": runtime.queue.is_running(run_id),
            "position": runtime.queue.queue_position(run_id),
        }
        latest = runtime.hub.latest(run_id)
        progress = latest.data if latest is not None else None

    return {"run": item, "steps": steps, "queue": queue, "progress": progress}


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def _terminal_event(run_id: str) -> dict[str, Any] | None:
    store = SQLiteStore()
    try:
        item = store.get_run_item(run_id=run_id)
    finally:
        store.close()
    if item is None or item["status"] not in TERMINAL_RUN_STATUSES:
        return None
    return {"run_id": run_id, "status": item["status"], "error": item["error"]}


@router.get("/runs/{run_id}/progress/stream")
async def stream_run_progress(run_id: str, runtime: ExecutionRuntime = Depends(get_runtime)) -> StreamingResponse:
    """Server-sent events: `progress` messages, then one `run_complete`."""
    store = SQLiteStore()
    try:
        if store.get_run(run_id=run_id) is None:
            raise not_found("Run")
    finally:
        store.close()

    hub = runtime.hub

    async def events() -> AsyncIterator[str]:
        q = hub.attach(run_id)
        try:
            done = _terminal_event(run_id)
            if done is not None:
                yield _sse("run_complete", done)
                return
            latest = hub.latest(run_id)
            if latest is not None:
                yield _sse(latest.event, latest.data)
            while True:
                try:
                    item = await asyncio.wait_for(q.get(), timeout=STREAM_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    # The run may have finished before this stream attached.
                    done = _terminal_event(run_id)
                    if done is not None:
                        yield _sse("run_complete", done)
                        return
                    yield ": keep-alive\n\n"
                    continue
                if item is CLOSED:
                    return
                if isinstance(item, HubMessage):
                    yield _sse(item.event, item.data)
                    if item.event == "run_complete":
                        return
        finally:
            hub.detach(run_id, q)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/queue")
def get_queue(runtime: ExecutionRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.queue.status()
