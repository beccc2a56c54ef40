from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from uatcms.api.dependencies import find_runtime
from uatcms.storage.sqlite_store import SCHEMA_VERSION
from uatcms.storage.sqlite_store import SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "uatcms",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "pydantic": _pkg_version("pydantic"),
        },
        "ts": time.time(),
    }


@router.get("/system/execution")
def system_execution(request: Request) -> dict[str, Any]:
    runtime = find_runtime(request)
    execution: dict[str, Any] = {"enabled": runtime is not None}
    if runtime is not None:
        execution.update(runtime.status_snapshot())

    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "execution": execution,
            "runs_by_status": store.count_runs_by_status(),
            "startup": {
                "reconciled_running_runs": getattr(request.app.state, "reconciled_running_runs", 0),
            },
        }
    finally:
        store.close()
