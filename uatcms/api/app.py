from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from uatcms.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from uatcms.config.load_config import load_app_config
from uatcms.runtime.execution_runtime import ExecutionRuntime
from uatcms.storage.sqlite_store import SQLiteStore

from .routers.batches import router as batches_router
from .routers.catalog import router as catalog_router
from .routers.health import router as health_router
from .routers.runs import router as runs_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("UATCMS_CORS_ORIGINS", "").strip()
    if not raw:
        # Local defaults for the authoring UI dev servers.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Queue and batch state are in memory; reconciling stranded runs is opt-in.
        if _env_bool("UATCMS_RECONCILE_ON_STARTUP", False):
            store = SQLiteStore()
            try:
                reconciled = store.reconcile_running_runs()
                app.state.reconciled_running_runs = int(reconciled)
            finally:
                store.close()
            if reconciled:
                logger.warning("Reconciled %d stranded run(s) from a previous process", reconciled)
        else:
            app.state.reconciled_running_runs = 0

        app.state.execution_runtime = None
        if _env_bool("UATCMS_ENABLE_EXECUTION", True):
            app.state.execution_runtime = ExecutionRuntime.build(load_app_config())
        try:
            yield
        finally:
            runtime = getattr(app.state, "execution_runtime", None)
            if runtime is not None:
                await runtime.shutdown()

    app = FastAPI(title="uatcms execution API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(runs_router, prefix="/api/v1", tags=["runs"])
    app.include_router(batches_router, prefix="/api/v1", tags=["batches"])
    app.include_router(catalog_router, prefix="/api/v1", tags=["catalog"])

    return app


app = create_app()
