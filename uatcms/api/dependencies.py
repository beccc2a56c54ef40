from __future__ import annotations

from fastapi import Request

from uatcms.api.errors import APIError
from uatcms.runtime.execution_runtime import ExecutionRuntime


def find_runtime(request: Request) -> ExecutionRuntime | None:
    runtime = getattr(request.app.state, "execution_runtime", None)
    return runtime if isinstance(runtime, ExecutionRuntime) else None


def get_runtime(request: Request) -> ExecutionRuntime:
    """FastAPI dependency: the process-wide execution runtime built at startup.

    Execution can be switched off (`UATCMS_ENABLE_EXECUTION=0`), in which case the
    read-only endpoints keep working and submissions answer 503.
    """
    runtime = find_runtime(request)
    if runtime is None:
        raise APIError(
            status_code=503,
            code="execution_disabled",
            message="Test execution is disabled on this server.",
        )
    return runtime
