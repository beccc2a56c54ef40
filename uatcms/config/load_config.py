from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


REPO_ROOT = Path(__file__).resolve().parents[2]


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_positive_int(value: Any, *, key: str) -> int:
    n = _as_int(value, key=key)
    if n < 1:
        raise ConfigError(f"Invalid {key}: must be >= 1, got {n}")
    return n


def _as_non_negative_float(value: Any, *, key: str) -> float:
    f = _as_float(value, key=key)
    if f < 0:
        raise ConfigError(f"Invalid {key}: must be >= 0, got {f}")
    return f


def _as_command(value: Any, *, key: str) -> tuple[str, ...]:
    """Parse the worker command (a non-empty list of strings)."""
    if not isinstance(value, list) or not value:
        raise ConfigError(f"Invalid {key}: expected a non-empty list of strings, got {value!r}")
    return tuple(_as_str(part, key=key) for part in value)


def _resolve_dir(value: Any, *, key: str, base_dir: Path) -> Path:
    p = Path(_as_str(value, key=key)).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


@dataclass(frozen=True)
class ExecutionConfig:
    # Per-batch ceiling on concurrently running worker processes.
    max_concurrent: int
    # Pause between two runs on the single-lane queue so artifacts can flush.
    queue_settle_delay_s: float
    # Per-run deadline; 0 disables it.
    run_timeout_s: float


@dataclass(frozen=True)
class WorkerConfig:
    command: tuple[str, ...]
    cwd: str
    api_base_url: str
    # asyncio StreamReader line limit; RESULT lines carry every step result.
    max_line_bytes: int
    stderr_tail_lines: int


@dataclass(frozen=True)
class ReportsConfig:
    reports_dir: str
    merge_wait_s: float
    merge_poll_initial_s: float
    merge_poll_max_s: float


@dataclass(frozen=True)
class ApiConfig:
    runs_list_default_limit: int
    runs_list_max_limit: int


@dataclass(frozen=True)
class AppConfig:
    execution: ExecutionConfig
    worker: WorkerConfig
    reports: ReportsConfig
    api: ApiConfig


def default_config_path() -> Path:
    raw = os.getenv("UATCMS_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return (REPO_ROOT / "config" / "default.toml").resolve()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))

    execution = raw.get("execution", {})
    worker = raw.get("worker", {})
    reports = raw.get("reports", {})
    api = raw.get("api", {})

    # Relative paths in the config are relative to the repository root
    # (the config normally lives in `<repo>/config/`).
    base_dir = cfg_path.parent.parent

    max_concurrent = os.getenv("UATCMS_MAX_CONCURRENT") or execution.get("max_concurrent")
    reports_dir = os.getenv("UATCMS_REPORTS_DIR") or reports.get("reports_dir")
    api_base_url = os.getenv("UATCMS_API_BASE_URL") or worker.get("api_base_url")

    return AppConfig(
        execution=ExecutionConfig(
            max_concurrent=_as_positive_int(max_concurrent, key="execution.max_concurrent"),
            queue_settle_delay_s=_as_non_negative_float(
                execution.get("queue_settle_delay_s"), key="execution.queue_settle_delay_s"
            ),
            run_timeout_s=_as_non_negative_float(execution.get("run_timeout_s"), key="execution.run_timeout_s"),
        ),
        worker=WorkerConfig(
            command=_as_command(worker.get("command"), key="worker.command"),
            cwd=str(_resolve_dir(worker.get("cwd", "."), key="worker.cwd", base_dir=base_dir)),
            api_base_url=_as_str(api_base_url, key="worker.api_base_url"),
            max_line_bytes=_as_positive_int(worker.get("max_line_bytes"), key="worker.max_line_bytes"),
            stderr_tail_lines=_as_positive_int(worker.get("stderr_tail_lines"), key="worker.stderr_tail_lines"),
        ),
        reports=ReportsConfig(
            reports_dir=str(_resolve_dir(reports_dir, key="reports.reports_dir", base_dir=base_dir)),
            merge_wait_s=_as_non_negative_float(reports.get("merge_wait_s"), key="reports.merge_wait_s"),
            merge_poll_initial_s=_as_non_negative_float(
                reports.get("merge_poll_initial_s"), key="reports.merge_poll_initial_s"
            ),
            merge_poll_max_s=_as_non_negative_float(reports.get("merge_poll_max_s"), key="reports.merge_poll_max_s"),
        ),
        api=ApiConfig(
            runs_list_default_limit=_as_positive_int(
                api.get("runs_list_default_limit"), key="api.runs_list_default_limit"
            ),
            runs_list_max_limit=_as_positive_int(api.get("runs_list_max_limit"), key="api.runs_list_max_limit"),
        ),
    )
