from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any

from uatcms.config.load_config import ConfigError, load_app_config
from uatcms.runtime.execution_runtime import ExecutionRuntime
from uatcms.runtime.worker_contract import RunRequest
from uatcms.storage.sqlite_store import SQLiteStore, default_db_path, new_batch_id


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run every test set of a release as one batch.")
    parser.add_argument("--release-id", type=int, required=True, help="Release whose test sets are executed.")
    parser.add_argument("--environment", default="", help="Environment name to resolve the target URL.")
    parser.add_argument(
        "--base-url",
        default="",
        help="Target URL; skips the environment lookup when given.",
    )
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env UATCMS_SQLITE_PATH or data/app.db).",
    )
    parser.add_argument("--config", default="", help="Config TOML (default: env UATCMS_CONFIG_PATH).")
    parser.add_argument("--max-concurrent", type=int, default=0, help="Override execution.max_concurrent.")
    parser.add_argument("--executed-by", default="", help="Recorded on each run.")
    parser.add_argument("--json", action="store_true", help="Print the final batch snapshot as JSON.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO).")
    return parser.parse_args(argv)


def _print_summary(snapshot: dict[str, Any]) -> None:
    print(
        f"Batch {snapshot['batch_id']}: {snapshot['status']} "
        f"({snapshot['passed']} passed, {snapshot['failed']} failed, {snapshot['total']} total)"
    )
    for run in snapshot.get("runs", []):
        print(f"  {run['run_id']}  test_set={run['test_set_id']}  {run['status']}")
    if snapshot.get("report_path"):
        print(f"Report: {snapshot['report_path']}")
    if snapshot.get("error"):
        print(f"Error: {snapshot['error']}")


async def _execute(runtime: ExecutionRuntime, requests: list[RunRequest], batch_id: str) -> dict[str, Any]:
    try:
        runtime.orchestrator.start_batch(requests, batch_id=batch_id)
        return await runtime.orchestrator.wait_for_batch(batch_id)
    finally:
        await runtime.shutdown()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_app_config(Path(args.config).expanduser().resolve() if args.config else None)
    except ConfigError as e:
        raise SystemExit(f"Config error: {e}") from e
    if args.max_concurrent:
        if args.max_concurrent < 1:
            raise SystemExit("--max-concurrent must be >= 1")
        config = dataclasses.replace(
            config, execution=dataclasses.replace(config.execution, max_concurrent=int(args.max_concurrent))
        )

    db_path = args.db_path or default_db_path()
    store = SQLiteStore(db_path)
    try:
        base_url = (args.base_url or "").strip()
        environment = (args.environment or "").strip().lower()
        if not base_url:
            if not environment:
                raise SystemExit("Either --environment or --base-url is required")
            base_url = store.resolve_environment_url(environment=environment, release_id=args.release_id) or ""
            if not base_url:
                raise SystemExit(f"No URL configured for environment {environment!r}")

        test_sets = store.list_test_sets_for_release(release_id=args.release_id)
        if not test_sets:
            raise SystemExit(f"Release {args.release_id} has no test sets")

        batch_id = new_batch_id()
        requests: list[RunRequest] = []
        with store.transaction():
            for ts in test_sets:
                record = store.create_run(
                    release_id=args.release_id,
                    test_set_id=ts.test_set_id,
                    test_set_name=ts.name,
                    environment=environment,
                    base_url=base_url,
                    batch_id=batch_id,
                    executed_by=args.executed_by or None,
                    commit=False,
                )
                requests.append(
                    RunRequest(
                        run_id=record.run_id,
                        test_set_id=ts.test_set_id,
                        release_id=args.release_id,
                        base_url=base_url,
                        batch_id=batch_id,
                        release_number=ts.release_number,
                        test_set_name=ts.name,
                    )
                )
    finally:
        store.close()

    runtime = ExecutionRuntime.build(config, db_path=db_path)
    try:
        snapshot = asyncio.run(_execute(runtime, requests, batch_id))
    except KeyboardInterrupt:
        print(f"Interrupted; batch {batch_id} left unfinished (see scripts/reconcile_runs.py).", file=sys.stderr)
        return 130

    if args.json:
        print(json.dumps(snapshot, ensure_ascii=False, indent=2))
    else:
        _print_summary(snapshot)
    return 1 if snapshot["failed"] or snapshot["status"] != "completed" else 0


if __name__ == "__main__":
    raise SystemExit(main())
