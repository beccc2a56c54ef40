#!/usr/bin/env python3
"""Mark runs stranded by a restart (pending/running) as failed.

Queue and batch state live in memory only, so after the server process dies these
runs are never picked up again. Run this once the server is stopped.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from uatcms.storage.sqlite_store import SQLiteStore  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile stranded runs after a restart.")
    parser.add_argument("--db-path", default="", help="SQLite path (default: env UATCMS_SQLITE_PATH or data/app.db).")
    parser.add_argument("--reason", default="server_restarted", help="Recorded as the runs' error.")
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    store = SQLiteStore(args.db_path or None)
    try:
        n = store.reconcile_running_runs(reason=args.reason)
    finally:
        store.close()
    print(f"Reconciled {n} run(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
