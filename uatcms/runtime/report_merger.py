from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable


logger = logging.getLogger(__name__)


BDD_SUBDIR = "bdd"
BATCHES_SUBDIR = "batches"
MERGED_REPORT_NAME = "cucumber-report.json"


def batch_report_path(reports_dir: str | Path, batch_id: str) -> Path:
    return Path(reports_dir) / BATCHES_SUBDIR / batch_id / MERGED_REPORT_NAME


@dataclass(frozen=True)
class MergeResult:
    batch_id: str
    report_path: Path
    merged_runs: list[str] = field(default_factory=list)
    missing_runs: list[str] = field(default_factory=list)
    unreadable_runs: list[str] = field(default_factory=list)
    feature_count: int = 0


class ReportMerger:
    """Merges per-run cucumber JSON files into one batch report.

    Per-run files live at `<reports_dir>/bdd/cucumber-<run_id>.json` and hold a JSON
    list of feature objects. Merged runs have their file deleted; the batch report
    is written to `<reports_dir>/batches/<batch_id>/cucumber-report.json`.
    """

    def __init__(
        self,
        reports_dir: str | Path,
        *,
        wait_s: float = 2.0,
        poll_initial_s: float = 0.05,
        poll_max_s: float = 0.5,
    ) -> None:
        self.reports_dir = Path(reports_dir)
        self._wait_s = float(wait_s)
        self._poll_initial_s = max(0.001, float(poll_initial_s))
        self._poll_max_s = max(self._poll_initial_s, float(poll_max_s))

    def run_report_path(self, run_id: str) -> Path:
        return self.reports_dir / BDD_SUBDIR / f"cucumber-{run_id}.json"

    def batch_report_path(self, batch_id: str) -> Path:
        return batch_report_path(self.reports_dir, batch_id)

    @staticmethod
    def _size(path: Path) -> int | None:
        try:
            return path.stat().st_size
        except FileNotFoundError:
            return None

    async def wait_until_stable(self, paths: Iterable[Path]) -> set[Path]:
        """Poll until each file exists with an unchanged size across two polls.

        Bounded by one overall deadline. Returns the paths that settled; files that
        never appeared or kept growing are left to the caller.
        """
        remaining = {p: None for p in paths}
        settled: set[Path] = set()
        if not remaining:
            return settled

        deadline = time.monotonic() + self._wait_s
        delay = self._poll_initial_s
        while True:
            for p in list(remaining):
                size = self._size(p)
                last = remaining[p]
                if size is not None and last is not None and size == last:
                    settled.add(p)
                    remaining.pop(p)
                else:
                    remaining[p] = size
            if not remaining:
                break
            now = time.monotonic()
            if now >= deadline:
                break
            await asyncio.sleep(min(delay, deadline - now))
            delay = min(delay * 2, self._poll_max_s)
        return settled

    @staticmethod
    def _read_features(path: Path) -> list[Any]:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"expected a JSON list of features, got {type(data).__name__}")
        return data

    @staticmethod
    def _write_atomic(path: Path, payload: list[Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".cucumber-", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    async def merge(self, batch_id: str, run_ids: list[str]) -> MergeResult:
        paths = {rid: self.run_report_path(rid) for rid in run_ids}
        await self.wait_until_stable(paths.values())

        features: list[Any] = []
        merged: list[str] = []
        missing: list[str] = []
        unreadable: list[str] = []
        consumed: list[Path] = []

        for rid, path in paths.items():
            if not path.exists():
                missing.append(rid)
                continue
            try:
                features.extend(self._read_features(path))
            except (OSError, ValueError) as e:
                # Left in place for inspection.
                logger.warning("Batch %s: skipping unreadable report %s: %s", batch_id, path, e)
                unreadable.append(rid)
                continue
            merged.append(rid)
            consumed.append(path)

        out = self.batch_report_path(batch_id)
        self._write_atomic(out, features)

        for path in consumed:
            try:
                path.unlink()
            except FileNotFoundError:
                pass

        logger.info(
            "Batch %s: merged %d report(s) (%d features) into %s; %d missing",
            batch_id,
            len(merged),
            len(features),
            out,
            len(missing),
        )
        return MergeResult(
            batch_id=batch_id,
            report_path=out,
            merged_runs=merged,
            missing_runs=missing,
            unreadable_runs=unreadable,
            feature_count=len(features),
        )
