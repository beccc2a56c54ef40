from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from uatcms.config.load_config import AppConfig
from uatcms.runtime.batch_orchestrator import BatchOrchestrator, Merger
from uatcms.runtime.execution_queue import ExecutionQueue
from uatcms.runtime.progress import ProgressHub
from uatcms.runtime.report_merger import ReportMerger
from uatcms.runtime.result_collector import ResultCollector
from uatcms.runtime.worker_contract import Launcher, WorkerLauncher
from uatcms.storage.sqlite_store import default_db_path


logger = logging.getLogger(__name__)


@dataclass
class ExecutionRuntime:
    """Everything a process needs to execute runs, wired from one AppConfig."""

    config: AppConfig
    db_path: str
    hub: ProgressHub
    collector: ResultCollector
    launcher: Launcher
    merger: Merger
    queue: ExecutionQueue
    orchestrator: BatchOrchestrator

    @classmethod
    def build(
        cls,
        config: AppConfig,
        *,
        db_path: str | None = None,
        launcher: Launcher | None = None,
        merger: Merger | None = None,
    ) -> "ExecutionRuntime":
        path = db_path or default_db_path()
        hub = ProgressHub()
        collector = ResultCollector(path)
        if launcher is None:
            launcher = WorkerLauncher(
                config.worker,
                reports_dir=config.reports.reports_dir,
                run_timeout_s=config.execution.run_timeout_s,
            )
        if merger is None:
            merger = ReportMerger(
                config.reports.reports_dir,
                wait_s=config.reports.merge_wait_s,
                poll_initial_s=config.reports.merge_poll_initial_s,
                poll_max_s=config.reports.merge_poll_max_s,
            )
        queue = ExecutionQueue(
            launcher=launcher,
            collector=collector,
            hub=hub,
            settle_delay_s=config.execution.queue_settle_delay_s,
        )
        orchestrator = BatchOrchestrator(
            launcher=launcher,
            collector=collector,
            merger=merger,
            hub=hub,
            max_concurrent=config.execution.max_concurrent,
        )
        logger.info(
            "Execution runtime ready: db=%s reports=%s max_concurrent=%d",
            path,
            config.reports.reports_dir,
            config.execution.max_concurrent,
        )
        return cls(
            config=config,
            db_path=path,
            hub=hub,
            collector=collector,
            launcher=launcher,
            merger=merger,
            queue=queue,
            orchestrator=orchestrator,
        )

    def status_snapshot(self) -> dict[str, Any]:
        queue_status = self.queue.status()
        return {
            "db_path": self.db_path,
            "reports_dir": self.config.reports.reports_dir,
            "max_concurrent": self.orchestrator.max_concurrent,
            "queue": {
                "current": queue_status["current"],
                "pending": len(queue_status["pending"]),
            },
            "active_batches": len(self.orchestrator.active_batches()),
        }

    async def shutdown(self) -> None:
        await self.queue.shutdown()
        await self.orchestrator.shutdown()
