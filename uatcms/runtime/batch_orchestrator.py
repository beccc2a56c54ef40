from __future__ import annotations

import asyncio
import collections
import dataclasses
import logging
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

from uatcms.runtime.progress import ProgressHub
from uatcms.runtime.report_merger import MergeResult
from uatcms.runtime.result_collector import ResultCollector
from uatcms.runtime.worker_contract import Launcher, ProgressEvent, RunRequest, WorkerOutcome
from uatcms.storage.sqlite_store import new_batch_id


logger = logging.getLogger(__name__)


class UnknownBatchError(KeyError):
    """No live (or recently finished) batch with this id."""


class Merger(Protocol):
    async def merge(self, batch_id: str, run_ids: list[str]) -> MergeResult: ...


@dataclass
class BatchState:
    batch_id: str
    run_ids: list[str]
    total_count: int
    pending_queue: collections.deque[RunRequest]
    running_set: set[str] = field(default_factory=set)
    completed_count: int = 0
    passed_count: int = 0
    failed_count: int = 0
    run_statuses: dict[str, str] = field(default_factory=dict)
    test_set_ids: dict[str, int] = field(default_factory=dict)
    started_order: list[str] = field(default_factory=list)
    max_running_seen: int = 0
    status: str = "running"
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    finalized: bool = False
    report_path: str | None = None
    error: str | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)

    def snapshot(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "total": self.total_count,
            "completed": self.completed_count,
            "passed": self.passed_count,
            "failed": self.failed_count,
            "running": len(self.running_set),
            "pending": len(self.pending_queue),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "report_path": self.report_path,
            "error": self.error,
            "runs": [
                {"run_id": rid, "test_set_id": self.test_set_ids.get(rid), "status": self.run_statuses.get(rid, "pending")}
                for rid in self.run_ids
            ],
        }


class BatchRegistry:
    """Live batch states keyed by batch id. Allocated on start, freed on finalize."""

    def __init__(self) -> None:
        self._states: dict[str, BatchState] = {}

    def allocate(self, state: BatchState) -> None:
        if state.batch_id in self._states:
            raise ValueError(f"Batch already active: {state.batch_id}")
        self._states[state.batch_id] = state

    def get(self, batch_id: str) -> BatchState:
        try:
            return self._states[batch_id]
        except KeyError:
            raise UnknownBatchError(batch_id) from None

    def find(self, batch_id: str) -> BatchState | None:
        return self._states.get(batch_id)

    def release(self, batch_id: str) -> BatchState | None:
        return self._states.pop(batch_id, None)

    def __contains__(self, batch_id: object) -> bool:
        return batch_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[BatchState]:
        return iter(list(self._states.values()))


class BatchOrchestrator:
    """Runs a batch of N runs with at most `max_concurrent` workers at once.

    All slot accounting happens in `_on_worker_exit`, which never suspends: the
    running set, counters, refill and completion check move together inside one
    event-loop callback. Finalization (report merge) happens exactly once per batch.
    """

    def __init__(
        self,
        *,
        launcher: Launcher,
        collector: ResultCollector,
        merger: Merger,
        hub: ProgressHub | None = None,
        max_concurrent: int = 7,
        keep_finished: int = 100,
    ) -> None:
        if int(max_concurrent) < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._launcher = launcher
        self._collector = collector
        self._merger = merger
        self._hub = hub or ProgressHub()
        self.max_concurrent = int(max_concurrent)
        self.registry = BatchRegistry()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._finished: collections.OrderedDict[str, dict[str, Any]] = collections.OrderedDict()
        self._keep_finished = int(keep_finished)

    # --- Submission
    def start_batch(self, requests: list[RunRequest], batch_id: str | None = None) -> BatchState:
        if not requests:
            raise ValueError("A batch needs at least one run")
        bid = batch_id or requests[0].batch_id or new_batch_id()
        if bid in self.registry or bid in self._finished:
            raise ValueError(f"Duplicate batch id: {bid}")
        reqs = [r if r.batch_id == bid else dataclasses.replace(r, batch_id=bid) for r in requests]
        run_ids = [r.run_id for r in reqs]
        if len(set(run_ids)) != len(run_ids):
            raise ValueError(f"Duplicate run ids in batch {bid}")

        state = BatchState(
            batch_id=bid,
            run_ids=run_ids,
            total_count=len(reqs),
            pending_queue=collections.deque(reqs),
            run_statuses={rid: "pending" for rid in run_ids},
            test_set_ids={r.run_id: r.test_set_id for r in reqs},
        )
        self.registry.allocate(state)
        logger.info("Batch %s started: %d run(s), concurrency %d", bid, state.total_count, self.max_concurrent)
        self.fill_slots(bid)
        self._publish_batch(state, "batch_progress")
        return state

    def fill_slots(self, batch_id: str) -> int:
        """Start pending runs until the ceiling is reached. Returns how many started."""
        state = self.registry.get(batch_id)
        loop = asyncio.get_running_loop()
        started = 0
        while len(state.running_set) < self.max_concurrent and state.pending_queue:
            request = state.pending_queue.popleft()
            state.running_set.add(request.run_id)
            state.run_statuses[request.run_id] = "running"
            state.started_order.append(request.run_id)
            state.max_running_seen = max(state.max_running_seen, len(state.running_set))
            try:
                self._collector.mark_running(request.run_id, batch_id=batch_id)
            except Exception as e:
                logger.error("Batch %s: could not mark run %s running: %s", batch_id, request.run_id, e)
            task = loop.create_task(self._supervise(state, request), name=f"uatcms-run-{request.run_id}")
            self._track(task)
            started += 1
        return started

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _supervise(self, state: BatchState, request: RunRequest) -> None:
        def forward(event: ProgressEvent) -> None:
            self._hub.publish(event.run_id, "progress", event.to_dict())

        try:
            outcome = await self._launcher.run(request, batch_mode=True, on_progress=forward)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Batch %s: worker for run %s failed unexpectedly: %s", state.batch_id, request.run_id, e)
            outcome = WorkerOutcome(
                run_id=request.run_id,
                exit_code=None,
                result_raw=None,
                duration_ms=0,
                launch_error=str(e),
            )
        self._on_worker_exit(state, request, outcome)

    def _on_worker_exit(self, state: BatchState, request: RunRequest, outcome: WorkerOutcome) -> None:
        run_id = request.run_id
        state.running_set.discard(run_id)
        state.completed_count += 1

        try:
            status = self._collector.collect(
                run_id,
                outcome.result_raw,
                outcome.exit_code,
                failure_hint=outcome.failure_hint(),
                duration_ms=outcome.duration_ms,
            ).status
        except Exception as e:
            # One run's bookkeeping failure never aborts its siblings.
            logger.error("Batch %s: failed to record run %s: %s\n%s", state.batch_id, run_id, e, traceback.format_exc())
            status = "failed"
            try:
                self._collector.record_failure(run_id, str(e), duration_ms=outcome.duration_ms)
            except Exception as e2:
                logger.error("Batch %s: could not record the failure of run %s either: %s", state.batch_id, run_id, e2)

        state.run_statuses[run_id] = status
        if status == "passed":
            state.passed_count += 1
        else:
            state.failed_count += 1
        logger.info(
            "Batch %s: run %s %s (%d/%d complete)",
            state.batch_id,
            run_id,
            status,
            state.completed_count,
            state.total_count,
        )

        self._hub.publish(run_id, "run_complete", {"run_id": run_id, "status": status, "batch_id": state.batch_id})
        self._hub.close(run_id)

        if state.pending_queue:
            self.fill_slots(state.batch_id)
        self._publish_batch(state, "batch_progress")

        if state.completed_count == state.total_count and not state.finalized:
            state.finalized = True
            task = asyncio.get_running_loop().create_task(
                self._finalize(state), name=f"uatcms-finalize-{state.batch_id}"
            )
            self._track(task)

    async def _finalize(self, state: BatchState) -> None:
        try:
            result = await self._merger.merge(state.batch_id, list(state.run_ids))
            state.report_path = str(result.report_path)
            state.status = "failed" if state.failed_count > 0 else "completed"
        except asyncio.CancelledError:
            state.status = "failed"
            state.error = "cancelled"
            raise
        except Exception as e:
            logger.error("Batch %s: report merge failed: %s", state.batch_id, e)
            state.status = "failed"
            state.error = f"report merge failed: {e}"
        finally:
            state.completed_at = time.time()
            self._retire(state)

        logger.info(
            "Batch %s finished: %s (%d passed, %d failed)",
            state.batch_id,
            state.status,
            state.passed_count,
            state.failed_count,
        )

    def _retire(self, state: BatchState) -> None:
        self.registry.release(state.batch_id)
        self._finished[state.batch_id] = state.snapshot()
        while len(self._finished) > self._keep_finished:
            self._finished.popitem(last=False)
        self._publish_batch(state, "batch_complete")
        self._hub.close(state.batch_id)
        state.done.set()

    def _publish_batch(self, state: BatchState, event: str) -> None:
        snap = state.snapshot()
        snap.pop("runs", None)
        self._hub.publish(state.batch_id, event, snap)

    # --- Introspection
    def batch_status(self, batch_id: str) -> dict[str, Any]:
        state = self.registry.find(batch_id)
        if state is not None:
            return state.snapshot()
        if batch_id in self._finished:
            return dict(self._finished[batch_id])
        raise UnknownBatchError(batch_id)

    def active_batches(self) -> list[dict[str, Any]]:
        return [s.snapshot() for s in self.registry if s.status == "running"]

    async def wait_for_batch(self, batch_id: str) -> dict[str, Any]:
        """Wait for the batch to finalize; returns its final snapshot."""
        state = self.registry.find(batch_id)
        if state is not None:
            await state.done.wait()
            return self._finished.get(batch_id) or state.snapshot()
        return self.batch_status(batch_id)

    async def shutdown(self) -> None:
        """Cancel in-flight workers and finalizers (application shutdown)."""
        tasks = [t for t in self._tasks if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if len(self.registry):
            logger.warning("Orchestrator shut down with %d unfinished batch(es)", len(self.registry))
