from __future__ import annotations

import asyncio
import collections
import logging
import time
import traceback
from typing import Any

from uatcms.runtime.progress import ProgressHub
from uatcms.runtime.result_collector import RECORDING_FAILED, CollectedOutcome, ResultCollector
from uatcms.runtime.worker_contract import Launcher, ProgressEvent, RunRequest, WorkerOutcome


logger = logging.getLogger(__name__)


class ExecutionQueue:
    """Single lane for ad-hoc runs: FIFO, never more than one worker at a time."""

    def __init__(
        self,
        *,
        launcher: Launcher,
        collector: ResultCollector,
        hub: ProgressHub,
        settle_delay_s: float = 0.1,
    ) -> None:
        self._launcher = launcher
        self._collector = collector
        self._hub = hub
        self._settle_delay_s = float(settle_delay_s)

        self._pending: collections.deque[RunRequest] = collections.deque()
        self._current: RunRequest | None = None
        self._current_started_at: float | None = None
        self._lane: asyncio.Task[None] | None = None
        self._processing = False
        self._started_order: list[str] = []

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def started_order(self) -> list[str]:
        """Run ids in the order their workers were started."""
        return list(self._started_order)

    def enqueue(self, request: RunRequest) -> int:
        """Append a run. Returns its queue position (0 when it starts right away)."""
        self._pending.append(request)
        logger.info("Queued run %s (test set %s); %d pending", request.run_id, request.test_set_id, len(self._pending))
        if not self._processing:
            self._processing = True
            head = self._take_next()
            self._lane = asyncio.get_running_loop().create_task(self._run_lane(head), name="uatcms-execution-queue")
        return self.queue_position(request.run_id) or 0

    def _take_next(self) -> RunRequest | None:
        if not self._pending:
            return None
        request = self._pending.popleft()
        self._current = request
        self._current_started_at = time.time()
        self._started_order.append(request.run_id)
        return request

    async def _run_lane(self, head: RunRequest | None) -> None:
        try:
            ran = await self.process_next(head)
            while ran:
                if self._settle_delay_s > 0:
                    await asyncio.sleep(self._settle_delay_s)
                ran = await self.process_next()
        finally:
            self._processing = False
            self._current = None
            self._current_started_at = None

    async def process_next(self, request: RunRequest | None = None) -> bool:
        """Run the head of the queue to completion. Returns False when the queue is empty."""
        if request is None:
            request = self._take_next()
        if request is None:
            return False

        try:
            self._collector.mark_running(request.run_id)
        except Exception as e:
            # The worker still runs; its terminal write upserts the record.
            logger.error("Run %s: could not mark run running: %s", request.run_id, e)

        try:
            outcome = await self._launcher.run(request, batch_mode=False, on_progress=self._forward_progress)
            self._finish(request, outcome)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Never stall the lane on a bookkeeping failure.
            logger.error("Run %s: unhandled error on the execution queue: %s\n%s", request.run_id, e, traceback.format_exc())
            collected = self._record_failure(request.run_id, str(e), 0)
            self._hub.publish(request.run_id, "run_complete", {"run_id": request.run_id, "status": "failed", "error": collected.error})
            self._hub.close(request.run_id)
        finally:
            self._current = None
            self._current_started_at = None
        return True

    def _forward_progress(self, event: ProgressEvent) -> None:
        self._hub.publish(event.run_id, "progress", event.to_dict())

    def _record_failure(self, run_id: str, details: str, duration_ms: int) -> CollectedOutcome:
        try:
            return self._collector.record_failure(run_id, details, duration_ms=duration_ms)
        except Exception as e:
            logger.error("Run %s: could not record the failure either: %s", run_id, e)
            return CollectedOutcome(run_id=run_id, status="failed", steps_written=0, error=RECORDING_FAILED)

    def _finish(self, request: RunRequest, outcome: WorkerOutcome) -> None:
        try:
            collected = self._collector.collect(
                request.run_id,
                outcome.result_raw,
                outcome.exit_code,
                failure_hint=outcome.failure_hint(),
                duration_ms=outcome.duration_ms,
            )
        except Exception as e:
            logger.error("Run %s: failed to record result: %s\n%s", request.run_id, e, traceback.format_exc())
            collected = self._record_failure(request.run_id, str(e), outcome.duration_ms)
        self._hub.publish(
            request.run_id,
            "run_complete",
            {"run_id": request.run_id, "status": collected.status, "error": collected.error},
        )
        self._hub.close(request.run_id)

    # --- Introspection
    def status(self) -> dict[str, Any]:
        current = None
        if self._current is not None:
            current = {"run_id": self._current.run_id, "started_at": self._current_started_at}
        return {
            "current": current,
            "pending": [{"run_id": r.run_id, "submitted_at": r.submitted_at} for r in self._pending],
        }

    def is_running(self, run_id: str) -> bool:
        return self._current is not None and self._current.run_id == run_id

    def queue_position(self, run_id: str) -> int | None:
        for i, r in enumerate(self._pending, start=1):
            if r.run_id == run_id:
                return i
        return None

    def progress(self, run_id: str) -> dict[str, Any] | None:
        if not self.is_running(run_id):
            return None
        msg = self._hub.latest(run_id)
        return msg.data if msg is not None else None

    async def shutdown(self) -> None:
        """Drop pending runs and cancel the lane (killing its current worker)."""
        dropped = len(self._pending)
        self._pending.clear()
        lane = self._lane
        if lane is not None and not lane.done():
            lane.cancel()
            try:
                await lane
            except asyncio.CancelledError:
                pass
        if dropped:
            logger.warning("Execution queue shut down with %d pending runs", dropped)
