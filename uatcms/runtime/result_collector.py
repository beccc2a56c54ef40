from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from uatcms.storage.sqlite_store import SQLiteStore, StepResultRecord


logger = logging.getLogger(__name__)


NO_RESULT_REPORTED = "no result reported"
EXECUTION_CRASHED = "execution crashed"
RECORDING_FAILED = "result recording failed"


class StepResultPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    test_step_id: int | None = Field(default=None, alias="testStepId")
    scenario_id: int | None = Field(default=None, alias="scenarioId")
    scenario_name: str = Field(default="", alias="scenarioName")
    case_name: str = Field(default="", alias="caseName")
    step_definition: str = Field(default="", alias="stepDefinition")
    expected_results: str | None = Field(default=None, alias="expectedResults")
    status: Literal["passed", "failed", "skipped"]
    error_message: str | None = Field(default=None, alias="errorMessage")
    duration_ms: int = Field(default=0, ge=0, alias="durationMs")


class RunResultPayload(BaseModel):
    """The JSON object a worker prints after `RESULT:`."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["passed", "failed"]
    duration_ms: int = Field(default=0, ge=0, alias="durationMs")
    total_scenarios: int = Field(default=0, ge=0, alias="totalScenarios")
    total_steps: int | None = Field(default=None, ge=0, alias="totalSteps")
    passed_steps: int | None = Field(default=None, ge=0, alias="passedSteps")
    failed_steps: int | None = Field(default=None, ge=0, alias="failedSteps")
    steps: list[StepResultPayload] = Field(default_factory=list)
    video_path: str | None = Field(default=None, alias="videoPath")
    failed_details: list[dict[str, Any]] | None = Field(default=None, alias="failedDetails")


def parse_result_payload(raw: str | Mapping[str, Any] | None) -> RunResultPayload | None:
    """Return the validated payload, or None when missing or malformed."""
    if raw is None:
        return None
    obj: Any = raw
    if isinstance(raw, str):
        try:
            obj = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            return None
    if not isinstance(obj, Mapping):
        return None
    try:
        return RunResultPayload.model_validate(dict(obj))
    except ValidationError:
        return None


@dataclass(frozen=True)
class CollectedOutcome:
    run_id: str
    status: str
    steps_written: int
    error: str | None

    @property
    def passed(self) -> bool:
        return self.status == "passed"


def _failure_details_from_steps(steps: list[StepResultPayload]) -> list[dict[str, Any]]:
    return [
        {
            "scenario_name": s.scenario_name,
            "case_name": s.case_name,
            "step_definition": s.step_definition,
            "error": s.error_message or "",
        }
        for s in steps
        if s.status == "failed"
    ]


class ResultCollector:
    """Turns a worker's RESULT payload (or its absence) into durable run state.

    This is the only writer of terminal run status. Writes upsert by run_id, so a
    repeated collect overwrites the record and replaces its step results.
    A store connection is opened per call; the collector itself holds no state.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = db_path

    def _open(self) -> SQLiteStore:
        return SQLiteStore(self._db_path)

    def mark_running(self, request_run_id: str, *, batch_id: str | None = None) -> None:
        store = self._open()
        try:
            store.mark_run_running(request_run_id)
            if store.get_run(run_id=request_run_id) is not None:
                store.append_event(request_run_id, "run_started", {"batch_id": batch_id})
        finally:
            store.close()

    def collect(
        self,
        run_id: str,
        raw_result: str | Mapping[str, Any] | None,
        exit_code: int | None,
        *,
        failure_hint: str | None = None,
        duration_ms: int = 0,
    ) -> CollectedOutcome:
        payload = parse_result_payload(raw_result)

        store = self._open()
        try:
            if payload is not None:
                outcome = self._write_result(store, run_id, payload)
            else:
                if raw_result is not None:
                    logger.warning("Run %s: RESULT payload is malformed; ignoring it", run_id)
                # A clean exit without a usable RESULT is a reporting failure; anything else crashed.
                crashed = exit_code != 0
                reason = EXECUTION_CRASHED if crashed else NO_RESULT_REPORTED
                detail: dict[str, Any] = {"error": reason}
                if crashed:
                    detail["exit_code"] = exit_code
                if failure_hint:
                    detail["details"] = failure_hint
                store.write_run_outcome(
                    run_id=run_id,
                    status="failed",
                    duration_ms=int(duration_ms),
                    total_scenarios=0,
                    total_steps=0,
                    passed_steps=0,
                    failed_steps=0,
                    failure_details=[detail],
                    video_path=None,
                    error=reason,
                    steps=[],
                )
                outcome = CollectedOutcome(run_id=run_id, status="failed", steps_written=0, error=reason)

            event_type = "run_completed" if outcome.passed else "run_failed"
            store.append_event(
                run_id,
                event_type,
                {"status": outcome.status, "exit_code": exit_code, "error": outcome.error, "details": failure_hint},
            )
        finally:
            store.close()

        logger.info("Run %s finished: %s (%d step results)", run_id, outcome.status, outcome.steps_written)
        return outcome

    def record_failure(self, run_id: str, details: str, *, duration_ms: int = 0) -> CollectedOutcome:
        """Write a bare failed outcome for a run whose `collect` raised."""
        store = self._open()
        try:
            store.write_run_outcome(
                run_id=run_id,
                status="failed",
                duration_ms=int(duration_ms),
                total_scenarios=0,
                total_steps=0,
                passed_steps=0,
                failed_steps=0,
                failure_details=[{"error": RECORDING_FAILED, "details": details}],
                video_path=None,
                error=RECORDING_FAILED,
                steps=[],
            )
        finally:
            store.close()
        logger.warning("Run %s recorded as failed after a collection error: %s", run_id, details)
        return CollectedOutcome(run_id=run_id, status="failed", steps_written=0, error=RECORDING_FAILED)

    def _write_result(self, store: SQLiteStore, run_id: str, payload: RunResultPayload) -> CollectedOutcome:
        steps = [
            StepResultRecord(
                run_id=run_id,
                test_step_id=s.test_step_id,
                scenario_id=s.scenario_id,
                scenario_name=s.scenario_name,
                case_name=s.case_name,
                step_definition=s.step_definition,
                expected_results=s.expected_results,
                status=s.status,
                error_message=s.error_message,
                duration_ms=s.duration_ms,
            )
            for s in payload.steps
        ]
        passed_steps = payload.passed_steps
        if passed_steps is None:
            passed_steps = sum(1 for s in payload.steps if s.status == "passed")
        failed_steps = payload.failed_steps
        if failed_steps is None:
            failed_steps = sum(1 for s in payload.steps if s.status == "failed")
        total_steps = payload.total_steps if payload.total_steps is not None else len(payload.steps)

        failure_details = payload.failed_details
        if failure_details is None:
            failure_details = _failure_details_from_steps(payload.steps)

        store.write_run_outcome(
            run_id=run_id,
            status=payload.status,
            duration_ms=payload.duration_ms,
            total_scenarios=payload.total_scenarios,
            total_steps=total_steps,
            passed_steps=passed_steps,
            failed_steps=failed_steps,
            failure_details=failure_details,
            video_path=payload.video_path,
            error=None,
            steps=steps,
        )
        return CollectedOutcome(run_id=run_id, status=payload.status, steps_written=len(steps), error=None)
