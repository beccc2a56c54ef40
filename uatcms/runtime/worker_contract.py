"""Worker process contract: env vars in, tagged stdout lines out, exit code for crashes.

A worker is spawned fresh per run. The orchestrator never writes to it after spawn
(stdin is not connected). Stdout carries:

    PROGRESS:<json>   zero or more times
    RESULT:<json>     exactly once, last meaningful line

Everything else is log noise. Exit code 0 means controlled completion (pass or
fail is in the RESULT payload); non-zero means the worker crashed.
"""

from __future__ import annotations

import asyncio
import collections
import json
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

from uatcms.config.load_config import WorkerConfig


logger = logging.getLogger(__name__)


PROGRESS_MARKER = "PROGRESS:"
RESULT_MARKER = "RESULT:"

# Seconds a finished worker's descendants may keep its output pipes open.
DEFAULT_EXIT_GRACE_S = 2.0
_EXIT_POLL_S = 0.2


class WorkerLaunchError(RuntimeError):
    """The worker executable could not be started."""


@dataclass(frozen=True)
class RunRequest:
    run_id: str
    test_set_id: int
    release_id: int
    base_url: str
    batch_id: str | None = None
    release_number: str = ""
    test_set_name: str = ""
    submitted_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ProgressEvent:
    run_id: str
    current_scenario: int
    total_scenarios: int
    scenario_name: str
    case_name: str
    current_step: int
    total_steps: int
    step_definition: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "current_scenario": self.current_scenario,
            "total_scenarios": self.total_scenarios,
            "scenario_name": self.scenario_name,
            "case_name": self.case_name,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "step_definition": self.step_definition,
        }


# --- Tagged-line parser
@dataclass(frozen=True)
class ProgressLine:
    payload: dict[str, Any]


@dataclass(frozen=True)
class ResultLine:
    raw: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class NoiseLine:
    text: str


WorkerLine = ProgressLine | ResultLine | NoiseLine


def _parse_json_object(text: str) -> dict[str, Any] | None:
    try:
        obj = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return obj if isinstance(obj, dict) else None


def parse_worker_line(line: str) -> WorkerLine:
    """Classify one stdout line. Marker lines whose JSON does not parse are noise."""
    text = line.rstrip("\r\n")
    if text.startswith(PROGRESS_MARKER):
        payload = _parse_json_object(text[len(PROGRESS_MARKER) :])
        if payload is not None:
            return ProgressLine(payload=payload)
    elif text.startswith(RESULT_MARKER):
        raw = text[len(RESULT_MARKER) :]
        payload = _parse_json_object(raw)
        if payload is not None:
            return ResultLine(raw=raw, payload=payload)
    return NoiseLine(text=text)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def progress_from_payload(run_id: str, payload: Mapping[str, Any]) -> ProgressEvent:
    """Map a worker's camelCase PROGRESS payload onto a ProgressEvent."""
    return ProgressEvent(
        run_id=run_id,
        current_scenario=_as_int(payload.get("currentScenario")),
        total_scenarios=_as_int(payload.get("totalScenarios")),
        scenario_name=str(payload.get("scenarioName") or ""),
        case_name=str(payload.get("caseName") or ""),
        current_step=_as_int(payload.get("currentStep")),
        total_steps=_as_int(payload.get("totalSteps")),
        step_definition=str(payload.get("stepDefinition") or ""),
    )


# --- Spawning
def build_worker_env(
    request: RunRequest,
    *,
    batch_mode: bool,
    api_base_url: str,
    reports_dir: str,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    env = dict(os.environ if base_env is None else base_env)
    env.update(
        {
            "TEST_RUN_ID": str(request.run_id),
            "TEST_SET_ID": str(request.test_set_id),
            "RELEASE_ID": str(request.release_id),
            "RELEASE_NUMBER": request.release_number or "",
            "TEST_BASE_URL": request.base_url,
            "API_BASE_URL": api_base_url,
            "IS_BATCH_RUN": "true" if batch_mode else "false",
            # Outer parallelism is already bounded; keep the driver single-worker.
            "PLAYWRIGHT_WORKERS": "1",
            "REPORTS_DIR": reports_dir,
        }
    )
    return env


@dataclass(frozen=True)
class WorkerOutcome:
    """Completion message of one worker process."""

    run_id: str
    exit_code: int | None
    result_raw: str | None
    duration_ms: int
    stdout_tail: str = ""
    stderr_tail: str = ""
    timed_out: bool = False
    launch_error: str | None = None

    @property
    def crashed(self) -> bool:
        return self.exit_code != 0

    def failure_hint(self) -> str | None:
        """Diagnostic text for a crash; None for a clean exit."""
        if self.launch_error:
            return f"Failed to start worker: {self.launch_error}"
        if self.timed_out:
            return f"Worker timed out after {self.duration_ms} ms and was killed"
        if self.crashed:
            details = self.stderr_tail or self.stdout_tail or "No output captured"
            return f"Worker process exited with code {self.exit_code}: {details}"
        return None


ProgressCallback = Callable[[ProgressEvent], None]


class Launcher(Protocol):
    async def run(
        self,
        request: RunRequest,
        *,
        batch_mode: bool,
        on_progress: ProgressCallback | None = None,
    ) -> WorkerOutcome: ...


class WorkerHandle:
    """A spawned worker. `wait()` returns its completion message.

    The worker leads its own process group, so a kill reaches the browsers and
    driver processes it started. Output pipes are read until EOF, but once the
    worker itself has exited a descendant holding them open gets `exit_grace_s`
    before the group is killed and the readers are dropped.
    """

    def __init__(
        self,
        request: RunRequest,
        proc: asyncio.subprocess.Process,
        *,
        on_progress: ProgressCallback | None,
        timeout_s: float | None,
        stderr_tail_lines: int,
        exit_grace_s: float = DEFAULT_EXIT_GRACE_S,
    ) -> None:
        self.request = request
        self.pid = proc.pid
        self._proc = proc
        self._on_progress = on_progress
        self._timeout_s = timeout_s
        self._exit_grace_s = float(exit_grace_s)
        self._started = time.monotonic()
        self._result_raw: str | None = None
        self._stdout_tail: collections.deque[str] = collections.deque(maxlen=40)
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=stderr_tail_lines)

    async def _read_stdout(self) -> None:
        stream = self._proc.stdout
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than the reader limit; the oversized chunk is dropped.
                logger.warning("Run %s: dropped an oversized stdout line", self.request.run_id)
                continue
            if not line:
                break
            parsed = parse_worker_line(line.decode("utf-8", errors="replace"))
            if isinstance(parsed, ProgressLine):
                if self._on_progress is not None:
                    self._on_progress(progress_from_payload(self.request.run_id, parsed.payload))
            elif isinstance(parsed, ResultLine):
                # Last RESULT wins.
                self._result_raw = parsed.raw
            elif parsed.text:
                self._stdout_tail.append(parsed.text)

    async def _read_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("[worker %s] %s", self.request.run_id, text)

    async def _drain(self) -> int | None:
        readers = asyncio.ensure_future(asyncio.gather(self._read_stdout(), self._read_stderr()))
        try:
            while not readers.done() and self._proc.returncode is None:
                await asyncio.wait({readers}, timeout=_EXIT_POLL_S)
            if not readers.done():
                await asyncio.wait({readers}, timeout=self._exit_grace_s)
            if not readers.done():
                logger.warning(
                    "Run %s: worker exited but its output pipes are still open; killing process group %s",
                    self.request.run_id,
                    self.pid,
                )
                self._kill_group()
                await asyncio.wait({readers}, timeout=self._exit_grace_s)
        finally:
            if not readers.done():
                readers.cancel()
        if readers.cancelled():
            return await self._reap()
        readers.result()
        # Pipes reached EOF, so waiting for the exit status cannot stall on them.
        return await self._proc.wait()

    async def _reap(self) -> int | None:
        """Exit code of the worker; does not wait on pipes a survivor still holds."""
        if self._proc.returncode is not None:
            return self._proc.returncode
        try:
            return await asyncio.wait_for(self._proc.wait(), timeout=max(self._exit_grace_s, _EXIT_POLL_S))
        except asyncio.TimeoutError:
            return self._proc.returncode

    async def wait(self) -> WorkerOutcome:
        timed_out = False
        try:
            if self._timeout_s:
                exit_code = await asyncio.wait_for(self._drain(), timeout=self._timeout_s)
            else:
                exit_code = await self._drain()
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Run %s exceeded %.0fs deadline; killing process group %s", self.request.run_id, self._timeout_s, self.pid)
            exit_code = await self.kill()
            if exit_code is None:
                exit_code = -9
        except asyncio.CancelledError:
            await self.kill()
            raise
        else:
            # Leftover descendants (browsers) of a finished worker.
            self._kill_group()

        return WorkerOutcome(
            run_id=self.request.run_id,
            exit_code=exit_code,
            result_raw=self._result_raw,
            duration_ms=int((time.monotonic() - self._started) * 1000),
            stdout_tail="\n".join(self._stdout_tail)[-2000:],
            stderr_tail="\n".join(self._stderr_tail)[-2000:],
            timed_out=timed_out,
        )

    def _kill_group(self) -> None:
        if hasattr(os, "killpg"):
            try:
                os.killpg(self.pid, signal.SIGKILL)
                return
            except ProcessLookupError:
                return
            except PermissionError:
                logger.warning("Run %s: not allowed to kill process group %s", self.request.run_id, self.pid)
        if self._proc.returncode is None:
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass

    async def kill(self) -> int | None:
        """Kill the worker and everything in its process group; returns the exit code."""
        self._kill_group()
        return await self._reap()


class WorkerLauncher:
    """Spawns workers per the contract and awaits their completion message."""

    def __init__(
        self,
        config: WorkerConfig,
        *,
        reports_dir: str,
        run_timeout_s: float = 0.0,
        exit_grace_s: float = DEFAULT_EXIT_GRACE_S,
    ) -> None:
        self._config = config
        self._reports_dir = reports_dir
        self._run_timeout_s = float(run_timeout_s)
        self._exit_grace_s = float(exit_grace_s)

    async def spawn(
        self,
        request: RunRequest,
        *,
        batch_mode: bool,
        on_progress: ProgressCallback | None = None,
    ) -> WorkerHandle:
        env = build_worker_env(
            request,
            batch_mode=batch_mode,
            api_base_url=self._config.api_base_url,
            reports_dir=self._reports_dir,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._config.command,
                cwd=self._config.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._config.max_line_bytes,
                start_new_session=True,
            )
        except OSError as e:
            raise WorkerLaunchError(str(e)) from e

        logger.info(
            "Spawned worker pid=%s for run %s (test set %s, batch=%s)",
            proc.pid,
            request.run_id,
            request.test_set_id,
            request.batch_id or "-",
        )
        return WorkerHandle(
            request,
            proc,
            on_progress=on_progress,
            timeout_s=self._run_timeout_s or None,
            stderr_tail_lines=self._config.stderr_tail_lines,
            exit_grace_s=self._exit_grace_s,
        )

    async def run(
        self,
        request: RunRequest,
        *,
        batch_mode: bool,
        on_progress: ProgressCallback | None = None,
    ) -> WorkerOutcome:
        """Spawn and await one worker. Spawn failures become crash outcomes."""
        started = time.monotonic()
        try:
            handle = await self.spawn(request, batch_mode=batch_mode, on_progress=on_progress)
        except WorkerLaunchError as e:
            logger.error("Failed to start worker for run %s: %s", request.run_id, e)
            return WorkerOutcome(
                run_id=request.run_id,
                exit_code=None,
                result_raw=None,
                duration_ms=int((time.monotonic() - started) * 1000),
                launch_error=str(e),
            )
        return await handle.wait()
