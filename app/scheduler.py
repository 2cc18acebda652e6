"""In-process automation scheduler.

State is an explicit table of ``job id -> next fire time`` driven by one loop.
The wall clock and the monotonic clock are injected, so ``tick`` can be driven
directly in tests without real time passing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List

from cron_schedule import CronError, next_fire, resolve_schedule
from stackpilot.canonical_json import canonical_dumps


logger = logging.getLogger("stackpilot.scheduler")

MAX_HISTORY_PER_JOB = 50
MAX_ERROR_CHARS = 200
MAX_SLEEP_SECONDS = 60.0
MIN_SLEEP_SECONDS = 0.5
DEFAULT_TIMEOUT_MS = 30000

Executor = Callable[[dict, float], Awaitable[Any]]


@dataclass
class SchedulerError(Exception):
    code: str
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


def _truncate(text: str) -> str:
    return text if len(text) <= MAX_ERROR_CHARS else text[: MAX_ERROR_CHARS - 3] + "..."


class AutomationScheduler:
    def __init__(
        self,
        execute: Executor,
        now: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] | None = None,
        history_path: Path | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self._execute = execute
        self._now = now or datetime.now
        self._monotonic = monotonic or time.monotonic
        self._history_path = Path(history_path) if history_path else None
        self._default_timeout_ms = default_timeout_ms
        self._jobs: Dict[str, dict] = {}
        self._next: Dict[str, datetime] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._history: Dict[str, Deque[dict]] = {}
        self._wake: asyncio.Event | None = None
        self._loop_task: asyncio.Task | None = None
        self._stopped = False

    # -- job table ---------------------------------------------------------

    def load(self, jobs: List[dict]) -> None:
        """Replace the job set. Unchanged schedules keep their pending fire time."""
        now = self._now()
        previous = self._jobs
        self._jobs = {job["id"]: dict(job) for job in jobs}
        table: Dict[str, datetime] = {}
        for job_id, job in self._jobs.items():
            if not job.get("enabled"):
                continue
            cron = resolve_schedule(job.get("cron") or job.get("schedule") or "")
            old = previous.get(job_id)
            if old and job_id in self._next and resolve_schedule(old.get("cron") or old.get("schedule") or "") == cron:
                table[job_id] = self._next[job_id]
                continue
            try:
                fire = next_fire(cron, now)
            except CronError as exc:
                logger.warning("automation_schedule_invalid job_id=%s schedule=%s error=%s", job_id, cron, exc)
                continue
            if fire is not None:
                table[job_id] = fire
        self._next = table
        logger.info("automation_jobs_loaded total=%s scheduled=%s", len(self._jobs), len(table))
        if self._wake is not None:
            self._wake.set()

    def snapshot(self) -> Dict[str, str]:
        return {job_id: fire.isoformat() for job_id, fire in sorted(self._next.items())}

    def restore(self, snapshot: Dict[str, str]) -> None:
        for job_id, value in snapshot.items():
            job = self._jobs.get(job_id)
            if job and job.get("enabled"):
                self._next[job_id] = datetime.fromisoformat(value)

    def next_fire_times(self) -> Dict[str, datetime]:
        return dict(self._next)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    def history(self, job_id: str) -> List[dict]:
        return list(self._history.get(job_id, ()))

    # -- firing ------------------------------------------------------------

    def due(self, now: datetime) -> List[str]:
        return sorted(
            job_id
            for job_id, fire in self._next.items()
            if fire <= now and job_id not in self._running and self._jobs.get(job_id, {}).get("enabled")
        )

    def tick(self, now: datetime | None = None) -> List[asyncio.Task]:
        """Start every due job and advance its fire time. Must run inside the event loop."""
        if self._stopped:
            return []
        now = now or self._now()
        tasks = []
        for job_id in self.due(now):
            job = self._jobs[job_id]
            fire = next_fire(resolve_schedule(job.get("cron") or job["schedule"]), now)
            if fire is None:
                self._next.pop(job_id, None)
            else:
                self._next[job_id] = fire
            tasks.append(self._spawn(job, "schedule"))
        return tasks

    async def trigger_now(self, job_id: str) -> dict:
        job = self._jobs.get(job_id)
        if job is None:
            raise SchedulerError("automation_not_found", f"Automation not found: {job_id}")
        if job_id in self._running:
            raise SchedulerError("automation_running", f"Automation is already running: {job_id}")
        if self._stopped:
            raise SchedulerError("scheduler_stopped", "Scheduler is stopped")
        return await self._spawn(job, "manual")

    def _spawn(self, job: dict, trigger: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._invoke(job, trigger))
        self._running[job["id"]] = task
        return task

    async def _invoke(self, job: dict, trigger: str) -> dict:
        job_id = job["id"]
        timeout_ms = int(job.get("timeoutMs") or self._default_timeout_ms)
        at = self._now()
        started = self._monotonic()
        logger.info("automation_started job_id=%s trigger=%s", job_id, trigger)
        try:
            await asyncio.wait_for(self._execute(job, timeout_ms / 1000.0), timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            return self._record(job_id, trigger, at, started, f"timed out after {timeout_ms}ms", timeout_ms)
        except asyncio.CancelledError:
            self._record(job_id, trigger, at, started, "cancelled")
            raise
        except Exception as exc:
            return self._record(job_id, trigger, at, started, str(exc) or exc.__class__.__name__)
        finally:
            self._running.pop(job_id, None)
        return self._record(job_id, trigger, at, started, None)

    def _record(
        self,
        job_id: str,
        trigger: str,
        at: datetime,
        started: float,
        error: str | None,
        min_duration_ms: int = 0,
    ) -> dict:
        duration_ms = max(int(round((self._monotonic() - started) * 1000)), min_duration_ms)
        entry = {
            "at": at.isoformat(timespec="seconds"),
            "jobId": job_id,
            "trigger": trigger,
            "ok": error is None,
            "durationMs": duration_ms,
            "error": _truncate(error) if error else None,
        }
        bucket = self._history.setdefault(job_id, deque(maxlen=MAX_HISTORY_PER_JOB))
        bucket.append(entry)
        if error:
            logger.warning("automation_failed job_id=%s duration_ms=%s error=%s", job_id, duration_ms, entry["error"])
        else:
            logger.info("automation_succeeded job_id=%s duration_ms=%s", job_id, duration_ms)
        if self._history_path is not None:
            self._history_path.parent.mkdir(parents=True, exist_ok=True)
            with self._history_path.open("a", encoding="utf-8") as handle:
                handle.write(canonical_dumps(entry) + "\n")
        return entry

    # -- loop --------------------------------------------------------------

    def _sleep_seconds(self, now: datetime) -> float:
        if not self._next:
            return MAX_SLEEP_SECONDS
        delay = (min(self._next.values()) - now).total_seconds()
        return max(MIN_SLEEP_SECONDS, min(MAX_SLEEP_SECONDS, delay))

    async def run(self) -> None:
        self._wake = asyncio.Event()
        logger.info("scheduler_started jobs=%s", len(self._jobs))
        while not self._stopped:
            now = self._now()
            self.tick(now)
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), self._sleep_seconds(now))
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        self._stopped = False
        self._loop_task = asyncio.get_running_loop().create_task(self.run())
        return self._loop_task

    async def stop(self) -> None:
        """Cancel the loop and every in-flight job; nothing fires afterwards."""
        self._stopped = True
        self._next.clear()
        pending = list(self._running.values())
        if self._loop_task is not None:
            pending.append(self._loop_task)
            self._loop_task = None
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("scheduler_stopped cancelled=%s", len(pending))
