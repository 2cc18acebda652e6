import asyncio
import json
import os
import sys
import tempfile
import unittest
from datetime import datetime
from pathlib import Path


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.scheduler import MAX_ERROR_CHARS, MAX_HISTORY_PER_JOB, AutomationScheduler, SchedulerError


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _job(job_id: str, schedule: str = "every-15-minutes", **extra) -> dict:
    job = {"id": job_id, "schedule": schedule, "enabled": True, "timeoutMs": 1000, "action": {"type": "prompt", "prompt": "hi"}}
    job.update(extra)
    return job


class TestAutomationScheduler(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(datetime(2024, 6, 1, 10, 7))
        self.calls = []

    async def _ok(self, job, timeout):
        self.calls.append(job["id"])
        return {"status": 200}

    def _scheduler(self, execute=None, **kwargs) -> AutomationScheduler:
        return AutomationScheduler(execute or self._ok, now=self.clock, **kwargs)

    async def test_load_computes_next_fire(self) -> None:
        scheduler = self._scheduler()
        scheduler.load([_job("a"), _job("b", enabled=False)])
        self.assertEqual(scheduler.next_fire_times(), {"a": datetime(2024, 6, 1, 10, 15)})

    async def test_invalid_schedule_is_skipped(self) -> None:
        scheduler = self._scheduler()
        scheduler.load([_job("a", schedule="61 * * * *"), _job("b")])
        self.assertEqual(list(scheduler.next_fire_times()), ["b"])

    async def test_tick_fires_due_jobs_and_advances(self) -> None:
        scheduler = self._scheduler()
        scheduler.load([_job("a"), _job("b", schedule="every-hour")])
        self.assertEqual(scheduler.tick(), [])
        self.clock.now = datetime(2024, 6, 1, 10, 15)
        tasks = scheduler.tick()
        await asyncio.gather(*tasks)
        self.assertEqual(self.calls, ["a"])
        self.assertEqual(scheduler.next_fire_times()["a"], datetime(2024, 6, 1, 10, 30))
        self.assertEqual(scheduler.history("a")[0]["trigger"], "schedule")
        self.assertTrue(scheduler.history("a")[0]["ok"])

    async def test_running_job_is_not_started_twice(self) -> None:
        release = asyncio.Event()

        async def slow(job, timeout):
            self.calls.append(job["id"])
            await release.wait()

        scheduler = self._scheduler(slow)
        scheduler.load([_job("a", schedule="every-minute")])
        self.clock.now = datetime(2024, 6, 1, 10, 8)
        first = scheduler.tick()
        await asyncio.sleep(0)
        self.assertTrue(scheduler.is_running("a"))
        self.clock.now = datetime(2024, 6, 1, 10, 9)
        self.assertEqual(scheduler.tick(), [])
        with self.assertRaises(SchedulerError) as ctx:
            await scheduler.trigger_now("a")
        self.assertEqual(ctx.exception.code, "automation_running")
        release.set()
        await asyncio.gather(*first)
        self.assertEqual(self.calls, ["a"])
        self.assertFalse(scheduler.is_running("a"))

    async def test_timeout_records_single_failure(self) -> None:
        async def hang(job, timeout):
            await asyncio.sleep(5)

        scheduler = self._scheduler(hang)
        scheduler.load([_job("slow", timeoutMs=50)])
        entry = await scheduler.trigger_now("slow")
        history = scheduler.history("slow")
        self.assertEqual(len(history), 1)
        self.assertFalse(entry["ok"])
        self.assertGreaterEqual(entry["durationMs"], 50)
        self.assertIn("timed out", entry["error"])
        self.assertEqual(entry["trigger"], "manual")

    async def test_error_is_truncated(self) -> None:
        async def fail(job, timeout):
            raise RuntimeError("x" * 500)

        scheduler = self._scheduler(fail)
        scheduler.load([_job("a")])
        entry = await scheduler.trigger_now("a")
        self.assertFalse(entry["ok"])
        self.assertEqual(len(entry["error"]), MAX_ERROR_CHARS)

    async def test_history_is_bounded(self) -> None:
        scheduler = self._scheduler()
        scheduler.load([_job("a")])
        for _ in range(MAX_HISTORY_PER_JOB + 5):
            await scheduler.trigger_now("a")
        self.assertEqual(len(scheduler.history("a")), MAX_HISTORY_PER_JOB)

    async def test_trigger_unknown_job(self) -> None:
        scheduler = self._scheduler()
        with self.assertRaises(SchedulerError) as ctx:
            await scheduler.trigger_now("nope")
        self.assertEqual(ctx.exception.code, "automation_not_found")

    async def test_history_file_appends_lines(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "logs" / "automation-history.jsonl"
            scheduler = self._scheduler(history_path=path)
            scheduler.load([_job("a")])
            await scheduler.trigger_now("a")
            await scheduler.trigger_now("a")
            lines = path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 2)
            self.assertEqual(json.loads(lines[0])["jobId"], "a")

    async def test_reload_keeps_pending_fire_time(self) -> None:
        scheduler = self._scheduler()
        scheduler.load([_job("a")])
        pending = scheduler.next_fire_times()["a"]
        self.clock.now = datetime(2024, 6, 1, 10, 20)
        scheduler.load([_job("a", name="renamed")])
        self.assertEqual(scheduler.next_fire_times()["a"], pending)
        scheduler.load([_job("a", schedule="every-hour")])
        self.assertEqual(scheduler.next_fire_times()["a"], datetime(2024, 6, 1, 11, 0))

    async def test_snapshot_and_restore(self) -> None:
        scheduler = self._scheduler()
        scheduler.load([_job("a"), _job("b")])
        snapshot = scheduler.snapshot()
        other = self._scheduler()
        other.load([_job("a"), _job("b", enabled=False)])
        other.restore({"a": "2024-06-01T12:00:00", "b": snapshot["b"]})
        self.assertEqual(other.next_fire_times(), {"a": datetime(2024, 6, 1, 12, 0)})

    async def test_stop_cancels_and_nothing_fires_after(self) -> None:
        started = asyncio.Event()

        async def hang(job, timeout):
            started.set()
            await asyncio.sleep(5)

        scheduler = self._scheduler(hang)
        scheduler.load([_job("a", schedule="every-minute")])
        self.clock.now = datetime(2024, 6, 1, 10, 8)
        scheduler.tick()
        await started.wait()
        await scheduler.stop()
        self.assertFalse(scheduler.is_running("a"))
        self.assertEqual(scheduler.history("a")[0]["error"], "cancelled")
        self.clock.now = datetime(2024, 6, 1, 11, 0)
        self.assertEqual(scheduler.tick(), [])
        self.assertEqual(scheduler.next_fire_times(), {})
        with self.assertRaises(SchedulerError):
            await scheduler.trigger_now("a")


if __name__ == "__main__":
    unittest.main()
