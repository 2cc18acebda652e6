"""Standalone automation scheduler process.

Runs the same jobs as the admin app for deployments that keep the scheduler
out of the request-serving process (set ``STACKPILOT_SCHEDULER_ENABLED=0`` on
the admin app in that case).
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

from app.automations_runtime import ActionRunner
from app.scheduler import AutomationScheduler
from app.stack_manager import StackManager


logger = logging.getLogger("stackpilot.worker")


def build_scheduler(manager: StackManager) -> AutomationScheduler:
    runner = ActionRunner(
        admin_url=os.getenv("STACKPILOT_ADMIN_URL", "http://localhost:8100").strip(),
        admin_token=os.getenv("ADMIN_TOKEN", "").strip(),
        assistant_url=os.getenv("STACKPILOT_ASSISTANT_URL", "http://assistant:4096").strip(),
    )
    return AutomationScheduler(
        runner,
        history_path=manager.history_path,
        default_timeout_ms=int(os.getenv("STACKPILOT_AUTOMATION_TIMEOUT_MS", "30000")),
    )


async def run_worker(manager: StackManager, reload_seconds: float, stop: asyncio.Event) -> None:
    """Drive the scheduler until ``stop`` is set, reloading jobs from the spec periodically."""
    scheduler = build_scheduler(manager)
    scheduler.load(manager.list_automations())
    scheduler.start()
    try:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), reload_seconds)
            except asyncio.TimeoutError:
                scheduler.load(manager.list_automations())
    finally:
        await scheduler.stop()


def main() -> None:
    logging.basicConfig(level=os.getenv("STACKPILOT_LOG_LEVEL", "INFO").strip().upper() or "INFO")
    manager = StackManager(
        os.getenv("STACKPILOT_DATA_DIR", "./data").strip() or "./data",
        os.getenv("STACKPILOT_STATE_DIR", "./state").strip() or "./state",
    )
    reload_seconds = float(os.getenv("STACKPILOT_WORKER_RELOAD_SECONDS", "30"))

    async def _run() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        logger.info("worker_started data_dir=%s reload_seconds=%s", manager.data_dir, reload_seconds)
        await run_worker(manager, reload_seconds, stop)
        logger.info("worker_stopped")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
