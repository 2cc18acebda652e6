from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Iterable, List

from stack_spec import CORE_SERVICES


logger = logging.getLogger("stackpilot.runner")

DEFAULT_COMMAND_TIMEOUT = 300.0
MAX_OUTPUT_CHARS = 4000
CADDY_RELOAD = ["caddy", "reload", "--config", "/etc/caddy/Caddyfile"]


def _result(ok: bool, stdout: str = "", stderr: str = "", code: int | None = None, error: str | None = None) -> dict:
    return {"ok": ok, "code": code, "stdout": stdout[-MAX_OUTPUT_CHARS:], "stderr": stderr[-MAX_OUTPUT_CHARS:], "error": error}


class UnconfiguredRunner:
    """Stand-in used when no compose file is configured; every call reports the degraded state."""

    configured = False

    def _unavailable(self) -> dict:
        return dict(_result(False, error="runner_not_configured"), configured=False)

    async def up(self, service: str) -> dict:
        return self._unavailable()

    async def down(self, service: str) -> dict:
        return self._unavailable()

    async def restart(self, service: str) -> dict:
        return self._unavailable()

    async def reload(self, service: str) -> dict:
        return self._unavailable()

    async def list(self) -> dict:
        return dict(self._unavailable(), services=[])


class ComposeRunner:
    configured = True

    def __init__(
        self,
        compose_file: str,
        bin: str = "docker",
        subcommand: str = "compose",
        project_path: str | None = None,
        allowed_services: Iterable[str] = (),
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.compose_file = compose_file
        self.bin = bin
        self.subcommand = subcommand
        self.project_path = project_path or None
        self.timeout = timeout
        self._allowed = set(CORE_SERVICES) | set(allowed_services)

    def allow(self, services: Iterable[str]) -> None:
        self._allowed.update(services)

    def allows(self, service: str) -> bool:
        return service in self._allowed

    def command(self, args: List[str]) -> List[str]:
        cmd = [self.bin]
        if self.subcommand:
            cmd.append(self.subcommand)
        cmd.extend(["-f", self.compose_file])
        if self.project_path:
            cmd.extend(["--project-directory", self.project_path])
        return cmd + list(args)

    async def _run(self, args: List[str]) -> dict:
        cmd = self.command(args)
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.project_path,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("runner_timeout args=%s timeout=%s", " ".join(args), self.timeout)
            return _result(False, error="runner_timeout")
        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        ok = proc.returncode == 0
        log = logger.info if ok else logger.warning
        log("runner_command args=%s code=%s", " ".join(args), proc.returncode)
        return _result(ok, out, err, proc.returncode, None if ok else "runner_command_failed")

    async def _service_command(self, service: str, args: List[str]) -> dict:
        if not self.allows(service):
            logger.warning("runner_service_not_allowed service=%s", service)
            return _result(False, error="service_not_allowed")
        return await self._run(args)

    async def up(self, service: str) -> dict:
        return await self._service_command(service, ["up", "-d", service])

    async def down(self, service: str) -> dict:
        return await self._service_command(service, ["stop", service])

    async def restart(self, service: str) -> dict:
        return await self._service_command(service, ["restart", service])

    async def reload(self, service: str) -> dict:
        if service != "caddy":
            return await self.restart(service)
        return await self._service_command(service, ["exec", "-T", service] + CADDY_RELOAD)

    async def list(self) -> dict:
        result = await self._run(["ps", "--format", "json"])
        result["services"] = parse_ps_output(result["stdout"]) if result["ok"] else []
        return result


def parse_ps_output(stdout: str) -> List[dict]:
    """Compose prints either one JSON array or one JSON object per line."""
    text = stdout.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = [json.loads(line) for line in text.splitlines() if line.strip()]
    if isinstance(data, dict):
        data = [data]
    services = []
    for item in data:
        services.append(
            {
                "service": item.get("Service") or item.get("Name"),
                "state": item.get("State"),
                "status": item.get("Status"),
                "health": item.get("Health") or None,
            }
        )
    return sorted(services, key=lambda item: item["service"] or "")


def runner_from_env() -> ComposeRunner | UnconfiguredRunner:
    compose_file = os.getenv("STACKPILOT_COMPOSE_FILE", "").strip()
    if not compose_file:
        logger.warning("runner_not_configured reason=missing_compose_file")
        return UnconfiguredRunner()
    extra = [name.strip() for name in os.getenv("STACKPILOT_EXTRA_SERVICES", "").split(",") if name.strip()]
    return ComposeRunner(
        compose_file=compose_file,
        bin=os.getenv("STACKPILOT_COMPOSE_BIN", "docker").strip() or "docker",
        subcommand=os.getenv("STACKPILOT_COMPOSE_SUBCOMMAND", "compose").strip(),
        project_path=os.getenv("COMPOSE_PROJECT_PATH", "").strip() or None,
        allowed_services=extra,
    )
