from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from stack_spec import ActionType


logger = logging.getLogger("stackpilot.automations_runtime")

MAX_OUTPUT_CHARS = 2000


class ActionError(RuntimeError):
    pass


def _tail(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")[-MAX_OUTPUT_CHARS:]


class ActionRunner:
    """Executes one automation action. Callers bound the total time with their own timeout."""

    def __init__(
        self,
        admin_url: str,
        admin_token: str,
        assistant_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.admin_url = admin_url.rstrip("/")
        self.admin_token = admin_token
        self.assistant_url = assistant_url.rstrip("/")
        self._transport = transport

    async def __call__(self, job: dict, timeout: float) -> dict:
        action = job.get("action") or {}
        kind = ActionType(action.get("type"))
        if kind is ActionType.API:
            headers = {"x-admin-token": self.admin_token, "x-requested-by": "automation"}
            return await self._http(action["method"], self.admin_url + action["path"], headers, action.get("body"), timeout)
        if kind is ActionType.HTTP:
            return await self._http(action["method"], action["url"], action.get("headers") or {}, action.get("body"), timeout)
        if kind is ActionType.PROMPT:
            body = {
                "message": action["prompt"],
                "session_id": f"automation-{job['id']}",
                "metadata": {"source": "automation", "automationId": job["id"]},
            }
            return await self._http("POST", self.assistant_url + "/chat", {}, body, timeout)
        if kind is ActionType.SHELL:
            return await self._shell(action["command"])
        raise AssertionError(kind)  # pragma: no cover

    async def _http(self, method: str, url: str, headers: dict, body: Any, timeout: float) -> dict:
        kwargs: dict = {"headers": headers}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = str(body)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            resp = await client.request(method, url, **kwargs)
        if resp.status_code >= 400:
            raise ActionError(f"HTTP {resp.status_code}: {resp.text[:200]}")
        logger.info("automation_http_ok method=%s url=%s status=%s", method, url, resp.status_code)
        return {"status": resp.status_code}

    async def _shell(self, command: list[str]) -> dict:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        if proc.returncode != 0:
            raise ActionError(f"exit {proc.returncode}: {_tail(stderr).strip()}")
        return {"code": proc.returncode, "stdout": _tail(stdout)}
