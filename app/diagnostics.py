"""Diagnostics helpers for the running stack."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx


logger = logging.getLogger("stackpilot.diagnostics")

HEALTH_TIMEOUT_SECONDS = 3.0
MODELS_TIMEOUT_SECONDS = 5.0

# service -> health URL inside the compose network
DEFAULT_HEALTH_TARGETS = {
    "gateway": "http://gateway:8080/health",
    "assistant": "http://assistant:4096/health",
    "memory": "http://memory:8765/health",
}


async def check_service_health(targets: Dict[str, str], client: httpx.AsyncClient | None = None) -> Dict[str, dict]:
    """One GET per service, no retries. A service is healthy on any 2xx."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=HEALTH_TIMEOUT_SECONDS)
    results: Dict[str, dict] = {}
    try:
        for service, url in sorted(targets.items()):
            try:
                resp = await client.get(url, timeout=HEALTH_TIMEOUT_SECONDS)
            except httpx.HTTPError as exc:
                results[service] = {"ok": False, "status": None, "error": str(exc) or exc.__class__.__name__}
                continue
            ok = 200 <= resp.status_code < 300
            results[service] = {"ok": ok, "status": resp.status_code, "error": None if ok else f"HTTP {resp.status_code}"}
    finally:
        if owns_client:
            await client.aclose()
    unhealthy = [name for name, item in results.items() if not item["ok"]]
    if unhealthy:
        logger.warning("service_health_degraded services=%s", ",".join(unhealthy))
    return results


def list_provider_models(base_url: str, api_key: str | None = None, client: httpx.Client | None = None) -> List[str]:
    """Model ids from an OpenAI-compatible ``/models`` listing."""
    headers: Dict[str, Any] = {}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    url = base_url.rstrip("/") + "/models"
    if client is None:
        resp = httpx.get(url, headers=headers, timeout=MODELS_TIMEOUT_SECONDS)
    else:
        resp = client.get(url, headers=headers, timeout=MODELS_TIMEOUT_SECONDS)
    resp.raise_for_status()
    data = resp.json()
    items = data.get("data") if isinstance(data, dict) else data
    if not isinstance(items, list):
        return []
    models = [item.get("id") for item in items if isinstance(item, dict) and isinstance(item.get("id"), str)]
    return sorted(models)
