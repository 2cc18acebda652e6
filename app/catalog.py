"""Extension catalog: a static curated list plus an optional remote feed.

The remote feed is cached as a plain ``{"items", "fetchedAt"}`` value; expiry
is a pure function of two timestamps so it can be tested without waiting.
"""

from __future__ import annotations

import copy
import logging
import time
from typing import Any, Callable, Dict, List, Tuple

import httpx

from stack_spec import ENTITY_ID_RE, ExtensionType, StackSpecError, is_valid_plugin_identifier


logger = logging.getLogger("stackpilot.catalog")

CATALOG_TTL_SECONDS = 600.0
FETCH_TIMEOUT_SECONDS = 8.0
RISK_LEVELS = ("low", "medium", "high", "critical")

Fetcher = Callable[[], List[dict]]

BUILTIN_CATALOG: List[Dict[str, Any]] = [
    {
        "id": "policy-telemetry",
        "name": "Policy & Telemetry",
        "type": "plugin",
        "pluginId": "./plugins/policy-and-telemetry.ts",
        "risk": "low",
        "description": "Blocks secrets in tool arguments and logs every tool call as structured JSON.",
    },
    {
        "id": "memory-guard",
        "name": "Memory Guard",
        "type": "plugin",
        "pluginId": "./plugins/memory-guard.ts",
        "risk": "medium",
        "description": "Runs PII and secret detection on memory writes before they reach the memory store.",
    },
    {
        "id": "rate-limit-enforcer",
        "name": "Rate Limit Enforcer",
        "type": "plugin",
        "pluginId": "./plugins/rate-limit-enforcer.ts",
        "risk": "low",
        "description": "Per-session tool call rate limiting.",
    },
    {
        "id": "response-sanitizer",
        "name": "Response Sanitizer",
        "type": "plugin",
        "pluginId": "./plugins/response-sanitizer.ts",
        "risk": "medium",
        "description": "Scans responses for leaked credentials and internal URLs.",
    },
    {
        "id": "action-gating",
        "name": "Action Gating",
        "type": "skill",
        "pluginId": None,
        "risk": "low",
        "description": "Requires explicit approval before the assistant takes medium or high risk actions.",
    },
    {
        "id": "web-search",
        "name": "Web Search",
        "type": "tool",
        "pluginId": None,
        "risk": "high",
        "description": "Lets the assistant search the web; needs an api_service connection.",
    },
]


def _valid_item(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    if not isinstance(item.get("id"), str) or not ENTITY_ID_RE.match(item["id"]):
        return False
    if item.get("type") not in {kind.value for kind in ExtensionType}:
        return False
    if item.get("type") == ExtensionType.PLUGIN.value and not is_valid_plugin_identifier(item.get("pluginId")):
        return False
    return item.get("risk") in RISK_LEVELS


def empty_cache() -> dict:
    return {"items": [], "fetchedAt": None}


def cache_expired(fetched_at: float | None, now: float, ttl: float = CATALOG_TTL_SECONDS) -> bool:
    return fetched_at is None or now - fetched_at >= ttl


def refresh_cache(cache: dict, now: float, fetcher: Fetcher, ttl: float = CATALOG_TTL_SECONDS) -> Tuple[dict, bool]:
    """Return ``(cache, stale)``. A failed fetch falls back to the previous items when there are any."""
    if not cache_expired(cache.get("fetchedAt"), now, ttl):
        return cache, False
    try:
        items = fetcher()
    except (httpx.HTTPError, ValueError) as exc:
        if cache.get("fetchedAt") is None:
            raise
        logger.warning("catalog_fetch_failed using_stale=true error=%s", exc)
        return cache, True
    return {"items": [item for item in items if _valid_item(item)], "fetchedAt": now}, False


def http_fetcher(url: str, timeout: float = FETCH_TIMEOUT_SECONDS) -> Fetcher:
    def fetch() -> List[dict]:
        resp = httpx.get(url, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
        items = data.get("items") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise ValueError("catalog response has no items list")
        return items

    return fetch


class ExtensionCatalog:
    def __init__(self, fetcher: Fetcher | None = None, clock: Callable[[], float] = time.time) -> None:
        self._fetcher = fetcher
        self._clock = clock
        self.cache = empty_cache()

    def list_items(self) -> dict:
        items = copy.deepcopy(BUILTIN_CATALOG)
        stale = False
        if self._fetcher is not None:
            try:
                self.cache, stale = refresh_cache(self.cache, self._clock(), self._fetcher)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("catalog_fetch_failed using_stale=false error=%s", exc)
            known = {item["id"] for item in items}
            items.extend(copy.deepcopy(item) for item in self.cache["items"] if item["id"] not in known)
        return {"items": items, "fetchedAt": self.cache["fetchedAt"], "stale": stale}

    def resolve_install(self, extension_id: str) -> dict:
        for item in self.list_items()["items"]:
            if item["id"] == extension_id:
                return {"id": item["id"], "type": item["type"], "pluginId": item.get("pluginId")}
        raise StackSpecError("extension_not_found", f"Extension not in catalog: {extension_id}", "id")
