"""Classify artifact changes into service reload/restart/up/down actions."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List

from stack_generator import (
    CADDYFILE_PATH,
    CHANNEL_CONFIG_DIR,
    CHANNEL_SECRETS_DIR,
    COMPOSE_PATH,
    CORE_SECRETS_DIR,
    GATEWAY_SECRETS_DIR,
    PLUGIN_MANIFEST_PATH,
    ROUTES_DIR,
    SERVICE_CONFIG_DIR,
)


ROUTER_SERVICE = "caddy"
GATEWAY_SERVICE = "gateway"
ASSISTANT_SERVICE = "assistant"
MEMORY_SERVICE = "memory"
# the admin API runs the apply itself, so its restarts are reported instead of issued
SELF_SERVICE = "admin"


def empty_changes() -> Dict[str, Any]:
    return {
        "routingChanged": False,
        "gatewaySecretsChanged": False,
        "channelConfigChanged": [],
        "assistantChanged": False,
        "memoryChanged": False,
        "serviceConfigChanged": [],
        "manifestChanged": [],
        "composeChanged": False,
        "servicesAdded": [],
        "servicesRemoved": [],
    }


def _dedupe(items: Iterable[str]) -> List[str]:
    return sorted(set(items))


def compute_impact(changes: Dict[str, Any]) -> Dict[str, List[str]]:
    """Routing changes only need a proxy reload; everything else restarts.

    ``composeChanged`` alone restarts nothing: the services whose own manifest
    entry changed arrive in ``manifestChanged``. Restarts of the admin service
    land in ``deferred``.
    """
    reload: List[str] = []
    restart: List[str] = []
    if changes.get("routingChanged"):
        reload.append(ROUTER_SERVICE)
    if changes.get("gatewaySecretsChanged"):
        restart.append(GATEWAY_SERVICE)
    for channel in changes.get("channelConfigChanged") or []:
        restart.append(f"channel-{channel}")
    if changes.get("assistantChanged"):
        restart.append(ASSISTANT_SERVICE)
    if changes.get("memoryChanged"):
        restart.append(MEMORY_SERVICE)
    restart.extend(changes.get("serviceConfigChanged") or [])
    restart.extend(changes.get("manifestChanged") or [])
    up = _dedupe(changes.get("servicesAdded") or [])
    down = _dedupe(changes.get("servicesRemoved") or [])
    skip = set(up) | set(down)
    restart = [svc for svc in _dedupe(restart) if svc not in skip and svc not in reload]
    return {
        "reload": [svc for svc in _dedupe(reload) if svc not in skip],
        "restart": [svc for svc in restart if svc != SELF_SERVICE],
        "up": up,
        "down": down,
        "deferred": [svc for svc in restart if svc == SELF_SERVICE],
    }


def diff_service_sets(existing: Iterable[str], generated: Iterable[str]) -> Dict[str, List[str]]:
    before = set(existing)
    after = set(generated)
    return {"added": sorted(after - before), "removed": sorted(before - after)}


def _changed_paths(existing: Dict[str, str], generated: Dict[str, str]) -> List[str]:
    paths = set(existing) | set(generated)
    return sorted(path for path in paths if existing.get(path) != generated.get(path))


def _name_in(path: str, directory: str) -> str | None:
    prefix = f"{directory}/"
    if path.startswith(prefix) and path.endswith(".env"):
        return path[len(prefix) : -len(".env")]
    return None


def diff_artifact_files(
    existing: Dict[str, str],
    generated: Dict[str, str],
    existing_services: Dict[str, str],
    generated_services: Dict[str, str],
) -> Dict[str, Any]:
    """Derive change flags from two ``path -> digest`` maps and two ``service -> entry digest`` maps.

    File changes only count for services the generated manifest runs: a secret
    file staged for a disabled channel restarts nothing.
    """
    changes = empty_changes()
    service_diff = diff_service_sets(existing_services, generated_services)
    changes["servicesAdded"] = service_diff["added"]
    changes["servicesRemoved"] = service_diff["removed"]
    changes["manifestChanged"] = sorted(
        name
        for name, digest in generated_services.items()
        if name in existing_services and existing_services[name] != digest
    )
    channel_changes: set[str] = set()
    service_changes: set[str] = set()
    for path in _changed_paths(existing, generated):
        channel = _name_in(path, CHANNEL_CONFIG_DIR) or _name_in(path, CHANNEL_SECRETS_DIR)
        if path == CADDYFILE_PATH or path.startswith(f"{ROUTES_DIR}/"):
            changes["routingChanged"] = True
        elif path == COMPOSE_PATH:
            changes["composeChanged"] = True
        elif path == PLUGIN_MANIFEST_PATH:
            changes["assistantChanged"] = True
        elif _name_in(path, GATEWAY_SECRETS_DIR):
            if f"channel-{_name_in(path, GATEWAY_SECRETS_DIR)}" in generated_services:
                changes["gatewaySecretsChanged"] = True
        elif channel:
            if f"channel-{channel}" in generated_services:
                channel_changes.add(channel)
        elif _name_in(path, CORE_SECRETS_DIR):
            service_changes.add(_name_in(path, CORE_SECRETS_DIR))
        elif _name_in(path, SERVICE_CONFIG_DIR):
            service_changes.add(_name_in(path, SERVICE_CONFIG_DIR))
    service_changes &= set(generated_services)
    if ASSISTANT_SERVICE in service_changes:
        service_changes.discard(ASSISTANT_SERVICE)
        changes["assistantChanged"] = True
    if MEMORY_SERVICE in service_changes:
        service_changes.discard(MEMORY_SERVICE)
        changes["memoryChanged"] = True
    if GATEWAY_SERVICE in service_changes:
        service_changes.discard(GATEWAY_SERVICE)
        changes["gatewaySecretsChanged"] = True
    changes["channelConfigChanged"] = sorted(channel_changes)
    changes["serviceConfigChanged"] = sorted(service_changes)
    return changes
