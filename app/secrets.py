from __future__ import annotations

from typing import Any, Dict, List

from stack_spec import (
    CORE_SECRET_REQUIREMENTS,
    SecretTarget,
    StackSpec,
    enabled_channels,
    is_valid_secret_name,
    secret_references,
)
from stackpilot.env_file import sanitize_env_scalar


class SecretStoreError(RuntimeError):
    pass


def normalize_secret_name(name: Any) -> str:
    return sanitize_env_scalar(name)


def normalize_secret_value(value: Any) -> str:
    return sanitize_env_scalar(value)


def dangling_references(spec: StackSpec) -> List[str]:
    available = set(spec["secrets"]["available"])
    return sorted(name for name in secret_references(spec) if name not in available)


def required_secrets(spec: StackSpec) -> Dict[str, List[str]]:
    """Secret names the generated artifacts actually consume, with their users.

    An enabled channel with no mapping is listed under ``<target>:<channel>`` so
    an apply can name it.
    """
    required: Dict[str, set] = {}

    def need(name: str, label: str) -> None:
        required.setdefault(name, set()).add(label)

    for name, service in CORE_SECRET_REQUIREMENTS:
        need(name, f"core:{service}")
    for conn in spec["connections"]:
        for value in conn["env"].values():
            need(value, f"connection:{conn['id']}")
    for channel in enabled_channels(spec):
        for target, key in (
            (SecretTarget.GATEWAY, "gatewayChannelSecrets"),
            (SecretTarget.CHANNEL, "channelServiceSecrets"),
        ):
            name = spec["secrets"][key].get(channel, "")
            label = f"{target.value}:{channel}"
            need(name or label, label)
    return {name: sorted(required[name]) for name in sorted(required)}


def missing_secret_values(spec: StackSpec, values: Dict[str, str]) -> List[str]:
    return [name for name in required_secrets(spec) if not is_valid_secret_name(name) or not values.get(name)]


def list_secret_manager_state(spec: StackSpec, values: Dict[str, str]) -> dict:
    refs = secret_references(spec)
    available = set(spec["secrets"]["available"])
    names = sorted(available | set(refs))
    return {
        "secrets": [
            {
                "name": name,
                "declared": name in available,
                "configured": bool(values.get(name)),
                "usedBy": refs.get(name, []),
            }
            for name in names
        ],
        "coreRequirements": [{"name": name, "service": service} for name, service in CORE_SECRET_REQUIREMENTS],
        "gatewayChannelSecrets": dict(spec["secrets"]["gatewayChannelSecrets"]),
        "channelServiceSecrets": dict(spec["secrets"]["channelServiceSecrets"]),
    }
