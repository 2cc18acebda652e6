"""Render a stack spec plus secret values into staged artifacts.

Everything here is pure: no filesystem access, no clock, no randomness.
Identical input renders byte-identical output.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Tuple

from jinja2 import Environment, StrictUndefined

from stack_spec import (
    BUILTIN_CHANNELS,
    CONFIGURABLE_CORE_SERVICES,
    CORE_SECRET_REQUIREMENTS,
    Exposure,
    ExtensionType,
    StackSpec,
    channel_secret_env_name,
    enabled_channels,
    resolve_exposure,
)
from stackpilot.canonical_json import canonical_dumps
from stackpilot.env_file import env_with_header
from stackpilot.spec_hash import spec_hash


CADDYFILE_PATH = "caddy/Caddyfile"
ROUTES_DIR = "caddy/routes"
PUBLIC_ROUTES_DIR = "caddy/routes/public"
LAN_ROUTES_DIR = "caddy/routes/lan"
USER_OVERRIDE_PATH = "caddy/routes/extra-user-overrides.caddy"
USER_OVERRIDE_CONTENT = "# user-managed overrides\n"
COMPOSE_PATH = "docker-compose.yml"
CORE_SECRETS_DIR = "secrets/core"
GATEWAY_SECRETS_DIR = "secrets/gateway"
CHANNEL_SECRETS_DIR = "secrets/channels"
CHANNEL_CONFIG_DIR = "channels"
SERVICE_CONFIG_DIR = "services"
PLUGIN_MANIFEST_PATH = "plugins.json"

# directories whose contents are owned by the generator and reconciled on every stage
MANAGED_DIRS = (
    PUBLIC_ROUTES_DIR,
    LAN_ROUTES_DIR,
    CORE_SECRETS_DIR,
    GATEWAY_SECRETS_DIR,
    CHANNEL_SECRETS_DIR,
    CHANNEL_CONFIG_DIR,
    SERVICE_CONFIG_DIR,
)

NETWORK = "assistant_net"
GATEWAY_URL = "http://gateway:8080"
ADMIN_PORT = 8100
ASSISTANT_PORT = 4096
MEMORY_PORT = 8765
HOST_ONLY_RANGES = "127.0.0.0/8 ::1"
LAN_RANGES = "127.0.0.0/8 10.0.0.0/8 172.16.0.0/12 192.168.0.0/16 ::1 fd00::/8"

_CADDYFILE_TEMPLATE = """\
{
	admin off
{% if email %}
	email {{ email }}
{% endif %}
}

:80 {
	@lan remote_ip {{ lan_ranges }}
	@not_lan not remote_ip {{ lan_ranges }}

	handle /admin* {
{% if not admin_public %}
		abort @not_lan
{% endif %}
		reverse_proxy admin:{{ admin_port }}
	}

	import /etc/caddy/routes/public/*.caddy
	import /etc/caddy/routes/lan/*.caddy
	import /etc/caddy/routes/extra-user-overrides.caddy

	handle {
		abort @not_lan
		reverse_proxy assistant:{{ assistant_port }}
	}
}
"""

_ROUTE_TEMPLATE = """\
handle /channels/{{ name }}* {
{% if lan_only %}
	abort @not_lan
{% endif %}
	rewrite * {{ rewrite_path }}
	reverse_proxy channel-{{ name }}:{{ port }}
}
"""

_COMPOSE_TEMPLATE = """\
# Generated by stackpilot. Changes are overwritten on the next render.
services:
{% for svc in services %}
  {{ svc.name }}:
    image: {{ svc.image | q }}
    restart: unless-stopped
{% if svc.env_file %}
    env_file:
{% for path in svc.env_file %}
      - {{ path | q }}
{% endfor %}
{% endif %}
{% if svc.environment %}
    environment:
{% for pair in svc.environment %}
      {{ pair[0] }}: {{ pair[1] | q }}
{% endfor %}
{% endif %}
{% if svc.ports %}
    ports:
{% for port in svc.ports %}
      - {{ port | q }}
{% endfor %}
{% endif %}
{% if svc.volumes %}
    volumes:
{% for volume in svc.volumes %}
      - {{ volume | q }}
{% endfor %}
{% endif %}
{% if svc.depends_on %}
    depends_on:
{% for dep in svc.depends_on %}
      - {{ dep }}
{% endfor %}
{% endif %}
    networks:
      - {{ network }}
{% endfor %}

networks:
  {{ network }}:
    driver: bridge

volumes:
{% for volume in named_volumes %}
  {{ volume }}:
{% endfor %}
"""


def _quote(value: Any) -> str:
    return json.dumps(str(value), ensure_ascii=False)


def _env() -> Environment:
    env = Environment(
        autoescape=False,
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["q"] = _quote
    return env


_ENV = _env()
_CADDYFILE = _ENV.from_string(_CADDYFILE_TEMPLATE)
_ROUTE = _ENV.from_string(_ROUTE_TEMPLATE)
_COMPOSE = _ENV.from_string(_COMPOSE_TEMPLATE)


def stack_image(name: str) -> str:
    return "${STACKPILOT_IMAGE_NAMESPACE:-stackpilot}/" + name + ":${STACKPILOT_IMAGE_TAG:-latest}"


def channel_port(name: str, channel: dict) -> int:
    builtin = BUILTIN_CHANNELS.get(name)
    return builtin["port"] if builtin else channel["containerPort"]


def channel_rewrite_path(name: str, channel: dict) -> str:
    builtin = BUILTIN_CHANNELS.get(name)
    return builtin["rewritePath"] if builtin else channel["rewritePath"]


def _lan_ranges(access_scope: str) -> str:
    scope = Exposure(access_scope)
    if scope is Exposure.HOST:
        return HOST_ONLY_RANGES
    if scope in (Exposure.LAN, Exposure.PUBLIC):
        return LAN_RANGES
    raise AssertionError(scope)  # pragma: no cover


def render_caddyfile(spec: StackSpec) -> str:
    return _CADDYFILE.render(
        email=spec["caddy"].get("email"),
        lan_ranges=_lan_ranges(spec["accessScope"]),
        admin_public=spec["accessScope"] == Exposure.PUBLIC.value,
        admin_port=ADMIN_PORT,
        assistant_port=ASSISTANT_PORT,
    )


def render_routes(spec: StackSpec) -> Dict[str, str]:
    """One route file per enabled channel, keyed by its path under caddy/routes."""
    routes: Dict[str, str] = {}
    for name in enabled_channels(spec):
        channel = spec["channels"][name]
        exposure = resolve_exposure(channel)
        if exposure is Exposure.PUBLIC:
            bucket, lan_only = "public", False
        elif exposure in (Exposure.LAN, Exposure.HOST):
            bucket, lan_only = "lan", True
        else:  # pragma: no cover
            raise AssertionError(exposure)
        routes[f"{bucket}/{name}.caddy"] = _ROUTE.render(
            name=name,
            lan_only=lan_only,
            rewrite_path=channel_rewrite_path(name, channel),
            port=channel_port(name, channel),
        )
    return routes


def _secret(values: Dict[str, str], name: str) -> str:
    if not name:
        return ""
    return values.get(name, "")


def render_core_secrets(spec: StackSpec, secret_values: Dict[str, str]) -> Dict[str, str]:
    files: Dict[str, str] = {}
    for name, service in CORE_SECRET_REQUIREMENTS:
        files[service] = env_with_header(f"# Generated {service} secrets", [(name, _secret(secret_values, name))])
    entries: List[Tuple[str, str]] = []
    for conn in spec["connections"]:
        for key in sorted(conn["env"]):
            entries.append((key, _secret(secret_values, conn["env"][key])))
    files["assistant"] = env_with_header("# Generated assistant connection secrets", entries)
    return files


def render_channel_secrets(spec: StackSpec, secret_values: Dict[str, str]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Gateway-facing and channel-facing secret files for every channel, enabled or not.

    Only enabled channels are wired into the manifest; the files for the rest stay
    staged so a mapping can be inspected before the channel is switched on.
    """
    gateway: Dict[str, str] = {}
    channel_side: Dict[str, str] = {}
    mappings = spec["secrets"]
    for name in sorted(spec["channels"]):
        variable = channel_secret_env_name(name)
        gateway_ref = mappings["gatewayChannelSecrets"].get(name, "")
        channel_ref = mappings["channelServiceSecrets"].get(name, "")
        gateway[name] = env_with_header(
            f"# Generated gateway secrets for channel {name}", [(variable, _secret(secret_values, gateway_ref))]
        )
        channel_side[name] = env_with_header(
            f"# Generated {name} channel secrets", [(variable, _secret(secret_values, channel_ref))]
        )
    return gateway, channel_side


def render_channel_configs(spec: StackSpec) -> Dict[str, str]:
    configs: Dict[str, str] = {}
    for name in sorted(spec["channels"]):
        config = spec["channels"][name]["config"]
        configs[name] = env_with_header(f"# Generated {name} channel config", [(k, config[k]) for k in sorted(config)])
    return configs


def _custom_services(spec: StackSpec) -> List[str]:
    return [
        name
        for name, svc in sorted(spec["services"].items())
        if name not in CONFIGURABLE_CORE_SERVICES and svc.get("enabled")
    ]


def render_service_configs(spec: StackSpec) -> Dict[str, str]:
    configs: Dict[str, str] = {}
    for name in sorted(CONFIGURABLE_CORE_SERVICES) + _custom_services(spec):
        config = (spec["services"].get(name) or {}).get("config") or {}
        configs[name] = env_with_header(f"# Generated {name} service config", [(k, config[k]) for k in sorted(config)])
    return configs


def render_plugin_manifest(spec: StackSpec) -> Tuple[List[str], str]:
    plugins: List[str] = []
    for ext in spec["extensions"]:
        kind = ExtensionType(ext["type"])
        if kind is ExtensionType.PLUGIN:
            if ext.get("enabled") and ext["pluginId"] not in plugins:
                plugins.append(ext["pluginId"])
        elif kind in (ExtensionType.SKILL, ExtensionType.COMMAND, ExtensionType.AGENT, ExtensionType.TOOL):
            continue
        else:  # pragma: no cover
            raise AssertionError(kind)
    return plugins, canonical_dumps({"plugin": plugins}, indent=2)


def compose_services(spec: StackSpec) -> List[Dict[str, Any]]:
    """Service definitions in manifest order: core services, channels, then custom services."""
    channels = enabled_channels(spec)
    services: List[Dict[str, Any]] = [
        {
            "name": "caddy",
            "image": "caddy:2-alpine",
            "ports": ["80:80", "443:443"],
            "volumes": [
                "./caddy/Caddyfile:/etc/caddy/Caddyfile:ro",
                "./caddy/routes:/etc/caddy/routes:ro",
                "caddy_data:/data",
            ],
            "depends_on": ["admin", "gateway"],
        },
        {
            "name": "postgres",
            "image": "postgres:16-alpine",
            "env_file": [f"{CORE_SECRETS_DIR}/postgres.env"],
            "environment": [("POSTGRES_DB", "stackpilot"), ("POSTGRES_USER", "stackpilot")],
            "volumes": ["postgres_data:/var/lib/postgresql/data"],
        },
        {
            "name": "qdrant",
            "image": "qdrant/qdrant:latest",
            "volumes": ["qdrant_data:/qdrant/storage"],
        },
        {
            "name": "memory",
            "image": stack_image("memory"),
            "env_file": [f"{SERVICE_CONFIG_DIR}/memory.env"],
            "environment": [("POSTGRES_HOST", "postgres"), ("QDRANT_HOST", "qdrant")],
            "depends_on": ["postgres", "qdrant"],
        },
        {
            "name": "assistant",
            "image": stack_image("assistant"),
            "env_file": [f"{CORE_SECRETS_DIR}/assistant.env", f"{SERVICE_CONFIG_DIR}/assistant.env"],
            "environment": [("MEMORY_URL", f"http://memory:{MEMORY_PORT}")],
            "volumes": [f"./{PLUGIN_MANIFEST_PATH}:/app/plugins.json:ro"],
            "depends_on": ["memory"],
        },
        {
            "name": "gateway",
            "image": stack_image("gateway"),
            "env_file": [f"{GATEWAY_SECRETS_DIR}/{name}.env" for name in channels]
            + [f"{SERVICE_CONFIG_DIR}/gateway.env"],
            "environment": [("ASSISTANT_URL", f"http://assistant:{ASSISTANT_PORT}")],
            "depends_on": ["assistant"],
        },
        {
            "name": "admin",
            "image": stack_image("admin"),
            "env_file": [f"{CORE_SECRETS_DIR}/admin.env", f"{SERVICE_CONFIG_DIR}/admin.env"],
            "environment": [("STACKPILOT_STATE_DIR", "/state")],
            "volumes": ["./:/state"],
        },
    ]
    for name in channels:
        channel = spec["channels"][name]
        port = channel_port(name, channel)
        services.append(
            {
                "name": f"channel-{name}",
                "image": stack_image(f"channel-{name}") if name in BUILTIN_CHANNELS else channel["image"],
                "env_file": [f"{CHANNEL_CONFIG_DIR}/{name}.env", f"{CHANNEL_SECRETS_DIR}/{name}.env"],
                "environment": [("GATEWAY_URL", GATEWAY_URL), ("PORT", str(port))],
                "depends_on": ["gateway"],
            }
        )
    custom = _custom_services(spec)
    rendered = {svc["name"] for svc in services} | set(custom)
    for name in custom:
        svc = spec["services"][name]
        environment = [("PORT", str(svc["containerPort"]))] if svc.get("containerPort") else []
        services.append(
            {
                "name": name,
                "image": svc["image"],
                "env_file": [f"{SERVICE_CONFIG_DIR}/{name}.env"],
                "environment": environment,
                "depends_on": [dep for dep in svc.get("dependsOn") or [] if dep in rendered],
            }
        )
    return services


def compose_entry(svc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": svc["name"],
        "image": svc["image"],
        "env_file": list(svc.get("env_file") or []),
        "environment": [list(pair) for pair in svc.get("environment") or []],
        "ports": list(svc.get("ports") or []),
        "volumes": list(svc.get("volumes") or []),
        "depends_on": list(svc.get("depends_on") or []),
    }


def service_digests(services: List[Dict[str, Any]]) -> Dict[str, str]:
    """Digest of each service's manifest entry, so a change can be traced to the services it touches."""
    return {svc["name"]: spec_hash(compose_entry(svc)) for svc in services}


def render_compose(services: List[Dict[str, Any]]) -> str:
    named = sorted(
        {
            volume.split(":", 1)[0]
            for svc in services
            for volume in svc.get("volumes") or []
            if not volume.startswith((".", "/"))
        }
    )
    return _COMPOSE.render(
        services=[compose_entry(svc) for svc in services],
        network=NETWORK,
        named_volumes=named,
    )


def generate_artifacts(spec: StackSpec, secret_values: Dict[str, str]) -> Dict[str, Any]:
    services = compose_services(spec)
    gateway_secrets, channel_secrets = render_channel_secrets(spec, secret_values)
    plugins, plugin_manifest = render_plugin_manifest(spec)
    return {
        "caddyfile": render_caddyfile(spec),
        "routes": render_routes(spec),
        "compose": render_compose(services),
        "coreSecrets": render_core_secrets(spec, secret_values),
        "gatewaySecrets": gateway_secrets,
        "channelSecrets": channel_secrets,
        "channelConfigs": render_channel_configs(spec),
        "serviceConfigs": render_service_configs(spec),
        "plugins": plugins,
        "pluginManifest": plugin_manifest,
        "services": [svc["name"] for svc in services],
        "serviceDigests": service_digests(services),
        "dependencies": {svc["name"]: list(svc.get("depends_on") or []) for svc in services},
    }


def artifact_files(artifacts: Dict[str, Any]) -> Dict[str, str]:
    """Flatten generated artifacts into ``relative path -> content``."""
    files = {
        CADDYFILE_PATH: artifacts["caddyfile"],
        COMPOSE_PATH: artifacts["compose"],
        PLUGIN_MANIFEST_PATH: artifacts["pluginManifest"],
    }
    for rel, content in artifacts["routes"].items():
        files[f"{ROUTES_DIR}/{rel}"] = content
    for key, directory in (
        ("coreSecrets", CORE_SECRETS_DIR),
        ("gatewaySecrets", GATEWAY_SECRETS_DIR),
        ("channelSecrets", CHANNEL_SECRETS_DIR),
        ("channelConfigs", CHANNEL_CONFIG_DIR),
        ("serviceConfigs", SERVICE_CONFIG_DIR),
    ):
        for name, content in artifacts[key].items():
            files[f"{directory}/{name}.env"] = content
    return {path: files[path] for path in sorted(files)}
