import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import stack_spec
from stack_generator import (
    artifact_files,
    generate_artifacts,
    render_caddyfile,
    render_plugin_manifest,
    render_routes,
)
from stack_spec import default_stack_spec


SECRETS = {"ADMIN_TOKEN": "admin-secret", "POSTGRES_PASSWORD": "pg", "CHANNEL_CHAT_SECRET": "chat-secret"}


class TestStackGenerator(unittest.TestCase):
    def setUp(self) -> None:
        self.spec = stack_spec.set_channel_access(default_stack_spec(), "chat", enabled=True)

    def test_generation_is_deterministic(self) -> None:
        first = artifact_files(generate_artifacts(self.spec, SECRETS))
        second = artifact_files(generate_artifacts(self.spec, dict(SECRETS)))
        self.assertEqual(first, second)

    def test_unset_exposure_goes_to_lan_bucket(self) -> None:
        routes = render_routes(self.spec)
        self.assertEqual(list(routes), ["lan/chat.caddy"])
        self.assertIn("abort @not_lan", routes["lan/chat.caddy"])
        self.assertIn("rewrite * /chat", routes["lan/chat.caddy"])
        self.assertIn("reverse_proxy channel-chat:8181", routes["lan/chat.caddy"])

    def test_public_channel_has_no_lan_guard(self) -> None:
        spec = stack_spec.set_channel_access(self.spec, "telegram", enabled=True, exposure="public")
        routes = render_routes(spec)
        self.assertIn("public/telegram.caddy", routes)
        self.assertNotIn("abort", routes["public/telegram.caddy"])

    def test_disabled_channels_have_no_route(self) -> None:
        self.assertEqual(render_routes(default_stack_spec()), {})

    def test_access_scope_host(self) -> None:
        caddyfile = render_caddyfile(stack_spec.set_access_scope(self.spec, "host"))
        self.assertIn("@lan remote_ip 127.0.0.0/8 ::1\n", caddyfile)
        self.assertNotIn("192.168.0.0/16", caddyfile)

    def test_access_scope_public_opens_admin(self) -> None:
        lan = render_caddyfile(self.spec)
        public = render_caddyfile(stack_spec.set_access_scope(self.spec, "public"))
        self.assertIn("abort @not_lan\n\t\treverse_proxy admin:8100", lan)
        self.assertNotIn("abort @not_lan\n\t\treverse_proxy admin:8100", public)
        # the assistant fallback stays LAN-only
        self.assertIn("abort @not_lan\n\t\treverse_proxy assistant:4096", public)

    def test_caddy_email(self) -> None:
        spec = stack_spec.parse_stack_spec(dict(self.spec, caddy={"email": "ops@example.com"}))
        self.assertIn("email ops@example.com", render_caddyfile(spec))
        self.assertNotIn("email", render_caddyfile(self.spec))

    def test_channel_secrets_for_every_channel(self) -> None:
        artifacts = generate_artifacts(self.spec, SECRETS)
        self.assertEqual(sorted(artifacts["gatewaySecrets"]), ["chat", "discord", "telegram", "voice"])
        self.assertEqual(sorted(artifacts["channelConfigs"]), ["chat", "discord", "telegram", "voice"])
        self.assertIn("CHANNEL_DISCORD_SECRET=\n", artifacts["gatewaySecrets"]["discord"])
        self.assertIn("CHANNEL_CHAT_SECRET=chat-secret\n", artifacts["gatewaySecrets"]["chat"])
        self.assertIn("CHANNEL_CHAT_SECRET=chat-secret\n", artifacts["channelSecrets"]["chat"])
        self.assertIn("ADMIN_TOKEN=admin-secret\n", artifacts["coreSecrets"]["admin"])

    def test_disabled_channel_mapping_is_rendered(self) -> None:
        spec = stack_spec.add_secret_name(self.spec, "FOO")
        spec = stack_spec.map_channel_secret(spec, "discord", "gateway", "FOO")
        artifacts = generate_artifacts(spec, dict(SECRETS, FOO="bar"))
        self.assertEqual(artifacts["gatewaySecrets"]["discord"], "# Generated gateway secrets for channel discord\nCHANNEL_DISCORD_SECRET=bar\n")
        gateway_env = artifacts["compose"].split("  gateway:\n", 1)[1].split("  admin:\n", 1)[0]
        self.assertIn("secrets/gateway/chat.env", gateway_env)
        self.assertNotIn("secrets/gateway/discord.env", gateway_env)
        self.assertNotIn("channel-discord", artifacts["services"])

    def test_service_digests_track_entries(self) -> None:
        before = generate_artifacts(self.spec, SECRETS)["serviceDigests"]
        after = generate_artifacts(stack_spec.set_channel_access(self.spec, "discord", enabled=True), SECRETS)["serviceDigests"]
        self.assertEqual(sorted(before), sorted(generate_artifacts(self.spec, SECRETS)["services"]))
        self.assertNotEqual(before["gateway"], after["gateway"])
        self.assertEqual(before["admin"], after["admin"])
        self.assertIn("channel-discord", after)

    def test_connection_env_goes_to_assistant_secrets(self) -> None:
        spec = stack_spec.add_secret_name(self.spec, "OPENAI_API_KEY")
        spec = stack_spec.upsert_connection(
            spec,
            {"id": "openai", "name": "OpenAI", "type": "ai_provider", "env": {"STACKPILOT_CONN_OPENAI": "OPENAI_API_KEY"}},
        )
        artifacts = generate_artifacts(spec, dict(SECRETS, OPENAI_API_KEY="sk-test"))
        self.assertIn("STACKPILOT_CONN_OPENAI=sk-test\n", artifacts["coreSecrets"]["assistant"])

    def test_compose_services(self) -> None:
        spec = stack_spec.upsert_service(self.spec, "searxng", {"image": "searxng/searxng:latest", "containerPort": 8080})
        artifacts = generate_artifacts(spec, SECRETS)
        self.assertEqual(
            artifacts["services"],
            ["caddy", "postgres", "qdrant", "memory", "assistant", "gateway", "admin", "channel-chat", "searxng"],
        )
        self.assertEqual(artifacts["dependencies"]["channel-chat"], ["gateway"])
        self.assertIn("  channel-chat:\n", artifacts["compose"])
        self.assertIn('image: "searxng/searxng:latest"', artifacts["compose"])
        self.assertIn("  caddy_data:\n", artifacts["compose"])

    def test_plugin_manifest(self) -> None:
        spec = stack_spec.set_extension_installed(
            self.spec, {"id": "memory-guard", "type": "plugin", "pluginId": "./plugins/memory-guard.ts"}, True
        )
        spec = stack_spec.set_extension_installed(
            spec, {"id": "telemetry", "type": "plugin", "pluginId": "./plugins/telemetry.ts", "enabled": False}, True
        )
        spec = stack_spec.set_extension_installed(spec, {"id": "action-gating", "type": "skill"}, True)
        plugins, manifest = render_plugin_manifest(spec)
        self.assertEqual(plugins, ["./plugins/memory-guard.ts"])
        self.assertEqual(manifest, '{\n  "plugin": [\n    "./plugins/memory-guard.ts"\n  ]\n}\n')

    def test_artifact_paths(self) -> None:
        files = artifact_files(generate_artifacts(self.spec, SECRETS))
        for path in (
            "caddy/Caddyfile",
            "caddy/routes/lan/chat.caddy",
            "docker-compose.yml",
            "plugins.json",
            "secrets/core/admin.env",
            "secrets/core/postgres.env",
            "secrets/core/assistant.env",
            "secrets/gateway/chat.env",
            "secrets/channels/chat.env",
            "channels/chat.env",
            "services/assistant.env",
        ):
            self.assertIn(path, files)
        self.assertEqual(list(files), sorted(files))


if __name__ == "__main__":
    unittest.main()
