"""Owns the on-disk stack spec and secret store, and stages generated artifacts."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Tuple

import stack_spec
from stack_generator import (
    MANAGED_DIRS,
    USER_OVERRIDE_CONTENT,
    USER_OVERRIDE_PATH,
    artifact_files,
    generate_artifacts,
)
from stack_spec import StackSpec, StackSpecError
from stackpilot.canonical_json import canonical_dumps

from app.automations import SYSTEM_AUTOMATIONS, merge_jobs, system_automation, system_automation_ids
from app.catalog import ExtensionCatalog
from app.secrets import list_secret_manager_state, normalize_secret_name, normalize_secret_value
from app.stores import SECRET_FILE_MODE, SecretFileStore, SpecFileStore, StackTransaction, atomic_write_text, read_text


logger = logging.getLogger("stackpilot.stack")

SPEC_FILENAME = "stack-spec.json"
SECRETS_FILENAME = "secrets.env"
AUTOMATIONS_PATH = "automations.json"
HISTORY_FILENAME = "automation-history.jsonl"
APPLIED_FILENAME = "applied-artifacts.json"


def file_digests(files: Dict[str, str]) -> Dict[str, str]:
    return {path: "sha256:" + hashlib.sha256(content.encode("utf-8")).hexdigest() for path, content in files.items()}


class StackManager:
    def __init__(self, data_dir: Path | str, state_dir: Path | str, catalog: ExtensionCatalog | None = None) -> None:
        self.data_dir = Path(data_dir)
        self.state_dir = Path(state_dir)
        self.catalog = catalog or ExtensionCatalog()
        self.spec_store = SpecFileStore(self.data_dir / SPEC_FILENAME)
        self.secret_store = SecretFileStore(self.data_dir / SECRETS_FILENAME)
        self._lock = threading.RLock()

    @property
    def history_path(self) -> Path:
        return self.data_dir / HISTORY_FILENAME

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def transaction(self) -> StackTransaction:
        return StackTransaction(self.spec_store, self.secret_store, self._lock)

    # -- reads -------------------------------------------------------------

    def get_spec(self) -> StackSpec:
        """Current spec; the defaults are persisted on first read."""
        if self.spec_store.read_text() is None:
            with self.transaction() as tx:
                tx.commit()
                logger.info("stack_spec_created path=%s", self.spec_store.path)
                return tx.spec
        return self.spec_store.load()

    def read_state(self) -> Tuple[StackSpec, Dict[str, str]]:
        with self._lock:
            return self.get_spec(), self.secret_store.load()

    def list_secret_manager_state(self) -> dict:
        spec, values = self.read_state()
        return list_secret_manager_state(spec, values)

    def list_automations(self) -> List[dict]:
        return merge_jobs(SYSTEM_AUTOMATIONS, self.get_spec()["automations"])

    def applied_record(self) -> Dict[str, Dict[str, str]]:
        """File and service-entry digests the running stack was last applied with; empty before the first apply."""
        text = read_text(self.data_dir / APPLIED_FILENAME)
        if text is None:
            return {"files": {}, "services": {}}
        try:
            record = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StackSpecError("invalid_applied_record", f"Applied record is not valid JSON: {exc}", APPLIED_FILENAME) from exc
        return {"files": dict(record.get("files") or {}), "services": dict(record.get("services") or {})}

    def record_applied(self, digests: Dict[str, str], services: Dict[str, str], revision: str) -> None:
        record = {"files": digests, "services": services, "revision": revision}
        atomic_write_text(self.data_dir / APPLIED_FILENAME, canonical_dumps(record, indent=2))
        logger.info("stack_applied_recorded revision=%s files=%s services=%s", revision, len(digests), len(services))

    # -- staging -----------------------------------------------------------

    def build_files(self, spec: StackSpec, secret_values: Dict[str, str]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        artifacts = generate_artifacts(spec, secret_values)
        files = artifact_files(artifacts)
        files[AUTOMATIONS_PATH] = canonical_dumps(merge_jobs(SYSTEM_AUTOMATIONS, spec["automations"]), indent=2)
        return artifacts, files

    def stage(self, files: Dict[str, str]) -> dict:
        """Write every file that differs, then drop managed files absent from ``files``.

        The user override file is created once and never rewritten or removed.
        """
        with self._lock:
            written: List[str] = []
            removed: List[str] = []
            try:
                for rel, content in files.items():
                    path = self.state_dir / rel
                    if read_text(path) == content:
                        continue
                    atomic_write_text(path, content, SECRET_FILE_MODE if rel.startswith("secrets/") else None)
                    written.append(rel)
                override = self.state_dir / USER_OVERRIDE_PATH
                if not override.exists():
                    atomic_write_text(override, USER_OVERRIDE_CONTENT)
                    written.append(USER_OVERRIDE_PATH)
                for directory in MANAGED_DIRS:
                    base = self.state_dir / directory
                    base.mkdir(parents=True, exist_ok=True)
                    for path in sorted(base.iterdir()):
                        rel = path.relative_to(self.state_dir).as_posix()
                        if path.is_file() and rel not in files:
                            path.unlink()
                            removed.append(rel)
            except OSError:
                logger.exception("artifacts_stage_failed state_dir=%s", self.state_dir)
                raise
            logger.info("artifacts_staged written=%s removed=%s", len(written), len(removed))
            return {"written": written, "removed": removed}

    def render_artifacts(self) -> dict:
        with self._lock:
            spec, values = self.read_state()
            artifacts, files = self.build_files(spec, values)
            result = self.stage(files)
            return dict(result, plugins=artifacts["plugins"], services=artifacts["services"])

    # -- mutations ---------------------------------------------------------

    def _mutate(self, event: str, change: Callable[[StackTransaction], StackSpec], **fields: Any) -> StackSpec:
        try:
            with self.transaction() as tx:
                tx.spec = change(tx)
                tx.commit()
                _, files = self.build_files(tx.spec, tx.secret_values)
                self.stage(files)
        except StackSpecError as exc:
            logger.info("stack_mutation_rejected event=%s code=%s path=%s", event, exc.code, exc.path)
            raise
        except OSError:
            logger.exception("stack_mutation_io_failed event=%s", event)
            raise
        details = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        logger.info("stack_mutation event=%s %s", event, details)
        return tx.spec

    def set_access_scope(self, scope: str) -> StackSpec:
        return self._mutate("set_access_scope", lambda tx: stack_spec.set_access_scope(tx.spec, scope), scope=scope)

    def set_channel_access(self, channel: str, **changes: Any) -> StackSpec:
        return self._mutate(
            "set_channel_access",
            lambda tx: stack_spec.set_channel_access(tx.spec, channel, **changes),
            channel=channel,
        )

    def set_channel_config(self, channel: str, config: dict) -> StackSpec:
        return self._mutate(
            "set_channel_config", lambda tx: stack_spec.set_channel_config(tx.spec, channel, config), channel=channel
        )

    def upsert_channel(self, name: str, channel: dict) -> StackSpec:
        return self._mutate("upsert_channel", lambda tx: stack_spec.upsert_channel(tx.spec, name, channel), channel=name)

    def delete_channel(self, name: str) -> StackSpec:
        return self._mutate("delete_channel", lambda tx: stack_spec.delete_channel(tx.spec, name), channel=name)

    def map_channel_secret(self, channel: str, target: str, name: str) -> StackSpec:
        return self._mutate(
            "map_channel_secret",
            lambda tx: stack_spec.map_channel_secret(tx.spec, channel, target, normalize_secret_name(name)),
            channel=channel,
            target=target,
        )

    def upsert_secret(self, name: str, value: str) -> StackSpec:
        name = normalize_secret_name(name)

        def change(tx: StackTransaction) -> StackSpec:
            spec = stack_spec.add_secret_name(tx.spec, name)
            tx.set_secret(name, normalize_secret_value(value))
            return spec

        return self._mutate("upsert_secret", change, name=name)

    def delete_secret(self, name: str) -> StackSpec:
        name = normalize_secret_name(name)

        def change(tx: StackTransaction) -> StackSpec:
            spec = stack_spec.remove_secret_name(tx.spec, name)
            tx.remove_secret(name)
            return spec

        return self._mutate("delete_secret", change, name=name)

    def upsert_connection(self, connection: dict) -> StackSpec:
        return self._mutate(
            "upsert_connection",
            lambda tx: stack_spec.upsert_connection(tx.spec, connection),
            connection=connection.get("id") if isinstance(connection, dict) else None,
        )

    def delete_connection(self, connection_id: str) -> StackSpec:
        return self._mutate(
            "delete_connection", lambda tx: stack_spec.delete_connection(tx.spec, connection_id), connection=connection_id
        )

    def install_extension(self, extension_id: str, connection_ids: List[str] | None = None, enabled: bool = True) -> StackSpec:
        resolved = self.catalog.resolve_install(extension_id)
        extension = dict(resolved, enabled=enabled, connectionIds=list(connection_ids or []))
        return self._mutate(
            "install_extension",
            lambda tx: stack_spec.set_extension_installed(tx.spec, extension, True),
            extension=extension_id,
        )

    def uninstall_extension(self, extension_id: str) -> StackSpec:
        return self._mutate(
            "uninstall_extension",
            lambda tx: stack_spec.set_extension_installed(tx.spec, {"id": extension_id}, False),
            extension=extension_id,
        )

    def set_extension_enabled(self, extension_id: str, enabled: bool) -> StackSpec:
        return self._mutate(
            "set_extension_enabled",
            lambda tx: stack_spec.set_extension_enabled(tx.spec, extension_id, enabled),
            extension=extension_id,
            enabled=enabled,
        )

    def upsert_automation(self, automation: dict) -> StackSpec:
        automation_id = automation.get("id") if isinstance(automation, dict) else None
        is_system = automation_id in system_automation_ids()
        return self._mutate(
            "upsert_automation",
            lambda tx: stack_spec.upsert_automation(tx.spec, automation, core=is_system),
            automation=automation_id,
        )

    def set_automation_enabled(self, automation_id: str, enabled: bool) -> StackSpec:
        return self._mutate(
            "set_automation_enabled",
            lambda tx: stack_spec.set_automation_enabled(tx.spec, automation_id, enabled, seed=system_automation(automation_id)),
            automation=automation_id,
            enabled=enabled,
        )

    def delete_automation(self, automation_id: str) -> StackSpec:
        return self._mutate(
            "delete_automation",
            lambda tx: stack_spec.delete_automation(tx.spec, automation_id, core_ids=system_automation_ids()),
            automation=automation_id,
        )

    def upsert_service(self, name: str, service: dict) -> StackSpec:
        return self._mutate("upsert_service", lambda tx: stack_spec.upsert_service(tx.spec, name, service), service=name)

    def delete_service(self, name: str) -> StackSpec:
        return self._mutate("delete_service", lambda tx: stack_spec.delete_service(tx.spec, name), service=name)
