"""File-backed stores for the stack spec and secret values.

Writes go to a temp file in the target directory and are renamed into place,
so readers always see a complete file. ``StackTransaction`` wraps one
read-modify-write of both files behind a single commit point.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict

from stack_spec import StackSpec, StackSpecError, default_stack_spec, parse_stack_spec
from stackpilot.canonical_json import canonical_dumps
from stackpilot.env_file import parse_env_content, update_env_content

from app.secrets import SecretStoreError


logger = logging.getLogger("stackpilot.stack")

SECRET_FILE_MODE = 0o600


def _write_temp(path: Path, content: str, mode: int | None = None) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
    except BaseException:
        _discard(tmp)
        raise
    return tmp


def _discard(tmp: str | None) -> None:
    if tmp and os.path.exists(tmp):
        os.unlink(tmp)


def atomic_write_text(path: Path, content: str, mode: int | None = None) -> None:
    tmp = _write_temp(path, content, mode)
    try:
        os.replace(tmp, path)
    except BaseException:
        _discard(tmp)
        raise


def read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


class SpecFileStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read_text(self) -> str | None:
        return read_text(self.path)

    def parse(self, text: str | None) -> StackSpec:
        if text is None:
            return default_stack_spec()
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StackSpecError("invalid_stack_spec_file", f"Spec file is not valid JSON: {exc}", str(self.path)) from exc
        return parse_stack_spec(raw)

    def load(self) -> StackSpec:
        return self.parse(self.read_text())

    def render(self, spec: StackSpec) -> str:
        return canonical_dumps(spec, indent=2)


class SecretFileStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read_text(self) -> str | None:
        try:
            return read_text(self.path)
        except UnicodeDecodeError as exc:
            raise SecretStoreError(f"Secret file is not UTF-8: {self.path}") from exc

    def load(self) -> Dict[str, str]:
        return parse_env_content(self.read_text() or "")

    def render(self, current: str | None, updates: Dict[str, str | None]) -> str:
        return update_env_content(current or "", updates)


class StackTransaction:
    """One locked read-modify-write of the spec and the secret store.

    Nothing touches disk until ``commit``. Temp files for both stores are
    written first; the renames are the commit point. If the spec rename fails
    the previous secret file is put back.
    """

    def __init__(self, spec_store: SpecFileStore, secret_store: SecretFileStore, lock: threading.RLock) -> None:
        self._spec_store = spec_store
        self._secret_store = secret_store
        self._lock = lock
        self._spec_text: str | None = None
        self._secret_text: str | None = None
        self._secret_updates: Dict[str, str | None] = {}
        self.spec: StackSpec = {}
        self.secret_values: Dict[str, str] = {}
        self.committed = False
        self.changed = False

    def __enter__(self) -> "StackTransaction":
        self._lock.acquire()
        try:
            self._spec_text = self._spec_store.read_text()
            self._secret_text = self._secret_store.read_text()
            self.spec = self._spec_store.parse(self._spec_text)
            self.secret_values = parse_env_content(self._secret_text or "")
        except BaseException:
            self._lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._lock.release()

    def set_secret(self, name: str, value: str) -> None:
        self._secret_updates[name] = value
        self.secret_values[name] = value

    def remove_secret(self, name: str) -> None:
        self._secret_updates[name] = None
        self.secret_values.pop(name, None)

    def commit(self) -> bool:
        """Persist both stores. Returns True when anything on disk changed."""
        if self.committed:
            raise RuntimeError("transaction already committed")
        spec_text = self._spec_store.render(self.spec)
        secret_text = self._secret_store.render(self._secret_text, self._secret_updates)
        write_spec = spec_text != self._spec_text
        write_secrets = secret_text != (self._secret_text or "") or (
            self._secret_text is None and self._secret_updates
        )
        spec_tmp = secret_tmp = None
        try:
            if write_secrets:
                secret_tmp = _write_temp(self._secret_store.path, secret_text, SECRET_FILE_MODE)
            if write_spec:
                spec_tmp = _write_temp(self._spec_store.path, spec_text)
            if secret_tmp:
                os.replace(secret_tmp, self._secret_store.path)
                secret_tmp = None
            if spec_tmp:
                try:
                    os.replace(spec_tmp, self._spec_store.path)
                    spec_tmp = None
                except OSError:
                    if write_secrets:
                        self._restore_secrets()
                    raise
        finally:
            _discard(secret_tmp)
            _discard(spec_tmp)
        self.committed = True
        self.changed = bool(write_spec or write_secrets)
        if self.changed:
            logger.info("stack_committed spec_written=%s secrets_written=%s", write_spec, bool(write_secrets))
        return self.changed

    def _restore_secrets(self) -> None:
        if self._secret_text is None:
            _discard(str(self._secret_store.path))
            return
        atomic_write_text(self._secret_store.path, self._secret_text, SECRET_FILE_MODE)
