"""Helpers for KEY=value env files."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Tuple


def sanitize_env_scalar(value: object) -> str:
    if value is None:
        return ""
    text = str(value).replace("\r", "").replace("\n", "")
    return text.strip()


def format_env_value(value: object) -> str:
    """Scalar as written to an env file; a value already wrapped in matching quotes gets one more pair."""
    text = sanitize_env_scalar(value)
    if _is_quoted(text):
        return f'"{text}"'
    return text


def _is_quoted(text: str) -> bool:
    return len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"')


def parse_env_content(content: str) -> Dict[str, str]:
    """Parse env text; comments and blank lines are ignored, values split on the first '='."""
    parsed: Dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip()
        if _is_quoted(value):
            value = value[1:-1]
        parsed[key] = value
    return parsed


def update_env_content(current: str, entries: Mapping[str, str | None]) -> str:
    """Rewrite managed keys in place and keep unmanaged lines.

    A None value removes the key. New keys are appended in the given order.
    """
    lines: list[str] = []
    seen: set[str] = set()
    for raw in current.splitlines():
        stripped = raw.strip()
        if stripped and not stripped.startswith("#") and "=" in stripped:
            key = stripped.split("=", 1)[0].strip()
            if key in entries:
                if key in seen:
                    continue
                seen.add(key)
                value = entries[key]
                if value is None:
                    continue
                lines.append(f"{key}={format_env_value(value)}")
                continue
        lines.append(raw)
    for key, value in entries.items():
        if key in seen or value is None:
            continue
        lines.append(f"{key}={format_env_value(value)}")
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines) + "\n" if lines else ""


def env_with_header(header: str, entries: Iterable[Tuple[str, str]]) -> str:
    out = [header]
    for key, value in entries:
        out.append(f"{key}={format_env_value(value)}")
    return "\n".join(out) + "\n"
