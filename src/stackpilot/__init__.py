"""stackpilot kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps
from .env_file import (
    env_with_header,
    format_env_value,
    parse_env_content,
    sanitize_env_scalar,
    update_env_content,
)
from .spec_hash import spec_hash

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "env_with_header",
    "format_env_value",
    "parse_env_content",
    "sanitize_env_scalar",
    "spec_hash",
    "update_env_content",
]
