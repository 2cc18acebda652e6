"""Revision hashing for stack specs."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def spec_hash(spec_obj: Any) -> str:
    data = canonical_dumps(spec_obj).encode("utf-8")
    return "sha256:" + hashlib.sha256(data).hexdigest()
