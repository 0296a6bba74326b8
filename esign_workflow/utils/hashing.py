"""SHA-256 helpers for documents and evidence payloads"""

import hashlib
import json
from typing import Any


def canonical_dumps(obj: Any) -> str:
    # Deterministic JSON: sorted keys, no whitespace
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def payload_hash(payload: Any) -> str:
    """Content hash of a JSON-compatible payload."""
    return sha256_hex(canonical_dumps(payload))
