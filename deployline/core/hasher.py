"""Canonical hashing helpers for content addressing and the execution log."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce deterministic canonical JSON bytes.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(data: bytes) -> str:
    """Return the ``sha256:<hex>`` address used by the artifact store."""
    return f"sha256:{sha256_hex(data)}"


def compute_inputs_hash(action_name: str, inputs: dict[str, bytes]) -> str:
    """SHA-256 of canonical(action name + input content addresses).

    Two runs of a deterministic action with equal input hashes are
    expected to produce equal outputs.
    """
    payload = {
        "action": action_name,
        "inputs": {name: content_address(blob) for name, blob in inputs.items()},
    }
    return sha256_hex(canonical_json_bytes(payload))


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a log entry (excluding the entry_hash field itself).

    This is the seal that makes each entry tamper-evident.
    """
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
