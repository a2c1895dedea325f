"""Content hashing and field-level diffing of canonical records.

The digest is only used to detect whether re-ingesting a record changed
anything, so it must be deterministic for structurally equal payloads:
keys are sorted at every depth, list order is significant.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

# Top-level keys that never participate in hashing or diffing
_VOLATILE_FIELDS = frozenset({"hash"})


def _canonical_json(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute_hash(record: Mapping[str, Any]) -> str:
    """Return the SHA-256 hex digest of ``record``'s canonical JSON encoding."""
    stable = {k: v for k, v in record.items() if k not in _VOLATILE_FIELDS}
    return hashlib.sha256(_canonical_json(stable).encode("utf-8")).hexdigest()


def diff_records(
    old: Mapping[str, Any], new: Mapping[str, Any]
) -> dict[str, dict[str, Any]]:
    """Return ``{field: {"from": old, "to": new}}`` for every differing top-level key.

    A key present on only one side reads as ``None`` on the other. Nested
    values are compared as a whole and reported once under their top-level key.
    """
    changes: dict[str, dict[str, Any]] = {}
    for key in sorted(set(old) | set(new)):
        if key in _VOLATILE_FIELDS:
            continue
        before = old.get(key)
        after = new.get(key)
        if _canonical_json(before) != _canonical_json(after):
            changes[key] = {"from": before, "to": after}
    return changes
