"""Content hashing for change detection."""

import hashlib
import json
from typing import Any, Dict, Optional


def generate_sync_hash(data: Dict[str, Any], exclude: Optional[str] = None) -> str:
    """Stable SHA-256 of a record.

    Keys are sorted, so two dicts with the same content hash the same
    regardless of insertion order.

    Args:
        data: Record to hash.
        exclude: Optional key left out of the hash (the record's identity field).

    Returns:
        Hex digest.
    """
    if exclude is not None:
        data = {key: value for key, value in data.items() if key != exclude}
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
