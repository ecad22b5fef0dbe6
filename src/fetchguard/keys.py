"""Cache key derivation."""

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def make_key(endpoint: str, params: Mapping[str, Any] | None = None) -> str:
    """Build a cache key from an endpoint and its query parameters.

    Parameters are normalized (sorted, ``None`` values dropped) so the same
    logical query always maps to the same key. Keys start with the endpoint,
    which makes ``invalidate_by_prefix(endpoint)`` drop all of its queries.
    """
    normalized = {k: v for k, v in (params or {}).items() if v is not None}
    if not normalized:
        return endpoint
    params_hash = hashlib.sha256(
        json.dumps(normalized, sort_keys=True, default=str).encode()
    ).hexdigest()[:16]
    return f"{endpoint}:{params_hash}"
