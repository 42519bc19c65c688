"""Name derivation utilities."""

from __future__ import annotations

import hashlib
import re

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")
_DNS_LABEL_MAX_LEN = 63


def workload_name(node: str, prefix: str = "foren") -> str:
    """Derive debug pod name: <prefix>-<node> as a DNS-1123 label."""
    if not node.strip():
        raise ValueError("node name must not be empty")
    raw = f"{prefix}-{node}".lower()
    name = _INVALID_CHARS.sub("-", raw).strip("-")
    if len(name) <= _DNS_LABEL_MAX_LEN:
        return name
    # keep names of long nodes distinct after truncation
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8]
    return f"{name[: _DNS_LABEL_MAX_LEN - 9].rstrip('-')}-{digest}"
