"""Hashing primitives for the compliance chain and its anchors."""

from __future__ import annotations

import hashlib
import hmac
from typing import Sequence

from ..persistence.models import ComplianceEvent
from ..utils.serialization import canonical_json


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def event_digest(event: ComplianceEvent, prev_digest: str | None = None) -> str:
    """``sha256(prev_digest + canonical_json(event without digest))``."""
    body = event.model_dump(exclude={"digest"})
    prev = event.prev_digest if prev_digest is None else prev_digest
    return sha256_hex(prev + canonical_json(body))


def merkle_root(digests: Sequence[str]) -> str:
    """Pairwise sha256 tree over hex digests; an odd node is paired with itself."""
    if not digests:
        return sha256_hex("")
    level = list(digests)
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        level = [sha256_hex(level[i] + level[i + 1]) for i in range(0, len(level), 2)]
    return level[0]


def anchor_key(secret: str, tenant_id: str) -> bytes:
    """Per-tenant HMAC key derived from the server anchor secret."""
    return hmac.new(secret.encode("utf-8"), tenant_id.encode("utf-8"), hashlib.sha256).digest()


def anchor_hmac(root: str, secret: str, tenant_id: str) -> str:
    return hmac.new(anchor_key(secret, tenant_id), root.encode("utf-8"), hashlib.sha256).hexdigest()


def digests_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
