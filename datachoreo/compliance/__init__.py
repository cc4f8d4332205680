"""Compliance audit chain, anchors and PII redaction."""

from .chain import CATEGORIES, ComplianceChain, period_bounds
from .digest import anchor_hmac, canonical_json, event_digest, merkle_root
from .redaction import PII_CATEGORIES, RedactionResult, detect_pii, redact

__all__ = [
    "CATEGORIES",
    "ComplianceChain",
    "PII_CATEGORIES",
    "RedactionResult",
    "anchor_hmac",
    "canonical_json",
    "detect_pii",
    "event_digest",
    "merkle_root",
    "period_bounds",
    "redact",
]
