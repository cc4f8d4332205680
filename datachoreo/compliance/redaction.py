"""PII detection and redaction for compliance payloads."""

from __future__ import annotations

import copy
import hashlib
import re
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from ..constants import REDACTION_MASK

PII_CATEGORIES: dict[str, list[str]] = {
    "identity": ["name", "email", "phone", "username", "user_id"],
    "financial": ["card_number", "bank_account", "iban", "tax_id", "vat_number"],
    "location": ["address", "ip_address", "gps", "postal_code", "city", "country"],
    "communication": ["email_content", "message", "comment", "notes"],
    "behavioral": ["search_history", "browsing_history", "clicks", "preferences"],
}

SECRET_KEY_FRAGMENTS = ("password", "secret", "token", "api_key", "access_token", "credential")

CONTENT_PATTERNS: dict[str, re.Pattern[str]] = {
    "email": re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "card": re.compile(r"\b(?:\d[ -]?){13,19}\b"),
    "phone": re.compile(r"(?<!\w)(?:\+\d{1,3}[ .-]?)?\(?\d{3}\)?[ .-]?\d{3}[ .-]\d{4}\b"),
}


class PIIField(BaseModel):
    path: str
    key: str
    category: str


class RedactionResult(BaseModel):
    """Redacted copy of the input plus the dotted paths that were masked."""

    data: Any
    fields: list[str] = Field(default_factory=list)

    @property
    def redacted(self) -> bool:
        return bool(self.fields)


def classify_key(key: str) -> Optional[str]:
    """Return the PII category a key belongs to, ``secret`` for secrets, else ``None``."""
    lowered = str(key).lower()
    if any(fragment in lowered for fragment in SECRET_KEY_FRAGMENTS):
        return "secret"
    for category, fragments in PII_CATEGORIES.items():
        if any(fragment in lowered for fragment in fragments):
            return category
    return None


def detect_pii(data: Any, path: str = "") -> list[PIIField]:
    """Return every key at any depth whose name matches a PII category."""
    found: list[PIIField] = []
    if isinstance(data, dict):
        for key, value in data.items():
            full_path = f"{path}.{key}" if path else str(key)
            category = classify_key(key)
            if category:
                found.append(PIIField(path=full_path, key=str(key), category=category))
            found.extend(detect_pii(value, full_path))
    elif isinstance(data, list):
        for index, item in enumerate(data):
            found.extend(detect_pii(item, f"{path}.{index}" if path else str(index)))
    return found


def hash_value(value: Any) -> str:
    """Stable pseudonym for analytics without exposing the value."""
    digest = hashlib.sha256(str(value).encode("utf-8")).hexdigest()
    return "hash_" + digest[:12]


def mask_email(email: str) -> str:
    if not email or "@" not in email:
        return REDACTION_MASK
    local, domain = email.split("@", 1)
    if len(local) <= 1:
        return email
    return local[0] + "*" * min(len(local) - 1, 3) + "@" + domain


def mask_card_number(card_number: str) -> str:
    cleaned = re.sub(r"\s", "", str(card_number))
    if len(cleaned) < 12:
        return REDACTION_MASK
    return "**** **** **** " + cleaned[-4:]


def _scrub_text(text: str) -> tuple[str, bool]:
    changed = False
    for pattern in CONTENT_PATTERNS.values():
        text, count = pattern.subn(REDACTION_MASK, text)
        changed = changed or count > 0
    return text, changed


def redact(
    data: Any,
    categories: Optional[Iterable[str]] = None,
    preserve_hash: bool = False,
    mask: str = REDACTION_MASK,
) -> RedactionResult:
    """Return a redacted deep copy of ``data``.

    Keys matching a selected PII category are replaced with ``mask`` (or a
    hash when ``preserve_hash`` is set). Secret-looking keys are always
    masked. String values are additionally scanned for emails, phone
    numbers, SSNs and card numbers. The input is never mutated.
    """

    selected = set(categories) if categories is not None else set(PII_CATEGORIES)
    fields: list[str] = []

    def _walk(value: Any, path: str) -> Any:
        if isinstance(value, dict):
            out = {}
            for key, item in value.items():
                full_path = f"{path}.{key}" if path else str(key)
                category = classify_key(key)
                if category == "secret":
                    out[key] = mask
                    fields.append(full_path)
                elif category in selected and not isinstance(item, (dict, list)):
                    out[key] = hash_value(item) if preserve_hash and item else mask
                    fields.append(full_path)
                else:
                    out[key] = _walk(item, full_path)
            return out
        if isinstance(value, list):
            return [
                _walk(item, f"{path}.{i}" if path else str(i)) for i, item in enumerate(value)
            ]
        if isinstance(value, str):
            scrubbed, changed = _scrub_text(value)
            if changed:
                fields.append(path)
            return scrubbed
        return value

    result = _walk(copy.deepcopy(data), "")
    return RedactionResult(data=result, fields=fields)
