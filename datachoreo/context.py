"""Resolve ``{{ path }}`` references in step input mappings against run context."""

from __future__ import annotations

import copy
import re
from types import MappingProxyType
from typing import Any, Mapping, NamedTuple

from pydantic import BaseModel, Field

_TOKEN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_WHOLE = re.compile(r"^\{\{\s*([^{}]+?)\s*\}\}$")


class _Missing:
    _instance = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class Resolved(NamedTuple):
    value: Any


class ResolvedInputs(BaseModel):
    params: dict[str, Any] = Field(default_factory=dict)
    missing: list[str] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


def snapshot(context: Mapping[str, Any]) -> Mapping[str, Any]:
    """Read-only deep copy of ``context`` for the duration of one resolution."""
    return MappingProxyType(copy.deepcopy(dict(context)))


def resolve_path(path: str, context: Mapping[str, Any]) -> Resolved | _Missing:
    """Walk dotted ``path`` through dicts and list indices.

    Returns ``Resolved(value)`` (``value`` may legitimately be ``None``) or
    ``MISSING`` when any segment does not exist.
    """
    current: Any = context
    for part in path.strip().split("."):
        if not part:
            return MISSING
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except ValueError:
                return MISSING
            if index < -len(current) or index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return Resolved(copy.deepcopy(current))


def _resolve_value(value: Any, context: Mapping[str, Any], missing: list[str]) -> Any:
    if isinstance(value, str):
        whole = _WHOLE.match(value)
        if whole:
            found = resolve_path(whole.group(1), context)
            if found is MISSING:
                missing.append(whole.group(1))
                return None
            return found.value

        def _sub(match: re.Match[str]) -> str:
            found = resolve_path(match.group(1), context)
            if found is MISSING:
                missing.append(match.group(1))
                return ""
            return "" if found.value is None else str(found.value)

        return _TOKEN.sub(_sub, value)
    if isinstance(value, Mapping):
        return {k: _resolve_value(v, context, missing) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_value(v, context, missing) for v in value]
    return value


def resolve_mapping(mapping: Mapping[str, Any], context: Mapping[str, Any]) -> ResolvedInputs:
    """Resolve every ``{{ path }}`` leaf of ``mapping``.

    A leaf that is exactly one token keeps the referenced value's type.
    Tokens embedded in longer strings are interpolated as text. Unresolved
    paths become ``None`` (or empty text) and are listed in ``missing``.
    """
    missing: list[str] = []
    frozen = snapshot(context)
    params = _resolve_value(dict(mapping or {}), frozen, missing)
    return ResolvedInputs(params=params, missing=missing)
