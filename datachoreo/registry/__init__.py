"""Provider action registry."""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from ..errors import ValidationError
from .models import ActionDescriptor, ParamDescriptor, ProviderAction


class UnknownActionError(ValidationError):
    """No action is registered under the requested provider and name."""


class ActionRegistry:
    """Maps ``(provider, action)`` to an invokable implementation."""

    def __init__(self) -> None:
        self._actions: Dict[Tuple[str, str], Tuple[ProviderAction, ActionDescriptor]] = {}

    def register(
        self,
        provider: str,
        action: str,
        impl: ProviderAction,
        descriptor: Optional[ActionDescriptor] = None,
    ) -> None:
        """Register ``impl``; re-registering a name replaces the previous entry."""
        descriptor = descriptor or ActionDescriptor(provider=provider, action=action)
        self._actions[(provider, action)] = (impl, descriptor)

    def get(self, provider: str, action: str) -> ProviderAction:
        try:
            return self._actions[(provider, action)][0]
        except KeyError:
            raise UnknownActionError(f"Unknown action {provider}.{action}") from None

    def describe(self, provider: str, action: str) -> ActionDescriptor:
        try:
            return self._actions[(provider, action)][1]
        except KeyError:
            raise UnknownActionError(f"Unknown action {provider}.{action}") from None

    def has(self, provider: str, action: str) -> bool:
        return (provider, action) in self._actions

    def providers(self) -> list[str]:
        return sorted({p for p, _ in self._actions})

    def actions(self, provider: Optional[str] = None) -> list[ActionDescriptor]:
        return [
            d
            for (p, _), (_, d) in sorted(self._actions.items())
            if provider is None or p == provider
        ]


# Process-wide registry that built-in providers register into on import.
REGISTRY = ActionRegistry()


def register_action(
    provider: str,
    action: str,
    impl: ProviderAction,
    descriptor: Optional[ActionDescriptor] = None,
) -> None:
    """Add ``impl`` to ``REGISTRY``."""
    REGISTRY.register(provider, action, impl, descriptor)


__all__ = [
    "ActionDescriptor",
    "ActionRegistry",
    "ParamDescriptor",
    "ProviderAction",
    "REGISTRY",
    "UnknownActionError",
    "register_action",
]
