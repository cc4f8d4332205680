"""Built-in provider actions."""

from __future__ import annotations

from ..registry import REGISTRY, ActionRegistry
from ..registry.models import ActionDescriptor, ParamDescriptor
from .core import EchoAction, FailAction, NoopAction, SleepAction
from .http import HttpRequestAction


def register_builtin_actions(registry: ActionRegistry = REGISTRY) -> ActionRegistry:
    """Register the ``core`` and ``http`` providers into ``registry``."""

    registry.register(
        "core",
        "echo",
        EchoAction(),
        ActionDescriptor(
            provider="core",
            action="echo",
            description="Return params unchanged",
            side_effects=False,
            rollback_action="noop",
        ),
    )
    registry.register(
        "core",
        "noop",
        NoopAction(),
        ActionDescriptor(provider="core", action="noop", side_effects=False),
    )
    registry.register(
        "core",
        "fail",
        FailAction(),
        ActionDescriptor(
            provider="core",
            action="fail",
            description="Always raise",
            inputs=[
                ParamDescriptor(name="error", type_ref="string", required=False),
                ParamDescriptor(name="retryable", type_ref="boolean", required=False),
            ],
        ),
    )
    registry.register(
        "core",
        "sleep",
        SleepAction(),
        ActionDescriptor(
            provider="core",
            action="sleep",
            inputs=[ParamDescriptor(name="seconds", type_ref="number")],
            side_effects=False,
        ),
    )
    registry.register(
        "http",
        "request",
        HttpRequestAction(),
        ActionDescriptor(
            provider="http",
            action="request",
            description="Outbound HTTP call with bearer credentials",
            inputs=[
                ParamDescriptor(name="url", type_ref="string"),
                ParamDescriptor(name="method", type_ref="string", required=False),
                ParamDescriptor(name="headers", type_ref="object", required=False),
                ParamDescriptor(name="query", type_ref="object", required=False),
                ParamDescriptor(name="body", type_ref="any", required=False),
            ],
            requires_credentials=True,
        ),
    )
    return registry


register_builtin_actions()

__all__ = [
    "EchoAction",
    "FailAction",
    "HttpRequestAction",
    "NoopAction",
    "SleepAction",
    "register_builtin_actions",
]
