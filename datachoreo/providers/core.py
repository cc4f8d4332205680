"""Built-in ``core`` provider actions."""

from __future__ import annotations

import asyncio
from typing import Any

from ..errors import ActionFailed


class EchoAction:
    """Return the resolved params unchanged."""

    async def invoke(self, params: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]:
        return dict(params)


class NoopAction:
    async def invoke(self, params: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]:
        return {"ok": True}


class FailAction:
    """Always fail. ``retryable`` in params controls whether attempts repeat."""

    async def invoke(self, params: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]:
        raise ActionFailed(
            str(params.get("error") or "Forced failure"),
            retryable=bool(params.get("retryable", True)),
        )


class SleepAction:
    async def invoke(self, params: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]:
        seconds = float(params.get("seconds", 0))
        await asyncio.sleep(seconds)
        return {"slept": seconds}
