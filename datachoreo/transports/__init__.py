"""Run-notice transports and the factory that picks one from config."""

from __future__ import annotations

import logging
import os
from typing import Callable, Optional

from ..config import DatachoreoConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def _redis(config: DatachoreoConfig) -> BaseTransport:
    from .redis import RedisTransport

    settings = config.transport.redis
    return RedisTransport(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
    )


_BUILDERS: dict[str, Callable[[DatachoreoConfig], BaseTransport]] = {
    "inmemory": lambda _config: InMemoryTransport(),
    "redis": _redis,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[DatachoreoConfig] = None
) -> BaseTransport:
    """Build the notice transport named by ``backend``.

    Falls back to ``DATACHOREO_TRANSPORT`` and then ``config.transport.backend``.
    The in-memory transport only wakes workers inside the same process; use
    Redis when workers run as separate processes.
    """
    config = config or load_config()
    name = (backend or os.getenv("DATACHOREO_TRANSPORT") or config.transport.backend).lower()
    builder = _BUILDERS.get(name)
    if builder is None:
        raise ValueError(
            f"Unsupported transport backend: {name} (expected one of {', '.join(sorted(_BUILDERS))})"
        )
    logger.debug(f"Using {name} run-notice transport")
    return builder(config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
