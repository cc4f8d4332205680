"""Idempotency ledger guarding duplicate side effects."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from .constants import DEFAULT_IDEMPOTENCY_RETENTION_HOURS
from .errors import ConflictError, ValidationError
from .persistence.models import IdempotencyRecord, utcnow
from .persistence.repository import ExecutionStore
from .utils.serialization import to_jsonable

logger = logging.getLogger(__name__)


class Reservation(BaseModel):
    """Outcome of ``check_or_reserve``."""

    is_new: bool
    cached_response: Optional[Any] = None
    in_progress: bool = False


class IdempotencyLedger:
    """Check-and-reserve keyed by ``(tenant_id, scope, key)``.

    The reservation is a single atomic write in the store, so two concurrent
    callers with the same key can never both see ``is_new``.
    """

    def __init__(
        self,
        store: ExecutionStore,
        retention_hours: float = DEFAULT_IDEMPOTENCY_RETENTION_HOURS,
    ) -> None:
        self.store = store
        self.retention = timedelta(hours=retention_hours)

    async def check_or_reserve(self, tenant_id: str, scope: str, key: str) -> Reservation:
        if not key:
            raise ValidationError("Idempotency key must not be empty")
        now = utcnow()
        record = IdempotencyRecord(
            tenant_id=tenant_id,
            scope=scope,
            key=key,
            created_at=now,
            expires_at=now + self.retention,
        )
        existing = await self.store.reserve_idempotency(record)
        if existing is None:
            return Reservation(is_new=True)
        logger.debug(f"Idempotency hit tenant_id={tenant_id} scope={scope} state={existing.state}")
        return Reservation(
            is_new=False,
            cached_response=existing.response,
            in_progress=existing.state != "completed",
        )

    async def complete(self, tenant_id: str, scope: str, key: str, response: Any) -> None:
        await self.store.complete_idempotency(tenant_id, scope, key, to_jsonable(response))

    async def release(self, tenant_id: str, scope: str, key: str) -> None:
        await self.store.delete_idempotency(tenant_id, scope, key)

    async def run(
        self,
        tenant_id: str,
        scope: str,
        key: str,
        operation: Callable[[], Awaitable[Any]],
    ) -> tuple[Any, bool]:
        """Run ``operation`` at most once per key.

        Returns ``(response, is_new)``. The response is the JSON form of what
        ``operation`` returned, identical for the first call and every replay.
        A duplicate that arrives while the first call is still running
        raises ``ConflictError``. A failed operation releases its
        reservation so the caller may try again with the same key.
        """
        reservation = await self.check_or_reserve(tenant_id, scope, key)
        if not reservation.is_new:
            if reservation.in_progress:
                raise ConflictError(f"Operation {scope} with key {key} is already in progress")
            return reservation.cached_response, False
        try:
            result = await operation()
        except BaseException:
            await self.release(tenant_id, scope, key)
            raise
        response = to_jsonable(result)
        await self.store.complete_idempotency(tenant_id, scope, key, response)
        return response, True

    async def purge_expired(self) -> int:
        purged = await self.store.purge_idempotency(utcnow())
        if purged:
            logger.info(f"Purged {purged} expired idempotency records")
        return purged
