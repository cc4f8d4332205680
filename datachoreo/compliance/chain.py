"""Per-tenant hash-chained compliance log with Merkle anchors."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..constants import GENESIS_DIGEST
from ..contracts import AnchorVerification, ChainVerification, Violation
from ..errors import ChainIntegrityError, ValidationError
from ..persistence.models import ComplianceAnchor, ComplianceEvent, utcnow
from ..persistence.repository import ExecutionStore
from ..utils.serialization import to_jsonable
from .digest import anchor_hmac, digests_equal, event_digest, merkle_root
from .redaction import redact

logger = logging.getLogger(__name__)

CATEGORIES = (
    "provider_call",
    "user_action",
    "approval",
    "data_access",
    "config_change",
    "credential",
    "system",
    "transaction",
)
ACTOR_TYPES = ("user", "system", "worker")


def period_bounds(period: str) -> tuple[datetime, datetime]:
    """Return the inclusive UTC bounds of a ``YYYY-MM-DD`` period."""
    try:
        day = datetime.strptime(period, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise ValidationError(f"Invalid anchor period {period!r}, expected YYYY-MM-DD") from exc
    return day, day + timedelta(days=1) - timedelta(microseconds=1)


class ComplianceChain:
    """Append, verify and anchor a tenant's compliance events.

    Appends are serialized per tenant by the store so each event's
    ``prev_digest`` is the digest of the event before it. Payloads are
    PII-redacted before they are hashed or stored.
    """

    def __init__(self, store: ExecutionStore, anchor_secret: str = "") -> None:
        self.store = store
        self.anchor_secret = anchor_secret
        if not anchor_secret:
            logger.warning("Compliance anchor secret is empty; anchor HMACs are not secret")

    async def append(
        self,
        tenant_id: str,
        category: str,
        event_type: str,
        actor: str,
        payload: Optional[dict[str, Any]] = None,
        ref_type: Optional[str] = None,
        ref_id: Optional[str] = None,
        actor_type: str = "system",
    ) -> ComplianceEvent:
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown compliance category: {category}")
        if actor_type not in ACTOR_TYPES:
            raise ValidationError(f"Unknown actor type: {actor_type}")

        redaction = redact(payload or {})
        body = to_jsonable(redaction.data)

        def _build(prev_digest: str, sequence: int) -> ComplianceEvent:
            event = ComplianceEvent(
                tenant_id=tenant_id,
                sequence=sequence,
                category=category,
                event_type=event_type,
                ref_type=ref_type,
                ref_id=ref_id,
                actor=actor,
                actor_type=actor_type,
                payload=body,
                pii_redacted=redaction.redacted,
                timestamp=utcnow(),
                prev_digest=prev_digest,
            )
            event.digest = event_digest(event)
            return event

        event = await self.store.append_event(tenant_id, _build)
        logger.debug(
            f"Appended compliance event {event.event_type} seq={event.sequence} tenant_id={tenant_id}"
        )
        return event

    # ------------------------------------------------------------------
    async def verify_chain(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ChainVerification:
        """Replay events in sequence order and report integrity violations.

        Once a link fails, the trusted head stays at the last verified
        digest, so every later event also reports a broken prev link.
        """
        events = await self.store.list_events(tenant_id, start=start, end=end)
        violations: list[Violation] = []
        if not events:
            return ChainVerification(tenant_id=tenant_id, valid=True, event_count=0)

        trusted = events[0].prev_digest if start is not None else GENESIS_DIGEST
        intact = True
        for index, event in enumerate(events):
            if not digests_equal(event.prev_digest, trusted):
                violations.append(
                    Violation(
                        type="prev_digest_mismatch",
                        event_id=event.id,
                        index=index,
                        sequence=event.sequence,
                        expected=trusted,
                        actual=event.prev_digest,
                    )
                )
                intact = False
            expected = event_digest(event)
            if not digests_equal(event.digest, expected):
                violations.append(
                    Violation(
                        type="digest_mismatch",
                        event_id=event.id,
                        index=index,
                        sequence=event.sequence,
                        expected=expected,
                        actual=event.digest,
                    )
                )
                intact = False
            if intact:
                trusted = event.digest

        result = ChainVerification(
            tenant_id=tenant_id,
            valid=not violations,
            event_count=len(events),
            violations=violations,
        )
        if violations:
            first = violations[0]
            logger.critical(
                f"Compliance chain integrity violated for tenant_id={tenant_id}: "
                f"{len(violations)} violation(s), first {first.type} at sequence {first.sequence}"
            )
        return result

    async def assert_valid(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ChainVerification:
        result = await self.verify_chain(tenant_id, start=start, end=end)
        if not result.valid:
            raise ChainIntegrityError(tenant_id, result.violations)
        return result

    # ------------------------------------------------------------------
    async def _build_anchor(self, tenant_id: str, period: str) -> ComplianceAnchor | None:
        from_ts, to_ts = period_bounds(period)
        events = await self.store.list_events(tenant_id, start=from_ts, end=to_ts)
        if not events:
            return None
        root = merkle_root([e.digest for e in events])
        return ComplianceAnchor(
            tenant_id=tenant_id,
            period=period,
            from_ts=from_ts,
            to_ts=to_ts,
            event_count=len(events),
            first_sequence=events[0].sequence,
            last_sequence=events[-1].sequence,
            merkle_root=root,
            hmac=anchor_hmac(root, self.anchor_secret, tenant_id),
        )

    async def compute_anchor(self, tenant_id: str, period: str) -> ComplianceAnchor | None:
        """Anchor a UTC day of events. Returns ``None`` for an empty period."""
        anchor = await self._build_anchor(tenant_id, period)
        existing = await self.store.get_anchor(tenant_id, period)
        if existing is not None:
            if anchor is None or not digests_equal(existing.merkle_root, anchor.merkle_root):
                violation = Violation(
                    type="root_mismatch",
                    expected=existing.merkle_root,
                    actual=anchor.merkle_root if anchor else None,
                )
                logger.critical(
                    f"Anchor for tenant_id={tenant_id} period={period} no longer matches its events"
                )
                raise ChainIntegrityError(tenant_id, [violation])
            return existing
        if anchor is None:
            logger.info(f"No compliance events for tenant_id={tenant_id} period={period}")
            return None
        stored = await self.store.save_anchor(anchor)
        logger.info(
            f"Created compliance anchor for tenant_id={tenant_id} period={period}: "
            f"{stored.event_count} events"
        )
        return stored

    async def verify_anchor(self, anchor: ComplianceAnchor) -> AnchorVerification:
        violations: list[Violation] = []
        events = await self.store.list_events(anchor.tenant_id, start=anchor.from_ts, end=anchor.to_ts)
        if len(events) != anchor.event_count:
            violations.append(
                Violation(
                    type="count_mismatch",
                    expected=str(anchor.event_count),
                    actual=str(len(events)),
                )
            )
        root = merkle_root([e.digest for e in events])
        if not digests_equal(root, anchor.merkle_root):
            violations.append(
                Violation(type="root_mismatch", expected=anchor.merkle_root, actual=root)
            )
        expected_hmac = anchor_hmac(anchor.merkle_root, self.anchor_secret, anchor.tenant_id)
        if not digests_equal(expected_hmac, anchor.hmac):
            violations.append(
                Violation(type="hmac_mismatch", expected=expected_hmac, actual=anchor.hmac)
            )
        if violations:
            logger.critical(
                f"Anchor verification failed for tenant_id={anchor.tenant_id} "
                f"period={anchor.period}: {[v.type for v in violations]}"
            )
        return AnchorVerification(
            tenant_id=anchor.tenant_id,
            period=anchor.period,
            valid=not violations,
            violations=violations,
        )

    async def export(self, tenant_id: str) -> dict[str, Any]:
        """Return events, anchors and a fresh verification as plain JSON data."""
        events = await self.store.list_events(tenant_id)
        anchors = await self.store.list_anchors(tenant_id)
        verification = await self.verify_chain(tenant_id)
        return {
            "tenant_id": tenant_id,
            "exported_at": utcnow().isoformat(),
            "events": [e.model_dump(mode="json") for e in events],
            "anchors": [a.model_dump(mode="json") for a in anchors],
            "verification": verification.model_dump(mode="json"),
        }

    # ------------------------------------------------------------------
    async def log_provider_call(
        self,
        tenant_id: str,
        provider: str,
        action: str,
        params: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
        run_id: Optional[str] = None,
        step_order: Optional[int] = None,
        simulated: bool = False,
        missing_inputs: Optional[list[str]] = None,
        actor: str = "system",
    ) -> ComplianceEvent:
        outcome = {"error": error} if error else {"status": "success"}
        extra = {"missing_inputs": missing_inputs} if missing_inputs else {}
        return await self.append(
            tenant_id,
            "provider_call",
            f"{provider}_{action}",
            actor,
            payload={
                "provider": provider,
                "action": action,
                "params": params or {},
                "result": outcome,
                "duration_ms": duration_ms,
                "step_order": step_order,
                "simulated": simulated,
                **extra,
            },
            ref_type="run" if run_id else "api_call",
            ref_id=run_id or f"{provider}:{action}",
            actor_type="worker" if actor != "system" else "system",
        )

    async def log_approval(
        self,
        tenant_id: str,
        approval_id: str,
        actor: str,
        decision: str,
        comment: Optional[str] = None,
        run_id: Optional[str] = None,
        actor_type: str = "user",
    ) -> ComplianceEvent:
        return await self.append(
            tenant_id,
            "approval",
            f"approval_{decision}",
            actor,
            payload={
                "approval_id": approval_id,
                "run_id": run_id,
                "decision": decision,
                "comment": comment,
            },
            ref_type="approval",
            ref_id=approval_id,
            actor_type=actor_type,
        )

    async def log_config_change(
        self,
        tenant_id: str,
        actor: str,
        config_type: str,
        old_value: Any,
        new_value: Any,
        reason: Optional[str] = None,
        ref_id: Optional[str] = None,
    ) -> ComplianceEvent:
        return await self.append(
            tenant_id,
            "config_change",
            f"{config_type}_updated",
            actor,
            payload={
                "config_type": config_type,
                "old_value": old_value,
                "new_value": new_value,
                "reason": reason,
            },
            ref_type=config_type,
            ref_id=ref_id or config_type,
            actor_type="user" if actor != "system" else "system",
        )

    async def log_data_access(
        self,
        tenant_id: str,
        actor: str,
        resource_type: str,
        resource_id: str,
        action: str,
    ) -> ComplianceEvent:
        return await self.append(
            tenant_id,
            "data_access",
            f"{resource_type}_{action}",
            actor,
            payload={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "action": action,
            },
            ref_type=resource_type,
            ref_id=resource_id,
            actor_type="user" if actor != "system" else "system",
        )

    async def log_transaction(
        self,
        tenant_id: str,
        transaction_type: str,
        transaction_id: str,
        amount: Any,
        currency: str,
        status: str,
    ) -> ComplianceEvent:
        return await self.append(
            tenant_id,
            "transaction",
            f"{transaction_type}_{status}",
            "system",
            payload={
                "transaction_type": transaction_type,
                "transaction_id": transaction_id,
                "amount": amount,
                "currency": currency,
                "status": status,
            },
            ref_type=transaction_type,
            ref_id=transaction_id,
        )
