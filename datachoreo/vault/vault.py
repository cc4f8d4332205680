"""Credential vault with per-connection envelope encryption.

Each connection gets its own Fernet data key. The data key is stored wrapped
by the master key in a key record, and the ciphertext is stored under a
versioned name that the key record points at. Sealing writes the new
ciphertext first and swaps the key record last, so a failed write leaves the
previous credential readable. Deleting a credential destroys the key record
first, which makes any retained ciphertext permanently unreadable
(crypto-shredding).
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import uuid
from typing import TYPE_CHECKING, Any, Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken

from ..errors import CredentialGoneError, DatachoreoError, NotFoundError, ValidationError
from ..idempotency import IdempotencyLedger
from ..persistence.models import CredentialMetadata, utcnow
from ..persistence.repository import ExecutionStore
from .backends import InMemorySecretBackend, SecretBackend

if TYPE_CHECKING:
    from ..compliance import ComplianceChain

logger = logging.getLogger(__name__)

CREDENTIAL_PROVIDERS = ("shopify", "stripe", "xero", "quickbooks", "hubspot", "slack", "http")

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "shopify": ("shop_domain", "access_token"),
    "stripe": ("secret_key",),
    "xero": ("access_token", "tenant_id"),
}


def derive_fernet_key(secret: str) -> bytes:
    """Derive a Fernet key from an arbitrary secret string."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


class CredentialVault:
    """Store, fetch, rotate and shred tenant credentials."""

    def __init__(
        self,
        store: ExecutionStore,
        backend: Optional[SecretBackend] = None,
        master_key: Optional[str] = None,
        ledger: Optional[IdempotencyLedger] = None,
        chain: Optional["ComplianceChain"] = None,
        known_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._store = store
        self.backend = backend or InMemorySecretBackend()
        if not master_key:
            logger.warning("No vault master key configured; generated an ephemeral key")
            self._master = Fernet(Fernet.generate_key())
        else:
            self._master = Fernet(derive_fernet_key(master_key))
        self.ledger = ledger or IdempotencyLedger(store)
        self.chain = chain
        self.known_providers = set(known_providers or CREDENTIAL_PROVIDERS)

    @staticmethod
    def secret_name(tenant_id: str, connection_id: str) -> str:
        return f"datachor/{tenant_id}/{connection_id}"

    @classmethod
    def key_name(cls, tenant_id: str, connection_id: str) -> str:
        return cls.secret_name(tenant_id, connection_id) + "/key"

    @classmethod
    def ciphertext_name(cls, tenant_id: str, connection_id: str, version: str) -> str:
        return f"{cls.secret_name(tenant_id, connection_id)}/v/{version}"

    async def _key_record(self, tenant_id: str, connection_id: str) -> Optional[dict[str, str]]:
        raw = await self.backend.get(self.key_name(tenant_id, connection_id))
        return json.loads(raw) if raw is not None else None

    # ------------------------------------------------------------------
    async def _seal(self, tenant_id: str, connection_id: str, provider: str, credentials: dict) -> None:
        data_key = Fernet.generate_key()
        plaintext = json.dumps(
            {
                "provider": provider,
                "credentials": credentials,
                "created_at": utcnow().isoformat(),
            }
        )
        previous = await self._key_record(tenant_id, connection_id)
        version = uuid.uuid4().hex
        await self.backend.set(
            self.ciphertext_name(tenant_id, connection_id, version),
            Fernet(data_key).encrypt(plaintext.encode()).decode(),
        )
        record = {"key": self._master.encrypt(data_key).decode(), "version": version}
        await self.backend.set(self.key_name(tenant_id, connection_id), json.dumps(record))
        if previous is not None:
            await self.backend.delete(
                self.ciphertext_name(tenant_id, connection_id, previous["version"])
            )

    async def _audit(self, tenant_id: str, connection_id: str, provider: str, action: str, actor: str) -> None:
        if self.chain is None:
            return
        await self.chain.append(
            tenant_id,
            "credential",
            f"credential_{action}",
            actor,
            payload={"provider": provider, "connection_id": connection_id, "action": action},
            ref_type="connection",
            ref_id=connection_id,
            actor_type="system" if actor == "system" else "user",
        )

    async def _idempotent(self, tenant_id: str, connection_id: str, key: Optional[str], operation) -> CredentialMetadata:
        if not key:
            return await operation()
        response, _ = await self.ledger.run(
            tenant_id, f"credential:{connection_id}", key, operation
        )
        return CredentialMetadata.model_validate(response)

    async def _active_metadata(self, tenant_id: str, connection_id: str) -> CredentialMetadata:
        meta = await self._store.get_credential(tenant_id, connection_id)
        if meta is None:
            raise NotFoundError(f"Credential {connection_id} not found")
        if meta.status == "deleted":
            raise CredentialGoneError(f"Credential {connection_id} was deleted")
        return meta

    # ------------------------------------------------------------------
    async def store(
        self,
        tenant_id: str,
        connection_id: str,
        provider: str,
        credentials: dict[str, Any],
        name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        actor: str = "system",
    ) -> CredentialMetadata:
        if provider not in self.known_providers:
            raise ValidationError(f"Unknown provider: {provider}")
        if not isinstance(credentials, dict) or not credentials:
            raise ValidationError("Credentials must be a non-empty mapping")

        async def _store() -> CredentialMetadata:
            existing = await self._store.get_credential(tenant_id, connection_id)
            if existing is not None and existing.status == "deleted":
                raise CredentialGoneError(f"Credential {connection_id} was deleted")
            await self._seal(tenant_id, connection_id, provider, credentials)
            meta = CredentialMetadata(
                id=connection_id, tenant_id=tenant_id, provider=provider, name=name
            )
            await self._store.save_credential(meta)
            await self._audit(tenant_id, connection_id, provider, "stored", actor)
            logger.info(f"Stored credential {connection_id} for tenant_id={tenant_id} provider={provider}")
            return meta

        return await self._idempotent(tenant_id, connection_id, idempotency_key, _store)

    async def fetch(self, tenant_id: str, connection_id: str) -> dict[str, Any]:
        await self._active_metadata(tenant_id, connection_id)
        record = await self._key_record(tenant_id, connection_id)
        if record is None:
            raise CredentialGoneError(f"Data key for credential {connection_id} is gone")
        ciphertext = await self.backend.get(
            self.ciphertext_name(tenant_id, connection_id, record["version"])
        )
        if ciphertext is None:
            raise NotFoundError(f"Secret for credential {connection_id} not found")
        try:
            data_key = self._master.decrypt(record["key"].encode())
            plaintext = Fernet(data_key).decrypt(ciphertext.encode())
        except InvalidToken as exc:
            raise DatachoreoError(f"Credential {connection_id} could not be decrypted") from exc
        return json.loads(plaintext)["credentials"]

    async def rotate(
        self,
        tenant_id: str,
        connection_id: str,
        credentials: dict[str, Any],
        idempotency_key: Optional[str] = None,
        actor: str = "system",
    ) -> CredentialMetadata:
        if not isinstance(credentials, dict) or not credentials:
            raise ValidationError("Credentials must be a non-empty mapping")

        async def _rotate() -> CredentialMetadata:
            meta = await self._active_metadata(tenant_id, connection_id)
            await self._seal(tenant_id, connection_id, meta.provider, credentials)
            updated = await self._store.update_credential(
                tenant_id, connection_id, rotated_at=utcnow(), status="active"
            )
            await self._audit(tenant_id, connection_id, meta.provider, "rotated", actor)
            logger.info(f"Rotated credential {connection_id} for tenant_id={tenant_id}")
            return updated or meta

        return await self._idempotent(tenant_id, connection_id, idempotency_key, _rotate)

    async def delete(
        self,
        tenant_id: str,
        connection_id: str,
        idempotency_key: Optional[str] = None,
        actor: str = "system",
    ) -> CredentialMetadata:
        async def _delete() -> CredentialMetadata:
            meta = await self._store.get_credential(tenant_id, connection_id)
            if meta is None:
                raise NotFoundError(f"Credential {connection_id} not found")
            if meta.status == "deleted":
                return meta
            record = await self._key_record(tenant_id, connection_id)
            await self.backend.delete(self.key_name(tenant_id, connection_id))
            if record is not None:
                await self.backend.delete(
                    self.ciphertext_name(tenant_id, connection_id, record["version"])
                )
            updated = await self._store.update_credential(
                tenant_id, connection_id, status="deleted", deleted_at=utcnow()
            )
            await self._audit(tenant_id, connection_id, meta.provider, "deleted", actor)
            logger.info(f"Crypto-shredded credential {connection_id} for tenant_id={tenant_id}")
            return updated or meta

        return await self._idempotent(tenant_id, connection_id, idempotency_key, _delete)

    @staticmethod
    def test(provider: str, credentials: dict[str, Any]) -> bool:
        """Check provider-specific required fields are present and non-empty."""
        if not credentials:
            return False
        required = REQUIRED_FIELDS.get(provider)
        if required is None:
            return len(credentials) > 0
        return all(credentials.get(field) for field in required)

    async def check_health(self, tenant_id: str, connection_id: str) -> bool:
        meta = await self._active_metadata(tenant_id, connection_id)
        healthy = self.test(meta.provider, await self.fetch(tenant_id, connection_id))
        await self._store.update_credential(
            tenant_id,
            connection_id,
            last_health_check=utcnow(),
            last_health_ok=healthy,
            status="active" if healthy else "error",
        )
        if not healthy:
            logger.warning(f"Credential {connection_id} for tenant_id={tenant_id} failed health check")
        return healthy
