"""Tests for the credential vault."""

import json

import pytest

from datachoreo.compliance import ComplianceChain
from datachoreo.errors import CredentialGoneError, DatachoreoError, NotFoundError, ValidationError
from datachoreo.persistence import InMemoryExecutionStore
from datachoreo.vault import CredentialVault, InMemorySecretBackend

TENANT = "tenant-a"
STRIPE = {"secret_key": "sk_test_123"}


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def backend():
    return InMemorySecretBackend()


async def _ciphertext(vault, backend, connection_id="conn-1"):
    record = json.loads(await backend.get(vault.key_name(TENANT, connection_id)))
    return await backend.get(vault.ciphertext_name(TENANT, connection_id, record["version"]))


class FlakySecretBackend(InMemorySecretBackend):
    """Fails ciphertext writes while ``broken`` is set."""

    def __init__(self):
        super().__init__()
        self.broken = False

    async def set(self, name, value):
        if self.broken and not name.endswith("/key"):
            raise ConnectionError("secret backend unavailable")
        await super().set(name, value)


@pytest.fixture
def vault(store, backend):
    return CredentialVault(
        store, backend=backend, master_key="master", chain=ComplianceChain(store, "s")
    )


@pytest.mark.asyncio
async def test_store_and_fetch_round_trip(vault, backend):
    meta = await vault.store(TENANT, "conn-1", "stripe", STRIPE, name="Stripe live")
    assert meta.status == "active"
    assert await vault.fetch(TENANT, "conn-1") == STRIPE

    stored = await _ciphertext(vault, backend)
    assert stored is not None
    assert "sk_test_123" not in stored


@pytest.mark.asyncio
async def test_store_validates_input(vault):
    with pytest.raises(ValidationError):
        await vault.store(TENANT, "conn-1", "myspace", STRIPE)
    with pytest.raises(ValidationError):
        await vault.store(TENANT, "conn-1", "stripe", {})


@pytest.mark.asyncio
async def test_fetch_is_tenant_scoped(vault):
    await vault.store(TENANT, "conn-1", "stripe", STRIPE)
    with pytest.raises(NotFoundError):
        await vault.fetch("tenant-b", "conn-1")


@pytest.mark.asyncio
async def test_rotate_replaces_secret(vault, backend):
    await vault.store(TENANT, "conn-1", "stripe", STRIPE)
    meta = await vault.rotate(TENANT, "conn-1", {"secret_key": "sk_test_456"})
    assert meta.rotated_at is not None
    assert await vault.fetch(TENANT, "conn-1") == {"secret_key": "sk_test_456"}
    # Only the current ciphertext is kept.
    assert len(backend._secrets) == 2


@pytest.mark.asyncio
async def test_failed_rotation_keeps_previous_credentials(store):
    backend = FlakySecretBackend()
    vault = CredentialVault(store, backend=backend, master_key="master")
    await vault.store(TENANT, "conn-1", "stripe", STRIPE)

    backend.broken = True
    with pytest.raises(ConnectionError):
        await vault.rotate(TENANT, "conn-1", {"secret_key": "sk_test_456"})
    assert await vault.fetch(TENANT, "conn-1") == STRIPE
    assert (await store.get_credential(TENANT, "conn-1")).rotated_at is None

    backend.broken = False
    await vault.rotate(TENANT, "conn-1", {"secret_key": "sk_test_456"})
    assert await vault.fetch(TENANT, "conn-1") == {"secret_key": "sk_test_456"}


@pytest.mark.asyncio
async def test_delete_shreds_the_data_key(vault, backend, store):
    await vault.store(TENANT, "conn-1", "stripe", STRIPE)
    record = await backend.get(vault.key_name(TENANT, "conn-1"))
    name = vault.ciphertext_name(TENANT, "conn-1", json.loads(record)["version"])
    ciphertext = await backend.get(name)

    meta = await vault.delete(TENANT, "conn-1")
    assert meta.status == "deleted"
    assert meta.deleted_at is not None
    assert await backend.get(vault.key_name(TENANT, "conn-1")) is None
    assert await backend.get(name) is None

    with pytest.raises(CredentialGoneError):
        await vault.fetch(TENANT, "conn-1")

    # A retained copy of the ciphertext is useless without the data key.
    await backend.set(name, ciphertext)
    await store.update_credential(TENANT, "conn-1", status="active")
    with pytest.raises(CredentialGoneError):
        await vault.fetch(TENANT, "conn-1")

    await store.update_credential(TENANT, "conn-1", status="deleted")
    with pytest.raises(CredentialGoneError):
        await vault.store(TENANT, "conn-1", "stripe", STRIPE)


@pytest.mark.asyncio
async def test_delete_is_idempotent(vault):
    await vault.store(TENANT, "conn-1", "stripe", STRIPE)
    first = await vault.delete(TENANT, "conn-1", idempotency_key="del-1")
    second = await vault.delete(TENANT, "conn-1", idempotency_key="del-1")
    assert first == second
    again = await vault.delete(TENANT, "conn-1")
    assert again.status == "deleted"


@pytest.mark.asyncio
async def test_store_with_idempotency_key_runs_once(vault, store):
    await vault.store(TENANT, "conn-1", "stripe", STRIPE, idempotency_key="s-1")
    await vault.store(TENANT, "conn-1", "stripe", {"secret_key": "other"}, idempotency_key="s-1")
    assert await vault.fetch(TENANT, "conn-1") == STRIPE
    events = await store.list_events(TENANT)
    assert [e.event_type for e in events] == ["credential_stored"]


@pytest.mark.asyncio
async def test_audit_events_never_contain_secrets(vault, store):
    await vault.store(TENANT, "conn-1", "stripe", STRIPE)
    await vault.rotate(TENANT, "conn-1", {"secret_key": "sk_test_456"})
    await vault.delete(TENANT, "conn-1")
    events = await store.list_events(TENANT)
    assert [e.event_type for e in events] == [
        "credential_stored",
        "credential_rotated",
        "credential_deleted",
    ]
    dumped = str([e.model_dump() for e in events])
    assert "sk_test" not in dumped


def test_provider_field_checks():
    assert CredentialVault.test("shopify", {"shop_domain": "x.myshopify.com", "access_token": "t"})
    assert not CredentialVault.test("shopify", {"shop_domain": "x.myshopify.com"})
    assert CredentialVault.test("stripe", STRIPE)
    assert not CredentialVault.test("xero", {"access_token": "t"})
    assert CredentialVault.test("slack", {"bot": "x"})
    assert not CredentialVault.test("slack", {})


@pytest.mark.asyncio
async def test_check_health_records_result(vault, store):
    await vault.store(TENANT, "conn-1", "shopify", {"shop_domain": "x.myshopify.com"})
    assert not await vault.check_health(TENANT, "conn-1")
    meta = await store.get_credential(TENANT, "conn-1")
    assert meta.last_health_ok is False
    assert meta.status == "error"


@pytest.mark.asyncio
async def test_wrong_master_key_cannot_decrypt(store, backend):
    writer = CredentialVault(store, backend=backend, master_key="one")
    await writer.store(TENANT, "conn-1", "stripe", STRIPE)
    reader = CredentialVault(store, backend=backend, master_key="two")
    with pytest.raises(DatachoreoError, match="could not be decrypted"):
        await reader.fetch(TENANT, "conn-1")
