import pytest

from datachoreo import Core
from datachoreo.config import ComplianceConfig, DatachoreoConfig, EngineConfig, VaultConfig
from datachoreo.persistence import InMemoryExecutionStore
from datachoreo.registry import REGISTRY
from datachoreo.transports import InMemoryTransport
from datachoreo.vault import InMemorySecretBackend

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


def make_config(**engine_overrides) -> DatachoreoConfig:
    engine = {"backoff_base": 0.01, "backoff_jitter": 0.0, "poll_interval_seconds": 0.05}
    engine.update(engine_overrides)
    return DatachoreoConfig(
        engine=EngineConfig(**engine),
        vault=VaultConfig(master_key="test-master-key"),
        compliance=ComplianceConfig(anchor_secret="test-anchor-secret"),
    )


def make_core(store=None, registry=REGISTRY, worker_id="worker-test", **engine_overrides) -> Core:
    return Core(
        config=make_config(**engine_overrides),
        store=store or InMemoryExecutionStore(),
        transport=InMemoryTransport(),
        secret_backend=InMemorySecretBackend(),
        registry=registry,
        worker_id=worker_id,
    )


@pytest.fixture
def core() -> Core:
    return make_core()


@pytest.fixture
def store():
    return InMemoryExecutionStore()


def echo_step(order: int, name: str, **extra) -> dict:
    step = {
        "step_order": order,
        "name": name,
        "provider": "core",
        "action": "echo",
        "input_mapping": {"value": f"step-{order}"},
    }
    step.update(extra)
    return step
