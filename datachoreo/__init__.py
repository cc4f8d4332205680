"""DataChoreography: tenant-isolated workflow execution and compliance audit core."""

from .approvals import ApprovalGate
from .compliance import ComplianceChain
from .config import DatachoreoConfig, load_config
from .core import Core
from .dispatch import RunDispatcher
from .execute import StepExecutor
from .idempotency import IdempotencyLedger
from .locks import RunLock
from .persistence import get_store
from .registry import REGISTRY
from .transports import get_transport
from .vault import CredentialVault
from .worker import Worker

__version__ = "0.1.0"
__all__ = [
    "ApprovalGate",
    "ComplianceChain",
    "Core",
    "CredentialVault",
    "DatachoreoConfig",
    "IdempotencyLedger",
    "REGISTRY",
    "RunDispatcher",
    "RunLock",
    "StepExecutor",
    "Worker",
    "get_store",
    "get_transport",
    "load_config",
]
