"""Exception taxonomy for the execution and compliance core."""

from __future__ import annotations

from typing import Any


class DatachoreoError(Exception):
    """Base class for all core errors."""


class ValidationError(DatachoreoError):
    """Bad input shape or unknown provider. Nothing was mutated."""


class NotFoundError(DatachoreoError):
    """Entity does not exist or belongs to another tenant."""


class CredentialGoneError(NotFoundError):
    """Credential was crypto-shredded and can never be read again."""


class ConflictError(DatachoreoError):
    """Operation conflicts with current state (lock held, already decided...)."""


class RetryLimitExceeded(ConflictError):
    """The retry lineage of a run reached its maximum size."""

    def __init__(self, run_id: str, limit: int) -> None:
        self.run_id = run_id
        self.limit = limit
        super().__init__(f"Max retries exceeded for run {run_id} (limit {limit})")


class AuthorizationError(DatachoreoError):
    """Caller is not allowed to perform the decision."""


class ActionFailed(DatachoreoError):
    """A provider action invocation failed."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class ChainIntegrityError(DatachoreoError):
    """Compliance chain verification found violations."""

    def __init__(self, tenant_id: str, violations: list[Any]) -> None:
        self.tenant_id = tenant_id
        self.violations = violations
        super().__init__(
            f"Compliance chain integrity violated for tenant {tenant_id}: "
            f"{len(violations)} violation(s)"
        )
