"""Data models for persisted execution and compliance state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from ..constants import DEFAULT_STEP_TIMEOUT_SECONDS, MAX_STEP_ATTEMPTS, MAX_STEP_TIMEOUT_SECONDS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def format_ts(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 form; sorts lexicographically in time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


CANCELLABLE_STATUSES = (
    RunStatus.PENDING,
    RunStatus.RUNNING,
    RunStatus.AWAITING_APPROVAL,
)


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Step(BaseModel):
    """One action within a workflow's ordered sequence."""

    id: str = Field(default_factory=new_id)
    workflow_id: str = ""
    workflow_version: int = 1
    tenant_id: str = ""
    step_order: int
    name: str
    provider: str
    action: str
    input_mapping: dict[str, Any] = Field(default_factory=dict)
    output_key: Optional[str] = None
    connection_id: Optional[str] = None
    requires_approval: bool = False
    approvers: list[str] = Field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    retry_on_failure: bool = False
    max_attempts: int = MAX_STEP_ATTEMPTS
    timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS
    rollback_action: Optional[str] = None
    strict_inputs: bool = False

    @field_validator("max_attempts")
    @classmethod
    def _bound_attempts(cls, v: int) -> int:
        if v < 1 or v > MAX_STEP_ATTEMPTS:
            raise ValueError(f"max_attempts must be between 1 and {MAX_STEP_ATTEMPTS}")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _bound_timeout(cls, v: float) -> float:
        if v <= 0 or v > MAX_STEP_TIMEOUT_SECONDS:
            raise ValueError(f"timeout_seconds must be in (0, {MAX_STEP_TIMEOUT_SECONDS}]")
        return v

    @property
    def result_key(self) -> str:
        return self.output_key or self.name

    @property
    def attempts(self) -> int:
        return self.max_attempts if self.retry_on_failure else 1


class Workflow(BaseModel):
    """Workflow definition. Never hard-deleted; runs reference it historically."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    version: int = 1
    trigger_type: str = "manual"
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    simulation_mode: bool = False
    status: str = "active"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Run(BaseModel):
    """One execution instance of a workflow."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    workflow_id: str
    workflow_version: int = 1
    idempotency_key: str
    correlation_id: str = Field(default_factory=new_id)
    parent_run_id: Optional[str] = None
    root_run_id: Optional[str] = None
    retry_count: int = 0
    trigger_type: str = "manual"
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    current_step_order: int = 0
    context: dict[str, Any] = Field(default_factory=dict)
    completed_steps: list[int] = Field(default_factory=list)
    actions_count: int = 0
    is_simulation: bool = False
    locked_by: Optional[str] = None
    locked_until: Optional[datetime] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def lineage_id(self) -> str:
        return self.root_run_id or self.id


class Approval(BaseModel):
    """Human decision gate for a single step of a run."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    run_id: str
    step_order: int
    state: ApprovalState = ApprovalState.PENDING
    required_approvers: list[str] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    responded_at: Optional[datetime] = None
    responded_by: Optional[str] = None
    comment: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class ComplianceEvent(BaseModel):
    """Append-only, hash-linked audit record."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    sequence: int = 0
    category: str
    event_type: str
    ref_type: Optional[str] = None
    ref_id: Optional[str] = None
    actor: str
    actor_type: str = "system"
    payload: dict[str, Any] = Field(default_factory=dict)
    pii_redacted: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
    prev_digest: str = ""
    digest: str = ""


class ComplianceAnchor(BaseModel):
    """Periodic Merkle summary over a tenant's event digests."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    period: str
    from_ts: datetime
    to_ts: datetime
    event_count: int
    first_sequence: int
    last_sequence: int
    merkle_root: str
    hmac: str
    computed_at: datetime = Field(default_factory=utcnow)


class CredentialMetadata(BaseModel):
    """Relational side of a vault-held credential. Holds no secret material."""

    id: str
    tenant_id: str
    provider: str
    name: Optional[str] = None
    status: str = "active"
    created_at: datetime = Field(default_factory=utcnow)
    rotated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    last_health_check: Optional[datetime] = None
    last_health_ok: Optional[bool] = None


class IdempotencyRecord(BaseModel):
    """Reservation of a (tenant, scope, key) triple."""

    tenant_id: str
    scope: str
    key: str
    state: str = "in_progress"
    response: Optional[Any] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at
