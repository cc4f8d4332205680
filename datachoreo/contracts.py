"""Result and message contracts exchanged by the execution core."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .persistence.models import ApprovalState, RunStatus, new_id, utcnow


class TriggerResult(BaseModel):
    run_id: str
    status: RunStatus
    correlation_id: str
    duplicate: bool = False


class StepOutcome(BaseModel):
    """What a single ``process_next_step`` invocation did."""

    run_id: str
    status: RunStatus
    next_step_order: Optional[int] = None
    approval_id: Optional[str] = None
    result: Optional[Any] = None
    message: Optional[str] = None
    locked: bool = False


class ApprovalDecision(BaseModel):
    approval_id: str
    run_id: str
    state: ApprovalState
    run_status: Optional[RunStatus] = None
    reason: Optional[str] = None


class RollbackResult(BaseModel):
    step_order: int
    action: Optional[str] = None
    ok: bool
    error: Optional[str] = None


class CancelResult(BaseModel):
    run_id: str
    status: RunStatus
    reason: str
    rollback_results: List[RollbackResult] = Field(default_factory=list)


class RetryResult(BaseModel):
    new_run_id: str
    parent_run_id: str
    retry_count: int
    duplicate: bool = False


class Violation(BaseModel):
    """A single integrity finding."""

    type: str
    severity: str = "critical"
    event_id: Optional[str] = None
    index: Optional[int] = None
    sequence: Optional[int] = None
    expected: Optional[str] = None
    actual: Optional[str] = None


class ChainVerification(BaseModel):
    tenant_id: str
    valid: bool
    event_count: int
    violations: List[Violation] = Field(default_factory=list)
    verified_at: datetime = Field(default_factory=utcnow)


class AnchorVerification(BaseModel):
    tenant_id: str
    period: str
    valid: bool
    violations: List[Violation] = Field(default_factory=list)


class RunNotice(BaseModel):
    """Wake-up message telling idle workers a run became runnable."""

    notice_id: str = Field(default_factory=new_id)
    run_id: str
    tenant_id: str
    reason: str = "runnable"
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize notice to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "RunNotice":
        """Deserialize notice from JSON."""
        return cls.model_validate_json(data)
