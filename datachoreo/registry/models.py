"""Pydantic models describing provider actions."""

from __future__ import annotations

from typing import Any, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field, field_validator


@runtime_checkable
class ProviderAction(Protocol):
    """Callable side of a provider action."""

    async def invoke(self, params: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]:
        ...


class ParamDescriptor(BaseModel):
    """Describes a single input parameter of an action."""

    name: str
    type_ref: str = Field("any", description="JSON type name of the parameter")
    required: bool = True
    description: Optional[str] = None


class ActionDescriptor(BaseModel):
    """Metadata describing a registered provider action."""

    provider: str
    action: str
    description: Optional[str] = None
    inputs: List[ParamDescriptor] = Field(default_factory=list)
    side_effects: bool = True
    requires_credentials: bool = False
    rollback_action: Optional[str] = None

    @field_validator("provider", "action")
    @classmethod
    def _ensure_name(cls, v: str) -> str:
        if not v or "." in v:
            raise ValueError("provider and action names must be non-empty and contain no dots")
        return v

    @property
    def qualified_name(self) -> str:
        return f"{self.provider}.{self.action}"
