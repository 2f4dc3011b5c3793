"""Runtime value types exchanged with callers and collaborators."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class IdentityKind(str, Enum):
    USER = "USER"
    CONTACT = "CONTACT"
    SYSTEM = "SYSTEM"


class Identity(BaseModel):
    """Who a step is assigned to: a workspace user, an external contact or the system."""

    kind: IdentityKind
    ref: str

    @classmethod
    def user(cls, user_id: str) -> "Identity":
        return cls(kind=IdentityKind.USER, ref=user_id)

    @classmethod
    def contact(cls, email: str) -> "Identity":
        return cls(kind=IdentityKind.CONTACT, ref=email.strip().lower())

    @classmethod
    def system(cls) -> "Identity":
        return cls(kind=IdentityKind.SYSTEM, ref="system")

    def matches(self, value: str) -> bool:
        if self.kind is IdentityKind.CONTACT:
            return self.ref == value.strip().lower()
        return self.ref == value

    def __str__(self) -> str:
        return f"{self.kind.value.lower()}:{self.ref}"


class KickoffData(BaseModel):
    """Input supplied when a run is started."""

    started_by: str
    form: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    role_assignments: Dict[str, str] = Field(
        default_factory=dict, description="role_id -> contact email"
    )


class RunContext(BaseModel):
    """Everything assignee resolution and branch conditions may read."""

    template_id: str
    run_id: Optional[str] = None
    initiator: str
    kickoff: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    step_outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    role_assignments: Dict[str, Identity] = Field(default_factory=dict)
