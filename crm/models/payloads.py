"""
Payload Models - inputs and results of the workflow services.

These models are not persisted; they describe what callers pass in
(approval payloads, conversion forms) and what operations report back
(stage transitions, side-effect results, conversion reports).
"""

from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .approval import ApprovalRequest, ProposedProject, RequestType
from .records import Attachment, Project, ProjectPriority


# ============================================================================
# Stage workflow
# ============================================================================

class BlockReason(str, Enum):
    """Why a stage transition was refused."""
    LAST_STAGE = "last_stage"
    FIRST_STAGE = "first_stage"
    INCOMPLETE_TASKS = "incomplete_tasks"
    PENDING_APPROVAL = "pending_approval"
    UNKNOWN_STAGE = "unknown_stage"


class StageTransition(BaseModel):
    """Result of advance / go back / select."""

    changed: bool
    from_stage: str
    to_stage: str
    blocked_reason: Optional[BlockReason] = None
    incomplete_tasks: List[str] = Field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.blocked_reason is not None


# ============================================================================
# Side effects
# ============================================================================

class SideEffectResult(BaseModel):
    """Outcome of one best-effort write."""

    step: str
    ok: bool
    error: Optional[str] = None
    dead_letter_id: Optional[str] = None

    @classmethod
    def success(cls, step: str) -> "SideEffectResult":
        return cls(step=step, ok=True)

    @classmethod
    def failure(cls, step: str, error: str, dead_letter_id: Optional[str] = None) -> "SideEffectResult":
        return cls(step=step, ok=False, error=error, dead_letter_id=dead_letter_id)


# ============================================================================
# Approval requests
# ============================================================================

class ApprovalPayload(BaseModel):
    """What the requester fills in when asking for approval."""

    title: str
    description: str = ""
    request_type: RequestType
    entity_id: str
    entity_name: str = ""
    is_stage_advancement: bool = True
    current_stage: Optional[str] = None
    next_stage: Optional[str] = None
    proposed_project: Optional[ProposedProject] = None
    attached_files: List[Attachment] = Field(default_factory=list)
    quotation_id: Optional[str] = None
    auto_attach_quotation: bool = False


class ApprovalOutcome(BaseModel):
    """Result of submitting (or bypassing) an approval request."""

    request: Optional[ApprovalRequest] = None
    bypassed: bool = False
    transition: Optional[StageTransition] = None
    project_id: Optional[str] = None
    notifications: List[SideEffectResult] = Field(default_factory=list)


# ============================================================================
# Conversion
# ============================================================================

class ConversionForm(BaseModel):
    """Operator-entered fields for the new project."""

    name: Optional[str] = None
    description: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    budget: Optional[Decimal] = None
    priority: ProjectPriority = ProjectPriority.MEDIUM
    team: List[str] = Field(default_factory=list)
    stages: Optional[List[str]] = None
    selected_draft_quote_id: Optional[str] = None

    @classmethod
    def from_proposal(cls, proposal: ProposedProject, **overrides) -> "ConversionForm":
        return cls(**{**proposal.model_dump(), **overrides})


class ConversionReport(BaseModel):
    """The created project and how each follow-up step went."""

    project: Project
    steps: List[SideEffectResult] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return all(step.ok for step in self.steps)
