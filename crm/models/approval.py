"""
Approval Models - approval requests gating stage advancement and conversion.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict, model_validator

from .records import Attachment, ProjectPriority, utc_now


# ============================================================================
# Enums
# ============================================================================

class RequestType(str, Enum):
    """Kind of entity an approval request is about."""
    PROJECT = "Project"
    CUSTOMER = "Customer"


class ApprovalStatus(str, Enum):
    """Status values for approval requests."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DecisionAction(str, Enum):
    """Actions a decision maker can take."""
    APPROVE = "approve"
    REJECT = "reject"


# ============================================================================
# Models
# ============================================================================

class ProposedProject(BaseModel):
    """Project fields proposed by a conversion request."""

    name: str = ""
    description: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    budget: Optional[Decimal] = None
    priority: ProjectPriority = ProjectPriority.MEDIUM
    team: List[str] = Field(default_factory=list)


class ApprovalRequest(BaseModel):
    """Approval request document at approvalRequests/{id}."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    title: str
    description: str = ""
    request_type: RequestType
    entity_id: str
    entity_name: str = ""

    is_stage_advancement: bool = False
    current_stage: Optional[str] = None
    next_stage: Optional[str] = None

    proposed_project: Optional[ProposedProject] = None
    quotation_id: Optional[str] = None
    quotation_data: Optional[Dict[str, Any]] = None

    requested_by: str
    requested_by_name: str = ""
    requested_to: str
    requested_to_name: str = ""
    viewers: List[str] = Field(default_factory=list)

    status: ApprovalStatus = ApprovalStatus.PENDING
    decision_by: Optional[str] = None
    decision_date: Optional[datetime] = None
    decision_comment: Optional[str] = None

    attached_files: List[Attachment] = Field(default_factory=list)
    quotation_files: List[Attachment] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _no_self_approval(self):
        if self.requested_to == self.requested_by:
            raise ValueError("A requester cannot approve their own request")
        return self

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    @property
    def is_conversion(self) -> bool:
        return self.request_type == RequestType.CUSTOMER and not self.is_stage_advancement

    @property
    def entity_collection(self) -> str:
        return "projects" if self.request_type == RequestType.PROJECT else "customerProfiles"

    def participants(self) -> List[str]:
        return [self.requested_by, self.requested_to, *self.viewers]
