"""
Record Models - Pydantic models for the persisted CRM documents.

These models represent customer profiles, projects and the small records
hanging off them (reminders, files, transcripts, notifications, lead events).
They are dumped with model_dump(mode="json") before being written to the
document store.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict

from .pipeline import StagePipeline, DEFAULT_PROJECT_STAGES


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class ScoreBand(str, Enum):
    """Lead score bands."""
    HOT = "Hot"
    WARM = "Warm"
    COLD = "Cold"


class LeadEventType(str, Enum):
    """Events feeding the lead score."""
    STAGE_ADVANCED = "stageAdvanced"
    APPROVAL_REQUESTED = "approvalRequested"
    APPROVAL_APPROVED = "approvalApproved"
    APPROVAL_REJECTED = "approvalRejected"
    QUOTE_CREATED = "quoteCreated"
    TASK_COMPLETED = "taskCompleted"
    EMAIL_OUTBOUND = "emailOutbound"
    EMAIL_REPLY = "emailReply"


class ProjectPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============================================================================
# Shared value objects
# ============================================================================

class Attachment(BaseModel):
    """A stored file reference."""

    url: str
    name: str


class ContactInfo(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""


class CompanyInfo(BaseModel):
    company: str = ""
    industry: str = ""
    location: str = ""


class Reminder(BaseModel):
    title: str
    description: str = ""
    date: str = ""
    time: str = ""


class LeadScore(BaseModel):
    """Computed lead score with its explanation."""

    score: int = Field(ge=0, le=100, default=0)
    band: ScoreBand = ScoreBand.COLD
    breakdown: List[str] = Field(default_factory=list)
    fit_points: float = 0
    intent_points: float = 0
    penalty_points: float = 0
    updated_at: Optional[datetime] = None


# ============================================================================
# Documents
# ============================================================================

class CustomerProfile(StagePipeline):
    """Customer document at customerProfiles/{id}."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    owner_id: str = ""
    customer_profile: ContactInfo = Field(default_factory=ContactInfo)
    company_profile: CompanyInfo = Field(default_factory=CompanyInfo)
    activities: List[Dict[str, Any]] = Field(default_factory=list)
    reminders: List[Reminder] = Field(default_factory=list)
    files: List[Attachment] = Field(default_factory=list)
    projects: List[str] = Field(default_factory=list)
    project_snapshots: List[Dict[str, Any]] = Field(default_factory=list)
    lead_scores: Dict[str, Any] = Field(default_factory=dict)
    sop_template_id: Optional[str] = None
    sop_version: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def display_name(self) -> str:
        return self.company_profile.company or self.customer_profile.name or "Customer"


class Project(StagePipeline):
    """Project document at projects/{id}."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    stages: List[str] = Field(default_factory=lambda: list(DEFAULT_PROJECT_STAGES))
    name: str
    description: str = ""
    owner_id: str = ""
    team: List[str] = Field(default_factory=list)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    budget: Optional[Decimal] = None
    priority: ProjectPriority = ProjectPriority.MEDIUM
    files: List[Attachment] = Field(default_factory=list)
    customer_id: Optional[str] = None
    converted_from_customer: bool = False
    customer_profile: ContactInfo = Field(default_factory=ContactInfo)
    company_profile: CompanyInfo = Field(default_factory=CompanyInfo)
    lead_score_snapshot: Optional[LeadScore] = None
    sop_template_id: Optional[str] = None
    sop_version: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)


class Notification(BaseModel):
    """Entry in users/{uid}/notifications."""

    id: Optional[str] = None
    user_id: str
    message: str
    ref_type: str
    ref_id: str
    context: Dict[str, Any] = Field(default_factory=dict)
    unread: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class MeetingTranscript(BaseModel):
    """Entry in {customerProfiles|projects}/{id}/meetingTranscripts."""

    id: Optional[str] = None
    title: str = "Meeting"
    text: str
    summary: Optional[str] = None
    action_items: List[str] = Field(default_factory=list)
    origin: Optional[Dict[str, str]] = None
    created_at: datetime = Field(default_factory=utc_now)


class LeadEvent(BaseModel):
    """Entry in customerProfiles/{id}/leadEvents."""

    id: Optional[str] = None
    type: LeadEventType
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class DeadLetter(BaseModel):
    """A failed best-effort side effect kept for retry."""

    id: Optional[str] = None
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: str
    attempts: int = 1
    created_at: datetime = Field(default_factory=utc_now)
