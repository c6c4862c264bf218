"""
Models package for the CRM workflow.
"""

# Pipeline models
from .pipeline import (
    StagePipeline,
    StageContent,
    StageTask,
    DEFAULT_CUSTOMER_STAGES,
    DEFAULT_PROJECT_STAGES,
)

# Record models
from .records import (
    CustomerProfile,
    Project,
    Notification,
    MeetingTranscript,
    LeadEvent,
    LeadScore,
    DeadLetter,
    Attachment,
    ContactInfo,
    CompanyInfo,
    Reminder,
    ScoreBand,
    LeadEventType,
    ProjectPriority,
)

# Approval models
from .approval import (
    ApprovalRequest,
    ProposedProject,
    RequestType,
    ApprovalStatus,
    DecisionAction,
)

# Quote models
from .quote import (
    Quote,
    QuoteItem,
    QuoteTotals,
    QuoteParty,
    QuoteProjectInfo,
    QuoteStatus,
)

# Team models
from .team import (
    TeamInvitation,
    TeamMember,
    UserRef,
    InvitationStatus,
)

# Service payloads
from .payloads import (
    ApprovalPayload,
    ApprovalOutcome,
    BlockReason,
    ConversionForm,
    ConversionReport,
    SideEffectResult,
    StageTransition,
)

__version__ = "0.1.0"

__all__ = [
    # Pipeline
    "StagePipeline",
    "StageContent",
    "StageTask",
    "DEFAULT_CUSTOMER_STAGES",
    "DEFAULT_PROJECT_STAGES",
    # Records
    "CustomerProfile",
    "Project",
    "Notification",
    "MeetingTranscript",
    "LeadEvent",
    "LeadScore",
    "DeadLetter",
    "Attachment",
    "ContactInfo",
    "CompanyInfo",
    "Reminder",
    "ScoreBand",
    "LeadEventType",
    "ProjectPriority",
    # Approval
    "ApprovalRequest",
    "ProposedProject",
    "RequestType",
    "ApprovalStatus",
    "DecisionAction",
    # Quote
    "Quote",
    "QuoteItem",
    "QuoteTotals",
    "QuoteParty",
    "QuoteProjectInfo",
    "QuoteStatus",
    # Team
    "TeamInvitation",
    "TeamMember",
    "UserRef",
    "InvitationStatus",
    # Payloads
    "ApprovalPayload",
    "ApprovalOutcome",
    "BlockReason",
    "ConversionForm",
    "ConversionReport",
    "SideEffectResult",
    "StageTransition",
]
