"""
Services package for the CRM workflow.
"""

from .notifications import DeadLetterQueue, NotificationSink
from .quotations import QuoteBuilder, QuotationService, recompute_totals
from .lead_score import LeadScoreService, LeadScoringSettings, compute_lead_score
from .team_directory import TeamDirectory
from .transcripts import (
    TranscriptService,
    TranscriptSummarizer,
    get_transcript_summarizer,
    reset_transcript_summarizer,
)
from .sop_templates import SopTemplateService, get_template, list_templates
from .stage_workflow import StageEditor, StageWorkflow
from .approvals import ApprovalService
from .conversion import ConversionWorkflow

__version__ = "0.1.0"

__all__ = [
    "DeadLetterQueue",
    "NotificationSink",
    "QuoteBuilder",
    "QuotationService",
    "recompute_totals",
    "LeadScoreService",
    "LeadScoringSettings",
    "compute_lead_score",
    "TeamDirectory",
    "TranscriptService",
    "TranscriptSummarizer",
    "get_transcript_summarizer",
    "reset_transcript_summarizer",
    "SopTemplateService",
    "get_template",
    "list_templates",
    "StageEditor",
    "StageWorkflow",
    "ApprovalService",
    "ConversionWorkflow",
]
