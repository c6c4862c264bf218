"""
SOP Templates

Built-in standard-operating-procedure templates for customer and project
pipelines. Applying a template replaces the entity's stages, per-stage tasks
and current stage, and records which template (and version) is in use.
"""

import logging
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from crm.models.pipeline import StageContent, StagePipeline, StageTask
from crm.models.records import Reminder, utc_now
from crm.utils.config import settings
from crm.utils.document_store import DocumentStore, join_path
from crm.utils.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_TIME = "09:00"


class TemplateKind(str, Enum):
    CUSTOMER = "customer"
    PROJECT = "project"


class StageOutline(BaseModel):
    name: str
    tasks: List[str] = Field(default_factory=list)


class SopTemplate(BaseModel):
    id: str
    kind: TemplateKind
    name: str
    version: int = 1
    stages: List[StageOutline]
    default_reminders: List[str] = Field(default_factory=list)

    @property
    def entity_collection(self) -> str:
        return "customerProfiles" if self.kind == TemplateKind.CUSTOMER else "projects"


def _template(template_id: str, kind: TemplateKind, name: str, stages: Dict[str, List[str]], reminders=()) -> SopTemplate:
    return SopTemplate(
        id=template_id,
        kind=kind,
        name=name,
        stages=[StageOutline(name=n, tasks=t) for n, t in stages.items()],
        default_reminders=list(reminders),
    )


# ============================================================================
# Catalog
# ============================================================================

CATALOG: Dict[str, SopTemplate] = {t.id: t for t in [
    _template("customer_general_v1", TemplateKind.CUSTOMER, "General - Customer Profile", {
        "Working": [],
        "Qualified": [],
        "Converted": [],
    }),
    _template("customer_new_acquisition_v1", TemplateKind.CUSTOMER, "New Customer Acquisition SOP", {
        "Lead Capture": ["Record company info", "Identify decision maker", "Log first contact details"],
        "Qualification": ["Assess customer needs", "Check budget and timeline", "Mark as qualified lead"],
        "Proposal Stage": ["Prepare initial quotation", "Send proposal to customer", "Schedule follow-up meeting"],
    }, ["Follow-up in 3 days after first contact"]),
    _template("customer_onboarding_v1", TemplateKind.CUSTOMER, "Customer Onboarding SOP", {
        "Information Gathering": [
            "Collect company registration details", "Get contact persons info", "Confirm industry & project scope",
        ],
        "Setup & Agreements": ["Prepare service agreement", "Confirm billing details", "Upload signed documents"],
        "Kickoff Preparation": [
            "Set reminder for project start", "Schedule kickoff meeting", "Assign internal account manager",
        ],
    }, ["Kickoff meeting reminder"]),
    _template("customer_crm_v1", TemplateKind.CUSTOMER, "Customer Relationship Management SOP", {
        "Regular Check-ins": ["Monthly check-in call", "Update contact notes", "Log customer feedback"],
        "Upsell/Expansion": [
            "Identify cross-sell opportunities", "Share new product/service updates", "Prepare upsell quotation",
        ],
        "Renewal/Retention": [
            "Remind customer of contract renewal", "Prepare renewal quotation", "Collect renewal confirmation",
        ],
    }, ["Monthly customer follow-up"]),
    _template("project_general_v1", TemplateKind.PROJECT, "General - Project Board", {
        "Planning": [],
        "Development": [],
        "Testing": [],
        "Completed": [],
    }),
    _template("project_itdev_v1", TemplateKind.PROJECT, "IT / Software Development Lifecycle", {
        "Requirement Analysis": ["Gather requirements", "Prioritize features"],
        "System Design": ["Design system", "Create wireframes"],
        "Development": ["Implement features", "Commit to repo"],
        "Testing & QA": ["Unit tests", "Integration tests"],
        "Deployment": ["Deploy to server", "Monitor errors"],
        "Maintenance & Support": ["Fix bugs", "Provide updates"],
    }),
]}


def list_templates(kind: Optional[TemplateKind] = None) -> List[SopTemplate]:
    return [t for t in CATALOG.values() if kind is None or t.kind == kind]


def get_template(template_id: str) -> SopTemplate:
    try:
        return CATALOG[template_id]
    except KeyError:
        raise NotFoundError(f"Unknown SOP template: {template_id}")


def build_pipeline(template: SopTemplate) -> StagePipeline:
    """Fresh pipeline from a template: all tasks open, first stage current"""
    stage_data = {
        outline.name: StageContent(tasks=[StageTask(name=t) for t in outline.tasks])
        for outline in template.stages
    }
    names = [outline.name for outline in template.stages]
    return StagePipeline(stages=names, current_stage=names[0], stage_data=stage_data)


def default_reminders(template: SopTemplate, today: date) -> List[Reminder]:
    due = today + timedelta(days=settings.REMINDER_DEFAULT_DAYS)
    return [
        Reminder(title=title, date=due.isoformat(), time=DEFAULT_REMINDER_TIME)
        for title in template.default_reminders
    ]


class SopTemplateService:
    """Applies catalog templates to stored customers and projects."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def apply_template(self, entity_collection: str, entity_id: str, template: SopTemplate) -> StagePipeline:
        """
        Overwrite an entity's pipeline with a template.

        Customer reminders replace the reminders field; project reminders are
        added to projects/{id}/reminders.

        Raises:
            ValidationError: If the template kind does not match the entity
            NotFoundError: If the entity does not exist
        """
        if template.entity_collection != entity_collection:
            raise ValidationError(
                f"Template {template.id} is for {template.kind.value} pipelines, not {entity_collection}"
            )

        pipeline = build_pipeline(template)
        reminders = default_reminders(template, self.clock().date())
        path = join_path(entity_collection, entity_id)
        fields = {
            **pipeline.pipeline_fields(),
            "sop_template_id": template.id,
            "sop_version": template.version,
        }
        if template.kind == TemplateKind.CUSTOMER:
            fields["reminders"] = [r.model_dump(mode="json") for r in reminders]

        with self.store.transaction() as tx:
            tx.update(path, fields)
            if template.kind == TemplateKind.PROJECT:
                for reminder in reminders:
                    tx.add(join_path(path, "reminders"), reminder.model_dump(mode="json"))

        logger.info(f"Applied SOP template {template.id} v{template.version} to {path}")
        return pipeline
