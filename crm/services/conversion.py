"""
Conversion Workflow

Turns a customer pipeline into a project.

The project document, the customer's link to it and the conversion log are
written in one transaction. The follow-up steps (files, quote, transcripts,
lead score, panel reset) run afterwards; each is idempotent, its outcome is
recorded in conversionLogs/{project_id}, and a failed step is dead-lettered
and can be re-run with resume().
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from crm.models.approval import ApprovalRequest, ApprovalStatus, RequestType
from crm.models.payloads import ConversionForm, ConversionReport, SideEffectResult
from crm.models.pipeline import StageContent, StagePipeline
from crm.models.records import CustomerProfile, LeadScore, Project, utc_now
from crm.models.team import UserRef
from crm.services.lead_score import LeadScoreService
from crm.services.notifications import DeadLetterQueue
from crm.services.quotations import QuotationService
from crm.services.transcripts import TranscriptService
from crm.utils.document_store import DocumentStore, join_path, new_document_id
from crm.utils.errors import ConversionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CUSTOMERS = "customerProfiles"
PROJECTS = "projects"
APPROVAL_REQUESTS = "approvalRequests"
CONVERSION_LOGS = "conversionLogs"

STEP_PENDING = "pending"
STEP_DONE = "done"
STEP_FAILED = "failed"

STEPS = ("migrate_files", "migrate_quote", "migrate_transcripts", "freeze_lead_score", "reset_panels")

# Steps that must have completed before a step may run
PREREQUISITES = {"reset_panels": ("migrate_files",)}


class ConversionWorkflow:
    """Customer -> project conversion with a resumable step log."""

    KIND = "conversionStep"
    MISSING_QUOTE_KIND = "conversionQuote"

    def __init__(
        self,
        store: DocumentStore,
        quotations: Optional[QuotationService] = None,
        transcripts: Optional[TranscriptService] = None,
        lead_scores: Optional[LeadScoreService] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.clock = clock
        self.dead_letters = dead_letters or DeadLetterQueue(store)
        self.quotations = quotations or QuotationService(store, clock)
        self.transcripts = transcripts or TranscriptService(store)
        self.lead_scores = lead_scores or LeadScoreService(store, self.dead_letters, clock)

    # ========================================================================
    # Gate
    # ========================================================================

    def _check_gate(self, customer_id: str, approved_request: Optional[ApprovalRequest]) -> Optional[ApprovalRequest]:
        if approved_request is not None:
            if approved_request.id:
                stored = self.store.get(join_path(APPROVAL_REQUESTS, approved_request.id))
                if stored is None:
                    raise NotFoundError(f"Approval request {approved_request.id} not found")
                approved_request = ApprovalRequest.model_validate(stored)
            if approved_request.status != ApprovalStatus.APPROVED:
                raise ValidationError(f"Approval request is {approved_request.status.value}, not approved")
            if approved_request.request_type != RequestType.CUSTOMER or approved_request.is_stage_advancement:
                raise ValidationError("Approval request is not a customer conversion request")
            if approved_request.entity_id != customer_id:
                raise ValidationError("Approval request belongs to a different customer")
            return approved_request

        pending = self.store.query(APPROVAL_REQUESTS, [
            ("entity_id", "==", customer_id),
            ("status", "==", ApprovalStatus.PENDING.value),
        ])
        if any(ApprovalRequest.model_validate(d).is_conversion for d in pending):
            raise ValidationError("A conversion request for this customer is still pending")
        return None

    # ========================================================================
    # Convert
    # ========================================================================

    def convert(
        self,
        customer_id: str,
        approved_request: Optional[ApprovalRequest] = None,
        form: Optional[ConversionForm] = None,
        operator: Optional[UserRef] = None
    ) -> ConversionReport:
        """
        Convert a customer into a new project.

        Args:
            customer_id: Customer to convert
            approved_request: Approved conversion request, if approval was sought
            form: Operator-entered project fields
            operator: User performing the conversion

        Returns:
            ConversionReport with the project and the result of each follow-up step

        Raises:
            NotFoundError: If the customer does not exist
            ValidationError: If the approval gate does not allow conversion
            ConversionError: If the project could not be created
        """
        customer_path = join_path(CUSTOMERS, customer_id)
        document = self.store.get(customer_path)
        if document is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        customer = CustomerProfile.model_validate(document)

        request = self._check_gate(customer_id, approved_request)
        if form is None:
            proposal = request.proposed_project if request else None
            form = ConversionForm.from_proposal(proposal) if proposal else ConversionForm()
        selected_quote_id = form.selected_draft_quote_id or (request.quotation_id if request else None)

        now = self.clock()
        project = Project(
            id=new_document_id(),
            name=(form.name or "").strip() or customer.display_name,
            description=form.description,
            owner_id=operator.id if operator else customer.owner_id,
            team=list(form.team),
            start_date=form.start_date,
            end_date=form.end_date,
            budget=form.budget,
            priority=form.priority,
            customer_id=customer_id,
            converted_from_customer=True,
            customer_profile=customer.customer_profile,
            company_profile=customer.company_profile,
            created_at=now,
            **({"stages": list(form.stages)} if form.stages else {}),
        )

        log = {
            "customer_id": customer_id,
            "project_id": project.id,
            "selected_quote_id": selected_quote_id,
            "request_id": request.id if request else None,
            "operator_id": operator.id if operator else None,
            "steps": {step: {"status": STEP_PENDING, "error": None, "attempts": 0} for step in STEPS},
            "created_at": now.isoformat(),
        }

        try:
            with self.store.transaction() as tx:
                tx.set(join_path(PROJECTS, project.id), project.model_dump(mode="json", exclude={"id"}))
                tx.update(customer_path, {
                    "projects": [*customer.projects, project.id],
                    "project_snapshots": [
                        *customer.project_snapshots,
                        {"id": project.id, "name": project.name, "created_at": now.isoformat()},
                    ],
                })
                tx.set(join_path(CONVERSION_LOGS, project.id), log)
        except Exception as e:
            logger.error(f"Conversion of customer {customer_id} failed: {e}", exc_info=True)
            raise ConversionError(f"Could not create project for customer {customer_id}: {e}") from e

        logger.info(f"Customer {customer_id} converted into project {project.id}")
        steps = self._run_steps(project.id, log)
        return ConversionReport(project=self._project(project.id), steps=steps)

    def resume(self, project_id: str) -> ConversionReport:
        """Re-run every conversion step that has not completed yet"""
        log = self.store.get(join_path(CONVERSION_LOGS, project_id))
        if log is None:
            raise NotFoundError(f"No conversion log for project {project_id}")
        steps = self._run_steps(project_id, log)
        return ConversionReport(project=self._project(project_id), steps=steps)

    def status(self, project_id: str) -> Dict[str, str]:
        log = self.store.get(join_path(CONVERSION_LOGS, project_id)) or {}
        return {name: entry["status"] for name, entry in (log.get("steps") or {}).items()}

    def _project(self, project_id: str) -> Project:
        return Project.model_validate(self.store.get(join_path(PROJECTS, project_id)))

    # ========================================================================
    # Steps
    # ========================================================================

    def _run_steps(self, project_id: str, log: dict) -> List[SideEffectResult]:
        log_path = join_path(CONVERSION_LOGS, project_id)
        statuses = {name: entry["status"] for name, entry in log["steps"].items()}
        results = []

        for step in STEPS:
            if statuses.get(step) == STEP_DONE:
                continue
            entry = log["steps"].get(step, {})
            attempts = entry.get("attempts", 0) + 1
            try:
                waiting = [p for p in PREREQUISITES.get(step, ()) if statuses.get(p) != STEP_DONE]
                if waiting:
                    raise ConversionError(f"{step} waits for {', '.join(waiting)}")
                getattr(self, f"_{step}")(log)
            except Exception as e:
                logger.warning(f"Conversion step {step} for project {project_id} failed: {e}")
                statuses[step] = STEP_FAILED
                dead_letter_id = self.dead_letters.push(self.KIND, {"project_id": project_id, "step": step}, e)
                self.store.update(log_path, {
                    f"steps.{step}": {"status": STEP_FAILED, "error": str(e), "attempts": attempts},
                })
                results.append(SideEffectResult.failure(step, str(e), dead_letter_id))
                continue

            statuses[step] = STEP_DONE
            self.store.update(log_path, {
                f"steps.{step}": {"status": STEP_DONE, "error": None, "attempts": attempts},
            })
            self._resolve_dead_letters(project_id, step)
            results.append(SideEffectResult.success(step))

        return results

    def _resolve_dead_letters(self, project_id: str, step: str):
        for letter in self.dead_letters.pending(self.KIND):
            if letter.payload.get("project_id") == project_id and letter.payload.get("step") == step:
                self.dead_letters.resolve(letter.id)

    def _migrate_files(self, log: dict):
        customer = CustomerProfile.model_validate(self.store.get(join_path(CUSTOMERS, log["customer_id"])))
        with self.store.transaction() as tx:
            project_path = join_path(PROJECTS, log["project_id"])
            project = Project.model_validate(tx.get(project_path))
            known = {f.url for f in project.files}
            added = [f for f in customer.files if f.url not in known]
            if added:
                files = [f.model_dump(mode="json") for f in [*project.files, *added]]
                tx.update(project_path, {"files": files})
        logger.debug(f"Copied {len(added)} files to project {log['project_id']}")

    def _migrate_quote(self, log: dict):
        customer_id = log["customer_id"]
        project_id = log["project_id"]
        selected = log.get("selected_quote_id")

        if selected:
            draft = self.quotations.get_draft(customer_id, selected)
            problem = None
            if draft is None:
                problem = NotFoundError(f"Designated draft quote {selected} not found")
            elif draft.project_id not in (None, project_id):
                problem = ValidationError(f"Draft quote {selected} was already migrated to project {draft.project_id}")
            if problem:
                # Reported once; the remaining drafts are still cleaned up
                logger.warning(f"Quote migration for project {project_id}: {problem}")
                self.dead_letters.push(self.MISSING_QUOTE_KIND, {
                    "project_id": project_id, "customer_id": customer_id, "quote_id": selected,
                }, problem)
            else:
                self.quotations.save_project_quote(project_id, draft)
                self.store.update(
                    join_path(self.quotations.drafts_collection(customer_id), selected),
                    {"project_id": project_id},
                )

        for draft in self.quotations.list_drafts(customer_id):
            if draft.id != selected:
                self.quotations.delete_draft(customer_id, draft.id)

        # At most one quote may live under a converted project
        quotes = self.quotations.project_quotes(project_id)
        keep = next((q for q in quotes if q.id == selected), quotes[0] if quotes else None)
        for quote in quotes:
            if quote is not keep:
                self.store.delete(join_path(self.quotations.project_quotes_collection(project_id), quote.id))

    def _migrate_transcripts(self, log: dict):
        self.transcripts.move_all(CUSTOMERS, log["customer_id"], PROJECTS, log["project_id"])

    def _freeze_lead_score(self, log: dict):
        customer_id = log["customer_id"]
        project_path = join_path(PROJECTS, log["project_id"])
        project = self.store.get(project_path)
        if not project.get("lead_score_snapshot"):
            score = self.lead_scores.recompute(customer_id) or LeadScore(updated_at=self.clock())
            self.store.update(project_path, {"lead_score_snapshot": score.model_dump(mode="json")})
        self.lead_scores.reset(customer_id)

    def _reset_panels(self, log: dict):
        customer_path = join_path(CUSTOMERS, log["customer_id"])
        with self.store.transaction() as tx:
            document = tx.get(customer_path)
            if document is None:
                raise NotFoundError(f"Customer {log['customer_id']} not found")
            pipeline = StagePipeline.model_validate(document)
            cleared = StagePipeline(
                stages=pipeline.stages,
                current_stage=pipeline.stages[0],
                stage_data={name: StageContent() for name in pipeline.stages},
            )
            tx.update(customer_path, {
                **cleared.pipeline_fields(),
                "activities": [],
                "reminders": [],
                "files": [],
            })
