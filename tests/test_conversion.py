"""
Tests for customer -> project conversion.
"""

from decimal import Decimal
from unittest.mock import patch

import pytest

from crm.models import (
    ApprovalRequest,
    ApprovalStatus,
    Attachment,
    ConversionForm,
    LeadEventType,
    ProposedProject,
    Quote,
    QuoteItem,
    Reminder,
    RequestType,
    UserRef,
)
from crm.services.conversion import STEPS, ConversionWorkflow
from crm.services.transcripts import TranscriptService
from crm.utils.errors import ConversionError, ValidationError
from crm.utils.memory_store import MemoryTransaction

from conftest import save_customer


@pytest.fixture
def transcripts(store):
    return TranscriptService(store, summarizer=object())


@pytest.fixture
def workflow(store, quotations, transcripts, lead_scores, dead_letters, clock):
    return ConversionWorkflow(store, quotations, transcripts, lead_scores, dead_letters, clock)


@pytest.fixture
def operator():
    return UserRef(id="ops", name="Operator")


@pytest.fixture
def customer(store):
    return save_customer(
        store,
        tasks={"Working": ["Call"], "Qualified": ["Qualify"]},
        current_stage="Converted",
        owner_id="ops",
        files=[Attachment(url="https://files/brief.pdf", name="brief.pdf")],
        reminders=[Reminder(title="Follow up")],
        activities=[{"type": "call"}],
    )


def add_drafts(quotations, clock, count):
    drafts = []
    for i in range(count):
        drafts.append(quotations.save_draft(
            "cust-1",
            Quote(items=[QuoteItem(quantity=1, unit_price=100 * (i + 1))], created_at=clock()),
        ))
        clock.advance(minutes=1)
    return drafts


def approved_request(store, **fields):
    request = ApprovalRequest(
        title="Convert", request_type=RequestType.CUSTOMER, entity_id="cust-1",
        is_stage_advancement=False, requested_by="ops", requested_to="boss",
        status=ApprovalStatus.APPROVED,
        proposed_project=ProposedProject(name="Acme rollout", budget=Decimal("1000")),
        **fields,
    )
    request.id = store.add("approvalRequests", request.model_dump(mode="json", exclude={"id"}))
    return request


class TestPrimaryWrite:

    def test_project_seeded_from_customer_and_form(self, workflow, store, customer, operator):
        form = ConversionForm(name="Acme rollout", budget=Decimal("1500"), team=["bob"])

        report = workflow.convert("cust-1", None, form, operator)

        project = report.project
        assert project.name == "Acme rollout"
        assert project.customer_id == "cust-1"
        assert project.converted_from_customer is True
        assert project.budget == Decimal("1500")
        assert project.team == ["bob"]
        assert project.stages == ["Planning", "Development", "Testing", "Completed"]
        assert store.get("customerProfiles/cust-1")["projects"] == [project.id]
        assert report.complete

    def test_form_defaults_from_approved_request(self, workflow, store, customer, operator):
        request = approved_request(store)

        report = workflow.convert("cust-1", request, None, operator)

        assert report.project.name == "Acme rollout"
        assert report.project.budget == Decimal("1000")

    def test_pending_conversion_request_blocks(self, workflow, store, customer, operator):
        request = approved_request(store)
        store.update(f"approvalRequests/{request.id}", {"status": "pending"})

        with pytest.raises(ValidationError):
            workflow.convert("cust-1", None, ConversionForm(), operator)
        with pytest.raises(ValidationError):
            workflow.convert("cust-1", request, ConversionForm(), operator)
        assert store.query("projects") == []

    def test_request_for_other_customer_refused(self, workflow, store, customer, operator):
        save_customer(store, "cust-2")
        request = approved_request(store)

        with pytest.raises(ValidationError):
            workflow.convert("cust-2", request, ConversionForm(), operator)

    def test_primary_write_failure_aborts(self, workflow, store, customer, operator):
        real_set = MemoryTransaction.set

        def failing_set(tx, path, data, merge=False):
            if path.startswith("projects/"):
                raise RuntimeError("db down")
            return real_set(tx, path, data, merge)

        with patch.object(MemoryTransaction, "set", autospec=True, side_effect=failing_set):
            with pytest.raises(ConversionError):
                workflow.convert("cust-1", None, ConversionForm(), operator)

        assert store.query("projects") == []
        assert store.query("conversionLogs") == []
        assert store.get("customerProfiles/cust-1")["files"]


class TestQuoteMigration:

    def test_designated_draft_is_the_only_quote(self, workflow, store, quotations, clock, customer, operator):
        drafts = add_drafts(quotations, clock, 3)
        store.update(f"customerProfiles/cust-1/quotesDrafts/{drafts[1].id}", {"total": "1.00"})

        report = workflow.convert("cust-1", None, ConversionForm(selected_draft_quote_id=drafts[1].id), operator)

        quotes = quotations.project_quotes(report.project.id)
        assert [q.id for q in quotes] == [drafts[1].id]
        assert quotes[0].total == Decimal("214.00")
        remaining = quotations.list_drafts("cust-1", include_migrated=True)
        assert [(q.id, q.project_id) for q in remaining] == [(drafts[1].id, report.project.id)]

    def test_no_designation_migrates_nothing(self, workflow, store, quotations, clock, customer, operator):
        add_drafts(quotations, clock, 2)

        report = workflow.convert("cust-1", None, ConversionForm(), operator)

        assert quotations.project_quotes(report.project.id) == []
        assert quotations.list_drafts("cust-1", include_migrated=True) == []

    def test_request_quotation_is_used(self, workflow, store, quotations, clock, customer, operator):
        drafts = add_drafts(quotations, clock, 2)
        request = approved_request(store, quotation_id=drafts[0].id)

        report = workflow.convert("cust-1", request, None, operator)

        assert [q.id for q in quotations.project_quotes(report.project.id)] == [drafts[0].id]

    def test_missing_designated_draft_still_clears_drafts(
        self, workflow, store, quotations, dead_letters, clock, customer, operator,
    ):
        drafts = add_drafts(quotations, clock, 3)
        quotations.delete_draft("cust-1", drafts[0].id)

        report = workflow.convert("cust-1", None, ConversionForm(selected_draft_quote_id=drafts[0].id), operator)

        assert workflow.status(report.project.id)["migrate_quote"] == "done"
        assert quotations.project_quotes(report.project.id) == []
        assert quotations.list_drafts("cust-1", include_migrated=True) == []
        letters = dead_letters.pending(workflow.MISSING_QUOTE_KIND)
        assert [l.payload["quote_id"] for l in letters] == [drafts[0].id]
        assert dead_letters.pending(workflow.KIND) == []

        workflow.resume(report.project.id)
        assert len(dead_letters.pending(workflow.MISSING_QUOTE_KIND)) == 1


class TestFollowUpSteps:

    def test_transcripts_move_with_origin(self, workflow, store, transcripts, customer, operator):
        transcripts.add("customerProfiles", "cust-1", "Kickoff", "We agreed on scope.")

        report = workflow.convert("cust-1", None, ConversionForm(), operator)

        assert transcripts.list("customerProfiles", "cust-1") == []
        moved = transcripts.list("projects", report.project.id)
        assert len(moved) == 1
        assert moved[0].origin == {"collection": "customerProfiles", "id": "cust-1"}

    def test_panels_reset_but_stage_names_kept(self, workflow, store, customer, operator):
        report = workflow.convert("cust-1", None, ConversionForm(), operator)

        stored = store.get("customerProfiles/cust-1")
        assert stored["stages"] == ["Working", "Qualified", "Converted"]
        assert stored["current_stage"] == "Working"
        assert all(not c["tasks"] and not c["notes"] for c in stored["stage_data"].values())
        assert stored["files"] == [] and stored["reminders"] == [] and stored["activities"] == []
        assert [f.name for f in report.project.files] == ["brief.pdf"]

    def test_lead_score_frozen_and_reset(self, workflow, store, lead_scores, clock, customer, operator):
        lead_scores.log_event("cust-1", LeadEventType.STAGE_ADVANCED)
        lead_scores.log_event("cust-1", LeadEventType.APPROVAL_APPROVED)
        clock.advance(minutes=1)

        report = workflow.convert("cust-1", None, ConversionForm(), operator)

        assert report.project.lead_score_snapshot.score == 40
        assert lead_scores.current("cust-1").score == 0
        assert lead_scores.recompute("cust-1").score == 0

    def test_failed_step_is_dead_lettered_and_resumable(
        self, workflow, store, transcripts, dead_letters, customer, operator
    ):
        transcripts.add("customerProfiles", "cust-1", "Kickoff", "Notes")

        with patch.object(transcripts, "move_all", side_effect=RuntimeError("timeout")):
            report = workflow.convert("cust-1", None, ConversionForm(), operator)

        assert not report.complete
        failed = [s for s in report.steps if not s.ok]
        assert [s.step for s in failed] == ["migrate_transcripts"]
        assert [s.step for s in report.steps if s.ok] == [s for s in STEPS if s != "migrate_transcripts"]
        assert workflow.status(report.project.id)["migrate_transcripts"] == "failed"
        assert len(dead_letters.pending(ConversionWorkflow.KIND)) == 1

        resumed = workflow.resume(report.project.id)

        assert [s.step for s in resumed.steps] == ["migrate_transcripts"]
        assert resumed.complete
        assert set(workflow.status(report.project.id).values()) == {"done"}
        assert dead_letters.pending(ConversionWorkflow.KIND) == []
        assert len(transcripts.list("projects", report.project.id)) == 1

    def test_reset_waits_for_file_migration(self, workflow, store, customer, operator):
        with patch.object(workflow, "_migrate_files", side_effect=RuntimeError("storage offline")):
            report = workflow.convert("cust-1", None, ConversionForm(), operator)

        status = workflow.status(report.project.id)
        assert status["migrate_files"] == "failed"
        assert status["reset_panels"] == "failed"
        assert store.get("customerProfiles/cust-1")["files"]

        workflow.resume(report.project.id)

        assert store.get("customerProfiles/cust-1")["files"] == []
        assert [f.name for f in workflow._project(report.project.id).files] == ["brief.pdf"]

    def test_resume_is_noop_when_complete(self, workflow, customer, operator):
        report = workflow.convert("cust-1", None, ConversionForm(), operator)

        assert workflow.resume(report.project.id).steps == []
