"""
Tests for the SOP template catalog and applying templates.
"""

import pytest

from crm.services.sop_templates import (
    SopTemplateService,
    TemplateKind,
    build_pipeline,
    get_template,
    list_templates,
)
from crm.utils.errors import NotFoundError, ValidationError

from conftest import save_customer, save_project


@pytest.fixture
def service(store, clock):
    return SopTemplateService(store, clock)


class TestCatalog:

    def test_templates_by_kind(self):
        customer_ids = [t.id for t in list_templates(TemplateKind.CUSTOMER)]
        project_ids = [t.id for t in list_templates(TemplateKind.PROJECT)]

        assert "customer_general_v1" in customer_ids
        assert "project_itdev_v1" in project_ids
        assert not set(customer_ids) & set(project_ids)

    def test_unknown_template(self):
        with pytest.raises(NotFoundError):
            get_template("nope_v1")

    def test_general_templates_match_default_pipelines(self):
        assert build_pipeline(get_template("customer_general_v1")).stages == ["Working", "Qualified", "Converted"]
        assert build_pipeline(get_template("project_general_v1")).stages == [
            "Planning", "Development", "Testing", "Completed",
        ]


class TestApplyTemplate:

    def test_customer_pipeline_replaced(self, service, store):
        save_customer(store, current_stage="Qualified", tasks={"Qualified": ["Old task"]})
        template = get_template("customer_new_acquisition_v1")

        service.apply_template("customerProfiles", "cust-1", template)

        stored = store.get("customerProfiles/cust-1")
        assert stored["stages"] == ["Lead Capture", "Qualification", "Proposal Stage"]
        assert stored["current_stage"] == "Lead Capture"
        assert set(stored["stage_data"]) == {"Lead Capture", "Qualification", "Proposal Stage"}
        tasks = stored["stage_data"]["Qualification"]["tasks"]
        assert [t["name"] for t in tasks] == [
            "Assess customer needs", "Check budget and timeline", "Mark as qualified lead",
        ]
        assert not any(t["done"] for t in tasks)
        assert stored["sop_template_id"] == "customer_new_acquisition_v1"
        assert stored["sop_version"] == 1

    def test_customer_reminders_due_in_a_week(self, service, store):
        save_customer(store)

        service.apply_template("customerProfiles", "cust-1", get_template("customer_onboarding_v1"))

        reminders = store.get("customerProfiles/cust-1")["reminders"]
        assert reminders == [{
            "title": "Kickoff meeting reminder",
            "description": "",
            "date": "2026-03-09",
            "time": "09:00",
        }]

    def test_project_template(self, service, store):
        save_project(store)

        service.apply_template("projects", "proj-1", get_template("project_itdev_v1"))

        stored = store.get("projects/proj-1")
        assert stored["current_stage"] == "Requirement Analysis"
        assert len(stored["stages"]) == 6
        assert store.query("projects/proj-1/reminders") == []

    def test_kind_mismatch_refused(self, service, store):
        save_project(store)

        with pytest.raises(ValidationError):
            service.apply_template("projects", "proj-1", get_template("customer_crm_v1"))
        assert store.get("projects/proj-1")["stages"][0] == "Planning"

    def test_missing_entity(self, service):
        with pytest.raises(NotFoundError):
            service.apply_template("customerProfiles", "ghost", get_template("customer_general_v1"))
