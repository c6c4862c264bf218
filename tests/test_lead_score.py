"""
Tests for lead score computation and the lead score service.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from crm.models import CompanyInfo, LeadEvent, LeadEventType, ScoreBand
from crm.services.lead_score import LeadScoringSettings, band_for, compute_lead_score

from conftest import save_customer


def event(event_type, at):
    return LeadEvent(type=event_type, created_at=at)


class TestComputeLeadScore:

    def test_no_events_no_fit_is_cold_zero(self, clock):
        score = compute_lead_score(CompanyInfo(), [], now=clock())

        assert score.score == 0
        assert score.band == ScoreBand.COLD
        assert score.breakdown == []

    def test_fit_matches_industry_and_country(self, clock):
        cfg = LeadScoringSettings.model_validate({
            "fit": {"target_industries": ["Retail"], "target_countries": ["DE"]},
        })
        company = CompanyInfo(industry="Retail", location="Berlin, DE")

        score = compute_lead_score(company, [], cfg, clock())

        assert score.fit_points == 20
        assert "+12 Industry match" in score.breakdown
        assert "+8 Location match" in score.breakdown

    def test_fit_is_capped_by_distribution(self, clock):
        cfg = LeadScoringSettings.model_validate({
            "distribution": {"fit_percent": 10, "intent_percent": 90},
            "fit": {"target_industries": ["Retail"], "worldwide": True},
        })

        score = compute_lead_score(CompanyInfo(industry="Retail"), [], cfg, clock())

        assert score.fit_points == 10

    def test_stage_advances_capped_per_day(self, clock):
        now = clock()
        events = [event(LeadEventType.STAGE_ADVANCED, now) for _ in range(3)]

        score = compute_lead_score(CompanyInfo(), events, now=now)

        assert score.intent_points == 20

    def test_task_points_capped(self, clock):
        now = clock()
        events = [event(LeadEventType.TASK_COMPLETED, now) for _ in range(8)]

        assert compute_lead_score(CompanyInfo(), events, now=now).intent_points == 10

    def test_reply_within_window_earns_bonus(self, clock):
        sent = clock()
        events = [
            event(LeadEventType.EMAIL_OUTBOUND, sent),
            event(LeadEventType.EMAIL_REPLY, sent + timedelta(hours=5)),
        ]

        score = compute_lead_score(CompanyInfo(), events, now=sent + timedelta(hours=6))

        assert score.intent_points == 10

    def test_unanswered_email_penalized(self, clock):
        sent = clock()
        events = [event(LeadEventType.EMAIL_OUTBOUND, sent), event(LeadEventType.APPROVAL_APPROVED, sent)]

        score = compute_lead_score(CompanyInfo(), events, now=sent + timedelta(days=8))

        assert score.penalty_points == 6
        assert score.score == 14

    def test_stuck_and_inactive_pipeline(self, clock):
        advanced = clock()
        events = [event(LeadEventType.STAGE_ADVANCED, advanced)]

        score = compute_lead_score(CompanyInfo(), events, now=advanced + timedelta(days=20))

        assert score.penalty_points == 25
        assert score.score == 0

    def test_score_clamped_to_100(self, clock):
        cfg = LeadScoringSettings.model_validate({"distribution": {"fit_percent": 0, "intent_percent": 200}})
        now = clock()
        events = [event(t, now) for t in LeadEventType]
        events += [event(LeadEventType.STAGE_ADVANCED, now - timedelta(days=d)) for d in range(1, 6)]

        assert compute_lead_score(CompanyInfo(), events, cfg, now).score == 100

    @pytest.mark.parametrize("value,band", [(0, ScoreBand.COLD), (49, ScoreBand.COLD), (50, ScoreBand.WARM),
                                            (79, ScoreBand.WARM), (80, ScoreBand.HOT)])
    def test_bands(self, value, band):
        assert band_for(value) == band


class TestLeadScoreService:

    def test_recompute_stores_score_on_customer(self, store, lead_scores):
        save_customer(store)
        lead_scores.log_event("cust-1", LeadEventType.STAGE_ADVANCED)
        lead_scores.log_event("cust-1", LeadEventType.QUOTE_CREATED)

        result = lead_scores.recompute("cust-1")

        assert result.score == 32
        assert lead_scores.current("cust-1").score == 32

    def test_recompute_unknown_customer(self, lead_scores):
        assert lead_scores.recompute("missing") is None

    def test_owner_settings_are_used(self, store, lead_scores):
        save_customer(store, owner_id="alice", company_profile=CompanyInfo(industry="Retail"))
        lead_scores.save_settings("alice", LeadScoringSettings.model_validate({
            "fit": {"target_industries": ["Retail"]},
        }))

        assert lead_scores.recompute("cust-1").fit_points == 12

    def test_reset_starts_a_new_cycle(self, store, lead_scores, clock):
        save_customer(store)
        lead_scores.log_event("cust-1", LeadEventType.APPROVAL_APPROVED)
        clock.advance(minutes=1)

        lead_scores.reset("cust-1")
        clock.advance(minutes=1)
        lead_scores.log_event("cust-1", LeadEventType.APPROVAL_REQUESTED)

        assert lead_scores.recompute("cust-1").score == 8

    def test_old_events_fall_out_of_window(self, store, lead_scores, clock):
        lead_scores.log_event("cust-1", LeadEventType.APPROVAL_APPROVED)
        clock.advance(days=121)

        assert lead_scores.fetch_events("cust-1") == []

    def test_failed_event_write_is_dead_lettered(self, store, lead_scores, dead_letters):
        real_add = store.add

        def broken_add(collection, data):
            if collection.endswith("/leadEvents"):
                raise RuntimeError("quota exceeded")
            return real_add(collection, data)

        with patch.object(store, "add", side_effect=broken_add):
            result = lead_scores.log_event("cust-1", LeadEventType.TASK_COMPLETED)

        assert not result.ok
        letters = dead_letters.pending(lead_scores.KIND)
        assert [l.id for l in letters] == [result.dead_letter_id]
        assert letters[0].payload["customer_id"] == "cust-1"
