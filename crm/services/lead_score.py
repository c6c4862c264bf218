"""
Lead Scoring

Internal conversion-likelihood score for customers (0..100), built from:
- fit: how well the company matches the user's target industries/countries
- intent: recent lead events (stage advances, approvals, quotes, tasks, email replies)
- penalties: rejections, unanswered email, inactivity, stuck pipelines

Events are logged under customerProfiles/{id}/leadEvents and the latest score
is kept on the customer document at lead_scores.no_project.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from crm.models.payloads import SideEffectResult
from crm.models.records import (
    CompanyInfo,
    LeadEvent,
    LeadEventType,
    LeadScore,
    ScoreBand,
    utc_now,
)
from crm.utils.document_store import DocumentStore, join_path

logger = logging.getLogger(__name__)

SETTINGS_DOC_ID = "leadScoring"
SCORE_FIELD = "lead_scores.no_project"
RESET_FIELD = "lead_scores.no_project_reset_at"


# ============================================================================
# Settings
# ============================================================================

class ScoreDistribution(BaseModel):
    fit_percent: float = 20
    intent_percent: float = 80


class FitSettings(BaseModel):
    industry_match_score: float = 12
    location_match_score: float = 8
    target_industries: List[str] = Field(default_factory=list)
    target_countries: List[str] = Field(default_factory=list)
    worldwide: bool = False


class IntentSettings(BaseModel):
    stage_advanced_points: float = 20
    stage_advance_cap_per_day: float = 20
    approval_requested_points: float = 8
    approval_approved_points: float = 20
    quote_created_points: float = 12
    task_completed_points: float = 2
    task_cap_per_14d: float = 10
    email_reply_bonus: float = 10


class PenaltySettings(BaseModel):
    no_reply_7d: float = 6
    stuck: float = 15
    inactivity: float = 10
    approval_rejected: float = 10


class ScoreThresholds(BaseModel):
    email_reply_window_hours: float = 48
    stuck_days: float = 14
    activity_window_days: float = 14
    quote_window_days: float = 30


class LeadScoringSettings(BaseModel):
    """Per-user scoring configuration stored at users/{uid}/settings/leadScoring."""

    distribution: ScoreDistribution = Field(default_factory=ScoreDistribution)
    fit: FitSettings = Field(default_factory=FitSettings)
    intent: IntentSettings = Field(default_factory=IntentSettings)
    penalties: PenaltySettings = Field(default_factory=PenaltySettings)
    thresholds: ScoreThresholds = Field(default_factory=ScoreThresholds)


# ============================================================================
# Computation
# ============================================================================

def _clamp(low: float, value: float, high: float) -> float:
    return max(low, min(high, value))


def _days(delta: timedelta) -> float:
    return delta.total_seconds() / 86400


def _location_tokens(location: str) -> List[str]:
    return [p.upper() for p in location.replace(",", " ").split() if p]


def _fit(company: CompanyInfo, cfg: LeadScoringSettings) -> Tuple[float, List[str]]:
    fit = cfg.fit
    points = 0.0
    breakdown = []

    industry = company.industry.strip()
    if industry and industry in fit.target_industries:
        points += fit.industry_match_score
        breakdown.append(f"+{fit.industry_match_score:g} Industry match")

    if fit.worldwide:
        location_matched = True
    elif fit.target_countries:
        targets = {c.upper() for c in fit.target_countries}
        location_matched = any(t in targets for t in _location_tokens(company.location))
    else:
        location_matched = False
    if location_matched:
        points += fit.location_match_score
        breakdown.append(f"+{fit.location_match_score:g} Location match")

    return _clamp(0, points, cfg.distribution.fit_percent), breakdown


def _intent_and_penalties(
    events: List[LeadEvent],
    cfg: LeadScoringSettings,
    now: datetime
) -> Tuple[float, float, List[str]]:
    intent_cfg = cfg.intent
    penalties = cfg.penalties
    thresholds = cfg.thresholds
    intent = 0.0
    penalty = 0.0
    breakdown = []

    def of_type(event_type: LeadEventType) -> List[LeadEvent]:
        return sorted((e for e in events if e.type == event_type), key=lambda e: e.created_at)

    stage_events = of_type(LeadEventType.STAGE_ADVANCED)
    per_day: Dict[object, float] = defaultdict(float)
    for event in stage_events:
        day = event.created_at.date()
        add = min(intent_cfg.stage_advanced_points, intent_cfg.stage_advance_cap_per_day - per_day[day])
        if add > 0:
            per_day[day] += add
            intent += add
            breakdown.append(f"+{add:g} Stage advanced")

    if of_type(LeadEventType.APPROVAL_REQUESTED):
        intent += intent_cfg.approval_requested_points
        breakdown.append(f"+{intent_cfg.approval_requested_points:g} Approval requested")
    if of_type(LeadEventType.APPROVAL_APPROVED):
        intent += intent_cfg.approval_approved_points
        breakdown.append(f"+{intent_cfg.approval_approved_points:g} Approval approved")
    if of_type(LeadEventType.APPROVAL_REJECTED):
        penalty += penalties.approval_rejected
        breakdown.append(f"-{penalties.approval_rejected:g} Approval rejected")

    quotes = of_type(LeadEventType.QUOTE_CREATED)
    if quotes and _days(now - quotes[0].created_at) <= thresholds.quote_window_days:
        intent += intent_cfg.quote_created_points
        breakdown.append(
            f"+{intent_cfg.quote_created_points:g} First quote (<={thresholds.quote_window_days:g}d)"
        )

    recent_tasks = [e for e in of_type(LeadEventType.TASK_COMPLETED) if _days(now - e.created_at) <= 14]
    if recent_tasks:
        add = _clamp(0, len(recent_tasks) * intent_cfg.task_completed_points, intent_cfg.task_cap_per_14d)
        intent += add
        breakdown.append(f"+{add:g} Tasks completed (cap {intent_cfg.task_cap_per_14d:g}/14d)")

    outbound = of_type(LeadEventType.EMAIL_OUTBOUND)
    if outbound:
        last_outbound = outbound[-1]
        replies = [e for e in of_type(LeadEventType.EMAIL_REPLY) if e.created_at >= last_outbound.created_at]
        if replies:
            hours = (replies[0].created_at - last_outbound.created_at).total_seconds() / 3600
            if hours <= thresholds.email_reply_window_hours and intent_cfg.email_reply_bonus > 0:
                intent += intent_cfg.email_reply_bonus
                breakdown.append(
                    f"+{intent_cfg.email_reply_bonus:g} Replied within {thresholds.email_reply_window_hours:g}h"
                )
        elif now - last_outbound.created_at >= timedelta(days=7) and penalties.no_reply_7d > 0:
            penalty += penalties.no_reply_7d
            breakdown.append(f"-{penalties.no_reply_7d:g} No reply in 7d")

    # Inactivity and stuck penalties only apply once something has happened
    if events:
        last_activity = max(e.created_at for e in events)
        if _days(now - last_activity) > thresholds.activity_window_days:
            penalty += penalties.inactivity
            breakdown.append(f"-{penalties.inactivity:g} No activity in {thresholds.activity_window_days:g}d")
    if stage_events and _days(now - stage_events[-1].created_at) > thresholds.stuck_days:
        penalty += penalties.stuck
        breakdown.append(f"-{penalties.stuck:g} Stage stuck > {thresholds.stuck_days:g}d")

    return _clamp(0, intent, cfg.distribution.intent_percent), penalty, breakdown


def band_for(score: int) -> ScoreBand:
    if score >= 80:
        return ScoreBand.HOT
    if score >= 50:
        return ScoreBand.WARM
    return ScoreBand.COLD


def compute_lead_score(
    company_profile: CompanyInfo,
    events: List[LeadEvent],
    settings: Optional[LeadScoringSettings] = None,
    now: Optional[datetime] = None
) -> LeadScore:
    """
    Compute a 0..100 lead score.

    Fit is capped at the fit share of the distribution and intent at the
    intent share, so the score is fit + intent - penalties, clamped.

    Args:
        company_profile: Company block of the customer
        events: Lead events of the current cycle
        settings: Scoring configuration (defaults if None)
        now: Reference time (defaults to current UTC time)

    Returns:
        LeadScore with band and human-readable breakdown
    """
    cfg = settings or LeadScoringSettings()
    now = now or utc_now()

    fit_points, fit_breakdown = _fit(company_profile, cfg)
    intent_points, penalty_points, intent_breakdown = _intent_and_penalties(events, cfg, now)

    raw = _clamp(0, fit_points + intent_points - penalty_points, 100)
    score = int(round(raw))
    return LeadScore(
        score=score,
        band=band_for(score),
        breakdown=fit_breakdown + intent_breakdown,
        fit_points=fit_points,
        intent_points=intent_points,
        penalty_points=penalty_points,
        updated_at=now,
    )


# ============================================================================
# Service
# ============================================================================

class LeadScoreService:
    """Logs lead events and keeps the customer's current score up to date."""

    KIND = "leadEvent"

    def __init__(self, store: DocumentStore, dead_letters=None, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.dead_letters = dead_letters
        self.clock = clock

    @staticmethod
    def events_collection(customer_id: str) -> str:
        return join_path("customerProfiles", customer_id, "leadEvents")

    def log_event(self, customer_id: str, event_type: LeadEventType, meta: Optional[dict] = None) -> SideEffectResult:
        """Append a lead event. Best effort: failures are reported, not raised"""
        step = f"lead_event:{LeadEventType(event_type).value}"
        event = LeadEvent(type=event_type, meta=meta or {}, created_at=self.clock())
        payload = event.model_dump(mode="json", exclude={"id"})
        try:
            self.store.add(self.events_collection(customer_id), payload)
            return SideEffectResult.success(step)
        except Exception as e:
            logger.warning(f"Failed to log {event.type.value} for customer {customer_id}: {e}")
            dead_letter_id = None
            if self.dead_letters is not None:
                dead_letter_id = self.dead_letters.push(self.KIND, {"customer_id": customer_id, **payload}, e)
            return SideEffectResult.failure(step, str(e), dead_letter_id)

    def fetch_events(
        self,
        customer_id: str,
        since: Optional[datetime] = None,
        max_days: int = 120
    ) -> List[LeadEvent]:
        """Events of the last max_days (and after since), oldest first"""
        cutoff = self.clock() - timedelta(days=max_days)
        if since is not None and since > cutoff:
            cutoff = since
        documents = self.store.query(self.events_collection(customer_id), order_by="created_at")
        events = [LeadEvent.model_validate(d) for d in documents]
        return [e for e in events if e.created_at >= cutoff]

    def settings_for(self, user_id: Optional[str]) -> LeadScoringSettings:
        if not user_id:
            return LeadScoringSettings()
        document = self.store.get(join_path("users", user_id, "settings", SETTINGS_DOC_ID))
        if not document:
            return LeadScoringSettings()
        return LeadScoringSettings.model_validate(document)

    def save_settings(self, user_id: str, settings: LeadScoringSettings):
        self.store.set(
            join_path("users", user_id, "settings", SETTINGS_DOC_ID),
            settings.model_dump(mode="json"),
            merge=True,
        )

    def recompute(self, customer_id: str, user_id: Optional[str] = None) -> Optional[LeadScore]:
        """
        Recompute and store the customer's score from events after the last reset.

        Returns:
            The new LeadScore, or None if the customer does not exist
        """
        path = join_path("customerProfiles", customer_id)
        customer = self.store.get(path)
        if customer is None:
            return None

        reset_at = (customer.get("lead_scores") or {}).get("no_project_reset_at")
        since = datetime.fromisoformat(reset_at) if reset_at else None
        events = self.fetch_events(customer_id, since=since)
        company = CompanyInfo.model_validate(customer.get("company_profile") or {})
        result = compute_lead_score(
            company, events, self.settings_for(user_id or customer.get("owner_id")), self.clock()
        )
        self.store.update(path, {SCORE_FIELD: result.model_dump(mode="json")})
        logger.debug(f"Lead score for {customer_id}: {result.score} ({result.band.value})")
        return result

    def current(self, customer_id: str) -> Optional[LeadScore]:
        customer = self.store.get(join_path("customerProfiles", customer_id))
        stored = ((customer or {}).get("lead_scores") or {}).get("no_project")
        return LeadScore.model_validate(stored) if stored else None

    def reset(self, customer_id: str):
        """Start a new scoring cycle: zero score, ignore earlier events"""
        now = self.clock()
        self.store.update(
            join_path("customerProfiles", customer_id),
            {
                SCORE_FIELD: LeadScore(updated_at=now).model_dump(mode="json"),
                RESET_FIELD: now.isoformat(),
            },
        )
