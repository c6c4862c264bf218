"""
Approval Service

Lifecycle of approval requests: creation (or the no-approval bypass),
the single pending -> approved | rejected decision, and listings.

The decision and the stage advancement it implies are written in one store
transaction; notifications and lead events follow as best-effort side
effects reported in the returned ApprovalOutcome.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from crm.models.approval import ApprovalRequest, ApprovalStatus, DecisionAction, RequestType
from crm.models.payloads import ApprovalOutcome, ApprovalPayload, ConversionForm, StageTransition
from crm.models.pipeline import StagePipeline
from crm.models.quote import Quote
from crm.models.records import LeadEventType, utc_now
from crm.models.team import UserRef
from crm.services.notifications import NotificationSink
from crm.services.quotations import QuotationService
from crm.services.stage_workflow import StageWorkflow
from crm.utils.config import settings
from crm.utils.document_store import DocumentStore, join_path
from crm.utils.errors import NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

APPROVAL_REQUESTS = "approvalRequests"
REF_TYPE = "approval_request"


class ApprovalService:
    """Creates and decides approval requests."""

    def __init__(
        self,
        store: DocumentStore,
        notifications: NotificationSink,
        quotations: Optional[QuotationService] = None,
        lead_scores=None,
        conversion=None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.notifications = notifications
        self.quotations = quotations or QuotationService(store, clock)
        self.lead_scores = lead_scores
        self.conversion = conversion
        self.clock = clock

    # ========================================================================
    # Queries
    # ========================================================================

    def get(self, request_id: str) -> ApprovalRequest:
        document = self.store.get(join_path(APPROVAL_REQUESTS, request_id))
        if document is None:
            raise NotFoundError(f"Approval request {request_id} not found")
        return ApprovalRequest.model_validate(document)

    def pending_for_entity(self, entity_id: str, conversions_only: bool = False) -> List[ApprovalRequest]:
        documents = self.store.query(APPROVAL_REQUESTS, [
            ("entity_id", "==", entity_id),
            ("status", "==", ApprovalStatus.PENDING.value),
        ], order_by="created_at", descending=True)
        requests = [ApprovalRequest.model_validate(d) for d in documents]
        if conversions_only:
            requests = [r for r in requests if r.is_conversion]
        return requests

    def watch_pending_for_entity(
        self,
        entity_id: str,
        callback: Callable[[List[ApprovalRequest]], None]
    ) -> Callable[[], None]:
        """Push the entity's pending requests to callback on every change"""
        def on_change(documents):
            callback([ApprovalRequest.model_validate(d) for d in documents])

        return self.store.subscribe(APPROVAL_REQUESTS, [
            ("entity_id", "==", entity_id),
            ("status", "==", ApprovalStatus.PENDING.value),
        ], on_change)

    def requests_for_user(self, user_id: str) -> List[ApprovalRequest]:
        """Requests the user sent, must decide, or is cc'd on, newest first"""
        found = {}
        for where in (
            [("requested_by", "==", user_id)],
            [("requested_to", "==", user_id)],
            [("viewers", "array-contains", user_id)],
        ):
            for document in self.store.query(APPROVAL_REQUESTS, where):
                found[document["id"]] = ApprovalRequest.model_validate(document)
        return sorted(found.values(), key=lambda r: r.created_at, reverse=True)

    @staticmethod
    def visible_to(request: ApprovalRequest, user_id: str) -> bool:
        return user_id in request.participants()

    # ========================================================================
    # Create
    # ========================================================================

    def _resolve_quotation(self, payload: ApprovalPayload) -> Optional[Quote]:
        if payload.quotation_id:
            quote = self.quotations.get_draft(payload.entity_id, payload.quotation_id)
            if quote is None:
                raise ValidationError(f"Quotation {payload.quotation_id} not found for {payload.entity_id}")
            return quote
        return self.quotations.latest_draft(payload.entity_id)

    def _validate_stage_advance(self, payload: ApprovalPayload, collection: str):
        document = self.store.get(join_path(collection, payload.entity_id))
        if document is None:
            raise NotFoundError(f"{collection}/{payload.entity_id} not found")
        pipeline = StagePipeline.model_validate(document)
        current = payload.current_stage or pipeline.current_stage
        target = payload.next_stage or (
            pipeline.next_stage if current == pipeline.current_stage else None
        )
        if not target or target not in pipeline.stages:
            raise ValidationError("A stage advancement request needs a valid next stage")
        if target == current:
            raise ValidationError("Next stage must differ from the current stage")
        return current, target

    def create(
        self,
        requester: UserRef,
        decision_maker: Optional[UserRef],
        viewers: Iterable[str],
        payload: ApprovalPayload,
        bypass: bool = False,
        on_success: Optional[Callable[[ApprovalOutcome], None]] = None
    ) -> ApprovalOutcome:
        """
        Submit an approval request, or act immediately when bypass is set.

        Args:
            requester: User asking for approval
            decision_maker: The one user allowed to decide (ignored on bypass)
            viewers: User ids cc'd on the request
            payload: Request fields
            bypass: Skip approval and advance/convert right away
            on_success: Called with the outcome once the request (or bypass) succeeded

        Returns:
            ApprovalOutcome with the stored request and notification results

        Raises:
            ValidationError: If the request breaks a workflow rule; nothing is written
        """
        if bypass:
            return self._bypass(requester, payload, on_success)

        if decision_maker is None:
            raise ValidationError("A decision maker is required")
        if decision_maker.id == requester.id:
            raise ValidationError("You cannot select yourself as a decision maker")
        if not payload.title or not payload.title.strip():
            raise ValidationError("A request title is required")

        request = ApprovalRequest(
            title=payload.title.strip(),
            description=payload.description.strip(),
            request_type=payload.request_type,
            entity_id=payload.entity_id,
            entity_name=payload.entity_name,
            is_stage_advancement=payload.is_stage_advancement,
            proposed_project=payload.proposed_project,
            requested_by=requester.id,
            requested_by_name=requester.display_name,
            requested_to=decision_maker.id,
            requested_to_name=decision_maker.display_name,
            viewers=[],
            attached_files=payload.attached_files,
            created_at=self.clock(),
            updated_at=self.clock(),
        )

        if request.is_stage_advancement:
            request.current_stage, request.next_stage = self._validate_stage_advance(
                payload, request.entity_collection
            )

        if request.is_conversion:
            if self.pending_for_entity(request.entity_id, conversions_only=True):
                raise ValidationError(f"A conversion request for {request.entity_name or request.entity_id} is already pending")
            required = settings.REQUIRE_QUOTATION_FOR_CONVERSION
            if payload.auto_attach_quotation or payload.quotation_id or required:
                quote = self._resolve_quotation(payload)
                if quote is None and required:
                    raise ValidationError("A quotation must be attached to a conversion request")
                if quote is not None:
                    request.quotation_id = quote.id
                    request.quotation_data = quote.model_dump(mode="json")

        excluded = {requester.id, decision_maker.id}
        for viewer in viewers:
            if viewer and viewer not in excluded and viewer not in request.viewers:
                request.viewers.append(viewer)

        request.id = self.store.add(APPROVAL_REQUESTS, request.model_dump(mode="json", exclude={"id"}))
        logger.info(
            f"Approval request {request.id} ({request.request_type.value}) "
            f"from {requester.id} to {decision_maker.id}"
        )

        outcome = ApprovalOutcome(request=request)
        context = {"entity_id": request.entity_id, "request_type": request.request_type.value}
        outcome.notifications.append(self.notifications.notify(
            decision_maker.id,
            f'{requester.display_name} requested your approval: "{request.title}"',
            REF_TYPE, request.id, context,
        ))
        outcome.notifications.extend(self.notifications.notify_many(
            request.viewers,
            f'{requester.display_name} shared an approval request with you: "{request.title}"',
            REF_TYPE, request.id, context,
        ))
        outcome.notifications.append(self.notifications.notify(
            requester.id,
            f'Your request "{request.title}" was sent to {decision_maker.display_name}',
            REF_TYPE, request.id, context,
        ))

        self._log_lead_event(request, LeadEventType.APPROVAL_REQUESTED)
        if on_success is not None:
            on_success(outcome)
        return outcome

    def _bypass(
        self,
        requester: UserRef,
        payload: ApprovalPayload,
        on_success: Optional[Callable[[ApprovalOutcome], None]]
    ) -> ApprovalOutcome:
        outcome = ApprovalOutcome(bypassed=True)
        collection = "projects" if payload.request_type == RequestType.PROJECT else "customerProfiles"

        if payload.is_stage_advancement:
            workflow = StageWorkflow(self.store, collection, payload.entity_id, self.lead_scores)
            outcome.transition = workflow.advance()
            if outcome.transition.blocked:
                logger.info(
                    f"Bypass advance of {collection}/{payload.entity_id} blocked: "
                    f"{outcome.transition.blocked_reason.value}"
                )
                return outcome
        elif payload.request_type == RequestType.CUSTOMER:
            if self.conversion is None:
                raise ValidationError("Conversion is not available without a conversion workflow")
            form = ConversionForm.from_proposal(
                payload.proposed_project, selected_draft_quote_id=payload.quotation_id
            ) if payload.proposed_project else ConversionForm(selected_draft_quote_id=payload.quotation_id)
            report = self.conversion.convert(payload.entity_id, None, form, requester)
            outcome.project_id = report.project.id
        else:
            raise ValidationError("Nothing to bypass: request is neither a stage advancement nor a conversion")

        logger.info(f"User {requester.id} bypassed approval for {collection}/{payload.entity_id}")
        if on_success is not None:
            on_success(outcome)
        return outcome

    # ========================================================================
    # Decide
    # ========================================================================

    def decide(
        self,
        request_id: str,
        actor: UserRef,
        action: DecisionAction,
        admin_message: str = "",
        notify_team_member_ids: Iterable[str] = ()
    ) -> ApprovalOutcome:
        """
        Approve or reject a pending request.

        The request is re-read inside the transaction, so of two concurrent
        decisions only the first succeeds.

        Raises:
            NotFoundError: If the request does not exist
            PermissionDeniedError: If actor is not the decision maker
            ValidationError: If the request is no longer pending
        """
        action = DecisionAction(action)
        path = join_path(APPROVAL_REQUESTS, request_id)
        transition = None

        with self.store.transaction() as tx:
            document = tx.get(path)
            if document is None:
                raise NotFoundError(f"Approval request {request_id} not found")
            request = ApprovalRequest.model_validate(document)
            if actor.id != request.requested_to:
                raise PermissionDeniedError("Only the assigned decision maker can decide this request")
            if not request.is_pending:
                raise ValidationError(f"Request is already {request.status.value}")

            now = self.clock()
            request.status = ApprovalStatus.APPROVED if action == DecisionAction.APPROVE else ApprovalStatus.REJECTED
            request.decision_by = actor.id
            request.decision_date = now
            request.decision_comment = admin_message.strip()
            request.updated_at = now
            tx.update(path, {
                "status": request.status.value,
                "decision_by": actor.id,
                "decision_date": now.isoformat(),
                "decision_comment": request.decision_comment,
                "updated_at": now.isoformat(),
            })

            if request.status == ApprovalStatus.APPROVED and request.is_stage_advancement and request.next_stage:
                transition = self._advance_entity(tx, request)

        logger.info(f"Approval request {request_id} {request.status.value} by {actor.id}")

        outcome = ApprovalOutcome(request=request, transition=transition)
        verb = "approved" if request.status == ApprovalStatus.APPROVED else "rejected"
        context = {"entity_id": request.entity_id, "status": request.status.value}
        outcome.notifications.append(self.notifications.notify(
            request.requested_by,
            f'Your request "{request.title}" has been {verb} by {actor.display_name}',
            REF_TYPE, request.id, context,
        ))
        others = [u for u in [*request.viewers, *notify_team_member_ids] if u not in (request.requested_by, actor.id)]
        outcome.notifications.extend(self.notifications.notify_many(
            others,
            f'Request "{request.title}" was {verb} by {actor.display_name}',
            REF_TYPE, request.id, context,
        ))

        self._log_lead_event(
            request,
            LeadEventType.APPROVAL_APPROVED if request.status == ApprovalStatus.APPROVED
            else LeadEventType.APPROVAL_REJECTED,
        )
        return outcome

    def _advance_entity(self, tx, request: ApprovalRequest) -> StageTransition:
        entity_path = join_path(request.entity_collection, request.entity_id)
        document = tx.get(entity_path)
        if document is None:
            raise NotFoundError(f"{entity_path} not found")
        pipeline = StagePipeline.model_validate(document)
        if request.next_stage not in pipeline.stages:
            raise ValidationError(f"Stage '{request.next_stage}' no longer exists on {entity_path}")

        previous = pipeline.current_stage
        content = pipeline.content(previous)
        content.completed = True
        pipeline.stage_data[previous] = content
        pipeline.current_stage = request.next_stage
        fields = pipeline.pipeline_fields()
        tx.update(entity_path, {"current_stage": fields["current_stage"], "stage_data": fields["stage_data"]})
        return StageTransition(changed=True, from_stage=previous, to_stage=request.next_stage)

    def _log_lead_event(self, request: ApprovalRequest, event_type: LeadEventType):
        if self.lead_scores is not None and request.request_type == RequestType.CUSTOMER:
            self.lead_scores.log_event(request.entity_id, event_type, {"request_id": request.id})
