"""
Stage Workflow

Moves a customer or project through its stage pipeline and edits the
pipeline's stage list.

Advancing is gated: the current stage's tasks must all be complete and no
approval request may be pending for the entity. Going back and selecting a
stage directly are operator overrides and are not gated.
"""

import copy
import logging
from typing import Dict, List, Optional

from crm.models.approval import ApprovalStatus
from crm.models.payloads import BlockReason, StageTransition
from crm.models.pipeline import StageContent, StagePipeline, StageTask, TASK_STATUS_COMPLETE
from crm.models.records import LeadEventType
from crm.utils.document_store import DocumentStore, Transaction, join_path
from crm.utils.errors import NotFoundError, StageHasContentError, ValidationError

logger = logging.getLogger(__name__)

APPROVAL_REQUESTS = "approvalRequests"
CUSTOMERS = "customerProfiles"


def _load_pipeline(tx: Transaction, path: str) -> StagePipeline:
    document = tx.get(path)
    if document is None:
        raise NotFoundError(f"Document not found: {path}")
    return StagePipeline.model_validate(document)


class StageWorkflow:
    """Stage transitions and stage content for one customer or project."""

    def __init__(self, store: DocumentStore, entity_collection: str, entity_id: str, lead_scores=None):
        self.store = store
        self.entity_collection = entity_collection
        self.entity_id = entity_id
        self.lead_scores = lead_scores
        self.path = join_path(entity_collection, entity_id)

    @property
    def is_customer(self) -> bool:
        return self.entity_collection == CUSTOMERS

    def pipeline(self) -> StagePipeline:
        with self.store.transaction() as tx:
            return _load_pipeline(tx, self.path)

    def has_pending_approval(self) -> bool:
        return bool(self.store.query(APPROVAL_REQUESTS, [
            ("entity_id", "==", self.entity_id),
            ("status", "==", ApprovalStatus.PENDING.value),
        ], limit=1))

    def _log(self, event_type: LeadEventType, meta: dict):
        if self.lead_scores is not None and self.is_customer:
            self.lead_scores.log_event(self.entity_id, event_type, meta)

    # ------------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------------

    def advance(self) -> StageTransition:
        """
        Move to the next stage if the gate allows it.

        Refusals are reported through StageTransition.blocked_reason; the
        stored pipeline is untouched in that case.
        """
        with self.store.transaction() as tx:
            pipeline = _load_pipeline(tx, self.path)
            current = pipeline.current_stage

            if pipeline.is_last_stage:
                return StageTransition(changed=False, from_stage=current, to_stage=current,
                                       blocked_reason=BlockReason.LAST_STAGE)

            incomplete = [t.name for t in pipeline.content(current).incomplete_tasks]
            if incomplete:
                return StageTransition(changed=False, from_stage=current, to_stage=current,
                                       blocked_reason=BlockReason.INCOMPLETE_TASKS,
                                       incomplete_tasks=incomplete)

            if self.has_pending_approval():
                return StageTransition(changed=False, from_stage=current, to_stage=current,
                                       blocked_reason=BlockReason.PENDING_APPROVAL)

            target = pipeline.next_stage
            content = pipeline.content(current)
            content.completed = True
            pipeline.stage_data[current] = content
            pipeline.current_stage = target
            fields = pipeline.pipeline_fields()
            tx.update(self.path, {"current_stage": fields["current_stage"], "stage_data": fields["stage_data"]})

        logger.info(f"{self.path} advanced from {current} to {target}")
        self._log(LeadEventType.STAGE_ADVANCED, {"from": current, "to": target})
        return StageTransition(changed=True, from_stage=current, to_stage=target)

    def go_back(self) -> StageTransition:
        with self.store.transaction() as tx:
            pipeline = _load_pipeline(tx, self.path)
            current = pipeline.current_stage
            if pipeline.index == 0:
                return StageTransition(changed=False, from_stage=current, to_stage=current,
                                       blocked_reason=BlockReason.FIRST_STAGE)
            target = pipeline.stages[pipeline.index - 1]
            tx.update(self.path, {"current_stage": target})
        logger.info(f"{self.path} moved back from {current} to {target}")
        return StageTransition(changed=True, from_stage=current, to_stage=target)

    def select_stage(self, stage: str) -> StageTransition:
        with self.store.transaction() as tx:
            pipeline = _load_pipeline(tx, self.path)
            current = pipeline.current_stage
            if stage not in pipeline.stages:
                return StageTransition(changed=False, from_stage=current, to_stage=current,
                                       blocked_reason=BlockReason.UNKNOWN_STAGE)
            if stage == current:
                return StageTransition(changed=False, from_stage=current, to_stage=current)
            tx.update(self.path, {"current_stage": stage})
        return StageTransition(changed=True, from_stage=current, to_stage=stage)

    # ------------------------------------------------------------------------
    # Stage content
    # ------------------------------------------------------------------------

    def _edit_content(self, stage: str, edit) -> StageContent:
        with self.store.transaction() as tx:
            pipeline = _load_pipeline(tx, self.path)
            if stage not in pipeline.stages:
                raise ValidationError(f"Unknown stage: {stage}")
            content = pipeline.content(stage)
            edit(content)
            pipeline.stage_data[stage] = content
            # Whole map is written since stage names may contain dots
            tx.update(self.path, {"stage_data": pipeline.pipeline_fields()["stage_data"]})
        return content

    def add_task(self, stage: str, task_name: str) -> StageContent:
        task_name = task_name.strip()
        if not task_name:
            raise ValidationError("Task name is required")

        def edit(content: StageContent):
            if any(t.name == task_name for t in content.tasks):
                raise ValidationError(f"Task '{task_name}' already exists in {stage}")
            content.tasks.append(StageTask(name=task_name))

        return self._edit_content(stage, edit)

    def mark_task(self, stage: str, task_name: str, done: bool = True) -> StageContent:
        newly_done = []

        def edit(content: StageContent):
            for task in content.tasks:
                if task.name == task_name:
                    if done and not task.is_complete:
                        newly_done.append(task_name)
                    task.done = done
                    task.status = TASK_STATUS_COMPLETE if done else None
                    return
            raise NotFoundError(f"Task '{task_name}' not found in {stage}")

        content = self._edit_content(stage, edit)
        if newly_done:
            self._log(LeadEventType.TASK_COMPLETED, {"stage": stage, "task": task_name})
        return content

    def add_note(self, stage: str, note: str) -> StageContent:
        if not note or not note.strip():
            raise ValidationError("Note text is required")
        return self._edit_content(stage, lambda content: content.notes.append(note.strip()))


class StageEditor:
    """
    Editing mode for a pipeline's stage list.

    All edits apply to a working copy; nothing is stored until save().
    Stage content is not part of the working copy: save() re-reads it and
    carries each kept stage's current tasks and notes over to its new name.
    """

    def __init__(self, store: DocumentStore, entity_collection: str, entity_id: str):
        self.store = store
        self.path = join_path(entity_collection, entity_id)
        with store.transaction() as tx:
            self._original = _load_pipeline(tx, self.path)
        self.cancel()

    def cancel(self):
        """Discard all unsaved edits"""
        self.stages: List[str] = list(self._original.stages)
        self.stage_data: Dict[str, StageContent] = copy.deepcopy(self._original.stage_data)
        # Working name -> stored name; None for stages added in this session
        self._origins: Dict[str, Optional[str]] = {name: name for name in self.stages}

    def add_stage(self, name: Optional[str] = None) -> str:
        n = len(self.stages) + 1
        candidate = (name or "").strip() or f"Stage {n}"
        while candidate in self.stages:
            n += 1
            candidate = f"Stage {n}"
        self.stages.append(candidate)
        self._origins[candidate] = None
        return candidate

    def rename_stage(self, index: int, new_name: str) -> bool:
        new_name = (new_name or "").strip()
        old_name = self.stages[index]
        if not new_name or new_name == old_name or new_name in self.stages:
            return False
        self.stages[index] = new_name
        self._origins[new_name] = self._origins.pop(old_name)
        if old_name in self.stage_data:
            self.stage_data[new_name] = self.stage_data.pop(old_name)
        return True

    def move_left(self, index: int) -> bool:
        if index <= 0:
            return False
        self.stages[index - 1], self.stages[index] = self.stages[index], self.stages[index - 1]
        return True

    def move_right(self, index: int) -> bool:
        if index >= len(self.stages) - 1:
            return False
        self.stages[index + 1], self.stages[index] = self.stages[index], self.stages[index + 1]
        return True

    def delete_stage_at(self, index: int, confirm: bool = False) -> str:
        """
        Remove a stage from the working copy.

        Raises:
            ValidationError: If it is the only stage
            StageHasContentError: If the stage has tasks or notes and confirm is False
        """
        if len(self.stages) <= 1:
            raise ValidationError("A pipeline must keep at least one stage")
        name = self.stages[index]
        content = self.stage_data.get(name)
        if content is not None and content.has_content and not confirm:
            raise StageHasContentError(name)
        del self.stages[index]
        self.stage_data.pop(name, None)
        self._origins.pop(name, None)
        return name

    def save(self, pin_current: Optional[str] = None) -> StagePipeline:
        """
        Store the edited stage list.

        Content of removed stages is dropped and the current stage resets to
        the first stage unless pin_current names a kept stage.
        """
        current = pin_current if pin_current in self.stages else self.stages[0]
        with self.store.transaction() as tx:
            latest = _load_pipeline(tx, self.path)
            stage_data = {}
            for name in self.stages:
                origin = self._origins.get(name)
                stored = latest.stage_data.get(origin) if origin else None
                stage_data[name] = stored or StageContent()
            pipeline = StagePipeline(stages=list(self.stages), current_stage=current, stage_data=stage_data)
            tx.update(self.path, pipeline.pipeline_fields())
        self._original = pipeline
        self.cancel()
        logger.info(f"Saved stages for {self.path}: {', '.join(pipeline.stages)}")
        return pipeline
