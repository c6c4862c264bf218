"""
Pipeline Models - stage pipeline shared by customer and project records.

A pipeline is an ordered list of unique stage names, the current stage, and
per-stage content (notes and tasks). Customer profiles and projects both
carry these fields directly on their documents.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


DEFAULT_CUSTOMER_STAGES = ["Working", "Qualified", "Converted"]
DEFAULT_PROJECT_STAGES = ["Planning", "Development", "Testing", "Completed"]

TASK_STATUS_COMPLETE = "complete"


class StageTask(BaseModel):
    """A checklist item inside a stage."""

    name: str
    done: bool = False
    status: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.done or self.status == TASK_STATUS_COMPLETE


class StageContent(BaseModel):
    """Notes and tasks recorded against one stage."""

    notes: List[str] = Field(default_factory=list)
    tasks: List[StageTask] = Field(default_factory=list)
    completed: bool = False

    @property
    def has_content(self) -> bool:
        return bool(self.notes or self.tasks)

    @property
    def incomplete_tasks(self) -> List[StageTask]:
        return [t for t in self.tasks if not t.is_complete]


class StagePipeline(BaseModel):
    """Stage fields of a customer or project document."""

    model_config = ConfigDict(extra="ignore")

    stages: List[str] = Field(default_factory=lambda: list(DEFAULT_CUSTOMER_STAGES))
    current_stage: str = ""
    stage_data: Dict[str, StageContent] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_stages(self):
        if not self.stages:
            raise ValueError("A pipeline needs at least one stage")
        if len(set(self.stages)) != len(self.stages):
            raise ValueError("Stage names must be unique")
        if not self.current_stage:
            self.current_stage = self.stages[0]
        if self.current_stage not in self.stages:
            raise ValueError(f"Current stage '{self.current_stage}' is not in the pipeline")
        return self

    @classmethod
    def from_stages(cls, stages: List[str], current_stage: Optional[str] = None) -> "StagePipeline":
        return cls(
            stages=list(stages),
            current_stage=current_stage or stages[0],
            stage_data={name: StageContent() for name in stages},
        )

    @property
    def index(self) -> int:
        return self.stages.index(self.current_stage)

    @property
    def is_last_stage(self) -> bool:
        return self.index == len(self.stages) - 1

    @property
    def next_stage(self) -> Optional[str]:
        return None if self.is_last_stage else self.stages[self.index + 1]

    def content(self, stage: str) -> StageContent:
        return self.stage_data.get(stage) or StageContent()

    def pipeline_fields(self) -> dict:
        """Document fields written back to the parent record"""
        return self.model_dump(mode="json", include={"stages", "current_stage", "stage_data"})
