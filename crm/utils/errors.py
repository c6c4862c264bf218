"""
Exception hierarchy for workflow operations.

Validation and permission errors are raised before anything is written.
Best-effort side effects never raise; they report through SideEffectResult.
"""


class CRMError(Exception):
    """Base class for all workflow errors."""


class ValidationError(CRMError):
    """Request is malformed or violates a workflow rule; nothing was written."""


class PermissionDeniedError(CRMError):
    """Actor is not allowed to perform the operation."""


class NotFoundError(CRMError):
    """Referenced document does not exist."""


class StageHasContentError(ValidationError):
    """Stage still holds tasks or notes and deletion was not confirmed."""

    def __init__(self, stage_name: str):
        super().__init__(f"Stage '{stage_name}' has tasks or notes; confirm to delete")
        self.stage_name = stage_name


class TeamLookupError(CRMError):
    """Team membership could not be resolved (distinct from 'no members')."""


class ConversionError(CRMError):
    """Primary write of a customer-to-project conversion failed."""
