"""
Team Models - invitations and the members derived from them.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from .records import utc_now


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"


class TeamInvitation(BaseModel):
    """Invitation document at invitations/{id}."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    from_user_id: str
    from_user_name: str = ""
    to_user_email: str
    to_user_id: Optional[str] = None
    status: InvitationStatus = InvitationStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    accepted_at: Optional[datetime] = None


class UserRef(BaseModel):
    """The acting user (or a user document at users/{uid})."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    email: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.email or "Team Member"


class TeamMember(BaseModel):
    """Accepted team member of a user."""

    id: str
    name: str
    email: str = ""
    invitation_status: str
    accepted_at: Optional[datetime] = None
