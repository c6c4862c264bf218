"""
Team Directory

Resolves a user's accepted team members from the invitations collection.
Membership is symmetric: a user's team is everyone who accepted one of the
user's invitations plus everyone whose invitation the user accepted.

Resolved teams are cached in a membership index keyed by user id. The index
is filled on first read and updated in place when an invitation is accepted.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from crm.models.records import utc_now
from crm.models.team import InvitationStatus, TeamInvitation, TeamMember, UserRef
from crm.utils.document_store import DocumentStore, join_path
from crm.utils.errors import NotFoundError, PermissionDeniedError, TeamLookupError, ValidationError

logger = logging.getLogger(__name__)

INVITATIONS = "invitations"
USERS = "users"

OUTGOING = "accepted_outgoing"
INCOMING = "accepted_incoming"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _sort_key(member: TeamMember):
    return (member.name.casefold(), member.id)


class TeamDirectory:
    """Accepted-team lookups with a materialized membership index."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock
        self._index: Dict[str, Dict[str, TeamMember]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------------
    # User lookups
    # ------------------------------------------------------------------------

    def _user_by_email(self, email: str) -> Optional[UserRef]:
        email = normalize_email(email)
        documents = self.store.query(USERS, [("email", "==", email)], limit=1)
        if not documents:
            # User documents written with mixed-case addresses
            documents = [d for d in self.store.query(USERS) if normalize_email(d.get("email")) == email]
        return UserRef.model_validate(documents[0]) if documents else None

    def _invitations_to(self, email: str, status: InvitationStatus) -> List[dict]:
        found = {}
        for address in dict.fromkeys([normalize_email(email), email.strip()]):
            for document in self.store.query(INVITATIONS, [
                ("to_user_email", "==", address),
                ("status", "==", status.value),
            ]):
                found[document["id"]] = document
        return list(found.values())

    def _user_by_id(self, user_id: str) -> Optional[UserRef]:
        document = self.store.get(join_path(USERS, user_id))
        return UserRef.model_validate(document) if document else None

    @staticmethod
    def _member(user: UserRef, status: str, invitation: TeamInvitation) -> TeamMember:
        return TeamMember(
            id=user.id,
            name=user.display_name,
            email=user.email,
            invitation_status=status,
            accepted_at=invitation.accepted_at,
        )

    # ------------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------------

    def _load(self, user: UserRef) -> Dict[str, TeamMember]:
        try:
            outgoing = self.store.query(INVITATIONS, [
                ("from_user_id", "==", user.id),
                ("status", "==", InvitationStatus.ACCEPTED.value),
            ])
            incoming = self._invitations_to(user.email, InvitationStatus.ACCEPTED) if user.email else []
        except Exception as e:
            logger.error(f"Invitation lookup failed for user {user.id}: {e}", exc_info=True)
            raise TeamLookupError(f"Could not load team for user {user.id}: {e}") from e

        members: Dict[str, TeamMember] = {}
        for document in outgoing:
            invitation = TeamInvitation.model_validate(document)
            try:
                invitee = self._user_by_email(invitation.to_user_email)
            except Exception as e:
                logger.warning(f"Skipping invitee {invitation.to_user_email}: {e}")
                continue
            if invitee is None:
                logger.warning(f"No user found for accepted invitation to {invitation.to_user_email}")
                continue
            members[invitee.id] = self._member(invitee, OUTGOING, invitation)

        for document in incoming:
            invitation = TeamInvitation.model_validate(document)
            try:
                inviter = self._user_by_id(invitation.from_user_id)
            except Exception as e:
                logger.warning(f"Skipping inviter {invitation.from_user_id}: {e}")
                continue
            if inviter is None:
                logger.warning(f"No user document for inviter {invitation.from_user_id}")
                continue
            members[inviter.id] = self._member(inviter, INCOMING, invitation)

        members.pop(user.id, None)
        return members

    def invalidate(self, user_id: Optional[str] = None):
        """Drop one user's cached team, or the whole index"""
        with self._lock:
            if user_id is None:
                self._index.clear()
            else:
                self._index.pop(user_id, None)

    # ------------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------------

    def accepted_members(self, user: UserRef) -> List[TeamMember]:
        """
        Accepted team members of a user, sorted by display name.

        Raises:
            TeamLookupError: If the invitations cannot be read
        """
        with self._lock:
            cached = self._index.get(user.id)
        if cached is None:
            cached = self._load(user)
            with self._lock:
                self._index[user.id] = cached
        return sorted(cached.values(), key=_sort_key)

    def accepted_members_for_project(self, user: UserRef, project_id: Optional[str]) -> List[TeamMember]:
        # Every accepted member is a potential project member; no project filter applies
        return self.accepted_members(user)

    def incoming_invitations(self, user: UserRef) -> List[TeamInvitation]:
        if not user.email:
            return []
        documents = self._invitations_to(user.email, InvitationStatus.PENDING)
        invitations = [TeamInvitation.model_validate(d) for d in documents]
        return sorted(invitations, key=lambda i: i.created_at, reverse=True)

    # ------------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------------

    def invite(self, from_user: UserRef, to_email: str) -> TeamInvitation:
        to_email = normalize_email(to_email)
        if not to_email:
            raise ValidationError("An email address is required")
        if to_email == normalize_email(from_user.email):
            raise ValidationError("You cannot invite yourself")

        invitation = TeamInvitation(
            from_user_id=from_user.id,
            from_user_name=from_user.display_name,
            to_user_email=to_email,
            created_at=self.clock(),
        )
        invitation.id = self.store.add(INVITATIONS, invitation.model_dump(mode="json", exclude={"id"}))
        logger.info(f"User {from_user.id} invited {to_email}")
        return invitation

    def accept_invitation(self, invitation_id: str, user: UserRef) -> TeamInvitation:
        """
        Accept a pending invitation addressed to user.

        Raises:
            NotFoundError: If the invitation does not exist
            PermissionDeniedError: If the invitation is addressed to someone else
            ValidationError: If the invitation is no longer pending
        """
        path = join_path(INVITATIONS, invitation_id)
        with self.store.transaction() as tx:
            document = tx.get(path)
            if document is None:
                raise NotFoundError(f"Invitation {invitation_id} not found")
            invitation = TeamInvitation.model_validate(document)
            if normalize_email(invitation.to_user_email) != normalize_email(user.email):
                raise PermissionDeniedError("This invitation is addressed to another user")
            if invitation.status != InvitationStatus.PENDING:
                raise ValidationError(f"Invitation is already {invitation.status.value}")

            invitation.status = InvitationStatus.ACCEPTED
            invitation.to_user_id = user.id
            invitation.accepted_at = self.clock()
            tx.update(path, {
                "status": invitation.status.value,
                "to_user_id": user.id,
                "accepted_at": invitation.accepted_at.isoformat(),
            })

        self._record_acceptance(invitation, user)
        logger.info(f"User {user.id} accepted invitation {invitation_id} from {invitation.from_user_id}")
        return invitation

    def _record_acceptance(self, invitation: TeamInvitation, invitee: UserRef):
        inviter = self._user_by_id(invitation.from_user_id) or UserRef(id=invitation.from_user_id)
        with self._lock:
            if invitee.id in self._index:
                self._index[invitee.id][inviter.id] = self._member(inviter, INCOMING, invitation)
            if inviter.id in self._index:
                self._index[inviter.id][invitee.id] = self._member(invitee, OUTGOING, invitation)
