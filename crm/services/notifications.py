"""
Notification Service

Append-only notification writes for approval events, with a dead-letter
queue for writes that fail. Every call reports a SideEffectResult; nothing
here raises into the workflow that triggered the notification.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from crm.models.payloads import SideEffectResult
from crm.models.records import DeadLetter, Notification
from crm.utils.document_store import DocumentStore, join_path

logger = logging.getLogger(__name__)

DEAD_LETTERS = "deadLetters"


def notifications_collection(user_id: str) -> str:
    return join_path("users", user_id, "notifications")


class DeadLetterQueue:
    """Failed best-effort writes, kept in the store until retried."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def push(self, kind: str, payload: Dict[str, Any], error: Exception) -> Optional[str]:
        letter = DeadLetter(kind=kind, payload=payload, error=str(error))
        try:
            return self.store.add(DEAD_LETTERS, letter.model_dump(mode="json", exclude={"id"}))
        except Exception as e:
            logger.error(f"Could not record dead letter for {kind}: {e}", exc_info=True)
            return None

    def pending(self, kind: Optional[str] = None) -> List[DeadLetter]:
        where = [("kind", "==", kind)] if kind else None
        documents = self.store.query(DEAD_LETTERS, where, order_by="created_at")
        return [DeadLetter.model_validate(d) for d in documents]

    def resolve(self, dead_letter_id: str):
        self.store.delete(join_path(DEAD_LETTERS, dead_letter_id))

    def record_attempt(self, letter: DeadLetter, error: Exception):
        self.store.update(
            join_path(DEAD_LETTERS, letter.id),
            {"attempts": letter.attempts + 1, "error": str(error)}
        )


class NotificationSink:
    """Writes notifications into users/{uid}/notifications."""

    KIND = "notification"

    def __init__(self, store: DocumentStore, dead_letters: Optional[DeadLetterQueue] = None):
        self.store = store
        self.dead_letters = dead_letters or DeadLetterQueue(store)

    def _write(self, notification: Notification) -> str:
        return self.store.add(
            notifications_collection(notification.user_id),
            notification.model_dump(mode="json", exclude={"id"})
        )

    def notify(
        self,
        user_id: str,
        message: str,
        ref_type: str,
        ref_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> SideEffectResult:
        """
        Append an unread notification for one user.

        Returns:
            SideEffectResult; on failure the notification is dead-lettered
        """
        step = f"notify:{user_id}"
        notification = Notification(
            user_id=user_id,
            message=message,
            ref_type=ref_type,
            ref_id=ref_id,
            context=context or {},
        )
        try:
            self._write(notification)
            logger.debug(f"Notified {user_id} about {ref_type} {ref_id}")
            return SideEffectResult.success(step)
        except Exception as e:
            logger.warning(f"Notification to {user_id} for {ref_type} {ref_id} failed: {e}")
            dead_letter_id = self.dead_letters.push(
                self.KIND, notification.model_dump(mode="json", exclude={"id"}), e
            )
            return SideEffectResult.failure(step, str(e), dead_letter_id)

    def notify_many(
        self,
        user_ids: Iterable[str],
        message: str,
        ref_type: str,
        ref_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> List[SideEffectResult]:
        """Notify each distinct user independently"""
        seen = set()
        results = []
        for user_id in user_ids:
            if not user_id or user_id in seen:
                continue
            seen.add(user_id)
            results.append(self.notify(user_id, message, ref_type, ref_id, context))
        return results

    def unread(self, user_id: str) -> List[Notification]:
        documents = self.store.query(
            notifications_collection(user_id),
            [("unread", "==", True)],
            order_by="created_at",
            descending=True,
        )
        return [Notification.model_validate(d) for d in documents]

    def mark_read(self, user_id: str, notification_id: str):
        self.store.update(join_path(notifications_collection(user_id), notification_id), {"unread": False})

    def retry_dead_letters(self) -> int:
        """
        Replay dead-lettered notifications.

        Returns:
            Number of notifications delivered on this pass
        """
        delivered = 0
        for letter in self.dead_letters.pending(self.KIND):
            try:
                self._write(Notification.model_validate(letter.payload))
                self.dead_letters.resolve(letter.id)
                delivered += 1
            except Exception as e:
                logger.warning(f"Retry of dead letter {letter.id} failed: {e}")
                self.dead_letters.record_attempt(letter, e)
        if delivered:
            logger.info(f"Delivered {delivered} dead-lettered notifications")
        return delivered
