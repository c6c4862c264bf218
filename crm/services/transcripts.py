"""
Meeting Transcripts

Stores meeting transcripts under a customer or project and optionally
summarizes them with an OpenAI chat model. Summaries are best effort: a
transcript is stored even when summarization fails.
"""

import json
import logging
import re
from typing import List, Optional

from openai import OpenAI
from pydantic import BaseModel, Field

from crm.models.records import MeetingTranscript
from crm.utils.config import settings
from crm.utils.document_store import DocumentStore, join_path
from crm.utils.errors import ValidationError

logger = logging.getLogger(__name__)

TRANSCRIPTS = "meetingTranscripts"

SUMMARY_PROMPT = (
    "Summarize the meeting transcript and extract 3-7 actionable next steps. "
    "Output JSON with keys: summary (string), action_items (string[])."
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class TranscriptSummary(BaseModel):
    summary: str = ""
    action_items: List[str] = Field(default_factory=list)


def parse_summary(text: str) -> TranscriptSummary:
    """
    Pull a summary object out of free-form model output.

    Accepts bare JSON, fenced JSON, or JSON embedded in prose. Anything else
    is kept verbatim as the summary with no action items.
    """
    cleaned = _FENCE.sub("", (text or "").strip())
    candidates = [cleaned]
    match = _OBJECT.search(cleaned)
    if match:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if not isinstance(parsed, dict):
            continue
        items = parsed.get("action_items", parsed.get("actions", []))
        return TranscriptSummary(
            summary=str(parsed.get("summary") or ""),
            action_items=[str(i) for i in items] if isinstance(items, list) else [],
        )

    return TranscriptSummary(summary=cleaned)


class TranscriptSummarizer:
    """Summarizes transcripts with the OpenAI chat completions API."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        """
        Args:
            api_key: OpenAI API key (defaults to settings.OPENAI_API_KEY)
            model: Chat model to use (defaults to settings.LLM_MODEL)
        """
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.model = model or settings.LLM_MODEL

        if not self.api_key:
            raise ValueError("OpenAI API key is required. Set OPENAI_API_KEY in environment.")

        self.client = OpenAI(api_key=self.api_key)
        logger.info(f"Initialized TranscriptSummarizer with model={self.model}")

    def summarize(self, text: str) -> TranscriptSummary:
        if not text or not text.strip():
            raise ValueError("Cannot summarize empty transcript")

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SUMMARY_PROMPT},
                    {"role": "user", "content": text.strip()},
                ],
                temperature=0.2,
            )
        except Exception as e:
            logger.error(f"Transcript summarization failed: {e}")
            raise

        content = response.choices[0].message.content or ""
        return parse_summary(content)


_summarizer: Optional[TranscriptSummarizer] = None


def get_transcript_summarizer() -> TranscriptSummarizer:
    global _summarizer
    if _summarizer is None:
        _summarizer = TranscriptSummarizer()
    return _summarizer


def reset_transcript_summarizer():
    """Reset the global summarizer (useful for testing)."""
    global _summarizer
    _summarizer = None


class TranscriptService:
    """Transcripts under {customerProfiles|projects}/{id}/meetingTranscripts."""

    def __init__(self, store: DocumentStore, summarizer: Optional[TranscriptSummarizer] = None):
        self.store = store
        self._summarizer = summarizer

    @staticmethod
    def collection(entity_collection: str, entity_id: str) -> str:
        return join_path(entity_collection, entity_id, TRANSCRIPTS)

    @property
    def summarizer(self) -> TranscriptSummarizer:
        if self._summarizer is None:
            self._summarizer = get_transcript_summarizer()
        return self._summarizer

    def add(
        self,
        entity_collection: str,
        entity_id: str,
        title: str,
        text: str,
        summarize: bool = False
    ) -> MeetingTranscript:
        if not text or not text.strip():
            raise ValidationError("Transcript text is required")

        transcript = MeetingTranscript(title=title.strip() or "Meeting", text=text)
        if summarize:
            try:
                result = self.summarizer.summarize(text)
                transcript.summary = result.summary
                transcript.action_items = result.action_items
            except Exception as e:
                logger.warning(f"Storing transcript without summary: {e}")

        transcript.id = self.store.add(
            self.collection(entity_collection, entity_id),
            transcript.model_dump(mode="json", exclude={"id"}),
        )
        return transcript

    def list(self, entity_collection: str, entity_id: str) -> List[MeetingTranscript]:
        documents = self.store.query(
            self.collection(entity_collection, entity_id), order_by="created_at", descending=True
        )
        return [MeetingTranscript.model_validate(d) for d in documents]

    def delete(self, entity_collection: str, entity_id: str, transcript_id: str):
        self.store.delete(join_path(self.collection(entity_collection, entity_id), transcript_id))

    def move_all(self, source_collection: str, source_id: str, target_collection: str, target_id: str) -> int:
        """
        Move every transcript from one entity to another, tagging its origin.

        Each transcript keeps its id, so re-running after a partial failure
        never duplicates anything.

        Returns:
            Number of transcripts moved
        """
        source = self.collection(source_collection, source_id)
        target = self.collection(target_collection, target_id)
        moved = 0
        for document in self.store.query(source):
            transcript = MeetingTranscript.model_validate(document)
            transcript.origin = transcript.origin or {"collection": source_collection, "id": source_id}
            with self.store.transaction() as tx:
                tx.set(join_path(target, transcript.id), transcript.model_dump(mode="json", exclude={"id"}))
                tx.delete(join_path(source, transcript.id))
            moved += 1
        if moved:
            logger.info(f"Moved {moved} transcripts from {source} to {target}")
        return moved
