"""
Tests for meeting transcripts and their summaries.
"""

from unittest.mock import MagicMock, patch

import pytest

from crm.services.transcripts import (
    TranscriptService,
    TranscriptSummarizer,
    TranscriptSummary,
    get_transcript_summarizer,
    parse_summary,
    reset_transcript_summarizer,
)
from crm.utils.config import settings
from crm.utils.errors import ValidationError


def completion(content):
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    return response


class TestParseSummary:

    def test_bare_json(self):
        result = parse_summary('{"summary": "Scope agreed", "action_items": ["Send quote", "Book demo"]}')

        assert result.summary == "Scope agreed"
        assert result.action_items == ["Send quote", "Book demo"]

    def test_fenced_json_with_actions_key(self):
        result = parse_summary('```json\n{"summary": "Done", "actions": ["Call back"]}\n```')

        assert result == TranscriptSummary(summary="Done", action_items=["Call back"])

    def test_json_embedded_in_prose(self):
        result = parse_summary('Here you go: {"summary": "Short", "action_items": []} Hope it helps.')

        assert result.summary == "Short"

    def test_plain_text_kept_as_summary(self):
        result = parse_summary("The team discussed pricing.")

        assert result.summary == "The team discussed pricing."
        assert result.action_items == []


class TestTranscriptSummarizer:

    def setup_method(self):
        reset_transcript_summarizer()

    def teardown_method(self):
        reset_transcript_summarizer()

    def test_requires_api_key(self):
        with patch.object(settings, "OPENAI_API_KEY", ""):
            with pytest.raises(ValueError):
                TranscriptSummarizer()

    @patch("crm.services.transcripts.OpenAI")
    def test_summarize_calls_chat_model(self, mock_openai):
        client = mock_openai.return_value
        client.chat.completions.create.return_value = completion(
            '{"summary": "Kickoff", "action_items": ["Share plan"]}'
        )

        result = TranscriptSummarizer(api_key="test-key", model="gpt-4o-mini").summarize("  notes  ")

        assert result.action_items == ["Share plan"]
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][1] == {"role": "user", "content": "notes"}

    @patch("crm.services.transcripts.OpenAI")
    def test_singleton(self, mock_openai):
        with patch.object(settings, "OPENAI_API_KEY", "test-key"):
            assert get_transcript_summarizer() is get_transcript_summarizer()
        mock_openai.assert_called_once_with(api_key="test-key")


class TestTranscriptService:

    def test_add_without_summary(self, store):
        service = TranscriptService(store, summarizer=MagicMock())

        saved = service.add("customerProfiles", "cust-1", " ", "We talked.")

        assert saved.title == "Meeting"
        assert saved.summary is None
        service.summarizer.summarize.assert_not_called()
        assert [t.id for t in service.list("customerProfiles", "cust-1")] == [saved.id]

    def test_add_with_summary(self, store):
        summarizer = MagicMock()
        summarizer.summarize.return_value = TranscriptSummary(summary="Recap", action_items=["Follow up"])
        service = TranscriptService(store, summarizer=summarizer)

        saved = service.add("projects", "proj-1", "Weekly", "Long text", summarize=True)

        stored = service.list("projects", "proj-1")[0]
        assert stored.summary == "Recap"
        assert stored.action_items == ["Follow up"]
        assert stored.id == saved.id

    def test_failed_summary_still_stores_transcript(self, store):
        summarizer = MagicMock()
        summarizer.summarize.side_effect = RuntimeError("rate limited")
        service = TranscriptService(store, summarizer=summarizer)

        service.add("projects", "proj-1", "Weekly", "Long text", summarize=True)

        stored = service.list("projects", "proj-1")
        assert len(stored) == 1
        assert stored[0].summary is None

    def test_empty_text_refused(self, store):
        with pytest.raises(ValidationError):
            TranscriptService(store, summarizer=MagicMock()).add("projects", "proj-1", "x", "   ")

    def test_move_all_is_rerunnable(self, store):
        service = TranscriptService(store, summarizer=MagicMock())
        first = service.add("customerProfiles", "cust-1", "A", "one")

        assert service.move_all("customerProfiles", "cust-1", "projects", "proj-1") == 1
        assert service.move_all("customerProfiles", "cust-1", "projects", "proj-1") == 0

        moved = service.list("projects", "proj-1")
        assert [t.id for t in moved] == [first.id]
        assert moved[0].origin == {"collection": "customerProfiles", "id": "cust-1"}

    def test_delete(self, store):
        service = TranscriptService(store, summarizer=MagicMock())
        saved = service.add("projects", "proj-1", "A", "one")

        service.delete("projects", "proj-1", saved.id)

        assert service.list("projects", "proj-1") == []
