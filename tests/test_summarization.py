"""Tests for summarizing a finished conversation into a journal entry."""
import json

import httpx
import pytest

from wavelength_voice.errors import ConnectedModeError, ErrorKind
from wavelength_voice.models import ConversationTurn
from wavelength_voice.summarization import (DEFAULT_TAGS, DEFAULT_TITLE, ConversationHandoff,
                                            JournalEntryDraft,
                                            ConversationSummary, JsonlJournalStore,
                                            SummarizationClient, SummarizationError,
                                            build_conversation_text)

TURNS = (
    ConversationTurn("I could not sleep last night.", assistant_response="What kept you up?"),
    ConversationTurn("Work, mostly."),
)


class MemoryStore:
    def __init__(self):
        self.drafts = []

    def create_entry(self, draft):
        self.drafts.append(draft)
        return f"entry-{len(self.drafts)}"


def summarizer_for(handler):
    return SummarizationClient("http://journal.test/", transport=httpx.MockTransport(handler))


def test_conversation_text_alternates_speakers():
    assert build_conversation_text(TURNS) == (
        "User: I could not sleep last night.\n\n"
        "AI: What kept you up?\n\n"
        "User: Work, mostly.\n\n"
    )


def test_summary_defaults_for_missing_fields():
    summary = ConversationSummary.from_dict({"title": "", "date": "yesterday"}, fallback_content="raw")
    assert summary.title == DEFAULT_TITLE
    assert summary.content == "raw"
    assert summary.tags == DEFAULT_TAGS
    assert summary.emotional_state == "Reflective"
    assert summary.overall_mood == "Thoughtful"


def test_summary_decodes_service_fields():
    summary = ConversationSummary.from_dict({
        "title": "A restless night",
        "content": "I noticed how much work follows me home.",
        "emotionalState": "Tired",
        "tags": ["sleep", "work"],
        "overallMood": "Hopeful",
        "date": "2024-03-01T21:15:00Z",
    })
    assert summary.title == "A restless night"
    assert summary.emotional_state == "Tired"
    assert summary.tags == ("sleep", "work")
    assert summary.overall_mood == "Hopeful"
    assert (summary.date.year, summary.date.month, summary.date.day) == (2024, 3, 1)


@pytest.mark.asyncio
async def test_summarize_posts_the_conversation():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"title": "Sleep", "content": "I was tired."})

    summary = await summarizer_for(handler).summarize(TURNS)

    assert summary.title == "Sleep"
    assert seen[0].url.path == "/api/openai/summarize-conversation"
    body = json.loads(seen[0].content)
    assert body["conversation"] == build_conversation_text(TURNS)
    assert "journal entry" in body["instructions"]


@pytest.mark.asyncio
async def test_summarize_rejects_an_empty_conversation():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(SummarizationError, match="No conversation"):
        await summarizer_for(handler).summarize(())


@pytest.mark.asyncio
async def test_summarize_error_status():
    with pytest.raises(SummarizationError, match="Failed to summarize") as excinfo:
        await summarizer_for(lambda request: httpx.Response(503)).summarize(TURNS)

    assert isinstance(excinfo.value, ConnectedModeError)
    assert excinfo.value.kind is ErrorKind.REMOTE_SERVICE_ERROR
    assert str(excinfo.value).startswith("Summarization failed: ")


@pytest.mark.asyncio
async def test_unreachable_summarizer_is_a_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SummarizationError, match="connection refused") as excinfo:
        await summarizer_for(handler).summarize(TURNS)
    assert excinfo.value.kind is ErrorKind.NETWORK_ERROR


@pytest.mark.asyncio
async def test_handoff_stores_the_summary():
    store = MemoryStore()
    handoff = ConversationHandoff(
        summarizer_for(lambda request: httpx.Response(200, json={"title": "Sleep", "tags": ["rest"]})),
        store)

    entry_id = await handoff.hand_off(TURNS)

    assert entry_id == "entry-1"
    assert handoff.entry_ids == ["entry-1"]
    draft = store.drafts[0]
    assert draft.title == "Sleep"
    assert draft.tags == ("rest",)
    assert draft.turns == TURNS
    assert draft.mode == "connected"
    assert draft.is_ai_generated


@pytest.mark.asyncio
async def test_failed_summary_stores_nothing():
    store = MemoryStore()
    handoff = ConversationHandoff(summarizer_for(lambda request: httpx.Response(500)), store)

    with pytest.raises(SummarizationError):
        await handoff.hand_off(TURNS)
    assert store.drafts == []


def test_jsonl_store_appends_entries(tmp_path):
    path = tmp_path / "journal" / "entries.jsonl"
    store = JsonlJournalStore(path)
    summary = ConversationSummary.from_dict({"title": "Sleep"}, fallback_content="text")

    first = store.create_entry(JournalEntryDraft.from_summary(summary, TURNS))
    second = store.create_entry(JournalEntryDraft.from_summary(summary, TURNS[:1]))

    records = [json.loads(line) for line in path.read_text().splitlines()]
    assert [r["id"] for r in records] == [first, second]
    assert records[0]["title"] == "Sleep"
    assert records[0]["turns"][0]["assistant"] == "What kept you up?"
    assert len(records[1]["turns"]) == 1
