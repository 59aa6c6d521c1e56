#!/usr/bin/env python3
"""
Conversation Hand-off

Turns a finished conversation into a journal entry: the turn sequence is
rendered as plain text, sent to the summarization endpoint of the local
service, and the resulting summary is handed to a journal store.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from .errors import ErrorKind, RemoteServiceError
from .models import ConversationTurn

logger = logging.getLogger(__name__)

SUMMARIZE_PATH = "/api/openai/summarize-conversation"

SUMMARY_INSTRUCTIONS = """\
You are a compassionate AI assistant helping someone create a personal journal entry from their therapy conversation.

Please analyze the conversation and create a first-person journal entry that:
1. Captures the main themes and emotions discussed
2. Reflects on the insights gained during the conversation
3. Is written in the first person as if the person is writing their own journal
4. Includes a meaningful title that captures the essence of the conversation
5. Ends with an overall emotional state assessment
6. Feels personal, reflective, and therapeutic
7. Maintains the person's voice and perspective throughout

The journal entry should feel like a natural reflection that the person would write themselves after having this conversation."""

DEFAULT_TITLE = "Conversation Reflection"
DEFAULT_EMOTIONAL_STATE = "Reflective"
DEFAULT_TAGS = ("conversation", "reflection")
DEFAULT_MOOD = "Thoughtful"


class SummarizationError(RemoteServiceError):
    """The conversation could not be summarized."""
    prefix = "Summarization failed"

    def __init__(self, detail: str = "", kind: ErrorKind = ErrorKind.REMOTE_SERVICE_ERROR):
        super().__init__(detail)
        self.kind = kind


def build_conversation_text(turns: Sequence[ConversationTurn]) -> str:
    """Render turns as alternating "User:" / "AI:" paragraphs."""
    parts = []
    for turn in turns:
        parts.append(f"User: {turn.user_transcript}\n\n")
        if turn.assistant_response:
            parts.append(f"AI: {turn.assistant_response}\n\n")
    return "".join(parts)


@dataclass(frozen=True)
class ConversationSummary:
    title: str
    content: str
    emotional_state: str
    tags: Tuple[str, ...]
    overall_mood: str
    date: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback_content: str = "") -> "ConversationSummary":
        """Decode a service response; missing or empty fields get defaults."""
        tags = data.get("tags")
        if not isinstance(tags, list) or not tags:
            tags = list(DEFAULT_TAGS)
        date = datetime.now()
        if isinstance(data.get("date"), str):
            try:
                date = datetime.fromisoformat(data["date"].replace("Z", "+00:00"))
            except ValueError:
                logger.debug(f"Ignoring unparseable summary date: {data['date']}")
        return cls(
            title=data.get("title") or DEFAULT_TITLE,
            content=data.get("content") or fallback_content,
            emotional_state=data.get("emotionalState") or DEFAULT_EMOTIONAL_STATE,
            tags=tuple(str(tag) for tag in tags),
            overall_mood=data.get("overallMood") or DEFAULT_MOOD,
            date=date,
        )


@dataclass(frozen=True)
class JournalEntryDraft:
    """What the journal store receives for a finished conversation."""
    title: str
    content: str
    tags: Tuple[str, ...]
    emotional_state: str
    overall_mood: str
    date: datetime
    turns: Tuple[ConversationTurn, ...] = ()
    mode: str = "connected"
    is_ai_generated: bool = True

    @classmethod
    def from_summary(cls, summary: ConversationSummary,
                     turns: Sequence[ConversationTurn]) -> "JournalEntryDraft":
        return cls(title=summary.title, content=summary.content, tags=summary.tags,
                   emotional_state=summary.emotional_state, overall_mood=summary.overall_mood,
                   date=summary.date, turns=tuple(turns))


class JournalStore(Protocol):
    def create_entry(self, draft: JournalEntryDraft) -> str:
        """Persist the entry and return its id."""
        ...


class SummarizationClient:
    """HTTP client for the conversation summarization endpoint."""

    def __init__(self,
                 base_url: str,
                 instructions: str = SUMMARY_INSTRUCTIONS,
                 timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.instructions = instructions
        self.timeout = timeout
        self._transport = transport

    async def summarize(self, turns: Sequence[ConversationTurn]) -> ConversationSummary:
        """
        Summarize a finished conversation.

        Raises:
            SummarizationError: no turns, transport failure, error status or bad payload
        """
        if not turns:
            raise SummarizationError("No conversation to summarize")

        conversation = build_conversation_text(turns)
        url = f"{self.base_url}{SUMMARIZE_PATH}"
        logger.info(f"Summarizing {len(turns)} turns via {url}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json={"conversation": conversation,
                                                        "instructions": self.instructions})
        except httpx.HTTPError as e:
            raise SummarizationError(f"API error: {e}", kind=ErrorKind.NETWORK_ERROR) from e

        if response.status_code != 200:
            logger.error(f"Summarization returned {response.status_code}: {response.text}")
            raise SummarizationError("API error: Failed to summarize conversation")

        try:
            data = response.json()
        except ValueError as e:
            raise SummarizationError("Failed to decode response") from e
        if not isinstance(data, dict):
            raise SummarizationError("Failed to decode response")
        return ConversationSummary.from_dict(data, fallback_content=conversation)


class ConversationHandoff:
    """Summarize a finished conversation and store it as a journal entry."""

    def __init__(self, summarizer: SummarizationClient, store: JournalStore):
        self.summarizer = summarizer
        self.store = store
        self.entry_ids: List[str] = []

    async def hand_off(self, turns: Sequence[ConversationTurn]) -> str:
        summary = await self.summarizer.summarize(turns)
        entry_id = self.store.create_entry(JournalEntryDraft.from_summary(summary, turns))
        self.entry_ids.append(entry_id)
        logger.info(f"Stored conversation as journal entry {entry_id}: {summary.title}")
        return entry_id


class JsonlJournalStore:
    """Append journal entries as JSON lines to a local file."""

    def __init__(self, path):
        self.path = Path(path)

    def create_entry(self, draft: JournalEntryDraft) -> str:
        entry_id = str(uuid.uuid4())
        record = {
            "id": entry_id,
            "date": draft.date.isoformat(),
            "title": draft.title,
            "content": draft.content,
            "tags": list(draft.tags),
            "emotional_state": draft.emotional_state,
            "overall_mood": draft.overall_mood,
            "mode": draft.mode,
            "is_ai_generated": draft.is_ai_generated,
            "turns": [
                {
                    "id": turn.id,
                    "user": turn.user_transcript,
                    "assistant": turn.assistant_response,
                    "duration": turn.duration,
                    "timestamp": turn.timestamp.isoformat(),
                }
                for turn in draft.turns
            ],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")
        return entry_id
