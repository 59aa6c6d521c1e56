"""Tests for orchestrator wiring and the command line entry point."""
from conftest import FakeCapture
from wavelength_voice.__main__ import parse_args
from wavelength_voice.channels.reconnect import FixedBackoffReconnect, NoReconnect
from wavelength_voice.config import load_settings
from wavelength_voice.factory import build_orchestrator
from wavelength_voice.models import ConversationPhase
from wavelength_voice.summarization import ConversationHandoff, JsonlJournalStore


def test_channel_policies_follow_settings():
    settings = load_settings({"PROSODY_RECONNECT_DELAYS": "1,4",
                              "PROSODY_KEEPALIVE_INTERVAL": "15",
                              "CHANNEL_CONNECT_TIMEOUT": "3"})
    orchestrator = build_orchestrator(settings, capture=FakeCapture())

    assert orchestrator.state.phase is ConversationPhase.IDLE
    assert isinstance(orchestrator.dialogue.reconnect_policy, NoReconnect)
    assert isinstance(orchestrator.prosody.reconnect_policy, FixedBackoffReconnect)
    assert orchestrator.prosody.reconnect_policy.delays == (1.0, 4.0)
    assert orchestrator.prosody.keepalive_interval == 15.0
    assert orchestrator.dialogue.connect_timeout == 3.0
    assert orchestrator.batcher.max_buffer_bytes == settings.audio.max_buffer_bytes
    assert orchestrator.token_client.base_url == settings.token_service_url


def test_handoff_needs_a_store(tmp_path):
    settings = load_settings({})
    assert build_orchestrator(settings, capture=FakeCapture()).handoff is None

    store = JsonlJournalStore(tmp_path / "journal.jsonl")
    orchestrator = build_orchestrator(settings, store=store, capture=FakeCapture())
    assert isinstance(orchestrator.handoff, ConversationHandoff)
    assert orchestrator.handoff.store is store


def test_handoff_can_be_disabled(tmp_path):
    settings = load_settings({"SUMMARIZE_ON_STOP": "0"})
    orchestrator = build_orchestrator(settings, store=JsonlJournalStore(tmp_path / "j.jsonl"),
                                      capture=FakeCapture())
    assert orchestrator.handoff is None


def test_tagger_reaches_the_segmenter():
    tagger = lambda text: ["work"]  # noqa: E731
    orchestrator = build_orchestrator(load_settings({}), capture=FakeCapture(), tagger=tagger)
    assert orchestrator.segmenter.tagger is tagger


def test_cli_arguments():
    args = parse_args(["--duration", "30", "--journal", "entries.jsonl", "--log-level", "DEBUG"])
    assert args.duration == 30.0
    assert args.journal == "entries.jsonl"
    assert args.log_level == "DEBUG"

    defaults = parse_args([])
    assert defaults.duration is None and defaults.journal is None
    assert defaults.log_level == "INFO"
