"""Tests for settings loading."""
import pytest

from wavelength_voice.config import AUDIO_CONFIG, load_settings


def test_defaults_from_an_empty_environment():
    settings = load_settings({})
    assert settings.token_service_url == "http://localhost:3000"
    assert settings.connect_timeout == 5.0
    assert settings.prosody_keepalive_interval == 30.0
    assert settings.prosody_reconnect_delays == (2.0, 5.0)
    assert settings.summarize_on_stop is True
    assert settings.audio == AUDIO_CONFIG


def test_audio_policy_constants():
    assert AUDIO_CONFIG.sample_rate == 16000
    assert AUDIO_CONFIG.channels == 1
    assert AUDIO_CONFIG.bytes_per_sample == 2
    assert AUDIO_CONFIG.silence_threshold == 0.5
    assert AUDIO_CONFIG.stability_threshold == 0.4
    assert AUDIO_CONFIG.batch_interval == 0.5
    assert AUDIO_CONFIG.max_buffer_bytes == 48000


def test_overrides():
    settings = load_settings({
        "WAVELENGTH_API_URL": "http://journal.local:8080/",
        "DIALOGUE_VOICE": "alloy",
        "CHANNEL_CONNECT_TIMEOUT": "2.5",
        "PROSODY_RECONNECT_DELAYS": "1, 3, 10",
        "SUMMARIZE_ON_STOP": "false",
    })
    assert settings.token_service_url == "http://journal.local:8080"
    assert settings.dialogue_voice == "alloy"
    assert settings.connect_timeout == 2.5
    assert settings.prosody_reconnect_delays == (1.0, 3.0, 10.0)
    assert settings.summarize_on_stop is False


def test_blank_values_fall_back_to_defaults():
    settings = load_settings({"CHANNEL_CONNECT_TIMEOUT": " ", "PROSODY_RECONNECT_DELAYS": ""})
    assert settings.connect_timeout == 5.0
    assert settings.prosody_reconnect_delays == (2.0, 5.0)


def test_bad_number_names_the_variable():
    with pytest.raises(ValueError, match="CHANNEL_CONNECT_TIMEOUT"):
        load_settings({"CHANNEL_CONNECT_TIMEOUT": "soon"})


@pytest.mark.parametrize("raw", ["2,x", "-1", ", ,"])
def test_bad_reconnect_delays(raw):
    with pytest.raises(ValueError, match="PROSODY_RECONNECT_DELAYS"):
        load_settings({"PROSODY_RECONNECT_DELAYS": raw})
