#!/usr/bin/env python3
"""
Connected Mode Errors

Typed failures raised by the capture, token and channel layers. Every error
carries an ErrorKind and renders as a message suitable for showing the user.
"""

from enum import Enum


class ErrorKind(str, Enum):
    CREDENTIAL_MISSING = "credential_missing"
    NETWORK_ERROR = "network_error"
    AUDIO_CAPTURE_FAILED = "audio_capture_failed"
    CHANNEL_CONNECTION_FAILED = "channel_connection_failed"
    TRANSCRIPTION_FAILED = "transcription_failed"
    PROSODY_ANALYSIS_FAILED = "prosody_analysis_failed"
    REMOTE_SERVICE_ERROR = "remote_service_error"


class ConnectedModeError(Exception):
    """Base class for all connected mode failures."""
    kind = ErrorKind.REMOTE_SERVICE_ERROR
    prefix = "Error"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        if not self.detail:
            return self.prefix
        return f"{self.prefix}: {self.detail}"


class CredentialMissingError(ConnectedModeError):
    kind = ErrorKind.CREDENTIAL_MISSING
    prefix = "API keys not configured"


class NetworkError(ConnectedModeError):
    kind = ErrorKind.NETWORK_ERROR
    prefix = "Network error"


class TokenFetchError(NetworkError):
    """The local token service could not be reached or refused the request."""


class AudioCaptureFailedError(ConnectedModeError):
    kind = ErrorKind.AUDIO_CAPTURE_FAILED
    prefix = "Audio capture failed"


class ChannelConnectionFailedError(ConnectedModeError):
    kind = ErrorKind.CHANNEL_CONNECTION_FAILED
    prefix = "Channel connection failed"


class TranscriptionFailedError(ConnectedModeError):
    kind = ErrorKind.TRANSCRIPTION_FAILED
    prefix = "Transcription failed"


class ProsodyAnalysisFailedError(ConnectedModeError):
    kind = ErrorKind.PROSODY_ANALYSIS_FAILED
    prefix = "Prosody analysis failed"


class RemoteServiceError(ConnectedModeError):
    kind = ErrorKind.REMOTE_SERVICE_ERROR
    prefix = "Remote service error"
