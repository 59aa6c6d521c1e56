#!/usr/bin/env python3
"""
Channel Token Client

Fetches short-lived credentials for both remote channels from the local
token service. Keys never leave that service; the orchestrator only ever
sees ephemeral tokens.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from .config import DEFAULT_INSTRUCTIONS
from .errors import CredentialMissingError, TokenFetchError

logger = logging.getLogger(__name__)

DIALOGUE_TOKEN_PATH = "/api/openai/realtime/session"
PROSODY_TOKEN_PATH = "/api/hume/token"


@dataclass(frozen=True)
class ChannelCredential:
    token: str
    session_id: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)


class TokenClient:
    """HTTP client for the local token-issuing endpoints."""

    def __init__(self,
                 base_url: Optional[str],
                 model: str = "gpt-realtime",
                 voice: str = "verse",
                 instructions: str = DEFAULT_INSTRUCTIONS,
                 timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            base_url: Token service base URL, e.g. http://localhost:3000
            model: Realtime dialogue model requested for the session
            voice: Assistant voice requested for the session
            instructions: System instructions for the dialogue session
            timeout: Seconds allowed per token request
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or "").rstrip("/")
        self.model = model
        self.voice = voice
        self.instructions = instructions
        self.timeout = timeout
        self._transport = transport

    async def fetch_dialogue_token(self) -> ChannelCredential:
        """
        Request an ephemeral realtime session token.

        Raises:
            CredentialMissingError: service not configured or returned no token
            TokenFetchError: service unreachable or returned an error status
        """
        payload = {"model": self.model, "voice": self.voice, "instructions": self.instructions}
        data = await self._post(DIALOGUE_TOKEN_PATH, payload, "dialogue")
        return ChannelCredential(token=self._token(data, "dialogue"),
                                 session_id=data.get("sessionId"))

    async def fetch_prosody_token(self) -> ChannelCredential:
        """Request a prosody access token plus the service's stream hints."""
        data = await self._post(PROSODY_TOKEN_PATH, {}, "prosody")
        config = data.get("config")
        return ChannelCredential(token=self._token(data, "prosody"),
                                 config=config if isinstance(config, dict) else {})

    async def _post(self, path: str, payload: dict, channel: str) -> dict:
        if not self.base_url:
            raise CredentialMissingError(f"no token service configured for {channel} channel")

        url = f"{self.base_url}{path}"
        logger.debug(f"Requesting {channel} token from {url}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"{channel} token request failed: {e}")
            raise TokenFetchError(f"{channel} token request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"{channel} token request returned {response.status_code}: {response.text}")
            raise TokenFetchError(f"{channel} token service returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TokenFetchError(f"{channel} token service returned invalid JSON") from e
        if not isinstance(data, dict):
            raise TokenFetchError(f"{channel} token service returned an unexpected payload")
        return data

    @staticmethod
    def _token(data: dict, channel: str) -> str:
        token = data.get("token")
        if not isinstance(token, str) or not token:
            raise CredentialMissingError(f"{channel} token service returned no token")
        logger.info(f"Fetched {channel} token")
        return token
