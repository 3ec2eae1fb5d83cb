"""
OpenAI Realtime API session brokering.

The browser talks to the Realtime API directly over WebRTC, authenticated
with a short-lived client secret minted here. The server's own API key is
never sent to the client.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import openai
from openai import AsyncOpenAI

from ..config import settings
from ..errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class RealtimeCredential:
    client_secret: str
    expires_at: Optional[int] = None
    upstream_session_id: Optional[str] = None


class RealtimeSessionBroker:
    """Mints ephemeral Realtime API credentials."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        instructions: Optional[str] = None,
    ):
        """Initialize the broker.

        Args:
            api_key: Server-side OpenAI key
            model: Realtime model (e.g., gpt-4o-mini-realtime-preview-2024-12-17)
            voice: The voice to use (alloy, echo, shimmer, ...)
            instructions: System instructions for the assistant
        """
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.REALTIME_MODEL
        self.voice = voice or settings.REALTIME_VOICE
        self.instructions = instructions or settings.REALTIME_INSTRUCTIONS
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def create_credential(self, instructions: Optional[str] = None) -> RealtimeCredential:
        """
        Create an upstream Realtime session and return its client secret.

        Raises:
            UpstreamError: 401 if the server key is rejected, 502 otherwise
        """
        if not self.api_key:
            raise UpstreamError("OpenAI API key not configured", status_code=500)

        try:
            session = await self.client.beta.realtime.sessions.create(
                model=self.model,
                voice=self.voice,
                instructions=instructions or self.instructions,
            )
        except openai.AuthenticationError as e:
            logger.error("[REALTIME] OpenAI rejected the API key: %s", e)
            raise UpstreamError(
                "Invalid OpenAI API key or insufficient permissions",
                status_code=401,
                upstream_status=e.status_code,
            ) from e
        except openai.PermissionDeniedError as e:
            logger.error("[REALTIME] API key lacks Realtime access: %s", e)
            raise UpstreamError(
                "API key does not have Realtime API access",
                status_code=401,
                upstream_status=e.status_code,
            ) from e
        except openai.APIError as e:
            logger.error("[REALTIME] Failed to create upstream session: %s", e)
            raise UpstreamError(
                "Failed to create session",
                upstream_status=getattr(e, "status_code", None),
            ) from e

        secret = session.client_secret
        return RealtimeCredential(
            client_secret=secret.value,
            expires_at=getattr(secret, "expires_at", None),
            upstream_session_id=getattr(session, "id", None),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
