from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.sales_agent.config import get_config
from src.sales_agent.errors import SynthesisError
from src.sales_agent.tts_providers.base import SynthesisProvider, VoiceOptions

logger = structlog.get_logger(__name__)


class OpenAITTS(SynthesisProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Prosody options are not supported by the API and are ignored; pause tokens
    are dropped before synthesis.
    """

    audio_extension = "mp3"

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()

    async def _generate_mp3(self, text: str) -> bytes:
        from openai import OpenAI  # Local import to keep module import light

        client = OpenAI(api_key=self.config.openai_api_key)

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format="mp3",
            )
            # SDKs have varied over time; handle several shapes.
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            read = getattr(resp, "read", None)
            if callable(read):
                return read()
            return bytes(resp)

        return await asyncio.to_thread(_call)

    async def synthesize(self, text: str, options: VoiceOptions) -> bytes:
        text = " ".join(text.replace("*pause*", " ").split())
        if not text:
            raise SynthesisError("Nothing to synthesize")

        try:
            audio = await self._generate_mp3(text)
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            raise SynthesisError(f"OpenAI TTS failed: {e}") from e

        if not audio:
            raise SynthesisError("OpenAI TTS returned no audio")
        return audio
