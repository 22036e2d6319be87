from __future__ import annotations

import time
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

import httpx
import structlog

from src.sales_agent.config import get_config
from src.sales_agent.errors import SynthesisError
from src.sales_agent.tts_providers.base import SynthesisProvider, VoiceOptions

logger = structlog.get_logger(__name__)

OUTPUT_FORMAT = "audio-16khz-32kbitrate-mono-mp3"
PAUSE_TOKEN = "*pause*"
PAUSE_SSML = '<break time="0.8s"/>'


def voice_name_for(custom_voice: str, language: str = "en-US") -> str:
    """`luna` -> `en-US-LunaNeural`; full voice names pass through."""
    custom_voice = (custom_voice or "luna").strip()
    if "-" in custom_voice and custom_voice.endswith("Neural"):
        return custom_voice
    return f"{language}-{custom_voice[:1].upper()}{custom_voice[1:]}Neural"


def build_ssml(text: str, options: VoiceOptions, *, voice_name: str, language: str = "en-US") -> str:
    """
    Wrap text in SSML for the neural voice.

    The text is XML-escaped; `*pause*` tokens become 0.8s breaks.
    """
    body = escape(text).replace(PAUSE_TOKEN, PAUSE_SSML)
    return (
        f'<speak version="1.0" xmlns="http://www.w3.org/2001/10/synthesis" '
        f'xmlns:mstts="https://www.w3.org/2001/mstts" xml:lang="{language}">'
        f'<voice name="{voice_name}">'
        f'<mstts:express-as style="{options.style}">'
        f'<prosody rate="{options.rate}" pitch="{options.pitch}" volume="{options.volume}">'
        f"{body}"
        "</prosody></mstts:express-as></voice></speak>"
    )


class AzureTTS(SynthesisProvider):
    """
    Azure neural TTS over the Cognitive Services REST endpoint.

    Returns MP3 bytes suitable for a carrier <Play>.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self.voice_name = voice_name_for(self.config.azure_custom_voice_name, self.config.speech_language)
        self.endpoint = (
            f"https://{self.config.azure_speech_region}.tts.speech.microsoft.com/cognitiveservices/v1"
        )
        self._client = client or httpx.AsyncClient(timeout=15.0)

    async def synthesize(self, text: str, options: VoiceOptions) -> bytes:
        ssml = build_ssml(text, options, voice_name=self.voice_name, language=self.config.speech_language)
        start = time.time()
        try:
            response = await self._client.post(
                self.endpoint,
                content=ssml.encode("utf-8"),
                headers={
                    "Ocp-Apim-Subscription-Key": self.config.azure_speech_key,
                    "Content-Type": "application/ssml+xml",
                    "X-Microsoft-OutputFormat": OUTPUT_FORMAT,
                    "User-Agent": "restock-voice-agent",
                },
            )
        except httpx.HTTPError as e:
            logger.warning("Azure TTS request failed", error=str(e))
            raise SynthesisError(f"Azure TTS request failed: {e}") from e

        if response.status_code != 200:
            logger.warning(
                "Azure TTS returned error",
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise SynthesisError(f"Azure TTS returned status {response.status_code}")
        if not response.content:
            raise SynthesisError("Azure TTS returned no audio")

        logger.info(
            "Azure TTS synthesized",
            voice=self.voice_name,
            chars=len(text),
            bytes=len(response.content),
            duration_ms=round((time.time() - start) * 1000, 1),
        )
        return response.content

    async def list_voices(self, locale_prefix: str = "en-US") -> List[Dict[str, str]]:
        """Voices the region offers for `locale_prefix`. Raises `SynthesisError`."""
        url = f"https://{self.config.azure_speech_region}.tts.speech.microsoft.com/cognitiveservices/voices/list"
        try:
            response = await self._client.get(
                url, headers={"Ocp-Apim-Subscription-Key": self.config.azure_speech_key}
            )
        except httpx.HTTPError as e:
            raise SynthesisError(f"Azure voice listing failed: {e}") from e
        if response.status_code != 200:
            raise SynthesisError(f"Azure voice listing returned status {response.status_code}")

        return [
            {
                "name": voice.get("ShortName", ""),
                "locale": voice.get("Locale", ""),
                "gender": voice.get("Gender", ""),
                "voiceType": voice.get("VoiceType", ""),
            }
            for voice in response.json()
            if str(voice.get("Locale", "")).startswith(locale_prefix)
        ]

    async def close(self) -> None:
        await self._client.aclose()
