"""
Caller speech transcription.

Two transcribers share one contract, `transcribe(form) -> str`:

- `CarrierTranscriber`: uses the carrier's own recognition result (`SpeechResult`)
- `AzureTranscriber`: re-recognizes the call recording with Azure short-audio
  REST when a `RecordingUrl` is present, otherwise falls back to the carrier text

An empty string means "no speech"; anything unusable raises `RecognitionError`.
Both produce plain text, so the rest of the turn pipeline is identical.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import time
from typing import Any, Mapping, Optional

import httpx
import structlog

from src.sales_agent.config import get_config
from src.sales_agent.errors import RecognitionError

logger = structlog.get_logger(__name__)

_NO_SPEECH_STATUSES = {"NoMatch", "InitialSilenceTimeout", "BabbleTimeout"}


class Transcriber(ABC):
    @abstractmethod
    async def transcribe(self, form: Mapping[str, Any]) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class CarrierTranscriber(Transcriber):
    """Text recognized by the carrier during the <Gather>."""

    async def transcribe(self, form: Mapping[str, Any]) -> str:
        speech = form.get("SpeechResult")
        if speech is None:
            return ""
        if not isinstance(speech, str):
            raise RecognitionError("SpeechResult is not text")
        return speech.strip()


class AzureTranscriber(Transcriber):
    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self.endpoint = (
            f"https://{self.config.azure_speech_region}.stt.speech.microsoft.com"
            "/speech/recognition/conversation/cognitiveservices/v1"
        )
        self._client = client or httpx.AsyncClient(timeout=15.0)
        self._fallback = CarrierTranscriber()

    async def _download(self, recording_url: str) -> bytes:
        url = recording_url if recording_url.endswith(".wav") else f"{recording_url}.wav"
        response = await self._client.get(
            url,
            auth=(self.config.twilio_account_sid, self.config.twilio_auth_token),
            follow_redirects=True,
        )
        response.raise_for_status()
        return response.content

    async def transcribe(self, form: Mapping[str, Any]) -> str:
        recording_url = form.get("RecordingUrl")
        if not recording_url:
            return await self._fallback.transcribe(form)

        start = time.time()
        try:
            audio = await self._download(str(recording_url))
            response = await self._client.post(
                self.endpoint,
                params={"language": self.config.speech_language, "format": "simple"},
                content=audio,
                headers={
                    "Ocp-Apim-Subscription-Key": self.config.azure_speech_key,
                    "Content-Type": "audio/wav; codecs=audio/pcm; samplerate=8000",
                    "Accept": "application/json",
                },
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Azure STT failed", error=str(e))
            raise RecognitionError(f"Azure STT failed: {e}") from e

        status = data.get("RecognitionStatus")
        if status in _NO_SPEECH_STATUSES:
            return ""
        if status != "Success":
            raise RecognitionError(f"Azure STT status: {status}")

        text = (data.get("DisplayText") or "").strip()
        logger.info(
            "Azure STT transcribed",
            chars=len(text),
            duration_ms=round((time.time() - start) * 1000, 1),
        )
        return text

    async def close(self) -> None:
        await self._client.aclose()


def create_transcriber(config: Optional[Any] = None) -> Transcriber:
    config = config or get_config()
    stt = (config.stt_provider or "twilio").strip().lower()
    if stt == "azure":
        return AzureTranscriber(config)
    if stt == "twilio":
        return CarrierTranscriber()
    raise ValueError(f"Unsupported STT_PROVIDER: {config.stt_provider}")
