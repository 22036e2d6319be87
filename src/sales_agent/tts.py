"""
Speech synthesis for agent replies.

`TTSManager` wraps a pluggable `SynthesisProvider`:

- `azure`: Azure neural voice via SSML (default)
- `openai`: OpenAI Audio Speech API
- `none`: no provider; every reply goes out as a carrier <Say>

Synthesized audio is cached, written to the temp audio directory, served under
`/audio/<file>` and deleted after a short delay.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
import re
import time
from typing import Any, Dict, Optional

import structlog

from src.sales_agent.cache import ResponseCache
from src.sales_agent.config import get_config
from src.sales_agent.errors import SynthesisError
from src.sales_agent.tts_providers.base import SynthesisProvider, VoiceOptions

logger = structlog.get_logger(__name__)

DEFAULT_VOICE_OPTIONS = VoiceOptions()

_PAUSE_RE = re.compile(r"\s*\*pause\*\s*")


def strip_pauses(text: str) -> str:
    """Text for the carrier's built-in voice, which has no pause markup."""
    return " ".join(_PAUSE_RE.sub(" ", text or "").split())


def create_provider(config: Optional[Any] = None) -> Optional[SynthesisProvider]:
    config = config or get_config()
    tts = (config.tts_provider or "azure").strip().lower()

    if tts == "azure":
        from src.sales_agent.tts_providers.azure import AzureTTS

        return AzureTTS(config)

    if tts == "openai":
        from src.sales_agent.tts_providers.openai_tts import OpenAITTS

        return OpenAITTS(config)

    if tts == "none":
        return None

    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")


@dataclass(frozen=True)
class AudioClip:
    filename: str
    path: Path
    url: str


class TTSManager:
    """Synthesizes replies into servable audio clips."""

    def __init__(
        self,
        provider: Optional[SynthesisProvider],
        *,
        cache: ResponseCache,
        audio_dir: Path,
        base_url: str,
        cleanup_seconds: float = 30.0,
    ):
        self.provider = provider
        self.cache = cache
        self.audio_dir = Path(audio_dir)
        self.base_url = base_url.rstrip("/")
        self.cleanup_seconds = cleanup_seconds
        self._cleanup_handles: Dict[str, asyncio.TimerHandle] = {}

    @property
    def provider_name(self) -> str:
        return type(self.provider).__name__ if self.provider else "none"

    def _cache_options(self, options: VoiceOptions) -> Dict[str, str]:
        return {"provider": self.provider_name, **options.to_dict()}

    async def synthesize(self, text: str, options: VoiceOptions = DEFAULT_VOICE_OPTIONS) -> bytes:
        """Audio bytes for `text`, served from cache when possible."""
        if self.provider is None:
            raise SynthesisError("No synthesis provider configured")

        cache_options = self._cache_options(options)
        cached = self.cache.get("tts", text, cache_options)
        if cached is not None:
            return cached

        audio = await self.provider.synthesize(text, options)
        self.cache.put("tts", text, cache_options, audio)
        return audio

    def _new_filename(self) -> str:
        stamp = int(time.time() * 1000)
        ext = self.provider.audio_extension if self.provider else "mp3"
        filename = f"tts_{stamp}.{ext}"
        suffix = 1
        while (self.audio_dir / filename).exists():
            filename = f"tts_{stamp}_{suffix}.{ext}"
            suffix += 1
        return filename

    async def render(self, text: str, options: VoiceOptions = DEFAULT_VOICE_OPTIONS) -> AudioClip:
        """
        Synthesize `text` and publish it as a clip the carrier can fetch.

        Raises:
            SynthesisError: if the provider fails or the clip cannot be written
        """
        audio = await self.synthesize(text, options)

        filename = None
        try:
            self.audio_dir.mkdir(parents=True, exist_ok=True)
            filename = self._new_filename()
            path = self.audio_dir / filename
            path.write_bytes(audio)
        except OSError as e:
            if filename is not None:
                self.cleanup(filename)
            raise SynthesisError(f"Could not write audio clip: {e}") from e

        self.schedule_cleanup(filename)
        clip = AudioClip(filename=filename, path=path, url=f"{self.base_url}/audio/{filename}")
        logger.info("Audio clip ready", filename=filename, bytes=len(audio), provider=self.provider_name)
        return clip

    def schedule_cleanup(self, filename: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_handles[filename] = loop.call_later(self.cleanup_seconds, self.cleanup, filename)

    def cleanup(self, filename: str) -> bool:
        """Delete a clip. Never raises; returns True if a file was removed."""
        handle = self._cleanup_handles.pop(filename, None)
        if handle is not None:
            handle.cancel()
        path = self.audio_dir / Path(filename).name
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Audio cleanup failed", filename=filename, error=str(e))
            return False
        logger.debug("Audio clip removed", filename=filename)
        return True

    def resolve(self, filename: str) -> Optional[Path]:
        """Path of a servable clip, or None (also for traversal attempts)."""
        name = Path(filename).name
        if name != filename or not name.startswith("tts_"):
            return None
        path = self.audio_dir / name
        return path if path.is_file() else None

    async def close(self) -> None:
        for filename in list(self._cleanup_handles):
            self.cleanup(filename)
        if self.provider:
            await self.provider.close()
