from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields
from typing import Optional


@dataclass(frozen=True)
class VoiceOptions:
    rate: str = "0%"
    pitch: str = "+5%"
    volume: str = "medium"
    style: str = "conversation"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, options: Optional[dict]) -> "VoiceOptions":
        """Unknown keys are ignored; missing ones keep their defaults."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: str(v) for k, v in (options or {}).items() if k in known})


class SynthesisProvider(ABC):
    # File extension of the audio returned by `synthesize`.
    audio_extension = "mp3"

    @abstractmethod
    async def synthesize(self, text: str, options: VoiceOptions) -> bytes:
        """Render `text` to audio bytes. Raises `SynthesisError` on failure."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
