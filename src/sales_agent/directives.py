"""
Carrier-neutral voice markup.

The orchestrator only ever produces these directives; `render_twiml` is the one
place that knows how Twilio spells them.

Directives:
- Speak: say text with the carrier's built-in voice
- PlayAudio: play a synthesized clip by URL
- Listen: capture speech (optionally while speaking/playing a prompt)
- Redirect: continue at another webhook when Listen ends without a result
- Hangup: end the call
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from twilio.twiml.voice_response import VoiceResponse

FALLBACK_VOICE = "alice"


@dataclass(frozen=True)
class Speak:
    text: str


@dataclass(frozen=True)
class PlayAudio:
    url: str


@dataclass(frozen=True)
class Listen:
    timeout_seconds: int
    callback_url: str
    partial_callback_url: Optional[str] = None
    prompt: Optional[Union[Speak, PlayAudio]] = None


@dataclass(frozen=True)
class Redirect:
    url: str


@dataclass(frozen=True)
class Hangup:
    pass


Directive = Union[Speak, PlayAudio, Listen, Redirect, Hangup]


def render_twiml(directives: Iterable[Directive], *, language: str = "en-US") -> str:
    """Render directives into a TwiML document."""
    response = VoiceResponse()

    for directive in directives:
        if isinstance(directive, Speak):
            response.say(directive.text, voice=FALLBACK_VOICE, language=language)
        elif isinstance(directive, PlayAudio):
            response.play(directive.url)
        elif isinstance(directive, Listen):
            gather_options = dict(
                input="speech",
                timeout=directive.timeout_seconds,
                speech_timeout="auto",
                speech_model="experimental_utterances",
                enhanced=True,
                language=language,
                action=directive.callback_url,
                method="POST",
                barge_in=True,
            )
            if directive.partial_callback_url:
                gather_options["partial_result_callback"] = directive.partial_callback_url
            gather = response.gather(**gather_options)
            if isinstance(directive.prompt, PlayAudio):
                gather.play(directive.prompt.url)
            elif isinstance(directive.prompt, Speak):
                gather.say(directive.prompt.text, voice=FALLBACK_VOICE, language=language)
        elif isinstance(directive, Redirect):
            response.redirect(directive.url, method="POST")
        elif isinstance(directive, Hangup):
            response.hangup()
        else:
            raise TypeError(f"Unknown directive: {directive!r}")

    return str(response)


def describe(directives: Iterable[Directive]) -> List[str]:
    """Short names for logging."""
    return [type(d).__name__ for d in directives]
