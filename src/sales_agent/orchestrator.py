"""
Turn-taking orchestrator for live calls.

Each voice webhook maps to one handler that returns carrier-neutral directives:

- handle_connected: scripted greeting, then listen
- handle_speech: transcribe -> policy -> generate -> synthesize -> listen
- handle_timeout: escalation ladder, hangup on the last step
- handle_partial: observer update only

Events for one call are handled one at a time (per-call asyncio.Lock). Every
event also bumps the session's generation; after each awaited external call
the handler checks the generation again and drops its result if the call was
finalized (or replaced) in the meantime.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from src.sales_agent.cache import ResponseCache
from src.sales_agent.carrier import WebhookUrls
from src.sales_agent.config import get_config
from src.sales_agent.directives import Directive, Hangup, Listen, PlayAudio, Redirect, Speak, describe
from src.sales_agent.errors import GenerationError, RecognitionError, SynthesisError
from src.sales_agent.events import (
    CALL_STATUS,
    CONVERSATION_UPDATE,
    ORDER_UPDATE,
    PARTIAL_SPEECH_UPDATE,
    EventBroadcaster,
)
from src.sales_agent.lifecycle import CallLifecycleManager
from src.sales_agent.llm import (
    APOLOGY_TEXT,
    GREETING_MAX_TOKENS,
    GREETING_TEMPERATURE,
    LIVE_MAX_TOKENS,
    LIVE_TEMPERATURE,
    OpenAILLM,
    build_greeting_instruction,
    get_system_context,
    scripted_greeting,
)
from src.sales_agent.performance import LatencyTracker
from src.sales_agent.policy import SalesPolicy
from src.sales_agent.session import CallSession, CallStatus, Role, SessionStore, TurnState
from src.sales_agent.stt import Transcriber
from src.sales_agent.timeouts import TimeoutController
from src.sales_agent.tts import DEFAULT_VOICE_OPTIONS, TTSManager, strip_pauses

logger = structlog.get_logger(__name__)

TECHNICAL_DIFFICULTIES_TEXT = (
    "I apologize, but I'm experiencing technical difficulties. Please try again later."
)
MIN_PARTIAL_SPEECH_CHARS = 3
PREWARM_PROMPT = "Say a brief hello."
PREWARM_MAX_TOKENS = 20

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_LOG_PHONE_RE = re.compile(
    r"(?:\+?1[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}"
)


def _redact_transcript_for_logs(text: str) -> str:
    """
    Best-effort redaction for logs (to reduce accidental PII exposure).

    Masks emails -> [EMAIL] and phone numbers -> [PHONE-***1234].
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match[str]) -> str:
        digits = re.sub(r"\D+", "", match.group(0) or "")
        last4 = digits[-4:] if len(digits) >= 4 else digits
        return f"[PHONE-***{last4}]"

    return _LOG_PHONE_RE.sub(_mask_phone, redacted)


class TurnOrchestrator:
    def __init__(
        self,
        *,
        store: SessionStore,
        cache: ResponseCache,
        llm: OpenAILLM,
        tts: TTSManager,
        transcriber: Transcriber,
        broadcaster: EventBroadcaster,
        lifecycle: CallLifecycleManager,
        urls: WebhookUrls,
        policy: Optional[SalesPolicy] = None,
        latency: Optional[LatencyTracker] = None,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self.store = store
        self.cache = cache
        self.latency = latency or LatencyTracker()
        self.llm = llm
        self.tts = tts
        self.transcriber = transcriber
        self.broadcaster = broadcaster
        self.lifecycle = lifecycle
        self.urls = urls
        self.policy = policy or SalesPolicy()
        self.timeouts = TimeoutController(store)
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, call_id: str) -> asyncio.Lock:
        lock = self._locks.get(call_id)
        if lock is None:
            lock = self._locks[call_id] = asyncio.Lock()
        return lock

    def _release_lock_if_gone(self, call_id: str) -> None:
        if call_id not in self.store:
            self._locks.pop(call_id, None)

    def _is_current(self, call_id: str, generation: int) -> bool:
        session = self.store.get(call_id)
        return session is not None and not session.is_terminated and session.generation == generation

    def _listen(self, call_id: str, prompt: Optional[Union[Speak, PlayAudio]] = None) -> List[Directive]:
        return [
            Listen(
                timeout_seconds=self.config.gather_timeout_seconds,
                callback_url=self.urls.process_speech(call_id),
                partial_callback_url=self.urls.partial_speech(call_id),
                prompt=prompt,
            ),
            Redirect(self.urls.timeout(call_id)),
        ]

    def _stale(self, call_id: str, stage: str) -> List[Directive]:
        logger.info("Discarding stale result", call_id=call_id, stage=stage)
        session = self.store.get(call_id)
        if session is None or session.is_terminated:
            return [Hangup()]
        return self._listen(call_id)

    def _unknown_call(self, call_id: str, webhook: str) -> List[Directive]:
        logger.warning("Webhook for unknown or finished call", call_id=call_id, webhook=webhook)
        return [Speak(TECHNICAL_DIFFICULTIES_TEXT), Hangup()]

    def _publish_utterance(self, call_id: str, kind: str, content: str, **extra: Any) -> None:
        self.broadcaster.publish(CONVERSATION_UPDATE, call_id, {"type": kind, "content": content, **extra})

    def _llm_cache_options(self, session: CallSession, extra_context: Sequence[str], **params: Any) -> Dict[str, Any]:
        return {
            "model": self.llm.model,
            "history": [[t.role.value, t.content] for t in session.history],
            "context": list(extra_context),
            **params,
        }

    async def _generate(
        self,
        session: CallSession,
        *,
        instruction: Optional[str] = None,
        extra_context: Sequence[str] = (),
        max_tokens: int = LIVE_MAX_TOKENS,
        temperature: float = LIVE_TEMPERATURE,
    ) -> str:
        """Next agent reply via the cache. Raises `GenerationError`."""
        last_caller = session.history.last_of(Role.CALLER)
        input_text = instruction or (last_caller.content if last_caller else "")
        options = self._llm_cache_options(
            session, extra_context, max_tokens=max_tokens, temperature=temperature
        )

        cached = self.cache.get("llm", input_text, options)
        if cached is not None:
            return cached

        with self.latency.measure("openai", "chat_completion"):
            reply = await self.llm.generate(
                session.history,
                extra_context=extra_context,
                instruction=instruction,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        self.cache.put("llm", input_text, options, reply)
        return reply

    async def _render_speech(self, call_id: str, text: str) -> Union[Speak, PlayAudio]:
        """PlayAudio for the synthesized clip, or Speak with the carrier voice."""
        try:
            with self.latency.measure("tts", "render"):
                clip = await self.tts.render(text, DEFAULT_VOICE_OPTIONS)
        except SynthesisError as e:
            logger.warning("Synthesis failed, using carrier voice", call_id=call_id, error=str(e))
            return Speak(strip_pauses(text))
        return PlayAudio(clip.url)

    def _discard_clip(self, speech: Union[Speak, PlayAudio]) -> None:
        if isinstance(speech, PlayAudio):
            self.tts.cleanup(speech.url.rsplit("/", 1)[-1])

    async def _reply(self, session: CallSession, generation: int, text: str) -> List[Directive]:
        """Speak `text` inside the next Listen, recording it in the transcript."""
        call_id = session.call_id
        session.transition(TurnState.SPEAKING)
        speech = await self._render_speech(call_id, text)
        if not self._is_current(call_id, generation):
            self._discard_clip(speech)
            return self._stale(call_id, "synthesis")

        session.history.add_agent_message(text)
        self._publish_utterance(call_id, "ai_response", text)
        session.transition(TurnState.LISTENING)
        return self._listen(call_id, speech)

    # ------------------------------------------------------------------
    # Webhook handlers
    # ------------------------------------------------------------------

    async def handle_connected(self, call_id: str) -> List[Directive]:
        """The callee picked up: greet and start listening."""
        if self.store.get(call_id) is None:
            return self._unknown_call(call_id, "incoming")

        async with self._lock_for(call_id):
            session = self.store.get(call_id)
            if session is None or session.is_terminated:
                return self._unknown_call(call_id, "incoming")

            generation = session.begin_event()
            if not session.status.is_terminal:
                session.status = CallStatus.CONNECTED
            self.broadcaster.publish(CALL_STATUS, call_id, {
                "status": CallStatus.CONNECTED.value,
                "phoneNumber": session.phone_number,
                "message": "Call connected",
            })

            if session.turn_state != TurnState.GREETING:
                # Carrier retried the webhook; don't greet twice.
                logger.info("Repeated connect webhook", call_id=call_id, turn_state=session.turn_state.value)
                return self._listen(call_id)

            session.transition(TurnState.PROCESSING)
            try:
                greeting = await self._generate(
                    session,
                    instruction=build_greeting_instruction(session.profile, self.config),
                    max_tokens=GREETING_MAX_TOKENS,
                    temperature=GREETING_TEMPERATURE,
                )
            except GenerationError as e:
                logger.warning("Greeting generation failed, using scripted greeting", call_id=call_id, error=str(e))
                greeting = scripted_greeting(session.profile, self.config)

            if not self._is_current(call_id, generation):
                return self._stale(call_id, "greeting")

            directives = await self._reply(session, generation, greeting)

        logger.info("Call greeted", call_id=call_id, directives=describe(directives))
        self._release_lock_if_gone(call_id)
        return directives

    async def handle_speech(self, call_id: str, form: Mapping[str, Any]) -> List[Directive]:
        """Final speech result for the current Listen."""
        if self.store.get(call_id) is None:
            return self._unknown_call(call_id, "process-speech")

        async with self._lock_for(call_id):
            session = self.store.get(call_id)
            if session is None or session.is_terminated:
                return self._unknown_call(call_id, "process-speech")

            generation = session.begin_event()
            session.transition(TurnState.PROCESSING)

            try:
                transcript = await self.transcriber.transcribe(form)
            except RecognitionError as e:
                logger.warning("Recognition failed, treating as silence", call_id=call_id, error=str(e))
                transcript = ""

            if not self._is_current(call_id, generation):
                return self._stale(call_id, "transcription")

            if not transcript.strip():
                directives = await self._timeout_turn(session, generation)
            else:
                directives = await self._caller_turn(session, generation, transcript.strip())

        self._release_lock_if_gone(call_id)
        return directives

    async def _caller_turn(self, session: CallSession, generation: int, transcript: str) -> List[Directive]:
        call_id = session.call_id
        self.timeouts.reset(call_id)

        logger.info("Caller said", call_id=call_id, transcript=_redact_transcript_for_logs(transcript))
        session.history.add_caller_message(transcript)
        self._publish_utterance(call_id, "user_speech", transcript)

        lines_before = len(session.order.lines)
        decision = self.policy.apply_caller_turn(session, transcript)
        if len(session.order.lines) != lines_before:
            self.broadcaster.publish(ORDER_UPDATE, call_id, {"orderDetails": session.order.to_dict()})

        if decision.scripted_reply is not None:
            reply = decision.scripted_reply
        else:
            extra_context = self.policy.turn_guidance(session) + decision.guidance
            try:
                reply = await self._generate(session, extra_context=extra_context)
            except GenerationError as e:
                logger.warning("Reply generation failed, apologizing", call_id=call_id, error=str(e))
                reply = APOLOGY_TEXT
                generated = False
            else:
                generated = True

            if not self._is_current(call_id, generation):
                return self._stale(call_id, "generation")
            if generated:
                self.policy.observe_agent_reply(session, transcript, reply)

        if not decision.end_call:
            directives = await self._reply(session, generation, reply)
            logger.info("Agent replied", call_id=call_id, directives=describe(directives))
            return directives

        # Customer is done: speak the close, hang up, archive.
        session.transition(TurnState.SPEAKING)
        speech = await self._render_speech(call_id, reply)
        if self._is_current(call_id, generation):
            session.history.add_agent_message(reply)
            self._publish_utterance(call_id, "ai_response", reply)
        self.lifecycle.finalize(call_id, reason="customer_done")
        logger.info("Call closed after order summary", call_id=call_id)
        return [speech, Hangup()]

    async def handle_timeout(self, call_id: str) -> List[Directive]:
        """The Listen ended without speech (carrier followed the Redirect)."""
        if self.store.get(call_id) is None:
            prompt = self.timeouts.on_timeout(call_id)
            return [Speak(strip_pauses(prompt.prompt_text)), Hangup()]

        async with self._lock_for(call_id):
            session = self.store.get(call_id)
            if session is None or session.is_terminated:
                return [Hangup()]
            generation = session.begin_event()
            directives = await self._timeout_turn(session, generation)

        self._release_lock_if_gone(call_id)
        return directives

    async def _timeout_turn(self, session: CallSession, generation: int) -> List[Directive]:
        call_id = session.call_id
        prompt = self.timeouts.on_timeout(call_id)
        self._publish_utterance(call_id, "timeout_prompt", prompt.prompt_text, attempt=prompt.attempt)

        session.transition(TurnState.SPEAKING)
        speech = await self._render_speech(call_id, prompt.prompt_text)

        if prompt.is_final:
            self.lifecycle.finalize(call_id, reason="timeout", destroy_delay=0)
            logger.info("Call ended after silence", call_id=call_id, attempts=prompt.attempt)
            return [speech, Hangup()]

        if not self._is_current(call_id, generation):
            self._discard_clip(speech)
            return self._stale(call_id, "timeout")

        session.transition(TurnState.LISTENING)
        return self._listen(call_id, speech)

    def handle_partial(self, call_id: str, partial_text: str) -> List[Directive]:
        """Interim recognition result; only forwarded to observers."""
        partial_text = (partial_text or "").strip()
        if len(partial_text) > MIN_PARTIAL_SPEECH_CHARS and call_id in self.store:
            self.broadcaster.publish(PARTIAL_SPEECH_UPDATE, call_id, {"partialSpeech": partial_text})
        return []

    async def prewarm(self) -> None:
        """Warm the LLM and TTS connections before the callee answers. Never raises."""
        try:
            await self.llm.complete(
                [
                    {"role": "system", "content": get_system_context(self.config)},
                    {"role": "user", "content": PREWARM_PROMPT},
                ],
                max_tokens=PREWARM_MAX_TOKENS,
                temperature=GREETING_TEMPERATURE,
            )
        except GenerationError as e:
            logger.warning("LLM prewarm failed (non-critical)", error=str(e))

        if self.tts.provider is None:
            return
        try:
            await self.tts.synthesize(f"Hello, this is {self.config.agent_name}.")
        except SynthesisError as e:
            logger.warning("TTS prewarm failed (non-critical)", error=str(e))
        else:
            logger.info("Services prewarmed")
