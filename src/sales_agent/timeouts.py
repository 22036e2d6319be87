"""
Escalation ladder for callers that stay silent.

Fixed, deterministic: three attempts, then a scripted closing line and a forced
hangup. The counter lives on the session and is reset by any successful turn.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from src.sales_agent.session import MAX_TIMEOUT_ATTEMPTS, SessionStore

logger = structlog.get_logger(__name__)

TIMEOUT_PROMPTS = (
    "Hello? *pause* Are you still there?",
    "I'm still here. *pause* Can you hear me okay?",
    "I'll try reaching you another time. *pause* Please feel free to call us back "
    "when convenient. Have a great day!",
)


@dataclass(frozen=True)
class TimeoutPrompt:
    prompt_text: str
    is_final: bool
    attempt: int


class TimeoutController:
    def __init__(self, store: SessionStore):
        self._store = store

    def attempts(self, call_id: str) -> int:
        session = self._store.get(call_id)
        return session.timeout_attempts if session else 0

    def on_timeout(self, call_id: str) -> TimeoutPrompt:
        """
        Register a silence timeout and return what to say next.

        Unknown calls get the final prompt so a stray redirect cannot keep a
        line open forever.
        """
        session = self._store.get(call_id)
        if session is None:
            logger.warning("Timeout for unknown call", call_id=call_id)
            return TimeoutPrompt(TIMEOUT_PROMPTS[-1], is_final=True, attempt=MAX_TIMEOUT_ATTEMPTS)

        attempt = min(session.timeout_attempts + 1, MAX_TIMEOUT_ATTEMPTS)
        session.timeout_attempts = attempt
        is_final = attempt >= MAX_TIMEOUT_ATTEMPTS

        logger.info(
            "Silence timeout",
            call_id=call_id,
            attempt=attempt,
            max_attempts=MAX_TIMEOUT_ATTEMPTS,
            is_final=is_final,
        )

        prompt = TimeoutPrompt(TIMEOUT_PROMPTS[attempt - 1], is_final=is_final, attempt=attempt)
        if is_final:
            session.timeout_attempts = 0
        return prompt

    def reset(self, call_id: str) -> None:
        self._store.update(call_id, _reset_attempts)


def _reset_attempts(session) -> None:
    session.timeout_attempts = 0
