"""
OpenAI chat-completions wrapper for the live call and the greeting.

Provides:
- The default sales-agent system prompt (overridable via SYSTEM_PROMPT / SYSTEM_PROMPT_FILE)
- Role mapping from the call transcript to OpenAI message roles
- A single `generate()` entry point that raises `GenerationError` on failure
"""

from dataclasses import dataclass
import time
from typing import Any, Dict, List, Optional, Sequence

import structlog
from openai import AsyncOpenAI

from src.sales_agent.config import get_config
from src.sales_agent.errors import GenerationError
from src.sales_agent.prompt_utils import resolve_system_prompt
from src.sales_agent.session import ConversationHistory, CustomerProfile, Role

logger = structlog.get_logger(__name__)

LIVE_MAX_TOKENS = 100
LIVE_TEMPERATURE = 0.5
GREETING_MAX_TOKENS = 50
GREETING_TEMPERATURE = 0.3

APOLOGY_TEXT = (
    "I apologize, but I'm having trouble processing your request right now. "
    "Could you please repeat that?"
)

_OPENAI_ROLES = {
    Role.SYSTEM: "system",
    Role.AGENT: "assistant",
    Role.CALLER: "user",
}

DEFAULT_SYSTEM_CONTEXT = """You are {AGENT_NAME}, a friendly and professional sales representative from {COMPANY_NAME}.

THIS CALL: You are calling {MANAGER_NAME} at {VENUE_NAME}. Their last order was {LAST_PRODUCT}.

ROLE: You are calling hotel managers to remind them about restocking orders and take new orders conversationally. You are calm, friendly, helpful, and never pushy. Look for natural opportunities to recommend related or seasonal products, without sounding aggressive or interruptive.

IMPORTANT: We operate in the United States and use the Imperial measurement system. Always use ounces (oz), pounds (lbs), fluid ounces (fl oz), gallons, inches and feet.

YOUR OBJECTIVES:
1. Introduce yourself and confirm you're speaking with the manager by name.
2. Remind them about restocking needs and suggest products based on their order history.
3. Take orders for breakfast supplies and food service items.
4. ALWAYS ASK for quantities - never assume amounts.
5. Suggest minimum order quantities and provide pricing.
6. Confirm each order item with quantity and pricing.
7. Ask if they need anything else after each order.
8. Recommend similar or seasonal products where relevant, but only once per conversation unless the customer shows strong interest.
9. End the call professionally when they're done.

IMPORTANT GUIDELINES:
- NEVER assume quantities - ALWAYS ask "How many cases would you like?" for ANY product mention.
- Use tone softeners where appropriate: "No rush, just curious - how many would you like today?", "What quantity works best for you this time?", "Sounds good!", "That makes sense.", "Appreciate that!"
- ALWAYS suggest minimum orders and pricing for EVERY product (suggested or customer-mentioned).
- When suggesting products, IMMEDIATELY ask for quantity and provide pricing.
- Always confirm orders with customer-specified quantities and prices.
- Don't mention shopping carts, order systems, or technical processes.
- Use *pause* where a short natural pause helps.

PRICING GUIDELINES:
- Bagels/Pastries: $23-27 per case (minimum 2 cases)
- Beverages: $18-22 per case (minimum 3 cases)
- Coffee: $26-30 per case (minimum 2 cases)
- Dairy products: $20-25 per case (minimum 2 cases)
- Condiments/Jams: $15-20 per case (minimum 2 cases)
- Bulk discounts: 5+ cases get $2 off per case

EDGE CASES:
- Discount requests: you may offer up to 10% off the total order, never more.
- Out of stock: "I'm sorry, we're temporarily out of [product]. Would you like to try our [related product] instead?"
- Metric units: convert to the closest imperial size we stock.
- Specialty items (vegan, gluten-free): note it and offer to continue with the regular items.
- "Why are you calling?": "Just a quick courtesy call to help you restock your usual items. Shall we go ahead with your usual?"
- Noisy line: "It sounds like we're breaking up - I'll try calling again shortly. Thank you!"

RESET INSTRUCTION (fail-safe):
- If you're unsure about the current context, politely ask: "Would you mind confirming which product you're looking to reorder today?" and resume the reorder flow.

REMEMBER: Always ask for quantities first, suggest minimums and pricing, then confirm with their specified amounts. Keep the tone friendly, brief, and focused."""


def get_system_context(config: Optional[Any] = None, profile: Optional[CustomerProfile] = None) -> str:
    """System instruction used for calls that don't supply their own context."""
    if config is None:
        config = get_config()
    return resolve_system_prompt(config, default=DEFAULT_SYSTEM_CONTEXT, profile=profile)


def scripted_greeting(profile: CustomerProfile, config: Optional[Any] = None) -> str:
    if config is None:
        config = get_config()
    manager = "the manager"
    if profile.manager_name:
        manager = f"the manager {profile.manager_name}"
    return (
        f"Hi, I am {config.agent_name} calling from {config.company_name}, customer sales "
        f"department. Can I know if I am speaking with {manager}?"
    )


def build_greeting_instruction(profile: CustomerProfile, config: Optional[Any] = None) -> str:
    """One-off instruction asking the model for exactly the opening line."""
    greeting = scripted_greeting(profile, config)
    return (
        f'The call just connected. Say EXACTLY this greeting and nothing more: "{greeting}" '
        "Use only this format, do not add any other questions or sentences."
    )


def to_openai_messages(
    history: ConversationHistory,
    *,
    extra_context: Optional[Sequence[str]] = None,
    instruction: Optional[str] = None,
) -> List[Dict[str, str]]:
    """
    Map the call transcript to OpenAI chat messages.

    Extra system context goes right after the system instruction; a one-off
    instruction (e.g. the greeting request) is appended as a user message and
    never stored in the transcript.
    """
    turns = history.turns()
    messages = [{"role": "system", "content": turns[0].content}]
    for text in extra_context or ():
        messages.append({"role": "system", "content": text})
    for turn in turns[1:]:
        messages.append({"role": _OPENAI_ROLES[turn.role], "content": turn.content})
    if instruction:
        messages.append({"role": "user", "content": instruction})
    return messages


@dataclass
class LLMResponse:
    """Response from LLM."""
    text: str
    total_ms: float = 0.0


class OpenAILLM:
    """Async OpenAI chat-completions client."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_live_model
        self._client = client or AsyncOpenAI(api_key=config.openai_api_key)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        max_tokens: int = LIVE_MAX_TOKENS,
        temperature: float = LIVE_TEMPERATURE,
        response_format: Optional[Dict[str, str]] = None,
    ) -> LLMResponse:
        start_time = time.time()
        kwargs: Dict[str, Any] = dict(
            model=model or self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        if response_format:
            kwargs["response_format"] = response_format

        try:
            completion = await self._client.chat.completions.create(**kwargs)
        except Exception as e:
            logger.error("LLM generation failed", model=kwargs["model"], error=str(e))
            raise GenerationError(str(e)) from e

        text = ""
        if completion.choices:
            text = (completion.choices[0].message.content or "").strip()
        if not text:
            raise GenerationError("Language model returned an empty reply")

        total_ms = (time.time() - start_time) * 1000
        logger.debug("LLM response", model=kwargs["model"], total_ms=round(total_ms, 1), chars=len(text))
        return LLMResponse(text=text, total_ms=total_ms)

    async def generate(
        self,
        history: ConversationHistory,
        *,
        extra_context: Optional[Sequence[str]] = None,
        instruction: Optional[str] = None,
        max_tokens: int = LIVE_MAX_TOKENS,
        temperature: float = LIVE_TEMPERATURE,
    ) -> str:
        """
        Generate the next agent reply for a call.

        Raises:
            GenerationError: if the API call fails or yields no text
        """
        messages = to_openai_messages(history, extra_context=extra_context, instruction=instruction)
        response = await self.complete(messages, max_tokens=max_tokens, temperature=temperature)
        return response.text

    async def close(self) -> None:
        await self._client.close()
