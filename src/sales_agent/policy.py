"""
Conversational sales policy.

Turns caller utterances into order bookkeeping and flag updates, and tells the
orchestrator when to bypass the LLM with a scripted line:

- Quantities are never assumed. A product mentioned without a quantity becomes
  the pending product; a line is only added once the caller states a quantity.
- "Same as last time" (before a reorder was confirmed) always triggers an
  explicit confirmation of the last product and a quantity.
- One unsolicited upsell per call, unless the caller keeps asking about other
  products.
- Once the caller is done, no more upsell/reorder prompts: summarize and close.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import List, Optional
import unicodedata

import structlog

from src.sales_agent.catalog import (
    Product,
    ProductCatalog,
    find_products,
    get_catalog,
    unit_price_for,
)
from src.sales_agent.session import CallSession, OrderInProgress, OrderLine

logger = structlog.get_logger(__name__)


def _normalize_for_intent(text: str) -> str:
    text = (text or "").strip().lower()
    text = text.replace("’", "'")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"\s+", " ", text)
    return text


_YES_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"(^|\b)(yes|yeah|yep|yup|correct|thats right|that's right|right|ok|okay|sure|sounds good|go ahead|please do)(\b|$)",
    )
)

_NO_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"(^|\b)(no|nope|nah|not this time|not today|skip it|something else)(\b|$)",
    )
)

_DONE_ORDER_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\b(thats all|that's all|thats it|that's it|nothing else|im done|i'm done|that will be all|that'll be all|that's everything|thats everything)(\b|$)",
        r"\b(no,? (that's|thats) (all|it)|i'm all set|im all set|we're all set|were all set|we're good|were good)(\b|$)",
    )
)

_SAME_AS_LAST_TIME_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\bsame (as|thing as) (last time|before|usual|last order)\b",
        r"\b(the|my|our) usual\b",
        r"\bsame order\b",
        r"\breorder\b",
        r"\bsame again\b",
    )
)

_INTEREST_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\bwhat else\b",
        r"\bdo you (have|carry|sell)\b",
        r"\b(any|what do you) recommend",
        r"\brecommendations?\b",
        r"\banything new\b",
        r"\btell me more\b",
        r"\bwhat about\b",
        r"\b(sounds|that's|thats) interesting\b",
        r"\bwhat'?s (new|seasonal)\b",
    )
)

_UPSELL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\bwould you (also )?like to (add|try)\b",
        r"\bwould you also like\b",
        r"\b(you|they) might (also )?(like|enjoy)\b",
        r"\bwe (also|now) (have|carry|offer)\b",
        r"\b(i'd|i would) (also )?recommend\b",
        r"\bpairs? (really )?well with\b",
        r"\bseasonal\b",
        r"\btry our\b",
    )
)

_QUANTITY_QUESTION_RE = re.compile(r"\bhow many\b")

_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7,
    "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12, "thirteen": 13,
    "fourteen": 14, "fifteen": 15, "sixteen": 16, "seventeen": 17, "eighteen": 18,
    "nineteen": 19, "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "dozen": 12, "a dozen": 12,
}

_PRICE_RE = re.compile(r"\$\s*\d+(?:[.,]\d+)?")
_NUMBER = (
    r"(?<![\d.,])(\d{1,4}(?![.,]\d)|"
    + "|".join(sorted((re.escape(w) for w in _NUMBER_WORDS), key=len, reverse=True))
    + r")\b(?:[\s-]+(one|two|three|four|five|six|seven|eight|nine)\b)?"
)
# "4 cases", "two more cases", "a dozen of the plain"
_COUNTED_QUANTITY_RE = re.compile(r"\b" + _NUMBER + r"(?=\s+(?:more\s+)?(?:cases?|boxes?|of)\b)")
# The number is the whole answer: "5", "ok, make it twenty five", "let's do 4."
_BARE_QUANTITY_RE = re.compile(
    r"(?:(?:ok(?:ay)?|yes|yeah|sure|um+|uh+|so|well|just|maybe|then|"
    r"let'?s (?:do|go with|make it)|make (?:it|that)|do|give me|(?:we|i)'?ll (?:take|do|need)|"
    r"(?:we|i) need|how about|about|around|say|put (?:me|us) down for)[\s,]+)*"
    + _NUMBER
    + r"(?:\s+please)?\s*[.!?]?"
)


def _matches_any(patterns: tuple[re.Pattern[str], ...], text: str) -> bool:
    t = _normalize_for_intent(text)
    return any(p.search(t) for p in patterns)


def is_affirmative(text: str) -> bool:
    return _matches_any(_YES_PATTERNS, text)


def is_negative(text: str) -> bool:
    return _matches_any(_NO_PATTERNS, text)


def wants_done(text: str) -> bool:
    return _matches_any(_DONE_ORDER_PATTERNS, text)


def wants_same_as_last_time(text: str) -> bool:
    return _matches_any(_SAME_AS_LAST_TIME_PATTERNS, text)


def shows_interest(text: str) -> bool:
    return _matches_any(_INTEREST_PATTERNS, text)


def looks_like_upsell(agent_text: str) -> bool:
    return _matches_any(_UPSELL_PATTERNS, agent_text)


def extract_quantity(text: str) -> Optional[int]:
    """
    Extract an explicit case count from an utterance.

    Digits and number words are treated alike: they only count right before
    "cases"/"boxes"/"of"/"more cases", or when the number is the whole answer
    ("5", "make it twenty five"). "Give me 2 minutes" or "room 204" is not an
    order.
    """
    t = _PRICE_RE.sub(" ", _normalize_for_intent(text)).strip()
    match = _COUNTED_QUANTITY_RE.search(t) or _BARE_QUANTITY_RE.fullmatch(t)
    if not match:
        return None

    token, units = match.group(1), match.group(2)
    if token.isdigit():
        value = int(token)
    else:
        value = _NUMBER_WORDS[token] + (_NUMBER_WORDS[units] if units else 0)
    return value if value > 0 else None


def format_money(amount) -> str:
    return f"${amount:,.2f}"


def describe_line(line: OrderLine) -> str:
    unit = "case" if line.quantity == 1 else "cases"
    return f"{line.quantity} {unit} of {line.product}"


def build_order_summary(order: OrderInProgress) -> str:
    """Scripted closing line for a finished order."""
    if not order.lines:
        return "No problem at all. *pause* Thank you for your time, and have a great day!"

    items = [describe_line(line) for line in order.lines]
    if len(items) == 1:
        listed = items[0]
    else:
        listed = ", ".join(items[:-1]) + f" and {items[-1]}"
    return (
        f"Wonderful! Your order is all set: {listed}, for a total of {format_money(order.total)}. "
        "*pause* Thank you for your time and have a great day!"
    )


def reorder_confirmation_prompt(product_name: str) -> str:
    return (
        f"Just to confirm — would you like to reorder {product_name} again? "
        "And how many cases this time?"
    )


REORDER_UNKNOWN_PROMPT = (
    "Would you mind confirming which product you're looking to reorder today?"
)


@dataclass
class PolicyDecision:
    """Outcome of applying the policy to one caller turn."""
    # When set, speak this instead of asking the LLM.
    scripted_reply: Optional[str] = None
    # Extra system guidance for the LLM on this turn.
    guidance: List[str] = field(default_factory=list)
    added_line: Optional[OrderLine] = None
    end_call: bool = False


class SalesPolicy:
    def __init__(self, catalog: Optional[ProductCatalog] = None):
        self.catalog = catalog or get_catalog()

    def _resolve(self, name: str) -> Optional[Product]:
        return self.catalog.get(name)

    def _add_line(self, session: CallSession, product_name: str, quantity: int) -> PolicyDecision:
        product = self._resolve(product_name)
        decision = PolicyDecision()

        if product is not None and quantity < product.min_cases:
            session.order.set_pending(product.name, reorder=session.order.pending_is_reorder)
            decision.guidance.append(
                f"The caller asked for {quantity} of {product.name}, but the minimum order is "
                f"{product.min_cases} cases at {product.price_text} per case. Do not add it yet; "
                f"ask whether {product.min_cases} cases or more would work."
            )
            return decision

        was_reorder = session.order.pending_is_reorder
        if product is not None:
            line = session.order.add_line(product.name, quantity, unit_price_for(product, quantity))
        else:
            # Off-catalog reorder item (e.g. a legacy product name from the profile).
            line = session.order.add_line(product_name, quantity, unit_price=0)

        if was_reorder:
            session.flags.mark("reorder_confirmed")

        decision.added_line = line
        decision.guidance.append(
            f"Order line confirmed: {describe_line(line)} at {format_money(line.unit_price)} per case "
            f"(line total {format_money(line.line_total)}, order total {format_money(session.order.total)}). "
            "Confirm exactly this to the caller, then ask if they need anything else."
        )
        logger.info(
            "Order line added",
            call_id=session.call_id,
            product=line.product,
            quantity=line.quantity,
            line_total=str(line.line_total),
            reorder=was_reorder,
        )
        return decision

    def apply_caller_turn(self, session: CallSession, text: str) -> PolicyDecision:
        """Update order/flags for a caller utterance and decide how to reply."""
        order = session.order
        flags = session.flags

        products = find_products(self.catalog, text)
        quantity = extract_quantity(text)

        if flags.customer_done or (wants_done(text) and not (products and quantity)):
            if flags.mark("customer_done"):
                logger.info("Customer done", call_id=session.call_id, lines=len(order.lines))
            order.clear_pending()
            return PolicyDecision(scripted_reply=build_order_summary(order), end_call=True)

        if order.pending_is_reorder and order.pending_product:
            pending = order.pending_product
            if is_negative(text) and quantity is None:
                order.clear_pending()
                return PolicyDecision(guidance=[
                    f"The caller does not want to reorder {pending}. Ask what they would like instead."
                ])
            if quantity is not None:
                return self._add_line(session, pending, quantity)
            if is_affirmative(text):
                return PolicyDecision(
                    scripted_reply=f"Great! How many cases of {pending} would you like this time?"
                )

        if wants_same_as_last_time(text) and not flags.reorder_confirmed:
            last_product = session.profile.last_product
            if not last_product:
                return PolicyDecision(scripted_reply=REORDER_UNKNOWN_PROMPT)
            order.set_pending(last_product, reorder=True)
            return PolicyDecision(scripted_reply=reorder_confirmation_prompt(last_product))

        decision = PolicyDecision()
        if len(products) == 1 and quantity is not None:
            decision = self._add_line(session, products[0].name, quantity)
        elif products:
            first = products[0]
            order.set_pending(first.name)
            names = ", ".join(p.name for p in products)
            decision.guidance.append(
                f"The caller mentioned: {names}. Never assume a quantity: ask how many cases of "
                f"{first.name} they would like, mentioning the minimum of {first.min_cases} cases "
                f"at {first.price_text} per case."
            )
        elif quantity is not None and order.pending_product:
            decision = self._add_line(session, order.pending_product, quantity)

        if flags.upsell_attempted and not shows_interest(text):
            decision.guidance.append(
                "You have already suggested an additional product on this call. Do not suggest "
                "any more products unless the caller asks about them."
            )
        return decision

    def observe_agent_reply(self, session: CallSession, caller_text: str, reply: str) -> None:
        """Track what the agent just said (upsell attempts, quantity questions)."""
        if looks_like_upsell(reply) and not shows_interest(caller_text):
            if session.flags.mark("upsell_attempted"):
                logger.info("Upsell attempted", call_id=session.call_id)

        if session.order.pending_product is None and _QUANTITY_QUESTION_RE.search(_normalize_for_intent(reply)):
            mentioned = find_products(self.catalog, reply)
            if len(mentioned) == 1:
                session.order.set_pending(mentioned[0].name)

    def turn_guidance(self, session: CallSession) -> List[str]:
        """Standing guidance that applies to every generated turn."""
        lines = ["Product catalog (prices per case):"] + self.catalog.to_prompt_lines()
        if session.order.lines:
            lines.append(
                "Current order: "
                + "; ".join(describe_line(line) for line in session.order.lines)
                + f" (total {format_money(session.order.total)})."
            )
        if session.flags.reorder_confirmed:
            lines.append("The reorder has already been confirmed; do not ask about it again.")
        return lines
