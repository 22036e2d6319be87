"""
Tests for the conversational sales policy (quantities, reorders, upsell, close).
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from src.sales_agent.policy import (
    REORDER_UNKNOWN_PROMPT,
    SalesPolicy,
    build_order_summary,
    extract_quantity,
    format_money,
    is_affirmative,
    is_negative,
    reorder_confirmation_prompt,
    shows_interest,
    wants_done,
    wants_same_as_last_time,
)
from src.sales_agent.session import CustomerProfile, SessionStore


@pytest.fixture
def session():
    store = SessionStore()
    return store.create(
        "call_1",
        "sys",
        phone_number="+15551234567",
        profile=CustomerProfile(
            manager_name="Dana",
            venue_name="Harbor Inn",
            last_product="Asiago Cheese Bagels",
        ),
    )


@pytest.fixture
def policy():
    return SalesPolicy()


@pytest.mark.parametrize(
    "text,expected",
    [
        ("three cases please", 3),
        ("let's do 4", 4),
        ("make it twenty five", 25),
        ("a dozen cases", 12),
        ("the 16.9 fl oz water", None),
        ("is it still $25 a case?", None),
        ("I have one question", None),
        ("0 cases", None),
        ("5", 5),
        ("ok, make it 5.", 5),
        ("2 more cases of decaf", 2),
        ("hold on, give me 2 minutes to check", None),
        ("can you call back at 3", None),
        ("deliver it to room 204", None),
    ],
)
def test_extract_quantity(text: str, expected) -> None:
    assert extract_quantity(text) == expected


def test_incidental_numbers_do_not_add_order_lines(policy, session) -> None:
    policy.apply_caller_turn(session, "I need some coffee")
    assert session.order.pending_product == "House Blend Coffee"

    policy.apply_caller_turn(session, "hold on, give me 2 minutes to check")

    assert session.order.lines == []
    assert session.order.pending_product == "House Blend Coffee"


def test_intent_helpers() -> None:
    assert wants_done("That's all, thanks") is True
    assert wants_done("I'm all set") is True
    assert wants_done("Can I add coffee?") is False
    assert wants_same_as_last_time("Same as last time please") is True
    assert wants_same_as_last_time("Let's do the usual") is True
    assert is_affirmative("Yes please") is True
    assert is_negative("Nope, not today") is True
    assert shows_interest("What else do you have?") is True


def test_same_as_last_time_requires_explicit_confirmation(policy, session) -> None:
    decision = policy.apply_caller_turn(session, "Same as last time please")

    assert decision.scripted_reply == reorder_confirmation_prompt("Asiago Cheese Bagels")
    assert session.order.lines == []
    assert session.order.pending_product == "Asiago Cheese Bagels"
    assert session.flags.reorder_confirmed is False

    decision = policy.apply_caller_turn(session, "Yes")
    assert decision.scripted_reply == "Great! How many cases of Asiago Cheese Bagels would you like this time?"
    assert session.order.lines == []

    decision = policy.apply_caller_turn(session, "Let's do 4 cases")
    assert decision.added_line is not None
    assert decision.added_line.product == "Asiago Cheese Bagels"
    assert decision.added_line.quantity == 4
    assert decision.added_line.line_total == Decimal("100.00")
    assert session.flags.reorder_confirmed is True
    assert session.order.pending_product is None

    # Already confirmed: no second confirmation prompt.
    decision = policy.apply_caller_turn(session, "same as last time")
    assert decision.scripted_reply is None


def test_reorder_without_known_product(policy) -> None:
    session = SessionStore().create("call_2", "sys")

    decision = policy.apply_caller_turn(session, "just the usual")

    assert decision.scripted_reply == REORDER_UNKNOWN_PROMPT
    assert session.order.pending_product is None


def test_declined_reorder_clears_pending(policy, session) -> None:
    policy.apply_caller_turn(session, "same as last time")
    decision = policy.apply_caller_turn(session, "No, not this time")

    assert session.order.pending_product is None
    assert session.order.lines == []
    assert any("does not want to reorder" in g for g in decision.guidance)


def test_product_without_quantity_is_pending(policy, session) -> None:
    decision = policy.apply_caller_turn(session, "Do you have croissants?")

    assert decision.scripted_reply is None
    assert session.order.lines == []
    assert session.order.pending_product == "Butter Croissants"
    assert any("Never assume a quantity" in g for g in decision.guidance)


def test_below_minimum_is_not_added(policy, session) -> None:
    decision = policy.apply_caller_turn(session, "Can I get 1 case of orange juice")

    assert session.order.lines == []
    assert session.order.pending_product == "Orange Juice (10 fl oz)"
    assert any("minimum order is 3 cases" in g for g in decision.guidance)

    decision = policy.apply_caller_turn(session, "ok make it 3")
    assert decision.added_line.quantity == 3
    assert session.order.total == Decimal("66.00")


def test_bulk_discount_applies_from_five_cases(policy, session) -> None:
    decision = policy.apply_caller_turn(session, "I'll take 6 cases of plain bagels")

    assert decision.added_line.product == "Plain Bagels"
    assert decision.added_line.unit_price == Decimal("21.00")
    assert session.order.total == Decimal("126.00")


def test_quantity_question_from_agent_sets_pending(policy, session) -> None:
    policy.observe_agent_reply(session, "Hi", "How many cases of orange juice would you like?")
    assert session.order.pending_product == "Orange Juice (10 fl oz)"

    decision = policy.apply_caller_turn(session, "five")
    assert decision.added_line.quantity == 5
    assert decision.added_line.unit_price == Decimal("20.00")


def test_only_one_unsolicited_upsell(policy, session) -> None:
    policy.apply_caller_turn(session, "3 cases of coffee")
    policy.observe_agent_reply(
        session, "3 cases of coffee", "Got it! Would you also like to add some croissants?"
    )
    assert session.flags.upsell_attempted is True

    decision = policy.apply_caller_turn(session, "Hmm, no thanks")
    assert any("already suggested" in g for g in decision.guidance)

    decision = policy.apply_caller_turn(session, "What else do you have?")
    assert not any("already suggested" in g for g in decision.guidance)


def test_done_summarizes_and_ends(policy, session) -> None:
    policy.apply_caller_turn(session, "4 cases of asiago bagels")
    decision = policy.apply_caller_turn(session, "That's all, thanks")

    assert decision.end_call is True
    assert session.flags.customer_done is True
    assert decision.scripted_reply == (
        "Wonderful! Your order is all set: 4 cases of Asiago Cheese Bagels, for a total of $100.00. "
        "*pause* Thank you for your time and have a great day!"
    )

    # Once done, every further turn just closes.
    decision = policy.apply_caller_turn(session, "actually what else do you have?")
    assert decision.end_call is True


def test_summary_without_lines() -> None:
    from src.sales_agent.session import OrderInProgress

    assert build_order_summary(OrderInProgress()).startswith("No problem at all.")


def test_turn_guidance_lists_catalog_and_order(policy, session) -> None:
    policy.apply_caller_turn(session, "2 cases of decaf")

    guidance = policy.turn_guidance(session)

    assert guidance[0] == "Product catalog (prices per case):"
    assert any(line.startswith("- Decaf Coffee: $26.00 per case") for line in guidance)
    assert any(line.startswith("Current order: 2 cases of Decaf Coffee") for line in guidance)


def test_format_money() -> None:
    assert format_money(Decimal("1234.5")) == "$1,234.50"
