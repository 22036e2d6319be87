"""
Tests for call session state and the session store.
"""

from decimal import Decimal

import pytest

from src.sales_agent.errors import NotFoundError
from src.sales_agent.session import (
    CallStatus,
    ConversationHistory,
    CustomerProfile,
    InvalidTransition,
    OrderInProgress,
    Role,
    SessionFlags,
    SessionStore,
    TurnState,
)


def test_history_starts_with_system_instruction() -> None:
    history = ConversationHistory("You are Sarah.")

    assert len(history) == 1
    assert history.last.role == Role.SYSTEM
    assert history.system_instruction == "You are Sarah."
    assert history.turns(include_system=False) == []


def test_history_rejects_consecutive_same_role_and_extra_system() -> None:
    history = ConversationHistory("sys")
    history.add_agent_message("Hi there")

    with pytest.raises(ValueError):
        history.add_agent_message("Hello again")
    with pytest.raises(ValueError):
        history.append(Role.SYSTEM, "new instructions")

    history.add_caller_message("Hi")
    history.add_agent_message("How many cases?")
    assert [t.role for t in history] == [Role.SYSTEM, Role.AGENT, Role.CALLER, Role.AGENT]
    assert history.last_of(Role.CALLER).content == "Hi"


def test_flags_only_move_forward() -> None:
    flags = SessionFlags()

    assert flags.mark("upsell_attempted") is True
    assert flags.mark("upsell_attempted") is False
    with pytest.raises(ValueError):
        flags.upsell_attempted = False
    with pytest.raises(AttributeError):
        flags.mark("made_up_flag")

    assert flags.to_dict() == {
        "reorderConfirmed": False,
        "upsellAttempted": True,
        "customerDone": False,
    }


def test_order_totals_and_pending_product() -> None:
    order = OrderInProgress(customer_name="Dana", venue_name="Harbor Inn")
    order.set_pending("Plain Bagels")

    order.add_line("Plain Bagels", 3, Decimal("23.00"))
    order.add_line("Orange Juice (10 fl oz)", 5, Decimal("20.00"))

    assert order.pending_product is None
    assert order.total == Decimal("169.00")
    data = order.to_dict()
    assert data["products"][0] == {
        "product": "Plain Bagels",
        "quantity": 3,
        "unitPrice": 23.0,
        "lineTotal": 69.0,
    }
    assert data["total"] == 169.0

    with pytest.raises(ValueError):
        order.add_line("Plain Bagels", 0, Decimal("23.00"))


def test_turn_state_transitions_are_guarded() -> None:
    store = SessionStore()
    session = store.create("call_1", "sys")

    assert session.turn_state == TurnState.GREETING
    session.transition(TurnState.PROCESSING)
    session.transition(TurnState.SPEAKING)
    with pytest.raises(InvalidTransition):
        session.transition(TurnState.PROCESSING)

    session.transition(TurnState.TERMINATED)
    assert session.is_terminated
    with pytest.raises(InvalidTransition):
        session.transition(TurnState.LISTENING)


def test_store_create_get_and_destroy_idempotent() -> None:
    store = SessionStore()
    profile = CustomerProfile(manager_name="Dana", venue_name="Harbor Inn", last_product="Plain Bagels")
    session = store.create("call_1", "sys", phone_number="+15551234567", profile=profile)

    assert store.get("call_1") is session
    assert session.history.system_instruction == "sys"
    assert session.order.customer_name == "Dana"
    assert session.status == CallStatus.INITIATED

    with pytest.raises(ValueError):
        store.create("call_1", "sys")

    assert store.destroy("call_1") is True
    assert store.destroy("call_1") is False
    assert store.get("call_1") is None
    with pytest.raises(NotFoundError):
        store.require("call_1")


def test_store_update_is_noop_for_unknown_call() -> None:
    store = SessionStore()
    store.create("call_1", "sys")

    assert store.update("missing", lambda s: s.begin_event()) is None
    assert store.update("call_1", lambda s: s.begin_event()) == 1


def test_new_call_id_avoids_live_sessions() -> None:
    store = SessionStore()
    first = store.new_call_id(now_ms=1700000000000)
    store.create(first, "sys")

    assert first == "call_1700000000000"
    assert store.new_call_id(now_ms=1700000000000) == "call_1700000000000_1"


def test_find_by_carrier_ref() -> None:
    store = SessionStore()
    session = store.create("call_1", "sys")
    session.carrier_call_ref = "CA123"

    assert store.find_by_carrier_ref("CA123") is session
    assert store.find_by_carrier_ref("CA999") is None
    assert store.find_by_carrier_ref("") is None


def test_terminal_statuses() -> None:
    assert CallStatus.COMPLETED.is_terminal
    assert CallStatus.FAILED.is_terminal
    assert not CallStatus.CONNECTED.is_terminal
