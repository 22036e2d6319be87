"""
Per-call session state and the in-process store that owns it.

A `SessionStore` instance holds every active `CallSession` keyed by call id.
The store is passed explicitly to the orchestrator and the lifecycle manager so
several runtimes (tests, workers) never share state by accident.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

import structlog

from src.sales_agent.errors import NotFoundError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_TIMEOUT_ATTEMPTS = 3

_CENTS = Decimal("0.01")


class CallStatus(str, Enum):
    """Carrier-driven status of a call."""
    INITIATED = "initiated"
    CONNECTED = "connected"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallStatus.COMPLETED, CallStatus.FAILED)


class TurnState(str, Enum):
    """Where the call is in the turn-taking loop."""
    GREETING = "greeting"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    TERMINATED = "terminated"


TURN_TRANSITIONS: Dict[TurnState, frozenset] = {
    TurnState.GREETING: frozenset({TurnState.SPEAKING, TurnState.PROCESSING, TurnState.TERMINATED}),
    TurnState.LISTENING: frozenset({TurnState.PROCESSING, TurnState.SPEAKING, TurnState.TERMINATED}),
    TurnState.PROCESSING: frozenset({TurnState.SPEAKING, TurnState.LISTENING, TurnState.TERMINATED}),
    TurnState.SPEAKING: frozenset({TurnState.LISTENING, TurnState.TERMINATED}),
    TurnState.TERMINATED: frozenset(),
}


class InvalidTransition(ValueError):
    """Raised when a turn-state change is not allowed by the transition table."""


class Role(str, Enum):
    SYSTEM = "system"
    AGENT = "agent"
    CALLER = "caller"


@dataclass(frozen=True)
class ConversationTurn:
    """A single entry of the call transcript."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "content": self.content, "timestamp": self.timestamp}


class ConversationHistory:
    """
    Append-only call transcript.

    The first entry is always the system instruction and roles alternate after
    it; violating either raises `ValueError`.
    """

    def __init__(self, system_instruction: str):
        self._turns: List[ConversationTurn] = [
            ConversationTurn(role=Role.SYSTEM, content=system_instruction)
        ]

    @property
    def system_instruction(self) -> str:
        return self._turns[0].content

    @property
    def last(self) -> ConversationTurn:
        return self._turns[-1]

    def append(self, role: Role, content: str) -> ConversationTurn:
        if role == Role.SYSTEM:
            raise ValueError("Only the first history entry may be a system instruction")
        if len(self._turns) > 1 and self._turns[-1].role == role:
            raise ValueError(f"Two consecutive {role.value} turns are not allowed")
        turn = ConversationTurn(role=role, content=content)
        self._turns.append(turn)
        return turn

    def add_agent_message(self, content: str) -> ConversationTurn:
        return self.append(Role.AGENT, content)

    def add_caller_message(self, content: str) -> ConversationTurn:
        return self.append(Role.CALLER, content)

    def turns(self, *, include_system: bool = True) -> List[ConversationTurn]:
        if include_system:
            return list(self._turns)
        return [t for t in self._turns if t.role != Role.SYSTEM]

    def last_of(self, role: Role) -> Optional[ConversationTurn]:
        for turn in reversed(self._turns):
            if turn.role == role:
                return turn
        return None

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(self._turns)

    def __len__(self) -> int:
        return len(self._turns)


class SessionFlags:
    """
    Conversational policy flags. Each flag can only go from False to True.
    """

    __slots__ = ("reorder_confirmed", "upsell_attempted", "customer_done")
    NAMES = __slots__

    def __init__(self) -> None:
        object.__setattr__(self, "reorder_confirmed", False)
        object.__setattr__(self, "upsell_attempted", False)
        object.__setattr__(self, "customer_done", False)

    def __setattr__(self, name: str, value: bool) -> None:
        if name not in self.NAMES:
            raise AttributeError(name)
        if getattr(self, name) and not value:
            raise ValueError(f"Session flag '{name}' cannot be reset once set")
        object.__setattr__(self, name, bool(value))

    def mark(self, name: str) -> bool:
        """Set a flag. Returns True if this call flipped it."""
        if getattr(self, name):
            return False
        setattr(self, name, True)
        return True

    def to_dict(self) -> Dict[str, bool]:
        return {
            "reorderConfirmed": self.reorder_confirmed,
            "upsellAttempted": self.upsell_attempted,
            "customerDone": self.customer_done,
        }


@dataclass(frozen=True)
class OrderLine:
    product: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(_CENTS, rounding=ROUND_HALF_UP)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product,
            "quantity": self.quantity,
            "unitPrice": float(self.unit_price),
            "lineTotal": float(self.line_total),
        }


@dataclass
class OrderInProgress:
    """Order accumulated during the call. Confirmed lines are never removed."""
    customer_name: str = ""
    venue_name: str = ""
    lines: List[OrderLine] = field(default_factory=list)
    # Product mentioned without a quantity yet; cleared once a line is added.
    pending_product: Optional[str] = None
    pending_is_reorder: bool = False

    @property
    def total(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0.00"))

    def add_line(self, product: str, quantity: int, unit_price: Decimal) -> OrderLine:
        if quantity <= 0:
            raise ValueError("Order quantity must be positive")
        line = OrderLine(product=product, quantity=quantity, unit_price=Decimal(unit_price))
        self.lines.append(line)
        self.clear_pending()
        return line

    def set_pending(self, product: str, *, reorder: bool = False) -> None:
        self.pending_product = product
        self.pending_is_reorder = reorder

    def clear_pending(self) -> None:
        self.pending_product = None
        self.pending_is_reorder = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customerName": self.customer_name,
            "venueName": self.venue_name,
            "products": [line.to_dict() for line in self.lines],
            "total": float(self.total),
            "pendingProduct": self.pending_product,
        }


@dataclass(frozen=True)
class CustomerProfile:
    """What we know about the customer before dialing."""
    manager_name: str = ""
    venue_name: str = ""
    last_product: str = ""


@dataclass
class CallSession:
    """All state associated with one phone call."""
    call_id: str
    phone_number: str
    context: str
    profile: CustomerProfile = field(default_factory=CustomerProfile)
    carrier_call_ref: str = ""
    status: CallStatus = CallStatus.INITIATED
    start_time: float = field(default_factory=time.time)
    turn_state: TurnState = TurnState.GREETING
    generation: int = 0
    timeout_attempts: int = 0
    archived: bool = False
    artifact_id: Optional[str] = None
    history: ConversationHistory = field(init=False)
    order: OrderInProgress = field(init=False)
    flags: SessionFlags = field(default_factory=SessionFlags)

    def __post_init__(self) -> None:
        self.history = ConversationHistory(self.context)
        self.order = OrderInProgress(
            customer_name=self.profile.manager_name,
            venue_name=self.profile.venue_name,
        )

    @property
    def is_terminated(self) -> bool:
        return self.turn_state == TurnState.TERMINATED

    @property
    def duration_seconds(self) -> float:
        return max(0.0, time.time() - self.start_time)

    def can_transition(self, new_state: TurnState) -> bool:
        return new_state == self.turn_state or new_state in TURN_TRANSITIONS[self.turn_state]

    def transition(self, new_state: TurnState) -> None:
        if not self.can_transition(new_state):
            raise InvalidTransition(
                f"{self.call_id}: {self.turn_state.value} -> {new_state.value} is not allowed"
            )
        self.turn_state = new_state

    def begin_event(self) -> int:
        """Bump the generation so results computed for older events can be detected."""
        self.generation += 1
        return self.generation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "callId": self.call_id,
            "phoneNumber": self.phone_number,
            "carrierCallRef": self.carrier_call_ref,
            "status": self.status.value,
            "turnState": self.turn_state.value,
            "startTime": self.start_time,
            "timeoutAttempts": self.timeout_attempts,
            "flags": self.flags.to_dict(),
            "context": self.context[:200] + "..." if len(self.context) > 200 else self.context,
        }


class SessionStore:
    """In-memory map of call id -> CallSession."""

    def __init__(self) -> None:
        self._sessions: Dict[str, CallSession] = {}

    def new_call_id(self, now_ms: Optional[int] = None) -> str:
        """Build a `call_<epoch-ms>` id that is not in use by a live session."""
        base = f"call_{now_ms if now_ms is not None else int(time.time() * 1000)}"
        call_id = base
        suffix = 1
        while call_id in self._sessions:
            call_id = f"{base}_{suffix}"
            suffix += 1
        return call_id

    def create(
        self,
        call_id: str,
        initial_context: str,
        *,
        phone_number: str = "",
        profile: Optional[CustomerProfile] = None,
    ) -> CallSession:
        if call_id in self._sessions:
            raise ValueError(f"Session already exists: {call_id}")
        session = CallSession(
            call_id=call_id,
            phone_number=phone_number,
            context=initial_context,
            profile=profile or CustomerProfile(),
        )
        self._sessions[call_id] = session
        logger.info("Session created", call_id=call_id, active_sessions=len(self._sessions))
        return session

    def get(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def require(self, call_id: str) -> CallSession:
        session = self._sessions.get(call_id)
        if session is None:
            raise NotFoundError(call_id)
        return session

    def update(self, call_id: str, mutator: Callable[[CallSession], T]) -> Optional[T]:
        """Apply `mutator` to the session if it exists; no-op otherwise."""
        session = self._sessions.get(call_id)
        if session is None:
            return None
        return mutator(session)

    def destroy(self, call_id: str) -> bool:
        session = self._sessions.pop(call_id, None)
        if session is None:
            return False
        logger.info("Session destroyed", call_id=call_id, active_sessions=len(self._sessions))
        return True

    def find_by_carrier_ref(self, carrier_call_ref: str) -> Optional[CallSession]:
        if not carrier_call_ref:
            return None
        for session in self._sessions.values():
            if session.carrier_call_ref == carrier_call_ref:
                return session
        return None

    def active(self) -> List[CallSession]:
        return list(self._sessions.values())

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
