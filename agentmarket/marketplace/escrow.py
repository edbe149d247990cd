from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple

from agentmarket.common.errors import InvalidTransactionState


class TransactionState(str, Enum):
    PENDING = "PENDING"
    FUNDED = "FUNDED"
    DELIVERED = "DELIVERED"
    RELEASED = "RELEASED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"


class EscrowEvent(str, Enum):
    FUND = "FUND"
    DELIVER = "DELIVER"
    RELEASE = "RELEASE"
    DISPUTE = "DISPUTE"
    REFUND = "REFUND"


class EscrowActor(str, Enum):
    BUYER = "BUYER"
    SELLER = "SELLER"
    # Deadline/oracle triggers and dispute resolution.
    SYSTEM = "SYSTEM"


TERMINAL_STATES: frozenset[TransactionState] = frozenset({TransactionState.RELEASED, TransactionState.REFUNDED})

# States where funds are still held by the escrow contract.
HELD_STATES: frozenset[TransactionState] = frozenset({TransactionState.FUNDED, TransactionState.DELIVERED})


class EscrowStateMachine:
    """
    Explicit escrow lifecycle.

    Success path: FUNDED -> DELIVERED -> RELEASED
    Failure path: FUNDED|DELIVERED -> DISPUTED -> REFUNDED
    Expiry:       FUNDED -> REFUNDED

    RELEASED and REFUNDED are terminal. Every store mutation of `state` must be
    conditioned on the source states checked here.
    """

    # (state, event) -> new state
    _TRANSITIONS: Dict[Tuple[TransactionState, EscrowEvent], TransactionState] = {
        (TransactionState.PENDING, EscrowEvent.FUND): TransactionState.FUNDED,
        (TransactionState.FUNDED, EscrowEvent.DELIVER): TransactionState.DELIVERED,
        (TransactionState.FUNDED, EscrowEvent.RELEASE): TransactionState.RELEASED,
        (TransactionState.DELIVERED, EscrowEvent.RELEASE): TransactionState.RELEASED,
        (TransactionState.FUNDED, EscrowEvent.DISPUTE): TransactionState.DISPUTED,
        (TransactionState.DELIVERED, EscrowEvent.DISPUTE): TransactionState.DISPUTED,
        (TransactionState.DISPUTED, EscrowEvent.REFUND): TransactionState.REFUNDED,
        (TransactionState.FUNDED, EscrowEvent.REFUND): TransactionState.REFUNDED,
    }

    # Which parties may fire an event. Missing -> anyone party to the escrow.
    _ACTORS: Dict[EscrowEvent, frozenset[EscrowActor]] = {
        EscrowEvent.DELIVER: frozenset({EscrowActor.SELLER}),
        EscrowEvent.RELEASE: frozenset({EscrowActor.BUYER, EscrowActor.SYSTEM}),
        EscrowEvent.REFUND: frozenset({EscrowActor.SYSTEM}),
    }

    @classmethod
    def allowed_events(cls, state: TransactionState) -> list[str]:
        return sorted({e.value for (s, e) in cls._TRANSITIONS if s == state})

    @classmethod
    def source_states(cls, event: EscrowEvent) -> frozenset[TransactionState]:
        return frozenset(s for (s, e) in cls._TRANSITIONS if e == event)

    @classmethod
    def next_state(
        cls,
        state: TransactionState | str,
        event: EscrowEvent | str,
        *,
        actor: EscrowActor | str = EscrowActor.SYSTEM,
        transaction_id: Optional[str] = None,
    ) -> TransactionState:
        """
        Compute the target state or raise InvalidTransactionState.

        Raises for: unknown source state, terminal source state, event not
        allowed from this state, or an actor not allowed to fire the event.
        """
        ev = EscrowEvent(event)
        who = EscrowActor(actor)
        try:
            st = TransactionState(state)
        except ValueError as e:
            raise InvalidTransactionState(
                f"Unknown transaction state {state!r}", transaction_id=transaction_id
            ) from e

        allowed_actors = cls._ACTORS.get(ev)
        if allowed_actors is not None and who not in allowed_actors:
            raise InvalidTransactionState(
                f"{who.value} may not {ev.value.lower()} a transaction "
                f"(allowed: {sorted(a.value for a in allowed_actors)})",
                transaction_id=transaction_id,
                state=st.value,
            )

        key = (st, ev)
        if key not in cls._TRANSITIONS:
            raise InvalidTransactionState(
                f"Invalid transition: state={st.value} event={ev.value}. "
                f"Allowed events from {st.value}: {cls.allowed_events(st)}",
                transaction_id=transaction_id,
                state=st.value,
            )
        return cls._TRANSITIONS[key]
