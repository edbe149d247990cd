import pytest

from agentmarket.common.errors import InvalidTransactionState
from agentmarket.marketplace.escrow import (
    HELD_STATES,
    TERMINAL_STATES,
    EscrowActor,
    EscrowEvent,
    EscrowStateMachine,
    TransactionState,
)


def test_success_path_funded_delivered_released():
    s = TransactionState.FUNDED
    s = EscrowStateMachine.next_state(s, EscrowEvent.DELIVER, actor=EscrowActor.SELLER)
    assert s == TransactionState.DELIVERED
    s = EscrowStateMachine.next_state(s, EscrowEvent.RELEASE, actor=EscrowActor.BUYER)
    assert s == TransactionState.RELEASED


def test_release_allowed_directly_from_funded():
    assert (
        EscrowStateMachine.next_state("FUNDED", "RELEASE", actor="BUYER") == TransactionState.RELEASED
    )


def test_dispute_then_refund():
    s = EscrowStateMachine.next_state(TransactionState.DELIVERED, EscrowEvent.DISPUTE, actor=EscrowActor.BUYER)
    assert s == TransactionState.DISPUTED
    s = EscrowStateMachine.next_state(s, EscrowEvent.REFUND, actor=EscrowActor.SYSTEM)
    assert s == TransactionState.REFUNDED


def test_expiry_refund_from_funded():
    assert (
        EscrowStateMachine.next_state(TransactionState.FUNDED, EscrowEvent.REFUND) == TransactionState.REFUNDED
    )


@pytest.mark.parametrize("terminal", [TransactionState.RELEASED, TransactionState.REFUNDED])
@pytest.mark.parametrize("event", list(EscrowEvent))
def test_terminal_states_reject_every_event(terminal, event):
    with pytest.raises(InvalidTransactionState) as ei:
        EscrowStateMachine.next_state(terminal, event, actor=EscrowActor.SYSTEM, transaction_id="t1")
    assert ei.value.transaction_id == "t1"


def test_release_twice_is_rejected_with_allowed_events_listed():
    with pytest.raises(InvalidTransactionState) as ei:
        EscrowStateMachine.next_state(TransactionState.RELEASED, EscrowEvent.RELEASE, actor=EscrowActor.BUYER)
    assert "RELEASED" in str(ei.value)
    assert ei.value.state == "RELEASED"


def test_buyer_cannot_deliver_and_seller_cannot_release():
    with pytest.raises(InvalidTransactionState):
        EscrowStateMachine.next_state(TransactionState.FUNDED, EscrowEvent.DELIVER, actor=EscrowActor.BUYER)
    with pytest.raises(InvalidTransactionState):
        EscrowStateMachine.next_state(TransactionState.DELIVERED, EscrowEvent.RELEASE, actor=EscrowActor.SELLER)


def test_deliver_twice_is_rejected():
    with pytest.raises(InvalidTransactionState):
        EscrowStateMachine.next_state(TransactionState.DELIVERED, EscrowEvent.DELIVER, actor=EscrowActor.SELLER)


def test_unknown_state_is_rejected():
    with pytest.raises(InvalidTransactionState):
        EscrowStateMachine.next_state("SHIPPED", EscrowEvent.RELEASE, actor=EscrowActor.BUYER)


def test_source_states_and_sets():
    assert EscrowStateMachine.source_states(EscrowEvent.DELIVER) == frozenset({TransactionState.FUNDED})
    assert EscrowStateMachine.source_states(EscrowEvent.RELEASE) == HELD_STATES
    assert TERMINAL_STATES == {TransactionState.RELEASED, TransactionState.REFUNDED}
