from datetime import datetime, timezone

import pytest

from agentmarket.marketplace.escrow import EscrowActor, TransactionState
from agentmarket.marketplace.models import (
    Agent,
    ExecutionLogEntry,
    Listing,
    ListingType,
    Personality,
    Transaction,
    format_usdc,
    parse_amount,
)


def test_format_usdc_truncates_to_cents():
    assert format_usdc(9_000_000) == "$9.00"
    assert format_usdc(1_234_567) == "$1.23"
    assert format_usdc(0) == "$0.00"
    assert format_usdc(-5_000_000) == "-$5.00"


def test_parse_amount_accepts_strings_and_ints():
    assert parse_amount("5000000") == 5_000_000
    assert parse_amount(7) == 7
    assert parse_amount(None) == 0
    assert parse_amount("") == 0
    with pytest.raises(ValueError):
        parse_amount(True)


def test_personality_parse_falls_back_to_random():
    assert Personality.parse("HUSTLER") is Personality.HUSTLER
    assert Personality.parse(Personality.DEGEN) is Personality.DEGEN
    assert Personality.parse("zen") is Personality.RANDOM
    assert Personality.parse(None) is Personality.RANDOM


def test_agent_firestore_round_trip_keeps_amounts_as_strings():
    a = Agent(
        id="a1",
        name="Alpha",
        personality="cautious",
        total_earned=12_000_000,
        created_at=datetime(2026, 1, 1),
    )
    doc = a.to_firestore()
    assert doc["total_earned"] == "12000000"
    assert doc["personality"] == "cautious"
    back = Agent.from_firestore("a1", doc)
    assert back.total_earned == 12_000_000
    assert back.personality is Personality.CAUTIOUS
    assert back.created_at == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_agent_id_validation():
    with pytest.raises(ValueError):
        Agent(id=" ", name="x")
    with pytest.raises(ValueError):
        Agent(id="a/b", name="x")


def test_listing_flags():
    bounty = Listing(id="l1", title="Need logo", listing_type="BOUNTY", price=2_000_000)
    assert bounty.is_bounty is True
    assert bounty.is_human_posted is True
    svc = Listing(id="l2", title="Logo", agent_id="a1", listing_type=ListingType.FIXED, price=1)
    assert svc.is_bounty is False
    assert svc.is_human_posted is False
    with pytest.raises(ValueError):
        Listing(id="l3", title="bad", price=-1)


def test_transaction_invariants():
    with pytest.raises(ValueError):
        Transaction(id="t1", buyer_agent_id="a", seller_agent_id="b", amount=0)
    with pytest.raises(ValueError):
        Transaction(id="t1", buyer_agent_id="a", seller_agent_id="a", amount=1)

    t = Transaction(id="t1", buyer_agent_id="a", seller_agent_id="b", amount=5, state="DELIVERED")
    assert t.state is TransactionState.DELIVERED
    assert t.role_of("a") is EscrowActor.BUYER
    assert t.role_of("b") is EscrowActor.SELLER
    assert t.role_of("c") is None


def test_transaction_from_firestore_normalizes_state_case():
    t = Transaction.from_firestore(
        "t2", {"buyer_agent_id": "a", "seller_agent_id": "b", "amount": "3000000", "state": "funded"}
    )
    assert t.id == "t2"
    assert t.amount == 3_000_000
    assert t.state is TransactionState.FUNDED


def test_human_funded_transaction_loads_without_buyer_agent():
    t = Transaction.from_firestore(
        "t3",
        {"buyer_agent_id": None, "buyer_wallet": "0xabc", "seller_agent_id": "a", "amount": "1000000", "state": "FUNDED"},
    )
    assert t.buyer_agent_id is None
    assert t.is_human_funded is True
    assert t.buyer_wallet == "0xabc"
    assert t.role_of("a") is EscrowActor.SELLER
    assert t.counterparty_of("a") is None
    assert t.to_firestore()["buyer_wallet"] == "0xabc"

    bare = Transaction.from_firestore("t4", {"seller_agent_id": "a", "amount": "1", "state": "FUNDED"})
    assert bare.is_human_funded is True
    with pytest.raises(ValueError):
        Transaction(id="t5", buyer_agent_id=None, seller_agent_id="", amount=1)


def test_execution_log_entry_action_type():
    e = ExecutionLogEntry(agent_id="a", action_chosen={"type": "deliver"}, execution_success=True)
    assert e.action_type == "deliver"
    back = ExecutionLogEntry.from_firestore(e.to_firestore())
    assert back.action_chosen == {"type": "deliver"}
    assert back.execution_success is True
