from datetime import datetime, timezone

from agentmarket.clients.balance import BalanceSnapshot
from agentmarket.heartbeat.context import AgentContext, EscrowView, ListingView, MessageView
from agentmarket.heartbeat.policy import should_skip
from agentmarket.marketplace.models import Agent, Listing, Message, Transaction

USDC = 1_000_000


def _ctx(*, balance=0, listings=(), messages=(), escrows=(), my_listings=(), privileged=False) -> AgentContext:
    return AgentContext(
        agent=Agent(id="a1", name="Alpha"),
        balance=BalanceSnapshot(usdc=balance),
        effective_balance=balance,
        is_privileged=privileged,
        listings=tuple(ListingView(listing=l, seller_name="Seller") for l in listings),
        messages=tuple(messages),
        escrows=tuple(escrows),
        my_listings=tuple(my_listings),
    )


def _listing(lid: str, price: int, **kw) -> Listing:
    return Listing(id=lid, title=f"listing {lid}", agent_id=kw.pop("agent_id", "s1"), price=price, **kw)


def _own(n: int, *, active=True) -> list[Listing]:
    return [Listing(id=f"own{i}", title=f"own {i}", agent_id="a1", price=USDC, is_active=active) for i in range(n)]


def test_ten_dollar_listing_is_not_affordable_at_nine_dollars():
    # max spend is balance // 3 = $3.00
    ctx = _ctx(balance=9 * USDC, listings=[_listing("l10", 10 * USDC)])
    assert ctx.affordable_listings() == []


def test_one_and_two_dollar_listings_are_affordable_at_nine_dollars():
    ctx = _ctx(balance=9 * USDC, listings=[_listing("l1", 1 * USDC), _listing("l2", 2 * USDC), _listing("l10", 10 * USDC)])
    assert {v.listing.id for v in ctx.affordable_listings()} == {"l1", "l2"}


def test_zero_priced_listing_is_never_affordable():
    ctx = _ctx(balance=9 * USDC, listings=[_listing("free", 0)])
    assert ctx.affordable_listings() == []


def test_zero_balance_with_nothing_actionable_skips():
    d = should_skip(_ctx(balance=0), is_privileged=False)
    assert d.skip is True
    assert d.reason == "No balance and nothing actionable"


def test_privileged_agent_never_skips():
    assert should_skip(_ctx(balance=0), is_privileged=True).skip is False
    assert should_skip(_ctx(balance=0, my_listings=_own(9)), is_privileged=True).skip is False


def test_zero_balance_with_message_runs():
    msg = MessageView(message=Message(id="m1", from_agent_id="b", to_agent_id="a1", content="hi"), from_agent_name="B")
    assert should_skip(_ctx(balance=0, messages=[msg]), is_privileged=False).skip is False


def test_max_listings_and_nothing_urgent_skips():
    d = should_skip(_ctx(balance=1 * USDC, my_listings=_own(5)), is_privileged=False)
    assert d.skip is True
    assert d.reason == "No urgent actions and already has max listings"


def test_inactive_own_listings_do_not_count_toward_max():
    d = should_skip(_ctx(balance=1 * USDC, my_listings=_own(5, active=False)), is_privileged=False)
    assert d.skip is False


def test_pending_delivery_prevents_skip_even_at_max_listings():
    txn = Transaction(id="t1", buyer_agent_id="b", seller_agent_id="a1", amount=USDC)
    esc = EscrowView(transaction=txn, is_buyer=False, counterparty_name="B")
    assert esc.awaiting_delivery is True
    d = should_skip(_ctx(balance=1 * USDC, my_listings=_own(5), escrows=[esc]), is_privileged=False)
    assert d.skip is False


def test_pending_review_prevents_skip_even_at_max_listings():
    txn = Transaction(
        id="t1",
        buyer_agent_id="a1",
        seller_agent_id="b",
        amount=USDC,
        state="DELIVERED",
        delivered_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    esc = EscrowView(transaction=txn, is_buyer=True, counterparty_name="B")
    assert esc.awaiting_review is True
    d = should_skip(_ctx(balance=1 * USDC, my_listings=_own(5), escrows=[esc]), is_privileged=False)
    assert d.skip is False


def test_custom_max_own_listings():
    d = should_skip(_ctx(balance=1 * USDC, my_listings=_own(2)), is_privileged=False, max_own_listings=2)
    assert d.skip is True
