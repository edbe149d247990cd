from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from agentmarket.clients.balance import BalanceProvider, BalanceSnapshot
from agentmarket.common.config import HeartbeatConfig
from agentmarket.common.errors import AgentNotFound
from agentmarket.common.logging import log_event
from agentmarket.marketplace.escrow import HELD_STATES, EscrowActor
from agentmarket.marketplace.models import Agent, Listing, Message, Transaction, format_usdc
from agentmarket.persistence.store import StateStore

logger = logging.getLogger(__name__)

_DEAD_SELLER_GRACE = timedelta(hours=1)
_DEAD_SELLER_SILENCE = timedelta(hours=24)
_RECENT_ACTIONS_WINDOW = timedelta(hours=24)
_NON_ACTIONS = frozenset({"skip", "error", "do_nothing"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ListingView:
    listing: Listing
    seller_name: str
    # Reputation proxy shown to the reasoning service.
    seller_transaction_count: int = 0


@dataclass(frozen=True, slots=True)
class MessageView:
    message: Message
    from_agent_name: str


@dataclass(frozen=True, slots=True)
class EscrowView:
    transaction: Transaction
    is_buyer: bool
    counterparty_name: str

    @property
    def awaiting_delivery(self) -> bool:
        """Seller still owes the work."""
        return (not self.is_buyer) and self.transaction.delivered_at is None

    @property
    def awaiting_review(self) -> bool:
        """Buyer has a delivery to review and release."""
        return self.is_buyer and self.transaction.delivered_at is not None


@dataclass(frozen=True, slots=True)
class AgentContext:
    """Point-in-time view of one agent's world; built per heartbeat and discarded."""

    agent: Agent
    balance: BalanceSnapshot
    # Real USDC balance, or the privileged credit when a house agent sits at zero.
    effective_balance: int
    is_privileged: bool
    credited: bool = False
    listings: tuple[ListingView, ...] = ()
    messages: tuple[MessageView, ...] = ()
    escrows: tuple[EscrowView, ...] = ()
    my_listings: tuple[Listing, ...] = ()
    recent_actions: tuple[str, ...] = ()
    gathered_at: datetime = field(default_factory=_utc_now)

    @property
    def max_spend(self) -> int:
        return self.effective_balance // 3

    def affordable_listings(self) -> list[ListingView]:
        cap = self.max_spend
        return [v for v in self.listings if 0 < v.listing.price <= cap]

    def active_own_listings(self) -> list[Listing]:
        return [l for l in self.my_listings if l.is_active]

    def summary(self, *, immediate: bool = False) -> dict[str, Any]:
        """Counts only; full content never goes to the execution log."""
        return {
            "balance_usdc": str(self.effective_balance),
            "balance_display": format_usdc(self.effective_balance),
            "balance_live": bool(self.balance.live),
            "credited": bool(self.credited),
            "listings_count": len(self.listings),
            "messages_count": len(self.messages),
            "escrows_count": len(self.escrows),
            "my_listings_count": len(self.my_listings),
            "is_privileged": bool(self.is_privileged),
            "immediate": bool(immediate),
        }


def describe_action(action: dict[str, Any]) -> Optional[str]:
    """One-line memory of a past action for prompt de-duplication."""
    t = str(action.get("type") or "")
    if t == "create_listing":
        price = action.get("price") or action.get("price_wei") or 0
        return f'Created listing "{action.get("title", "")}" at {format_usdc(int(price))}'
    if t == "buy_listing":
        return f"Bought listing {action.get('listing_id')}"
    if t == "send_message":
        target = action.get("to_agent_id") or "the public feed"
        return f'Messaged {target}: "{str(action.get("content") or "")[:80]}"'
    if t == "deliver":
        return f"Delivered work for transaction {action.get('transaction_id')}"
    if t == "release":
        return f"Released payment for transaction {action.get('transaction_id')}"
    if t == "update_listing":
        return f"Updated listing {action.get('listing_id')}"
    return None


class ContextAggregator:
    def __init__(
        self,
        *,
        store: StateStore,
        balances: BalanceProvider,
        config: HeartbeatConfig,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._balances = balances
        self._cfg = config
        self._clock = clock

    async def gather(self, agent_id: str, *, force_privileged: bool = False) -> AgentContext:
        """
        Build the snapshot for one agent.

        Raises AgentNotFound. Any store failure propagates: a prompt built from
        partial listings/messages would be internally inconsistent. Balance
        lookups never raise; they degrade to zero.
        """
        agent = await self._store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)

        privileged = bool(force_privileged) or self._cfg.is_privileged(agent.id)
        now = self._clock()

        balance, listings, messages, escrows, mine, recent = await asyncio.gather(
            self._balance(agent),
            self._listings(agent, privileged=privileged, now=now),
            self._messages(agent),
            self._escrows(agent),
            self._store.list_agent_listings(agent.id, limit=self._cfg.own_listing_limit),
            self._recent_actions(agent, now=now),
        )

        effective = balance.usdc
        credited = False
        if privileged and balance.usdc == 0:
            effective = self._cfg.privileged_credit
            credited = True

        return AgentContext(
            agent=agent,
            balance=balance,
            effective_balance=int(effective),
            is_privileged=privileged,
            credited=credited,
            listings=tuple(listings),
            messages=tuple(messages),
            escrows=tuple(escrows),
            my_listings=tuple(mine),
            recent_actions=tuple(recent),
            gathered_at=now,
        )

    async def _balance(self, agent: Agent) -> BalanceSnapshot:
        try:
            return await asyncio.wait_for(
                self._balances.get_balance(agent.wallet_address),
                timeout=self._cfg.balance_timeout_s,
            )
        except Exception as e:
            log_event(
                logger,
                "heartbeat.balance_unavailable",
                severity="WARNING",
                agent_id=agent.id,
                error=f"{type(e).__name__}: {e}",
            )
            return BalanceSnapshot(usdc=0, eth_wei=0, live=False)

    def _is_dead_seller(self, seller: Agent, *, now: datetime) -> bool:
        """Self-custody sellers that registered, never wired a webhook and went silent."""
        if seller.is_hosted or seller.webhook_url:
            return False
        if seller.created_at is None or seller.created_at > now - _DEAD_SELLER_GRACE:
            return False
        last = seller.last_heartbeat_at
        return last is None or last < now - _DEAD_SELLER_SILENCE

    async def _listings(self, agent: Agent, *, privileged: bool, now: datetime) -> list[ListingView]:
        agent_rows, bounties = await asyncio.gather(
            self._store.list_active_listings(exclude_agent_id=agent.id, limit=self._cfg.listing_limit),
            self._store.list_human_bounties(limit=self._cfg.bounty_limit),
        )

        merged: dict[str, Listing] = {}
        for row in list(agent_rows) + list(bounties):
            merged.setdefault(row.id, row)

        sellers = await self._store.get_agents(l.agent_id for l in merged.values() if l.agent_id)

        out: list[ListingView] = []
        for listing in merged.values():
            if not listing.is_active or listing.agent_id == agent.id:
                continue
            if privileged:
                # House agents never trade with each other, and only pick up bounties or human requests.
                if listing.agent_id and self._cfg.is_privileged(listing.agent_id):
                    continue
                if not (listing.is_bounty or listing.is_human_posted):
                    continue
            seller = sellers.get(listing.agent_id) if listing.agent_id else None
            if seller is not None and self._is_dead_seller(seller, now=now):
                continue
            out.append(
                ListingView(
                    listing=listing,
                    seller_name=seller.name if seller else ("Human" if listing.is_human_posted else "Unknown"),
                    seller_transaction_count=seller.transaction_count if seller else 0,
                )
            )
        return out

    async def _messages(self, agent: Agent) -> list[MessageView]:
        rows = await self._store.list_inbound_messages(agent.id, limit=self._cfg.message_limit)
        senders = await self._store.get_agents(m.from_agent_id for m in rows)
        return [
            MessageView(message=m, from_agent_name=senders[m.from_agent_id].name if m.from_agent_id in senders else "Unknown")
            for m in rows
        ]

    async def _escrows(self, agent: Agent) -> list[EscrowView]:
        rows = await self._store.list_escrows(agent.id, states=HELD_STATES)
        counterparties = await self._store.get_agents(t.counterparty_of(agent.id) for t in rows)
        out: list[EscrowView] = []
        for t in rows:
            other = t.counterparty_of(agent.id)
            if other is None:
                name = "Human"
            else:
                name = counterparties[other].name if other in counterparties else "Unknown"
            out.append(
                EscrowView(transaction=t, is_buyer=t.role_of(agent.id) is EscrowActor.BUYER, counterparty_name=name)
            )
        return out

    async def _recent_actions(self, agent: Agent, *, now: datetime) -> list[str]:
        limit = self._cfg.recent_action_limit
        rows = await self._store.list_recent_logs(agent.id, since=now - _RECENT_ACTIONS_WINDOW, limit=limit * 2)
        out: list[str] = []
        for entry in rows:
            if not entry.execution_success or entry.action_type in _NON_ACTIONS:
                continue
            desc = describe_action(entry.action_chosen)
            if desc:
                out.append(desc)
            if len(out) >= limit:
                break
        return out
