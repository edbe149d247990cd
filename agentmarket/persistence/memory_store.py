from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from agentmarket.common.errors import ActionRejected, InvalidTransactionState
from agentmarket.marketplace.escrow import TERMINAL_STATES, TransactionState
from agentmarket.marketplace.models import Agent, ExecutionLogEntry, Listing, ListingType, Message, Transaction


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class InMemoryStateStore:
    """
    Process-local StateStore for dry runs and tests.

    Mirrors the Firestore store's conditional semantics: escrow transitions
    and ledger purchases are checked and applied under one lock.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.agents: dict[str, Agent] = {}
        self.listings: dict[str, Listing] = {}
        self.transactions: dict[str, Transaction] = {}
        self.public_messages: list[Message] = []
        self.private_messages: list[Message] = []
        self.logs: list[ExecutionLogEntry] = []

    # Seeding helpers (sync; tests and fixtures only).
    def add_agent(self, agent: Agent) -> Agent:
        self.agents[agent.id] = agent
        return agent

    def add_listing(self, listing: Listing) -> Listing:
        self.listings[listing.id] = listing
        return listing

    def add_transaction(self, txn: Transaction) -> Transaction:
        self.transactions[txn.id] = txn
        return txn

    def add_message(self, message: Message) -> Message:
        (self.public_messages if message.is_public else self.private_messages).append(message)
        return message

    # ---- agents ----

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self.agents.get(str(agent_id))

    async def get_agents(self, agent_ids: Iterable[str]) -> dict[str, Agent]:
        return {a: self.agents[a] for a in {str(x) for x in agent_ids if x} if a in self.agents}

    async def touch_heartbeat(self, agent_id: str, *, at: datetime) -> None:
        async with self._lock:
            agent = self.agents.get(str(agent_id))
            if agent is not None:
                self.agents[agent.id] = dataclasses.replace(agent, last_heartbeat_at=at)

    async def list_heartbeat_agents(self, *, limit: int) -> list[Agent]:
        rows = [a for a in self.agents.values() if a.is_active and a.is_hosted]
        return rows[: int(limit)]

    # ---- listings ----

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        return self.listings.get(str(listing_id))

    def _newest_first(self, rows: Iterable[Listing]) -> list[Listing]:
        return sorted(rows, key=lambda r: r.created_at or _EPOCH, reverse=True)

    async def list_active_listings(self, *, exclude_agent_id: str, limit: int) -> list[Listing]:
        rows = [l for l in self.listings.values() if l.is_active and l.agent_id and l.agent_id != exclude_agent_id]
        return self._newest_first(rows)[: int(limit)]

    async def list_human_bounties(self, *, limit: int) -> list[Listing]:
        rows = [
            l for l in self.listings.values()
            if l.is_active and l.agent_id is None and l.listing_type == ListingType.BOUNTY
        ]
        return self._newest_first(rows)[: int(limit)]

    async def list_agent_listings(self, agent_id: str, *, limit: int) -> list[Listing]:
        rows = [l for l in self.listings.values() if l.agent_id == agent_id]
        return self._newest_first(rows)[: int(limit)]

    async def create_listing(self, listing: Listing) -> Listing:
        async with self._lock:
            if listing.id in self.listings:
                raise ActionRejected(f"Listing already exists: {listing.id}")
            self.listings[listing.id] = listing
        return listing

    async def update_listing(self, listing_id: str, fields: Mapping[str, Any]) -> Listing:
        async with self._lock:
            current = self.listings.get(str(listing_id))
            if current is None:
                raise ActionRejected(f"Listing not found: {listing_id}")
            updated = dataclasses.replace(current, **dict(fields))
            self.listings[updated.id] = updated
        return updated

    # ---- messages ----

    async def list_inbound_messages(self, agent_id: str, *, limit: int) -> list[Message]:
        rows = [m for m in self.private_messages + self.public_messages if m.to_agent_id == agent_id]
        rows.sort(key=lambda m: m.created_at or _EPOCH, reverse=True)
        return rows[: int(limit)]

    async def insert_message(self, message: Message) -> Message:
        async with self._lock:
            self.add_message(message)
        return message

    async def has_recent_message(self, *, from_agent_id: str, to_agent_id: str, since: datetime) -> bool:
        return any(
            m.from_agent_id == from_agent_id and m.to_agent_id == to_agent_id and (m.created_at or _EPOCH) >= since
            for m in self.private_messages + self.public_messages
        )

    # ---- transactions ----

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self.transactions.get(str(transaction_id))

    async def list_escrows(self, agent_id: str, *, states: Iterable[TransactionState]) -> list[Transaction]:
        wanted = {TransactionState(s) for s in states}
        rows = [
            t for t in self.transactions.values()
            if t.state in wanted and agent_id in (t.buyer_agent_id, t.seller_agent_id)
        ]
        return sorted(rows, key=lambda t: t.created_at or _EPOCH, reverse=True)

    async def find_purchase(self, *, listing_id: str, agent_id: str) -> Optional[Transaction]:
        for t in self.transactions.values():
            if t.listing_id == listing_id and agent_id in (t.buyer_agent_id, t.seller_agent_id):
                return t
        return None

    async def record_ledger_purchase(self, transaction: Transaction, *, deactivate_listing: bool) -> Transaction:
        async with self._lock:
            listing = self.listings.get(str(transaction.listing_id))
            if listing is None:
                raise ActionRejected(f"Listing not found: {transaction.listing_id}")
            if not listing.is_active:
                raise ActionRejected(f"Listing is no longer active: {listing.id}")
            if transaction.id in self.transactions:
                raise ActionRejected(f"Transaction already exists: {transaction.id}")
            self.transactions[transaction.id] = transaction
            self.listings[listing.id] = dataclasses.replace(
                listing,
                times_purchased=listing.times_purchased + 1,
                is_active=False if deactivate_listing else listing.is_active,
            )
        return transaction

    async def transition_transaction(
        self,
        transaction_id: str,
        *,
        expected_states: Iterable[TransactionState],
        new_state: TransactionState,
        fields: Mapping[str, Any] | None = None,
    ) -> Transaction:
        expected = frozenset(TransactionState(s) for s in expected_states)
        async with self._lock:
            current = self.transactions.get(str(transaction_id))
            if current is None:
                raise InvalidTransactionState(f"Transaction not found: {transaction_id}", transaction_id=transaction_id)
            if current.state in TERMINAL_STATES or current.state not in expected:
                raise InvalidTransactionState(
                    f"Transaction {transaction_id} is {current.state.value}; "
                    f"expected one of {sorted(s.value for s in expected)}",
                    transaction_id=transaction_id,
                    state=current.state.value,
                )
            updated = dataclasses.replace(
                current, **dict(fields or {}), state=TransactionState(new_state), updated_at=_utc_now()
            )
            self.transactions[updated.id] = updated
        return updated

    async def increment_release_failures(self, transaction_id: str) -> int:
        async with self._lock:
            current = self.transactions[str(transaction_id)]
            updated = dataclasses.replace(current, release_failures=current.release_failures + 1, updated_at=_utc_now())
            self.transactions[updated.id] = updated
        return updated.release_failures

    # ---- execution log ----

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        if entry.created_at is None:
            entry = dataclasses.replace(entry, created_at=_utc_now())
        async with self._lock:
            self.logs.append(entry)

    async def list_recent_logs(self, agent_id: str, *, since: datetime, limit: int) -> list[ExecutionLogEntry]:
        rows = [e for e in self.logs if e.agent_id == agent_id and (e.created_at or _EPOCH) >= since]
        rows.sort(key=lambda e: e.created_at or _EPOCH, reverse=True)
        return rows[: int(limit)]
