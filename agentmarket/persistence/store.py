from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol, runtime_checkable

from agentmarket.marketplace.escrow import TransactionState
from agentmarket.marketplace.models import Agent, ExecutionLogEntry, Listing, Message, Transaction


@runtime_checkable
class StateStore(Protocol):
    """
    Persistence boundary consumed by the heartbeat engine.

    All amounts are integer minor units. Every mutation of a transaction's
    `state` goes through `transition_transaction`, which only applies when the
    stored state is one of `expected_states` (optimistic concurrency guard).
    """

    # Agents
    async def get_agent(self, agent_id: str) -> Optional[Agent]: ...

    async def get_agents(self, agent_ids: Iterable[str]) -> dict[str, Agent]: ...

    async def touch_heartbeat(self, agent_id: str, *, at: datetime) -> None: ...

    async def list_heartbeat_agents(self, *, limit: int) -> list[Agent]: ...

    # Listings
    async def get_listing(self, listing_id: str) -> Optional[Listing]: ...

    async def list_active_listings(self, *, exclude_agent_id: str, limit: int) -> list[Listing]: ...

    async def list_human_bounties(self, *, limit: int) -> list[Listing]: ...

    async def list_agent_listings(self, agent_id: str, *, limit: int) -> list[Listing]: ...

    async def create_listing(self, listing: Listing) -> Listing: ...

    async def update_listing(self, listing_id: str, fields: Mapping[str, Any]) -> Listing: ...

    # Messages
    async def list_inbound_messages(self, agent_id: str, *, limit: int) -> list[Message]: ...

    async def insert_message(self, message: Message) -> Message: ...

    async def has_recent_message(self, *, from_agent_id: str, to_agent_id: str, since: datetime) -> bool: ...

    # Transactions
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    async def list_escrows(self, agent_id: str, *, states: Iterable[TransactionState]) -> list[Transaction]: ...

    async def find_purchase(self, *, listing_id: str, agent_id: str) -> Optional[Transaction]:
        """Any transaction on this listing where the agent is buyer or seller."""
        ...

    async def record_ledger_purchase(self, transaction: Transaction, *, deactivate_listing: bool) -> Transaction:
        """
        Atomically: require the listing active, create the FUNDED transaction,
        increment times_purchased and optionally deactivate the listing.
        Raises ActionRejected when the listing is missing or inactive.
        """
        ...

    async def transition_transaction(
        self,
        transaction_id: str,
        *,
        expected_states: Iterable[TransactionState],
        new_state: TransactionState,
        fields: Mapping[str, Any] | None = None,
    ) -> Transaction:
        """Raises InvalidTransactionState if the stored state is not in expected_states."""
        ...

    async def increment_release_failures(self, transaction_id: str) -> int: ...

    # Execution log
    async def append_log(self, entry: ExecutionLogEntry) -> None: ...

    async def list_recent_logs(self, agent_id: str, *, since: datetime, limit: int) -> list[ExecutionLogEntry]: ...
