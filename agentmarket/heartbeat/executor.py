from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from agentmarket.clients.custody import CustodyClient, build_release_calldata
from agentmarket.clients.settlement import SettlementClient
from agentmarket.common.config import HeartbeatConfig
from agentmarket.common.errors import (
    ActionRejected,
    ExternalServiceUnavailable,
    InvalidTransactionState,
    SigningFailure,
)
from agentmarket.common.logging import log_event
from agentmarket.heartbeat.actions import (
    AgentAction,
    BuyListing,
    CreateListing,
    Deliver,
    DoNothing,
    Release,
    SendMessage,
    UpdateListing,
)
from agentmarket.heartbeat.context import AgentContext
from agentmarket.marketplace.escrow import EscrowActor, EscrowEvent, EscrowStateMachine, TransactionState
from agentmarket.marketplace.models import Agent, Listing, Message, Transaction, format_usdc, parse_amount
from agentmarket.persistence.store import StateStore

logger = logging.getLogger(__name__)

# Recipient placeholders the reasoning service invents when it wants to broadcast.
INVALID_RECIPIENTS = frozenset({"any", "all", "broadcast", "everyone", "public"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    success: bool
    result: Optional[str] = None
    error: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EscrowContracts:
    """Escrow contract addresses keyed by contract_version."""

    v1_address: str
    v2_address: str

    def address_for(self, contract_version: int) -> str:
        return self.v2_address if int(contract_version) == 2 else self.v1_address


def _actor_for(txn: Transaction, agent: Agent) -> EscrowActor:
    role = txn.role_of(agent.id)
    if role is not None:
        return role
    raise InvalidTransactionState(
        f"Agent {agent.id} is not a party to transaction {txn.id}",
        transaction_id=txn.id,
        state=txn.state.value,
    )


class ActionExecutor:
    """
    Dispatch one AgentAction against the store, settlement API and custody signer.

    Business rejections (InvalidTransactionState, ActionRejected) and collaborator
    outages on non-release paths become ExecutionResult(success=False).
    SigningFailure propagates: the release could not be signed, the failure
    counter has been bumped, and the cycle must surface it as an error.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        settlement: SettlementClient,
        custody: CustodyClient,
        contracts: EscrowContracts,
        config: HeartbeatConfig,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._store = store
        self._settlement = settlement
        self._custody = custody
        self._contracts = contracts
        self._cfg = config
        self._clock = clock
        self._sleep = sleep
        self._new_id = id_factory
        self._handlers: dict[str, Callable[[AgentContext, Any], Awaitable[ExecutionResult]]] = {
            "do_nothing": self._do_nothing,
            "create_listing": self._create_listing,
            "update_listing": self._update_listing,
            "buy_listing": self._buy_listing,
            "send_message": self._send_message,
            "deliver": self._deliver,
            "release": self._release,
        }

    async def execute(self, context: AgentContext, action: AgentAction) -> ExecutionResult:
        handler = self._handlers.get(action.type)
        if handler is None:
            return ExecutionResult(success=False, error=f"Unknown action type: {action.type}")
        try:
            return await handler(context, action)
        except (InvalidTransactionState, ActionRejected, ExternalServiceUnavailable, ValueError) as e:
            log_event(
                logger,
                "heartbeat.action_rejected",
                severity="WARNING",
                agent_id=context.agent.id,
                action_type=action.type,
                error_class=type(e).__name__,
                error=str(e),
            )
            return ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")
        except asyncio.TimeoutError:
            return ExecutionResult(success=False, error=f"{action.type} timed out")

    # ---- handlers ----

    async def _do_nothing(self, context: AgentContext, action: DoNothing) -> ExecutionResult:
        return ExecutionResult(success=True, result=action.reason or "Chose to wait")

    async def _create_listing(self, context: AgentContext, action: CreateListing) -> ExecutionResult:
        title = action.title.strip()
        description = action.description.strip()
        if not title or not description:
            raise ActionRejected("Listing title and description must not be blank")
        listing = Listing(
            id=self._new_id(),
            agent_id=context.agent.id,
            title=title,
            description=description,
            category=(action.category or "other").strip().lower() or "other",
            listing_type=action.listing_type,
            price=int(action.price),
            is_active=True,
            created_at=self._clock(),
        )
        await self._store.create_listing(listing)
        return ExecutionResult(
            success=True,
            result=f'Created listing "{title}" for {format_usdc(listing.price)}',
            data={"listing_id": listing.id},
        )

    async def _update_listing(self, context: AgentContext, action: UpdateListing) -> ExecutionResult:
        listing = await self._store.get_listing(action.listing_id)
        if listing is None:
            raise ActionRejected(f"Listing not found: {action.listing_id}")
        if listing.agent_id != context.agent.id:
            raise ActionRejected("Only the owner may update a listing")
        fields: dict[str, Any] = {}
        if action.price is not None:
            fields["price"] = int(action.price)
        if action.is_active is not None:
            fields["is_active"] = bool(action.is_active)
        if not fields:
            raise ActionRejected("update_listing needs price or is_active")
        await self._store.update_listing(listing.id, fields)
        return ExecutionResult(success=True, result=f'Updated listing "{listing.title}"', data={"listing_id": listing.id, **fields})

    async def _buy_listing(self, context: AgentContext, action: BuyListing) -> ExecutionResult:
        agent = context.agent
        listing = await self._store.get_listing(action.listing_id)
        if listing is None:
            raise ActionRejected(f"Listing not found: {action.listing_id}")
        if listing.agent_id == agent.id:
            raise ActionRejected("Cannot buy your own listing")
        if not listing.is_active:
            raise ActionRejected(f"Listing is no longer active: {listing.id}")
        if listing.price <= 0:
            raise ActionRejected(f"Listing has no valid price: {listing.id}")

        existing = await self._store.find_purchase(listing_id=listing.id, agent_id=agent.id)
        if existing is not None:
            return ExecutionResult(
                success=True,
                result=f'Already purchased "{listing.title}"; skipping duplicate',
                data={"transaction_id": existing.id, "state": existing.state.value},
            )

        # Bounties pay the claimant; the claimant's balance is not at stake.
        if not listing.is_bounty and listing.price > context.effective_balance:
            raise ActionRejected(
                f"Insufficient balance: {format_usdc(listing.price)} > {format_usdc(context.effective_balance)}"
            )

        if context.is_privileged and not listing.is_human_posted:
            return await self._ledger_purchase(context, listing)

        receipt = await asyncio.wait_for(
            self._settlement.buy_listing(
                listing_id=listing.id,
                buyer_agent_id=agent.id,
                deadline_hours=self._cfg.purchase_deadline_hours,
            ),
            timeout=self._cfg.settlement_timeout_s,
        )
        return ExecutionResult(
            success=True,
            result=f'Bought "{listing.title}" for {format_usdc(listing.price)} (escrow {receipt.state})',
            data={"transaction_id": receipt.transaction_id, "state": receipt.state},
        )

    async def _ledger_purchase(self, context: AgentContext, listing: Listing) -> ExecutionResult:
        """House-agent purchase: no chain, escrow created directly as FUNDED."""
        agent = context.agent
        now = self._clock()
        if listing.is_bounty:
            buyer_id, seller_id = str(listing.agent_id), agent.id
        else:
            buyer_id, seller_id = agent.id, str(listing.agent_id)
        txn = Transaction(
            id=self._new_id(),
            buyer_agent_id=buyer_id,
            seller_agent_id=seller_id,
            listing_id=listing.id,
            amount=listing.price,
            currency=listing.currency,
            description=listing.title,
            state=TransactionState.FUNDED,
            deadline=now + timedelta(hours=self._cfg.purchase_deadline_hours),
            created_at=now,
            updated_at=now,
        )
        await self._store.record_ledger_purchase(txn, deactivate_listing=listing.quick_draw)
        verb = "Claimed bounty" if listing.is_bounty else "Bought"
        return ExecutionResult(
            success=True,
            result=f'{verb} "{listing.title}" for {format_usdc(listing.price)} (ledger escrow FUNDED)',
            data={"transaction_id": txn.id, "state": txn.state.value, "ledger": True},
        )

    async def _send_message(self, context: AgentContext, action: SendMessage) -> ExecutionResult:
        agent = context.agent
        to = (action.to_agent_id or "").strip() or None
        if to is None:
            if action.is_public:
                raise ActionRejected("Public messages require a recipient; broadcast is not supported")
            raise ActionRejected("Messages require a recipient")
        if to.lower() in INVALID_RECIPIENTS:
            raise ActionRejected(f"Invalid recipient {to!r}; name a specific agent id")
        if to == agent.id:
            raise ActionRejected("Cannot message yourself")

        recipient = await self._store.get_agent(to)
        if recipient is None:
            raise ActionRejected(f"Unknown recipient: {to}")

        now = self._clock()
        since = now - timedelta(seconds=self._cfg.message_dedup_window_s)
        if await self._store.has_recent_message(from_agent_id=agent.id, to_agent_id=to, since=since):
            return ExecutionResult(success=True, result=f"Skipped: already messaged {recipient.name} recently")

        msg = Message(
            id=self._new_id(),
            from_agent_id=agent.id,
            to_agent_id=to,
            content=action.content.strip(),
            is_public=bool(action.is_public),
            created_at=now,
        )
        await self._store.insert_message(msg)
        channel = "public feed" if msg.is_public else "private"
        return ExecutionResult(success=True, result=f"Sent {channel} message to {recipient.name}", data={"message_id": msg.id})

    async def _deliver(self, context: AgentContext, action: Deliver) -> ExecutionResult:
        agent = context.agent
        txn = await self._store.get_transaction(action.transaction_id)
        if txn is None:
            raise InvalidTransactionState(f"Transaction not found: {action.transaction_id}", transaction_id=action.transaction_id)
        EscrowStateMachine.next_state(txn.state, EscrowEvent.DELIVER, actor=_actor_for(txn, agent), transaction_id=txn.id)

        now = self._clock()
        updated = await self._store.transition_transaction(
            txn.id,
            expected_states=EscrowStateMachine.source_states(EscrowEvent.DELIVER),
            new_state=TransactionState.DELIVERED,
            fields={"deliverable": action.deliverable, "delivered_at": now},
        )

        if not updated.is_human_funded:
            await self._notify_delivery(agent, updated, action.deliverable, now=now)

        return ExecutionResult(
            success=True,
            result=f"Delivered work for transaction {txn.id}",
            data={"transaction_id": txn.id, "state": updated.state.value},
        )

    async def _notify_delivery(self, agent: Agent, txn: Transaction, deliverable: str, *, now: datetime) -> None:
        notice = Message(
            id=self._new_id(),
            from_agent_id=agent.id,
            to_agent_id=txn.buyer_agent_id,
            content=f"[DELIVERY] {txn.description or 'Your order'}: {deliverable[:500]}",
            is_public=False,
            created_at=now,
        )
        try:
            await self._store.insert_message(notice)
        except Exception as e:
            # Delivery is already committed; the buyer still sees it on the escrow.
            log_event(logger, "heartbeat.delivery_notice_failed", severity="WARNING", transaction_id=txn.id,
                      error=f"{type(e).__name__}: {e}")

    async def _release(self, context: AgentContext, action: Release) -> ExecutionResult:
        agent = context.agent
        txn = await self._store.get_transaction(action.transaction_id)
        if txn is None:
            raise InvalidTransactionState(f"Transaction not found: {action.transaction_id}", transaction_id=action.transaction_id)
        # Rejects terminal states, non-buyers and anything outside FUNDED/DELIVERED before any signing.
        EscrowStateMachine.next_state(txn.state, EscrowEvent.RELEASE, actor=_actor_for(txn, agent), transaction_id=txn.id)

        tx_hash: Optional[str] = None
        if agent.wallet_ref:
            tx_hash = await self._sign_release(agent, txn)

        # The settlement endpoint marks the row RELEASED and books both agents' totals.
        receipt = await asyncio.wait_for(
            self._settlement.release(transaction_id=txn.id, tx_hash=tx_hash),
            timeout=self._cfg.settlement_timeout_s,
        )
        tx_hash = str(receipt.get("tx_hash") or tx_hash or "") or None
        data: dict[str, Any] = {"transaction_id": txn.id, "tx_hash": tx_hash}
        if receipt.get("fee_wei") is not None:
            data["fee"] = parse_amount(receipt.get("fee_wei"))
        return ExecutionResult(
            success=True,
            result=f"Released escrow on-chain (tx: {tx_hash})" if tx_hash else "Released escrow",
            data=data,
        )

    async def _sign_release(self, agent: Agent, txn: Transaction) -> str:
        """
        Pre-sign the on-chain release from the agent's custodial wallet.

        Up to `signing_attempts` tries with base delay doubling between them. On
        exhaustion the transaction's release_failures is incremented exactly once
        and SigningFailure is raised; the settlement endpoint is never called
        without a hash once signing was attempted.
        """
        calldata = build_release_calldata(txn.escrow_id or txn.id)
        contract = self._contracts.address_for(txn.contract_version)
        attempts = max(1, int(self._cfg.signing_attempts))
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._custody.sign_and_broadcast(str(agent.wallet_ref), contract, calldata),
                    timeout=self._cfg.signing_timeout_s,
                )
            except Exception as e:
                last_error = e
                log_event(
                    logger,
                    "heartbeat.release_sign_failed",
                    severity="WARNING",
                    transaction_id=txn.id,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=f"{type(e).__name__}: {e}",
                )
                if attempt < attempts:
                    await self._sleep(self._cfg.signing_base_delay_s * (2 ** (attempt - 1)))

        failures = await self._store.increment_release_failures(txn.id)
        log_event(logger, "heartbeat.release_sign_exhausted", severity="ERROR", transaction_id=txn.id,
                  release_failures=failures)
        raise SigningFailure(
            f"On-chain release failed after {attempts} attempts: {type(last_error).__name__}: {last_error}",
            transaction_id=txn.id,
            attempts=attempts,
        ) from last_error
