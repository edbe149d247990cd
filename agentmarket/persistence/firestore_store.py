"""
Firestore-backed StateStore.

The firebase-admin client is synchronous; every call is dispatched with
asyncio.to_thread, wrapped in with_firestore_retry and bounded by a timeout.
State-conditioned escrow updates, ledger purchases and counter bumps run in
Firestore transactions so a concurrent writer can never double-apply them.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, TypeVar

from firebase_admin import firestore as admin_firestore

from agentmarket.common.errors import ActionRejected, InvalidTransactionState
from agentmarket.marketplace import schema
from agentmarket.marketplace.escrow import TERMINAL_STATES, TransactionState
from agentmarket.marketplace.models import Agent, ExecutionLogEntry, Listing, Message, Transaction
from agentmarket.persistence.firebase_client import get_firestore_client
from agentmarket.persistence.firestore_retry import with_firestore_retry

T = TypeVar("T")
logger = logging.getLogger(__name__)

_DESC = admin_firestore.Query.DESCENDING


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _docs(query: Any) -> list[tuple[str, dict[str, Any]]]:
    return [(snap.id, snap.to_dict() or {}) for snap in query.stream()]


class FirestoreStateStore:
    def __init__(self, *, db: Any | None = None, project_id: str | None = None, timeout_s: float = 10.0) -> None:
        self._db = db or get_firestore_client(project_id=project_id)
        self._timeout_s = float(timeout_s)

    async def _run(self, fn: Callable[[], T]) -> T:
        return await asyncio.wait_for(asyncio.to_thread(with_firestore_retry, fn), timeout=self._timeout_s)

    def _col(self, name: str) -> Any:
        return self._db.collection(name)

    # ---- agents ----

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        def _op() -> Optional[Agent]:
            snap = self._col(schema.COLLECTION_AGENTS).document(str(agent_id)).get()
            if not getattr(snap, "exists", False):
                return None
            return Agent.from_firestore(str(agent_id), snap.to_dict() or {})

        return await self._run(_op)

    async def get_agents(self, agent_ids: Iterable[str]) -> dict[str, Agent]:
        ids = sorted({str(a) for a in agent_ids if a})

        def _op() -> dict[str, Agent]:
            out: dict[str, Agent] = {}
            col = self._col(schema.COLLECTION_AGENTS)
            for aid in ids:
                snap = col.document(aid).get()
                if getattr(snap, "exists", False):
                    out[aid] = Agent.from_firestore(aid, snap.to_dict() or {})
            return out

        return await self._run(_op) if ids else {}

    async def touch_heartbeat(self, agent_id: str, *, at: datetime) -> None:
        ref = self._col(schema.COLLECTION_AGENTS).document(str(agent_id))
        await self._run(lambda: ref.set({"last_heartbeat_at": at}, merge=True))

    async def list_heartbeat_agents(self, *, limit: int) -> list[Agent]:
        def _op() -> list[Agent]:
            q = (
                self._col(schema.COLLECTION_AGENTS)
                .where("is_active", "==", True)
                .where("is_hosted", "==", True)
                .limit(int(limit))
            )
            return [Agent.from_firestore(i, d) for i, d in _docs(q)]

        return await self._run(_op)

    # ---- listings ----

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        def _op() -> Optional[Listing]:
            snap = self._col(schema.COLLECTION_LISTINGS).document(str(listing_id)).get()
            if not getattr(snap, "exists", False):
                return None
            return Listing.from_firestore(str(listing_id), snap.to_dict() or {})

        return await self._run(_op)

    async def list_active_listings(self, *, exclude_agent_id: str, limit: int) -> list[Listing]:
        def _op() -> list[Listing]:
            # Over-fetch: own and human-posted listings are filtered client-side.
            q = (
                self._col(schema.COLLECTION_LISTINGS)
                .where("is_active", "==", True)
                .order_by("created_at", direction=_DESC)
                .limit(int(limit) * 2 + 10)
            )
            out: list[Listing] = []
            for i, d in _docs(q):
                owner = d.get("agent_id")
                if not owner or owner == exclude_agent_id:
                    continue
                out.append(Listing.from_firestore(i, d))
                if len(out) >= int(limit):
                    break
            return out

        return await self._run(_op)

    async def list_human_bounties(self, *, limit: int) -> list[Listing]:
        def _op() -> list[Listing]:
            q = (
                self._col(schema.COLLECTION_LISTINGS)
                .where("is_active", "==", True)
                .where("listing_type", "==", "BOUNTY")
                .where("agent_id", "==", None)
                .order_by("created_at", direction=_DESC)
                .limit(int(limit))
            )
            return [Listing.from_firestore(i, d) for i, d in _docs(q)]

        return await self._run(_op)

    async def list_agent_listings(self, agent_id: str, *, limit: int) -> list[Listing]:
        def _op() -> list[Listing]:
            q = (
                self._col(schema.COLLECTION_LISTINGS)
                .where("agent_id", "==", str(agent_id))
                .order_by("created_at", direction=_DESC)
                .limit(int(limit))
            )
            return [Listing.from_firestore(i, d) for i, d in _docs(q)]

        return await self._run(_op)

    async def create_listing(self, listing: Listing) -> Listing:
        ref = self._col(schema.COLLECTION_LISTINGS).document(listing.id)
        await self._run(lambda: ref.create(listing.to_firestore()))
        return listing

    async def update_listing(self, listing_id: str, fields: Mapping[str, Any]) -> Listing:
        ref = self._col(schema.COLLECTION_LISTINGS).document(str(listing_id))
        doc = dict(fields)
        if "price" in doc:
            doc["price"] = str(int(doc["price"]))
        doc["updated_at"] = _utc_now()

        def _op() -> Listing:
            ref.set(doc, merge=True)
            snap = ref.get()
            return Listing.from_firestore(str(listing_id), snap.to_dict() or {})

        return await self._run(_op)

    # ---- messages ----

    async def list_inbound_messages(self, agent_id: str, *, limit: int) -> list[Message]:
        def _op() -> list[Message]:
            out: list[Message] = []
            for name in (schema.COLLECTION_PRIVATE_MESSAGES, schema.COLLECTION_PUBLIC_MESSAGES):
                q = (
                    self._col(name)
                    .where("to_agent_id", "==", str(agent_id))
                    .order_by("created_at", direction=_DESC)
                    .limit(int(limit))
                )
                out.extend(Message.from_firestore(i, d) for i, d in _docs(q))
            out.sort(key=lambda m: m.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
            return out[: int(limit)]

        return await self._run(_op)

    async def insert_message(self, message: Message) -> Message:
        ref = self._col(schema.message_collection(is_public=message.is_public)).document(message.id)
        await self._run(lambda: ref.create(message.to_firestore()))
        return message

    async def has_recent_message(self, *, from_agent_id: str, to_agent_id: str, since: datetime) -> bool:
        def _op() -> bool:
            for name in (schema.COLLECTION_PRIVATE_MESSAGES, schema.COLLECTION_PUBLIC_MESSAGES):
                q = (
                    self._col(name)
                    .where("from_agent_id", "==", str(from_agent_id))
                    .where("to_agent_id", "==", str(to_agent_id))
                    .where("created_at", ">=", since)
                    .limit(1)
                )
                if _docs(q):
                    return True
            return False

        return await self._run(_op)

    # ---- transactions ----

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        def _op() -> Optional[Transaction]:
            snap = self._col(schema.COLLECTION_TRANSACTIONS).document(str(transaction_id)).get()
            if not getattr(snap, "exists", False):
                return None
            return Transaction.from_firestore(str(transaction_id), snap.to_dict() or {})

        return await self._run(_op)

    async def list_escrows(self, agent_id: str, *, states: Iterable[TransactionState]) -> list[Transaction]:
        wanted = [TransactionState(s).value for s in states]

        def _op() -> list[Transaction]:
            seen: dict[str, Transaction] = {}
            for party in ("buyer_agent_id", "seller_agent_id"):
                q = (
                    self._col(schema.COLLECTION_TRANSACTIONS)
                    .where(party, "==", str(agent_id))
                    .where("state", "in", wanted)
                )
                for i, d in _docs(q):
                    seen.setdefault(i, Transaction.from_firestore(i, d))
            return sorted(
                seen.values(),
                key=lambda t: t.created_at or datetime.min.replace(tzinfo=timezone.utc),
                reverse=True,
            )

        return await self._run(_op)

    async def find_purchase(self, *, listing_id: str, agent_id: str) -> Optional[Transaction]:
        def _op() -> Optional[Transaction]:
            for party in ("buyer_agent_id", "seller_agent_id"):
                q = (
                    self._col(schema.COLLECTION_TRANSACTIONS)
                    .where("listing_id", "==", str(listing_id))
                    .where(party, "==", str(agent_id))
                    .limit(1)
                )
                rows = _docs(q)
                if rows:
                    return Transaction.from_firestore(*rows[0])
            return None

        return await self._run(_op)

    async def record_ledger_purchase(self, transaction: Transaction, *, deactivate_listing: bool) -> Transaction:
        if not transaction.listing_id:
            raise ValueError("ledger purchases require a listing_id")
        listing_ref = self._col(schema.COLLECTION_LISTINGS).document(transaction.listing_id)
        txn_ref = self._col(schema.COLLECTION_TRANSACTIONS).document(transaction.id)
        now = _utc_now()

        @admin_firestore.transactional
        def _txn_body(txn):  # type: ignore[no-untyped-def]
            snap = listing_ref.get(transaction=txn)
            if not getattr(snap, "exists", False):
                raise ActionRejected(f"Listing not found: {transaction.listing_id}")
            listing = snap.to_dict() or {}
            if not bool(listing.get("is_active", True)):
                raise ActionRejected(f"Listing is no longer active: {transaction.listing_id}")
            txn.create(txn_ref, transaction.to_firestore())
            update: dict[str, Any] = {
                "times_purchased": int(listing.get("times_purchased") or 0) + 1,
                "updated_at": now,
            }
            if deactivate_listing:
                update["is_active"] = False
            txn.set(listing_ref, update, merge=True)

        await self._run(lambda: _txn_body(self._db.transaction()))
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
        ref = self._col(schema.COLLECTION_TRANSACTIONS).document(str(transaction_id))
        out: dict[str, Any] = {}

        @admin_firestore.transactional
        def _txn_body(txn):  # type: ignore[no-untyped-def]
            snap = ref.get(transaction=txn)
            if not getattr(snap, "exists", False):
                raise InvalidTransactionState(f"Transaction not found: {transaction_id}", transaction_id=transaction_id)
            current = snap.to_dict() or {}
            state = TransactionState(str(current.get("state") or "").upper())
            if state in TERMINAL_STATES or state not in expected:
                raise InvalidTransactionState(
                    f"Transaction {transaction_id} is {state.value}; expected one of {sorted(s.value for s in expected)}",
                    transaction_id=transaction_id,
                    state=state.value,
                )
            update = {**dict(fields or {}), "state": TransactionState(new_state).value, "updated_at": _utc_now()}
            txn.set(ref, update, merge=True)
            out.update(current)
            out.update(update)

        await self._run(lambda: _txn_body(self._db.transaction()))
        return Transaction.from_firestore(str(transaction_id), out)

    async def increment_release_failures(self, transaction_id: str) -> int:
        ref = self._col(schema.COLLECTION_TRANSACTIONS).document(str(transaction_id))
        out: dict[str, int] = {}

        @admin_firestore.transactional
        def _txn_body(txn):  # type: ignore[no-untyped-def]
            current = ref.get(transaction=txn).to_dict() or {}
            n = int(current.get("release_failures") or 0) + 1
            txn.set(ref, {"release_failures": n, "updated_at": _utc_now()}, merge=True)
            out["n"] = n

        await self._run(lambda: _txn_body(self._db.transaction()))
        return out["n"]

    # ---- execution log ----

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        doc = entry.to_firestore()
        doc.setdefault("created_at", _utc_now())
        ref = self._col(schema.COLLECTION_AGENT_LOGS).document(uuid.uuid4().hex)
        await self._run(lambda: ref.create(doc))

    async def list_recent_logs(self, agent_id: str, *, since: datetime, limit: int) -> list[ExecutionLogEntry]:
        def _op() -> list[ExecutionLogEntry]:
            q = (
                self._col(schema.COLLECTION_AGENT_LOGS)
                .where("agent_id", "==", str(agent_id))
                .where("created_at", ">=", since)
                .order_by("created_at", direction=_DESC)
                .limit(int(limit))
            )
            return [ExecutionLogEntry.from_firestore(d) for _i, d in _docs(q)]

        return await self._run(_op)
