from __future__ import annotations

import asyncio
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

import agentmarket.persistence.firestore_store as firestore_store
from agentmarket.common.errors import ActionRejected, InvalidTransactionState
from agentmarket.marketplace.escrow import HELD_STATES, TransactionState
from agentmarket.marketplace.models import Agent, ExecutionLogEntry, Listing, Message, Transaction
from agentmarket.persistence.firestore_store import FirestoreStateStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
USDC = 1_000_000


class _Snap:
    def __init__(self, doc_id: str, *, exists: bool, data: Optional[dict[str, Any]] = None) -> None:
        self.id = doc_id
        self.exists = bool(exists)
        self._data = deepcopy(data) if isinstance(data, dict) else None

    def to_dict(self) -> dict[str, Any]:
        return deepcopy(self._data) if isinstance(self._data, dict) else {}


@dataclass(frozen=True)
class _DocRef:
    _db: "_FakeDB"
    _col: str
    _doc_id: str

    def get(self, *, transaction: Any = None) -> _Snap:  # noqa: ARG002
        key = (self._col, self._doc_id)
        if key not in self._db._store:
            return _Snap(self._doc_id, exists=False)
        return _Snap(self._doc_id, exists=True, data=self._db._store[key])

    def create(self, doc: dict[str, Any]) -> None:
        self._db.transaction().create(self, doc)

    def set(self, doc: dict[str, Any], merge: bool = False) -> None:
        self._db.transaction().set(self, doc, merge=merge)


class _Query:
    def __init__(self, db: "_FakeDB", col: str) -> None:
        self._db = db
        self._col = col
        self._filters: list[tuple[str, str, Any]] = []
        self._order: Optional[tuple[str, Any]] = None
        self._limit: Optional[int] = None

    def where(self, field: str, op: str, value: Any) -> "_Query":
        self._filters.append((field, op, value))
        return self

    def order_by(self, field: str, direction: Any = None) -> "_Query":
        self._order = (field, direction)
        return self

    def limit(self, n: int) -> "_Query":
        self._limit = int(n)
        return self

    def _match(self, doc: dict[str, Any]) -> bool:
        for field, op, value in self._filters:
            v = doc.get(field)
            if op == "==" and v != value:
                return False
            if op == "in" and v not in value:
                return False
            if op == ">=" and (v is None or v < value):
                return False
        return True

    def stream(self) -> list[_Snap]:
        rows = [
            (doc_id, doc)
            for (col, doc_id), doc in self._db._store.items()
            if col == self._col and self._match(doc)
        ]
        if self._order is not None:
            field = self._order[0]
            rows.sort(key=lambda r: r[1].get(field) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        if self._limit is not None:
            rows = rows[: self._limit]
        return [_Snap(doc_id, exists=True, data=doc) for doc_id, doc in rows]


class _ColRef(_Query):
    def document(self, doc_id: str) -> _DocRef:
        return _DocRef(self._db, self._col, str(doc_id))

    def where(self, field: str, op: str, value: Any) -> _Query:
        return _Query(self._db, self._col).where(field, op, value)


class _Txn:
    def __init__(self, db: "_FakeDB") -> None:
        self._db = db

    def create(self, ref: _DocRef, doc: dict[str, Any]) -> None:
        key = (ref._col, ref._doc_id)
        if key in self._db._store:
            raise RuntimeError("AlreadyExists")
        self._db._store[key] = deepcopy(doc)

    def set(self, ref: _DocRef, doc: dict[str, Any], merge: bool = False) -> None:
        key = (ref._col, ref._doc_id)
        if not merge or key not in self._db._store:
            self._db._store[key] = deepcopy(doc)
            return
        self._db._store[key].update(deepcopy(doc))


class _FakeDB:
    def __init__(self) -> None:
        self._store: dict[tuple[str, str], dict[str, Any]] = {}

    def collection(self, name: str) -> _ColRef:
        return _ColRef(self, str(name))

    def transaction(self) -> _Txn:
        return _Txn(self)

    def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        self._store[(collection, doc_id)] = deepcopy(doc)

    def get_doc(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        return deepcopy(self._store.get((collection, doc_id)))


class _FakeFirestoreMod:
    @staticmethod
    def transactional(fn: Any) -> Any:
        def _wrapped(txn: Any) -> Any:
            return fn(txn)

        return _wrapped


@pytest.fixture
def fs(monkeypatch):
    monkeypatch.setattr(firestore_store, "admin_firestore", _FakeFirestoreMod())
    db = _FakeDB()
    return db, FirestoreStateStore(db=db, timeout_s=5.0)


def _txn(tid: str = "t1", state: str = "FUNDED", **kw) -> Transaction:
    return Transaction(
        id=tid, buyer_agent_id="buyer", seller_agent_id="seller", amount=USDC, state=state, created_at=NOW, **kw
    )


def test_get_agent_round_trip_and_missing(fs):
    db, store = fs
    db.put("agents", "a1", Agent(id="a1", name="Alpha", total_spent=3 * USDC).to_firestore())

    async def _run():
        return await store.get_agent("a1"), await store.get_agent("nope"), await store.get_agents(["a1", "nope", ""])

    found, missing, many = asyncio.run(_run())
    assert found.name == "Alpha"
    assert found.total_spent == 3 * USDC
    assert missing is None
    assert list(many) == ["a1"]


def test_transition_is_conditioned_on_expected_state(fs):
    db, store = fs
    db.put("transactions", "t1", _txn(state="DELIVERED").to_firestore())

    async def _run():
        return await store.transition_transaction(
            "t1", expected_states=HELD_STATES, new_state=TransactionState.RELEASED, fields={"tx_hash": "0xabc"}
        )

    out = asyncio.run(_run())
    assert out.state is TransactionState.RELEASED
    doc = db.get_doc("transactions", "t1")
    assert doc["state"] == "RELEASED"
    assert doc["tx_hash"] == "0xabc"

    with pytest.raises(InvalidTransactionState) as ei:
        asyncio.run(_run())
    assert ei.value.state == "RELEASED"


def test_transition_missing_transaction_raises(fs):
    _db, store = fs

    async def _run():
        await store.transition_transaction(
            "ghost", expected_states=HELD_STATES, new_state=TransactionState.RELEASED
        )

    with pytest.raises(InvalidTransactionState):
        asyncio.run(_run())


def test_record_ledger_purchase_rejects_inactive_listing(fs):
    db, store = fs
    db.put("listings", "l1", Listing(id="l1", title="Logo", agent_id="seller", price=USDC, is_active=False).to_firestore())

    async def _run():
        await store.record_ledger_purchase(_txn(listing_id="l1"), deactivate_listing=False)

    with pytest.raises(ActionRejected):
        asyncio.run(_run())
    assert db.get_doc("transactions", "t1") is None


def test_record_ledger_purchase_creates_funded_row_and_bumps_listing(fs):
    db, store = fs
    db.put("listings", "l1", Listing(id="l1", title="Logo", agent_id="seller", price=USDC, quick_draw=True).to_firestore())

    async def _run():
        await store.record_ledger_purchase(_txn(listing_id="l1"), deactivate_listing=True)
        return await store.find_purchase(listing_id="l1", agent_id="seller")

    found = asyncio.run(_run())
    assert db.get_doc("transactions", "t1")["state"] == "FUNDED"
    listing = db.get_doc("listings", "l1")
    assert listing["times_purchased"] == 1
    assert listing["is_active"] is False
    assert found is not None and found.id == "t1"


def test_increment_release_failures_counts_up(fs):
    db, store = fs
    db.put("transactions", "t1", _txn().to_firestore())

    async def _run():
        n1 = await store.increment_release_failures("t1")
        n2 = await store.increment_release_failures("t1")
        return n1, n2

    assert asyncio.run(_run()) == (1, 2)
    assert db.get_doc("transactions", "t1")["release_failures"] == 2


def test_human_funded_escrow_is_listed_for_the_seller(fs):
    db, store = fs
    doc = _txn().to_firestore()
    doc["buyer_agent_id"] = None
    doc["buyer_wallet"] = "0x" + "ab" * 20
    db.put("transactions", "t1", doc)

    escrows = asyncio.run(store.list_escrows("seller", states=HELD_STATES))
    assert [t.id for t in escrows] == ["t1"]
    assert escrows[0].is_human_funded
    assert escrows[0].buyer_wallet == "0x" + "ab" * 20


def test_listing_and_message_queries(fs):
    db, store = fs
    db.put("listings", "mine", Listing(id="mine", title="m", agent_id="a1", price=1, created_at=NOW).to_firestore())
    db.put("listings", "other", Listing(id="other", title="o", agent_id="b1", price=1, created_at=NOW).to_firestore())
    db.put(
        "listings",
        "human",
        Listing(id="human", title="h", listing_type="BOUNTY", price=1, created_at=NOW).to_firestore(),
    )

    async def _run():
        await store.insert_message(
            Message(id="m1", from_agent_id="b1", to_agent_id="a1", content="hi", created_at=NOW)
        )
        return (
            await store.list_active_listings(exclude_agent_id="a1", limit=10),
            await store.list_human_bounties(limit=10),
            await store.list_inbound_messages("a1", limit=10),
            await store.has_recent_message(from_agent_id="b1", to_agent_id="a1", since=NOW - timedelta(hours=2)),
            await store.has_recent_message(from_agent_id="a1", to_agent_id="b1", since=NOW - timedelta(hours=2)),
        )

    active, bounties, inbound, recent, reverse = asyncio.run(_run())
    assert [l.id for l in active] == ["other"]
    assert [l.id for l in bounties] == ["human"]
    assert [m.id for m in inbound] == ["m1"]
    assert recent is True
    assert reverse is False
    assert db.get_doc("agent_messages", "m1")["content"] == "hi"


def test_append_and_list_recent_logs(fs):
    _db, store = fs

    async def _run():
        await store.append_log(
            ExecutionLogEntry(agent_id="a1", action_chosen={"type": "do_nothing"}, execution_success=True, created_at=NOW)
        )
        await store.append_log(
            ExecutionLogEntry(
                agent_id="a1",
                action_chosen={"type": "deliver"},
                execution_success=True,
                created_at=NOW - timedelta(days=3),
            )
        )
        return await store.list_recent_logs("a1", since=NOW - timedelta(hours=24), limit=10)

    rows = asyncio.run(_run())
    assert [r.action_type for r in rows] == ["do_nothing"]
