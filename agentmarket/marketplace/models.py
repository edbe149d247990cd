from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from agentmarket.common.config import ONE_USDC
from agentmarket.marketplace.escrow import EscrowActor, TransactionState


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _opt_dt(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return _as_utc(v)
    s = str(v).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return _as_utc(datetime.fromisoformat(s))


def parse_amount(v: Any) -> int:
    """Minor units travel as integer strings; tolerate ints and empty values."""
    if v is None:
        return 0
    if isinstance(v, bool):
        raise ValueError("amount must be an integer, not a bool")
    if isinstance(v, int):
        return v
    s = str(v).strip()
    return int(s) if s else 0


def format_usdc(amount: int) -> str:
    """1_000_000 -> '$1.00' (USDC has 6 decimals; cents are truncated)."""
    amt = int(amount)
    sign = "-" if amt < 0 else ""
    cents = abs(amt) // (ONE_USDC // 100)
    return f"{sign}${cents // 100}.{cents % 100:02d}"


class Personality(str, Enum):
    HUSTLER = "hustler"
    CAUTIOUS = "cautious"
    DEGEN = "degen"
    RANDOM = "random"

    @classmethod
    def parse(cls, v: Any) -> "Personality":
        if isinstance(v, cls):
            return v
        try:
            return cls(str(v or "").strip().lower())
        except ValueError:
            return cls.RANDOM


class ListingType(str, Enum):
    FIXED = "FIXED"
    BOUNTY = "BOUNTY"


@dataclass(frozen=True, slots=True)
class Agent:
    """
    Firestore path:
      agents/{id}
    """

    id: str
    name: str
    wallet_address: str = ""
    # Custodial wallet id; None for self-custody (external) agents.
    wallet_ref: Optional[str] = None
    personality: Personality = Personality.RANDOM
    is_hosted: bool = False
    is_active: bool = True
    is_paused: bool = False
    total_earned: int = 0
    total_spent: int = 0
    transaction_count: int = 0
    webhook_url: Optional[str] = None
    created_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        aid = (self.id or "").strip()
        if not aid:
            raise ValueError("agent id is required")
        if "/" in aid:
            raise ValueError("agent id must not contain '/'")
        object.__setattr__(self, "id", aid)
        object.__setattr__(self, "personality", Personality.parse(self.personality))
        if self.created_at is not None:
            object.__setattr__(self, "created_at", _as_utc(self.created_at))
        if self.last_heartbeat_at is not None:
            object.__setattr__(self, "last_heartbeat_at", _as_utc(self.last_heartbeat_at))

    def to_firestore(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "wallet_address": self.wallet_address,
            "wallet_ref": self.wallet_ref,
            "personality": self.personality.value,
            "is_hosted": bool(self.is_hosted),
            "is_active": bool(self.is_active),
            "is_paused": bool(self.is_paused),
            "total_earned": str(self.total_earned),
            "total_spent": str(self.total_spent),
            "transaction_count": int(self.transaction_count),
        }
        if self.webhook_url:
            doc["webhook_url"] = self.webhook_url
        if self.created_at is not None:
            doc["created_at"] = self.created_at
        if self.last_heartbeat_at is not None:
            doc["last_heartbeat_at"] = self.last_heartbeat_at
        return doc

    @staticmethod
    def from_firestore(agent_id: str, data: Mapping[str, Any]) -> "Agent":
        d = dict(data or {})
        return Agent(
            id=str(d.get("id") or agent_id or "").strip(),
            name=str(d.get("name") or "").strip() or "Unknown",
            wallet_address=str(d.get("wallet_address") or ""),
            wallet_ref=d.get("wallet_ref") or None,
            personality=Personality.parse(d.get("personality")),
            is_hosted=bool(d.get("is_hosted", False)),
            is_active=bool(d.get("is_active", True)),
            is_paused=bool(d.get("is_paused", False)),
            total_earned=parse_amount(d.get("total_earned")),
            total_spent=parse_amount(d.get("total_spent")),
            transaction_count=int(d.get("transaction_count") or 0),
            webhook_url=d.get("webhook_url") or None,
            created_at=_opt_dt(d.get("created_at")),
            last_heartbeat_at=_opt_dt(d.get("last_heartbeat_at")),
        )


@dataclass(frozen=True, slots=True)
class Listing:
    """
    A fixed-price offer (FIXED) or a request for work (BOUNTY).

    Firestore path:
      listings/{id}

    `agent_id` is None for bounties posted by humans.
    """

    id: str
    title: str
    agent_id: Optional[str] = None
    description: str = ""
    category: str = "other"
    listing_type: ListingType = ListingType.FIXED
    price: int = 0
    currency: str = "USDC"
    is_active: bool = True
    times_purchased: int = 0
    # Single-claim listings are deactivated on the first purchase.
    quick_draw: bool = False
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        lid = (self.id or "").strip()
        if not lid:
            raise ValueError("listing id is required")
        object.__setattr__(self, "id", lid)
        object.__setattr__(self, "listing_type", ListingType(self.listing_type))
        if int(self.price) < 0:
            raise ValueError("price must be >= 0")
        if self.created_at is not None:
            object.__setattr__(self, "created_at", _as_utc(self.created_at))

    @property
    def is_bounty(self) -> bool:
        return self.listing_type == ListingType.BOUNTY

    @property
    def is_human_posted(self) -> bool:
        return self.agent_id is None

    def to_firestore(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "id": self.id,
            "agent_id": self.agent_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "listing_type": self.listing_type.value,
            "price": str(self.price),
            "currency": self.currency,
            "is_active": bool(self.is_active),
            "times_purchased": int(self.times_purchased),
            "quick_draw": bool(self.quick_draw),
        }
        if self.created_at is not None:
            doc["created_at"] = self.created_at
        return doc

    @staticmethod
    def from_firestore(listing_id: str, data: Mapping[str, Any]) -> "Listing":
        d = dict(data or {})
        return Listing(
            id=str(d.get("id") or listing_id or "").strip(),
            agent_id=d.get("agent_id") or None,
            title=str(d.get("title") or "").strip(),
            description=str(d.get("description") or ""),
            category=str(d.get("category") or "other"),
            listing_type=ListingType(str(d.get("listing_type") or "FIXED").upper()),
            price=parse_amount(d.get("price")),
            currency=str(d.get("currency") or "USDC"),
            is_active=bool(d.get("is_active", True)),
            times_purchased=int(d.get("times_purchased") or 0),
            quick_draw=bool(d.get("quick_draw", False)),
            created_at=_opt_dt(d.get("created_at")),
        )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    Escrow record.

    Firestore path:
      transactions/{id}

    Invariants: amount > 0, buyer != seller. Terminal rows are immutable;
    see marketplace.escrow for the legal transitions.

    Human-funded escrows (claimed human bounties) carry no buyer agent; the
    funding wallet, when known, is kept in buyer_wallet.
    """

    id: str
    buyer_agent_id: Optional[str]
    seller_agent_id: str
    amount: int
    state: TransactionState = TransactionState.FUNDED
    listing_id: Optional[str] = None
    currency: str = "USDC"
    description: str = ""
    deadline: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    deliverable: Optional[str] = None
    escrow_id: Optional[str] = None
    contract_version: int = 1
    release_failures: int = 0
    tx_hash: Optional[str] = None
    buyer_wallet: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not (self.id or "").strip():
            raise ValueError("transaction id is required")
        if int(self.amount) <= 0:
            raise ValueError("amount must be > 0")
        if not self.seller_agent_id:
            raise ValueError("seller_agent_id is required")
        if self.buyer_agent_id and self.buyer_agent_id == self.seller_agent_id:
            raise ValueError("buyer and seller must differ")
        object.__setattr__(self, "state", TransactionState(self.state))
        for name in ("deadline", "delivered_at", "created_at", "updated_at"):
            v = getattr(self, name)
            if v is not None:
                object.__setattr__(self, name, _as_utc(v))

    @property
    def is_human_funded(self) -> bool:
        return self.buyer_agent_id is None

    def role_of(self, agent_id: str) -> Optional[EscrowActor]:
        if agent_id and agent_id == self.buyer_agent_id:
            return EscrowActor.BUYER
        if agent_id and agent_id == self.seller_agent_id:
            return EscrowActor.SELLER
        return None

    def counterparty_of(self, agent_id: str) -> Optional[str]:
        """The other agent id, or None when the other side is a human wallet."""
        return self.buyer_agent_id if agent_id == self.seller_agent_id else self.seller_agent_id

    def to_firestore(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "id": self.id,
            "buyer_agent_id": self.buyer_agent_id,
            "seller_agent_id": self.seller_agent_id,
            "listing_id": self.listing_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "description": self.description,
            "state": self.state.value,
            "contract_version": int(self.contract_version),
            "release_failures": int(self.release_failures),
        }
        for name in (
            "deadline", "delivered_at", "deliverable", "escrow_id", "tx_hash", "buyer_wallet", "created_at", "updated_at"
        ):
            v = getattr(self, name)
            if v is not None:
                doc[name] = v
        return doc

    @staticmethod
    def from_firestore(transaction_id: str, data: Mapping[str, Any]) -> "Transaction":
        d = dict(data or {})
        return Transaction(
            id=str(d.get("id") or transaction_id or "").strip(),
            buyer_agent_id=str(d.get("buyer_agent_id") or "").strip() or None,
            seller_agent_id=str(d.get("seller_agent_id") or ""),
            listing_id=d.get("listing_id") or None,
            amount=parse_amount(d.get("amount")),
            currency=str(d.get("currency") or "USDC"),
            description=str(d.get("description") or ""),
            state=TransactionState(str(d.get("state") or "FUNDED").upper()),
            deadline=_opt_dt(d.get("deadline")),
            delivered_at=_opt_dt(d.get("delivered_at")),
            deliverable=d.get("deliverable"),
            escrow_id=d.get("escrow_id") or None,
            contract_version=int(d.get("contract_version") or 1),
            release_failures=int(d.get("release_failures") or 0),
            tx_hash=d.get("tx_hash") or None,
            buyer_wallet=d.get("buyer_wallet") or None,
            created_at=_opt_dt(d.get("created_at")),
            updated_at=_opt_dt(d.get("updated_at")),
        )


@dataclass(frozen=True, slots=True)
class Message:
    id: str
    from_agent_id: str
    content: str
    to_agent_id: Optional[str] = None
    is_public: bool = False
    created_at: Optional[datetime] = None

    def to_firestore(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "id": self.id,
            "from_agent_id": self.from_agent_id,
            "to_agent_id": self.to_agent_id,
            "content": self.content,
            "is_public": bool(self.is_public),
        }
        if self.created_at is not None:
            doc["created_at"] = self.created_at
        return doc

    @staticmethod
    def from_firestore(message_id: str, data: Mapping[str, Any]) -> "Message":
        d = dict(data or {})
        return Message(
            id=str(d.get("id") or message_id),
            from_agent_id=str(d.get("from_agent_id") or ""),
            to_agent_id=d.get("to_agent_id") or None,
            content=str(d.get("content") or ""),
            is_public=bool(d.get("is_public", False)),
            created_at=_opt_dt(d.get("created_at")),
        )


@dataclass(frozen=True, slots=True)
class ExecutionLogEntry:
    """
    Immutable audit record of one heartbeat cycle.

    Firestore path:
      agent_logs/{auto_id}
    """

    agent_id: str
    action_chosen: dict[str, Any]
    execution_success: bool
    context_summary: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    decision_latency_ms: Optional[int] = None
    heartbeat_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def action_type(self) -> str:
        return str((self.action_chosen or {}).get("type") or "")

    def to_firestore(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "agent_id": self.agent_id,
            "context_summary": dict(self.context_summary),
            "action_chosen": dict(self.action_chosen),
            "execution_success": bool(self.execution_success),
            "error_message": self.error_message,
            "decision_latency_ms": self.decision_latency_ms,
            "heartbeat_id": self.heartbeat_id,
        }
        if self.created_at is not None:
            doc["created_at"] = self.created_at
        return doc

    @staticmethod
    def from_firestore(data: Mapping[str, Any]) -> "ExecutionLogEntry":
        d = dict(data or {})
        latency = d.get("decision_latency_ms")
        return ExecutionLogEntry(
            agent_id=str(d.get("agent_id") or ""),
            context_summary=dict(d.get("context_summary") or {}),
            action_chosen=dict(d.get("action_chosen") or {}),
            execution_success=bool(d.get("execution_success", False)),
            error_message=d.get("error_message"),
            decision_latency_ms=int(latency) if latency is not None else None,
            heartbeat_id=d.get("heartbeat_id"),
            created_at=_opt_dt(d.get("created_at")),
        )
