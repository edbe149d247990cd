from __future__ import annotations

from datetime import datetime
from typing import Optional

from agentmarket.heartbeat.context import AgentContext, ListingView
from agentmarket.heartbeat.personalities import directive_for
from agentmarket.marketplace.models import format_usdc

_ACTION_VOCABULARY = """
## Available actions (choose exactly ONE)
{"type": "do_nothing", "reason": "..."}
{"type": "create_listing", "title": "...", "description": "...", "category": "...", "price": "<minor units, 1000000 = $1.00>", "listing_type": "FIXED" | "BOUNTY"}
{"type": "buy_listing", "listing_id": "...", "reason": "..."}
{"type": "send_message", "to_agent_id": "<agent id>", "content": "...", "is_public": false}
{"type": "deliver", "transaction_id": "...", "deliverable": "<the actual work product>"}
{"type": "release", "transaction_id": "..."}
{"type": "update_listing", "listing_id": "...", "price": "<minor units>", "is_active": true | false}
""".strip()

_RULES = """
## Rules
- Buying should be the MINORITY of your actions. Creating listings, delivering work, messaging and releasing payments keep the market alive.
- Only buy listings priced at or below your max spend per deal.
- If you are the seller on a funded escrow that is not delivered, deliver real, complete work.
- If you are the buyer and work has been delivered, review it and release payment when it is acceptable.
- Public messages MUST name a recipient (to_agent_id). There is no broadcast.
- Do NOT repeat anything listed under RECENT ACTIONS: no duplicate listings, no re-sending the same message.
""".strip()


def _ts(dt: Optional[datetime]) -> str:
    return dt.strftime("%Y-%m-%d %H:%M UTC") if dt else "n/a"


def _listing_line(v: ListingView) -> str:
    l = v.listing
    kind = "BOUNTY" if l.is_bounty else "SERVICE"
    return (
        f"- [{l.id}] {kind} \"{l.title}\" {format_usdc(l.price)} ({l.category}) "
        f"by {v.seller_name} ({v.seller_transaction_count} txns): {l.description[:200]}"
    )


def _human_bounties(context: AgentContext) -> list[ListingView]:
    return [v for v in context.listings if v.listing.is_human_posted]


def mandatory_bounty(context: AgentContext) -> Optional[ListingView]:
    """
    Highest-priced human-posted bounty the full balance covers.

    Unlike ordinary purchases this is not capped at max spend per deal.
    """
    claimable = [v for v in _human_bounties(context) if 0 < v.listing.price <= context.effective_balance]
    return max(claimable, key=lambda v: v.listing.price, default=None)


def render_prompt(context: AgentContext) -> str:
    agent = context.agent
    parts: list[str] = [
        directive_for(agent.personality),
        "",
        "## YOUR IDENTITY",
        f"Name: {agent.name}",
        f"Agent ID: {agent.id}",
        f"Completed transactions: {agent.transaction_count}",
        f"Total earned: {format_usdc(agent.total_earned)} | Total spent: {format_usdc(agent.total_spent)}",
        "",
        "## BALANCE",
        f"USDC: {format_usdc(context.effective_balance)}",
        f"Max spend per deal: {format_usdc(context.max_spend)}",
        "",
        "## MARKETPLACE LISTINGS",
    ]
    if context.listings:
        parts.extend(_listing_line(v) for v in context.listings)
    else:
        parts.append("(none)")

    parts += ["", "## YOUR LISTINGS"]
    if context.my_listings:
        for l in context.my_listings:
            status = "active" if l.is_active else "inactive"
            parts.append(f"- [{l.id}] \"{l.title}\" {format_usdc(l.price)} ({status}, sold {l.times_purchased}x)")
    else:
        parts.append("(none)")

    parts += ["", "## MESSAGES"]
    if context.messages:
        for m in context.messages:
            parts.append(
                f"- from {m.from_agent_name} [{m.message.from_agent_id}] at {_ts(m.message.created_at)}: "
                f"{m.message.content[:300]}"
            )
    else:
        parts.append("(none)")

    parts += ["", "## RECENT ACTIONS (last 24h, do not repeat)"]
    if context.recent_actions:
        parts.extend(f"- {d}" for d in context.recent_actions)
    else:
        parts.append("(none)")

    parts += ["", "## ACTIVE ESCROWS"]
    if context.escrows:
        for e in context.escrows:
            t = e.transaction
            role = "BUYER" if e.is_buyer else "SELLER"
            delivery = f"delivered {_ts(t.delivered_at)}" if t.delivered_at else "not delivered"
            parts.append(
                f"- [{t.id}] you are {role} with {e.counterparty_name}: {format_usdc(t.amount)} "
                f"\"{t.description[:120]}\" state={t.state.value}, {delivery}, deadline {_ts(t.deadline)}"
            )
    else:
        parts.append("(none)")

    bounty = mandatory_bounty(context)
    if bounty is not None:
        parts += [
            "",
            "## MANDATORY",
            f"A human posted a bounty you can afford: [{bounty.listing.id}] \"{bounty.listing.title}\" "
            f"for {format_usdc(bounty.listing.price)}.",
            f'Claim it now: {{"type": "buy_listing", "listing_id": "{bounty.listing.id}", "reason": "claiming human bounty"}}',
        ]
    elif _human_bounties(context):
        parts += [
            "",
            f"NOTE: There are {len(_human_bounties(context))} human-posted bounties but your balance "
            f"({format_usdc(context.effective_balance)}) is not enough to claim them. Focus on other actions.",
        ]

    parts += ["", _RULES, "", _ACTION_VOCABULARY, "", "RESPOND WITH ONLY THE JSON ACTION. No prose, no code fences."]
    return "\n".join(parts)
