from __future__ import annotations

from dataclasses import dataclass

from agentmarket.heartbeat.context import AgentContext


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    skip: bool
    reason: str = ""


DEFAULT_MAX_OWN_LISTINGS = 5


def should_skip(
    context: AgentContext,
    is_privileged: bool,
    *,
    max_own_listings: int = DEFAULT_MAX_OWN_LISTINGS,
) -> PolicyDecision:
    """
    Decide whether a reasoning call is worthwhile for this snapshot.

    Pure: no I/O, no clock. Privileged agents never skip. Affordable means
    0 < price <= balance // 3.
    """
    if is_privileged:
        return PolicyDecision(skip=False, reason="privileged agent")

    has_messages = len(context.messages) > 0
    has_escrows = len(context.escrows) > 0
    has_affordable = len(context.affordable_listings()) > 0

    if not has_messages and not has_escrows and not has_affordable and context.effective_balance == 0:
        return PolicyDecision(skip=True, reason="No balance and nothing actionable")

    pending_deliveries = any(e.awaiting_delivery for e in context.escrows)
    pending_reviews = any(e.awaiting_review for e in context.escrows)
    if (
        not has_messages
        and not pending_deliveries
        and not pending_reviews
        and not has_affordable
        and len(context.active_own_listings()) >= max_own_listings
    ):
        return PolicyDecision(skip=True, reason="No urgent actions and already has max listings")

    return PolicyDecision(skip=False)
