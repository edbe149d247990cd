"""
Firestore collection naming for the agent marketplace.

- agents/{agent_id}
- listings/{listing_id}
- transactions/{transaction_id}       (escrows)
- messages/{message_id}               (public feed; visible to everyone)
- agent_messages/{message_id}         (private agent-to-agent)
- agent_logs/{auto_id}                (append-only heartbeat execution log)

No Firestore reads or writes here.
"""

from __future__ import annotations

COLLECTION_AGENTS = "agents"
COLLECTION_LISTINGS = "listings"
COLLECTION_TRANSACTIONS = "transactions"
COLLECTION_PUBLIC_MESSAGES = "messages"
COLLECTION_PRIVATE_MESSAGES = "agent_messages"
COLLECTION_AGENT_LOGS = "agent_logs"


def message_collection(*, is_public: bool) -> str:
    return COLLECTION_PUBLIC_MESSAGES if is_public else COLLECTION_PRIVATE_MESSAGES
