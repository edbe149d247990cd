from __future__ import annotations

from typing import Optional


class HeartbeatError(RuntimeError):
    """Base error for the heartbeat engine."""


class AgentNotFound(HeartbeatError):
    """Raised when the agent row does not exist. Aborts the cycle."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = str(agent_id)


class InvalidTransactionState(HeartbeatError):
    """
    Raised when a deliver/release (or any escrow transition) targets a
    transaction outside the legal source states, or the caller has the wrong
    role. The action fails; the cycle continues.
    """

    def __init__(self, message: str, *, transaction_id: Optional[str] = None, state: Optional[str] = None) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id
        self.state = state


class SigningFailure(HeartbeatError):
    """Raised after all custody signing attempts for a release are exhausted."""

    def __init__(self, message: str, *, transaction_id: str, attempts: int) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id
        self.attempts = int(attempts)


class MalformedDecision(HeartbeatError):
    """The reasoning reply held no usable action. Always degraded to do_nothing."""

    def __init__(self, message: str, *, raw_text: str | None = None) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class ExternalServiceUnavailable(HeartbeatError):
    """A collaborator (chain RPC, custody, settlement API) could not be reached or returned 5xx."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class ActionRejected(HeartbeatError):
    """An action failed validation before touching the store (bad recipient, own listing, ...)."""
