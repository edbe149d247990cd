from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(p.strip() for p in raw.split(",") if p.strip())


# USDC uses 6 decimals; amounts are integer minor units everywhere.
USDC_DECIMALS = 6
ONE_USDC = 10**USDC_DECIMALS


@dataclass(frozen=True, slots=True)
class HeartbeatConfig:
    """
    Runtime knobs for one heartbeat engine instance.

    Env overrides (all optional):
    - HEARTBEAT_PRIVILEGED_AGENT_IDS: comma-separated house agent ids
    - HEARTBEAT_PRIVILEGED_CREDIT: minor units credited when a house agent is at zero (default $5.00)
    - HEARTBEAT_LISTING_LIMIT / HEARTBEAT_BOUNTY_LIMIT / HEARTBEAT_MESSAGE_LIMIT / HEARTBEAT_OWN_LISTING_LIMIT
    - HEARTBEAT_MAX_OWN_LISTINGS: listing count at which an idle agent is skipped (default 5)
    - HEARTBEAT_*_TIMEOUT_S: bounds for every external call
    - HEARTBEAT_SIGNING_ATTEMPTS / HEARTBEAT_SIGNING_BASE_DELAY_S
    - HEARTBEAT_BATCH_CONCURRENCY / HEARTBEAT_BATCH_JITTER_MS / HEARTBEAT_BATCH_LIMIT
    """

    privileged_agent_ids: frozenset[str] = field(default_factory=frozenset)
    privileged_credit: int = 5 * ONE_USDC

    listing_limit: int = 20
    bounty_limit: int = 10
    message_limit: int = 10
    own_listing_limit: int = 10
    recent_action_limit: int = 25
    max_own_listings: int = 5

    purchase_deadline_hours: int = 24
    message_dedup_window_s: float = 2 * 3600.0

    store_timeout_s: float = 10.0
    balance_timeout_s: float = 5.0
    reasoning_timeout_s: float = 45.0
    signing_timeout_s: float = 30.0
    settlement_timeout_s: float = 30.0
    cycle_timeout_s: float = 120.0

    signing_attempts: int = 3
    signing_base_delay_s: float = 2.0

    batch_concurrency: int = 5
    batch_jitter_ms: int = 500
    batch_limit: int = 50

    @staticmethod
    def from_env() -> "HeartbeatConfig":
        attempts = _env_int("HEARTBEAT_SIGNING_ATTEMPTS", 3)
        if attempts < 1:
            attempts = 1
        return HeartbeatConfig(
            privileged_agent_ids=frozenset(_env_list("HEARTBEAT_PRIVILEGED_AGENT_IDS")),
            privileged_credit=max(0, _env_int("HEARTBEAT_PRIVILEGED_CREDIT", 5 * ONE_USDC)),
            listing_limit=_env_int("HEARTBEAT_LISTING_LIMIT", 20),
            bounty_limit=_env_int("HEARTBEAT_BOUNTY_LIMIT", 10),
            message_limit=_env_int("HEARTBEAT_MESSAGE_LIMIT", 10),
            own_listing_limit=_env_int("HEARTBEAT_OWN_LISTING_LIMIT", 10),
            recent_action_limit=_env_int("HEARTBEAT_RECENT_ACTION_LIMIT", 25),
            max_own_listings=_env_int("HEARTBEAT_MAX_OWN_LISTINGS", 5),
            purchase_deadline_hours=_env_int("HEARTBEAT_PURCHASE_DEADLINE_HOURS", 24),
            message_dedup_window_s=_env_float("HEARTBEAT_MESSAGE_DEDUP_WINDOW_S", 2 * 3600.0),
            store_timeout_s=_env_float("HEARTBEAT_STORE_TIMEOUT_S", 10.0),
            balance_timeout_s=_env_float("HEARTBEAT_BALANCE_TIMEOUT_S", 5.0),
            reasoning_timeout_s=_env_float("HEARTBEAT_REASONING_TIMEOUT_S", 45.0),
            signing_timeout_s=_env_float("HEARTBEAT_SIGNING_TIMEOUT_S", 30.0),
            settlement_timeout_s=_env_float("HEARTBEAT_SETTLEMENT_TIMEOUT_S", 30.0),
            cycle_timeout_s=_env_float("HEARTBEAT_CYCLE_TIMEOUT_S", 120.0),
            signing_attempts=attempts,
            signing_base_delay_s=_env_float("HEARTBEAT_SIGNING_BASE_DELAY_S", 2.0),
            batch_concurrency=max(1, _env_int("HEARTBEAT_BATCH_CONCURRENCY", 5)),
            batch_jitter_ms=max(0, _env_int("HEARTBEAT_BATCH_JITTER_MS", 500)),
            batch_limit=max(1, _env_int("HEARTBEAT_BATCH_LIMIT", 50)),
        )

    def is_privileged(self, agent_id: str) -> bool:
        return str(agent_id) in self.privileged_agent_ids


_DEFAULT_USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
_ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True, slots=True)
class ServiceEndpoints:
    """External collaborator locations. Secrets are read from env only."""

    marketplace_base_url: str = "http://localhost:3000"
    marketplace_api_key: str | None = None
    custody_base_url: str = "http://localhost:8545"
    custody_api_key: str | None = None
    rpc_url: str = "https://mainnet.base.org"
    usdc_address: str = _DEFAULT_USDC_ADDRESS
    escrow_address: str = _ZERO_ADDRESS
    escrow_v2_address: str = _ZERO_ADDRESS

    vertex_project: str | None = None
    vertex_location: str = "global"
    vertex_model: str = "gemini-2.5-flash"
    vertex_http_api_version: str = "v1"

    @staticmethod
    def from_env() -> "ServiceEndpoints":
        return ServiceEndpoints(
            marketplace_base_url=_env("MARKETPLACE_BASE_URL", "http://localhost:3000") or "http://localhost:3000",
            marketplace_api_key=_env("MARKETPLACE_API_KEY"),
            custody_base_url=_env("CUSTODY_BASE_URL", "http://localhost:8545") or "http://localhost:8545",
            custody_api_key=_env("CUSTODY_API_KEY"),
            rpc_url=_env("CHAIN_RPC_URL", "https://mainnet.base.org") or "https://mainnet.base.org",
            usdc_address=_env("USDC_ADDRESS", _DEFAULT_USDC_ADDRESS) or _DEFAULT_USDC_ADDRESS,
            escrow_address=_env("ESCROW_ADDRESS", _ZERO_ADDRESS) or _ZERO_ADDRESS,
            escrow_v2_address=_env("ESCROW_V2_ADDRESS", _ZERO_ADDRESS) or _ZERO_ADDRESS,
            vertex_project=_env("VERTEX_AI_PROJECT_ID") or _env("GOOGLE_CLOUD_PROJECT"),
            vertex_location=_env("VERTEX_AI_LOCATION", "global") or "global",
            vertex_model=_env("VERTEX_AI_MODEL_ID", "gemini-2.5-flash") or "gemini-2.5-flash",
            vertex_http_api_version=_env("VERTEX_AI_HTTP_API_VERSION", "v1") or "v1",
        )
