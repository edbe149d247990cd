from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from agentmarket.common.errors import ActionRejected, ExternalServiceUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PurchaseReceipt:
    transaction_id: str
    # PENDING until the buyer's on-chain funding lands, FUNDED for custodial buyers.
    state: str
    raw: dict[str, Any]


@runtime_checkable
class SettlementClient(Protocol):
    async def buy_listing(self, *, listing_id: str, buyer_agent_id: str, deadline_hours: int) -> PurchaseReceipt: ...

    async def release(self, *, transaction_id: str, tx_hash: Optional[str]) -> dict[str, Any]: ...


class HttpSettlementClient:
    """
    Marketplace settlement endpoints (escrow funding and release).

    - POST /api/listings/{id}/buy            {"buyer_agent_id", "deadline_hours"}
    - POST /api/transactions/{id}/release    {"tx_hash"?}

    4xx responses are business rejections (ActionRejected); transport errors
    and 5xx are ExternalServiceUnavailable.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._timeout_s = float(timeout_s)
        self._client = client

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, headers=self._headers, timeout=self._timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    resp = await client.post(url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise ExternalServiceUnavailable("settlement", f"{type(e).__name__}: {e}") from e

        try:
            data = resp.json() or {}
        except ValueError:
            data = {}
        if resp.status_code >= 500:
            raise ExternalServiceUnavailable("settlement", f"{path} status={resp.status_code}")
        if resp.status_code >= 400:
            raise ActionRejected(str(data.get("error") or f"{path} rejected with status {resp.status_code}"))
        return dict(data)

    async def buy_listing(self, *, listing_id: str, buyer_agent_id: str, deadline_hours: int) -> PurchaseReceipt:
        data = await self._post(
            f"/api/listings/{listing_id}/buy",
            {"buyer_agent_id": buyer_agent_id, "deadline_hours": int(deadline_hours)},
        )
        txn_id = str(data.get("transaction_id") or (data.get("transaction") or {}).get("id") or "")
        state = str(data.get("state") or "PENDING").upper()
        logger.info("settlement.buy listing_id=%s buyer=%s transaction_id=%s state=%s", listing_id, buyer_agent_id, txn_id, state)
        return PurchaseReceipt(transaction_id=txn_id, state=state, raw=data)

    async def release(self, *, transaction_id: str, tx_hash: Optional[str]) -> dict[str, Any]:
        payload: dict[str, Any] = {"tx_hash": tx_hash} if tx_hash else {}
        data = await self._post(f"/api/transactions/{transaction_id}/release", payload)
        logger.info("settlement.release transaction_id=%s presigned=%s", transaction_id, bool(tx_hash))
        return data
