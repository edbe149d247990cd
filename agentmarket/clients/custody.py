from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, runtime_checkable

import httpx
from web3 import Web3

from agentmarket.common.errors import ExternalServiceUnavailable

logger = logging.getLogger(__name__)

# release(bytes32) on both escrow contract versions.
RELEASE_SELECTOR: bytes = bytes(Web3.keccak(text="release(bytes32)")[:4])


def escrow_id_bytes32(escrow_id: str) -> bytes:
    """
    On-chain correlation key for an escrow.

    A 0x-prefixed 32-byte hex id is used verbatim; anything else (UUIDs) is
    hashed with keccak256 of its text form.
    """
    s = str(escrow_id or "").strip()
    if not s:
        raise ValueError("escrow_id is required")
    if s.startswith("0x") and len(s) == 66:
        return bytes.fromhex(s[2:])
    return bytes(Web3.keccak(text=s))


def build_release_calldata(escrow_id: str) -> str:
    return Web3.to_hex(RELEASE_SELECTOR + escrow_id_bytes32(escrow_id))


@runtime_checkable
class CustodyClient(Protocol):
    async def sign_and_broadcast(self, wallet_ref: str, contract_address: str, calldata: str) -> str:
        """Returns the broadcast transaction hash. May fail transiently."""
        ...


class HttpCustodyClient:
    """
    Custodial wallet signer reached over HTTP.

    POST {base_url}/wallets/{wallet_ref}/transactions {"to": ..., "data": ...} -> {"hash": "0x..."}
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

    async def sign_and_broadcast(self, wallet_ref: str, contract_address: str, calldata: str) -> str:
        url = f"{self._base_url}/wallets/{wallet_ref}/transactions"
        payload: dict[str, Any] = {"to": Web3.to_checksum_address(contract_address), "data": calldata}
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, headers=self._headers, timeout=self._timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    resp = await client.post(url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise ExternalServiceUnavailable("custody", f"{type(e).__name__}: {e}") from e

        if resp.status_code >= 400:
            raise ExternalServiceUnavailable("custody", f"sign failed status={resp.status_code} body={resp.text[:300]}")
        data = resp.json() or {}
        tx_hash = str(data.get("hash") or data.get("tx_hash") or "").strip()
        if not tx_hash:
            raise ExternalServiceUnavailable("custody", "response did not include a transaction hash")
        logger.info("custody.broadcast wallet_ref=%s to=%s tx_hash=%s", wallet_ref, contract_address, tx_hash)
        return tx_hash
