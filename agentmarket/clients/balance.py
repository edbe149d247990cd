from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from web3 import Web3

from agentmarket.common.errors import ExternalServiceUnavailable

logger = logging.getLogger(__name__)

_ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    usdc: int = 0
    eth_wei: int = 0
    # False when the lookup failed and the zero fallback was used.
    live: bool = True


@runtime_checkable
class BalanceProvider(Protocol):
    async def get_balance(self, wallet_address: str) -> BalanceSnapshot: ...


class Web3BalanceProvider:
    """USDC (ERC-20 balanceOf) and native ETH balance for a wallet address."""

    def __init__(self, *, rpc_url: str, usdc_address: str, w3: Web3 | None = None) -> None:
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self._usdc = self.w3.eth.contract(address=Web3.to_checksum_address(usdc_address), abi=_ERC20_BALANCE_ABI)

    def _fetch(self, wallet_address: str) -> BalanceSnapshot:
        addr = Web3.to_checksum_address(wallet_address)
        usdc = int(self._usdc.functions.balanceOf(addr).call())
        eth = int(self.w3.eth.get_balance(addr))
        return BalanceSnapshot(usdc=usdc, eth_wei=eth)

    async def get_balance(self, wallet_address: str) -> BalanceSnapshot:
        if not wallet_address:
            raise ExternalServiceUnavailable("chain", "agent has no wallet address")
        try:
            return await asyncio.to_thread(self._fetch, wallet_address)
        except Exception as e:
            raise ExternalServiceUnavailable("chain", f"balance lookup failed: {type(e).__name__}: {e}") from e
