"""ERC20 allowance checks and approvals for the signer account."""

import logging
from typing import List, Sequence

from web3 import AsyncWeb3

from llamalend.config import Settings, get_settings
from llamalend.core.units import MAX_ALLOWANCE, mul_by_1_3
from llamalend.protocols.base import AllowanceManager
from llamalend.protocols.controller import abi_function
from llamalend.services.cache import memoize
from llamalend.services.metrics import record_gas_estimate, record_transaction, track_contract_call
from llamalend.services.rpc import FallbackWeb3Provider, get_web3_provider

logger = logging.getLogger(__name__)

ERC20_ABI = [
    abi_function("allowance", [("owner", "address"), ("spender", "address")], ["uint256"]),
    abi_function("approve", [("spender", "address"), ("amount", "uint256")], ["bool"], "nonpayable"),
]


class Web3AllowanceManager(AllowanceManager):
    """Approves ``MAX_ALLOWANCE`` for every token whose allowance is short.

    Allowance reads are cached briefly; the cache entry for a token is
    dropped as soon as an approval for it is sent.
    """

    def __init__(
        self,
        owner: str,
        provider: FallbackWeb3Provider | None = None,
        wait_for_receipt: bool = True,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._owner = AsyncWeb3.to_checksum_address(owner)
        self._provider = provider or get_web3_provider()
        self._wait_for_receipt = wait_for_receipt
        self._allowance = memoize(
            self._read_allowance,
            self._settings.allowance_cache_ttl_seconds,
            name="allowance",
        )

    def _contract(self, web3: AsyncWeb3, token: str):
        return web3.eth.contract(address=AsyncWeb3.to_checksum_address(token), abi=ERC20_ABI)

    async def _read_allowance(self, token: str, owner: str, spender: str) -> int:
        async def call(web3: AsyncWeb3):
            return await self._contract(web3, token).functions.allowance(
                AsyncWeb3.to_checksum_address(owner), AsyncWeb3.to_checksum_address(spender)
            ).call()

        tracked = track_contract_call("erc20", "allowance")(self._provider.execute_with_fallback)
        return await tracked(call)

    async def allowances(self, tokens: Sequence[str], owner: str, spender: str) -> List[int]:
        return [
            await self._allowance(token.lower(), owner.lower(), spender.lower())
            for token in tokens
        ]

    async def has_allowance(
        self, tokens: Sequence[str], amounts: Sequence[int], owner: str, spender: str
    ) -> bool:
        current = await self.allowances(tokens, owner, spender)
        return all(allowance >= amount for allowance, amount in zip(current, amounts))

    async def _short_tokens(
        self, tokens: Sequence[str], amounts: Sequence[int], spender: str
    ) -> List[str]:
        current = await self.allowances(tokens, self._owner, spender)
        return [
            token for token, allowance, amount in zip(tokens, current, amounts)
            if allowance < amount
        ]

    def _approve_fn(self, web3: AsyncWeb3, token: str, spender: str):
        return self._contract(web3, token).functions.approve(
            AsyncWeb3.to_checksum_address(spender), MAX_ALLOWANCE
        )

    async def ensure_allowance_estimate_gas(
        self, tokens: Sequence[str], amounts: Sequence[int], spender: str
    ) -> int:
        web3 = self._provider.get_web3()
        total = 0
        for token in await self._short_tokens(tokens, amounts, spender):
            gas = await self._approve_fn(web3, token, spender).estimate_gas({"from": self._owner})
            record_gas_estimate("approve", gas)
            total += gas
        return total

    async def ensure_allowance(
        self, tokens: Sequence[str], amounts: Sequence[int], spender: str
    ) -> List[str]:
        web3 = self._provider.get_web3()
        tx_hashes = []
        for token in await self._short_tokens(tokens, amounts, spender):
            fn = self._approve_fn(web3, token, spender)
            gas = await fn.estimate_gas({"from": self._owner})
            tx_hash = await fn.transact({"from": self._owner, "gas": mul_by_1_3(gas)})
            record_transaction("approve")
            self._allowance.delete(token.lower(), self._owner.lower(), spender.lower())

            if self._wait_for_receipt:
                await web3.eth.wait_for_transaction_receipt(tx_hash)
            tx_hashes.append(AsyncWeb3.to_hex(tx_hash))
            logger.info(f"Approved {token} for {spender} from {self._owner}")
        return tx_hashes
