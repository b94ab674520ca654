"""Sends engine ``ContractCall``s through an unlocked web3 account."""

import logging
from typing import Dict, List

from web3 import AsyncWeb3

from llamalend.protocols.base import ContractCall, TransactionSubmitter
from llamalend.protocols.controller import AMM_ABI, CONTROLLER_ABI
from llamalend.services.rpc import FallbackWeb3Provider, get_web3_provider

logger = logging.getLogger(__name__)


def _checksum_args(args) -> list:
    converted = []
    for arg in args:
        if isinstance(arg, str) and arg.startswith("0x") and len(arg) == 42:
            converted.append(AsyncWeb3.to_checksum_address(arg))
        elif isinstance(arg, (list, tuple)):
            converted.append(_checksum_args(arg))
        else:
            converted.append(arg)
    return converted


class Web3TransactionSubmitter(TransactionSubmitter):
    """Submitter bound to one sender and a registry of contract ABIs.

    Writes always go to the provider's preferred endpoint; a send is never
    retried on another node.
    """

    def __init__(
        self,
        sender: str,
        provider: FallbackWeb3Provider | None = None,
        abis: Dict[str, List[dict]] | None = None,
    ):
        self._sender = AsyncWeb3.to_checksum_address(sender)
        self._provider = provider or get_web3_provider()
        self._abis: Dict[str, List[dict]] = {}
        for address, abi in (abis or {}).items():
            self.register(address, abi)

    def register(self, address: str, abi: List[dict]) -> None:
        self._abis[address.lower()] = abi

    def register_market(self, controller: str, amm: str) -> None:
        self.register(controller, CONTROLLER_ABI)
        self.register(amm, AMM_ABI)

    def _function(self, call: ContractCall):
        abi = self._abis.get(call.address.lower())
        if abi is None:
            raise KeyError(f"No ABI registered for {call.address}")
        contract = self._provider.get_web3().eth.contract(
            address=AsyncWeb3.to_checksum_address(call.address), abi=abi
        )
        return getattr(contract.functions, call.method)(*_checksum_args(call.args))

    async def estimate_gas(self, call: ContractCall) -> int:
        return await self._function(call).estimate_gas({"from": self._sender})

    async def submit(self, call: ContractCall, gas_limit: int) -> str:
        tx_hash = await self._function(call).transact({"from": self._sender, "gas": gas_limit})
        logger.debug(f"Sent {call.describe()} from {self._sender}")
        return AsyncWeb3.to_hex(tx_hash)
