"""
Multicall3 batching for read calls.

All-ranges quotes ask the controller the same question for every band count
between min_bands and max_bands; batching them keeps a quote to one request.
Multicall3 is deployed at the same address on all major EVM chains.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence

from web3 import AsyncWeb3
from eth_abi import decode, encode

from llamalend.core.errors import MulticallError

logger = logging.getLogger(__name__)

MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

MULTICALL3_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"},
                ],
                "name": "calls",
                "type": "tuple[]",
            }
        ],
        "name": "aggregate3",
        "outputs": [
            {
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
                "name": "returnData",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "payable",
        "type": "function",
    }
]


@dataclass
class Call:
    """A single encoded contract call inside a batch."""
    target: str
    signature: str
    call_data: bytes
    allow_failure: bool = False


@dataclass
class CallResult:
    success: bool
    return_data: bytes


class MulticallService:
    """
    Batches read calls through Multicall3.aggregate3.

    Example:
        multicall = MulticallService(web3)
        calls = [
            multicall.build_call(controller, "max_borrowable(uint256,uint256,uint256)",
                                 ["uint256", "uint256", "uint256"], [collateral, n, 0])
            for n in range(4, 51)
        ]
        values = await multicall.call_all(calls, ["uint256"])
    """

    def __init__(self, web3: AsyncWeb3):
        self._web3 = web3
        self._multicall_contract = web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(MULTICALL3_ADDRESS),
            abi=MULTICALL3_ABI,
        )

    def build_call(
        self,
        target: str,
        function_signature: str,
        input_types: List[str],
        input_values: List[Any],
        allow_failure: bool = False,
    ) -> Call:
        """Encode ``function_signature(*input_values)`` for ``target``."""
        selector = AsyncWeb3.keccak(text=function_signature)[:4]
        call_data = bytes(selector)
        if input_types:
            call_data += encode(input_types, input_values)

        return Call(
            target=AsyncWeb3.to_checksum_address(target),
            signature=function_signature,
            call_data=call_data,
            allow_failure=allow_failure,
        )

    async def execute(self, calls: Sequence[Call]) -> List[CallResult]:
        """Run the batch in one eth_call. Transport errors propagate."""
        if not calls:
            return []

        formatted_calls = [
            (call.target, call.allow_failure, call.call_data)
            for call in calls
        ]
        results = await self._multicall_contract.functions.aggregate3(formatted_calls).call()
        return [CallResult(success=result[0], return_data=result[1]) for result in results]

    @staticmethod
    def decode_result(result: CallResult, output_types: List[str]) -> tuple:
        return decode(output_types, result.return_data)

    async def call_all(self, calls: Sequence[Call], output_types: List[str]) -> List[Any]:
        """Execute and decode; single-output calls are unwrapped.

        Raises:
            MulticallError: if any sub-call failed or returned nothing
        """
        results = await self.execute(calls)
        values = []
        for index, (call, result) in enumerate(zip(calls, results)):
            if not result.success or not result.return_data:
                logger.error(f"Multicall sub-call {call.signature} on {call.target} failed")
                raise MulticallError(call.target, call.signature, index)
            decoded = self.decode_result(result, output_types)
            values.append(decoded[0] if len(output_types) == 1 else decoded)
        return values
