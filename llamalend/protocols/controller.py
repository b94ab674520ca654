"""web3-backed readers for a market's controller and AMM contracts."""

import logging
from typing import Any, Dict, List, Sequence, Tuple

from web3 import AsyncWeb3

from llamalend.protocols.base import (
    AmmReader,
    MarketDescriptor,
    OracleReader,
    StateReader,
    UserPosition,
)
from llamalend.services.metrics import track_contract_call
from llamalend.services.multicall import MulticallService
from llamalend.services.rpc import FallbackWeb3Provider, get_web3_provider

logger = logging.getLogger(__name__)


def abi_function(
    name: str,
    inputs: Sequence[Tuple[str, str]],
    outputs: Sequence[str],
    mutability: str = "view",
) -> Dict[str, Any]:
    return {
        "name": name,
        "type": "function",
        "stateMutability": mutability,
        "inputs": [{"name": arg, "type": typ} for arg, typ in inputs],
        "outputs": [{"name": "", "type": typ} for typ in outputs],
    }


CONTROLLER_ABI = [
    abi_function("user_state", [("user", "address")], ["uint256[4]"]),
    abi_function("loan_exists", [("user", "address")], ["bool"]),
    abi_function("tokens_to_liquidate", [("user", "address")], ["uint256"]),
    abi_function("min_collateral", [("debt", "uint256"), ("N", "uint256")], ["uint256"]),
    abi_function("health", [("user", "address"), ("full", "bool")], ["int256"]),
    abi_function(
        "health_calculator",
        [
            ("user", "address"),
            ("d_collateral", "int256"),
            ("d_debt", "int256"),
            ("full", "bool"),
            ("N", "uint256"),
        ],
        ["int256"],
    ),
    abi_function("user_prices", [("user", "address")], ["uint256[2]"]),
    abi_function(
        "calculate_debt_n1",
        [("collateral", "uint256"), ("debt", "uint256"), ("N", "uint256")],
        ["int256"],
    ),
    abi_function(
        "max_borrowable",
        [("collateral", "uint256"), ("N", "uint256"), ("current_debt", "uint256")],
        ["uint256"],
    ),
    abi_function(
        "create_loan",
        [("collateral", "uint256"), ("debt", "uint256"), ("N", "uint256")],
        [],
        "nonpayable",
    ),
    abi_function("borrow_more", [("collateral", "uint256"), ("debt", "uint256")], [], "nonpayable"),
    abi_function("add_collateral", [("collateral", "uint256"), ("_for", "address")], [], "nonpayable"),
    abi_function("remove_collateral", [("collateral", "uint256")], [], "nonpayable"),
    abi_function("liquidation_discount", [], ["uint256"]),
    abi_function("loan_discount", [], ["uint256"]),
    abi_function(
        "repay",
        [("_d_debt", "uint256"), ("_for", "address"), ("max_active_band", "int256")],
        [],
        "nonpayable",
    ),
    abi_function("liquidate", [("user", "address"), ("min_x", "uint256")], [], "nonpayable"),
    abi_function(
        "liquidate_extended",
        [
            ("user", "address"),
            ("min_x", "uint256"),
            ("frac", "uint256"),
            ("callbacker", "address"),
            ("callback_args", "uint256[]"),
        ],
        [],
        "nonpayable",
    ),
]

AMM_ABI = [
    abi_function("p_oracle_up", [("n", "int256")], ["uint256"]),
    abi_function("p_oracle_down", [("n", "int256")], ["uint256"]),
    abi_function("read_user_tick_numbers", [("user", "address")], ["int256[2]"]),
    abi_function("get_dy", [("i", "uint256"), ("j", "uint256"), ("in_amount", "uint256")], ["uint256"]),
    abi_function("get_dx", [("i", "uint256"), ("j", "uint256"), ("out_amount", "uint256")], ["uint256"]),
    abi_function(
        "get_dxdy", [("i", "uint256"), ("j", "uint256"), ("in_amount", "uint256")], ["uint256", "uint256"]
    ),
    abi_function("get_y_up", [("user", "address")], ["uint256"]),
    abi_function("get_xy", [("user", "address")], ["uint256[][2]"]),
    abi_function("bands_x", [("n", "int256")], ["uint256"]),
    abi_function("bands_y", [("n", "int256")], ["uint256"]),
    abi_function("active_band_with_skip", [], ["int256"]),
    abi_function("min_band", [], ["int256"]),
    abi_function("max_band", [], ["int256"]),
    abi_function("fee", [], ["uint256"]),
    abi_function("admin_fee", [], ["uint256"]),
    abi_function("A", [], ["uint256"]),
    abi_function("get_base_price", [], ["uint256"]),
    abi_function("price_oracle", [], ["uint256"]),
    abi_function("get_p", [], ["uint256"]),
    abi_function(
        "exchange",
        [("i", "uint256"), ("j", "uint256"), ("in_amount", "uint256"), ("min_amount", "uint256")],
        ["uint256[2]"],
        "nonpayable",
    ),
]


class Web3MarketReader(StateReader, OracleReader, AmmReader):
    """Reads controller and AMM state through the fallback RPC provider.

    All-ranges quotes are batched through Multicall3.
    """

    def __init__(self, provider: FallbackWeb3Provider | None = None):
        self._provider = provider or get_web3_provider()

    async def _read(self, kind: str, address: str, abi: List[dict], method: str, *args) -> Any:
        async def call(web3: AsyncWeb3):
            contract = web3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)
            return await getattr(contract.functions, method)(*args).call()

        tracked = track_contract_call(kind, method)(self._provider.execute_with_fallback)
        return await tracked(call)

    async def _controller(self, market: MarketDescriptor, method: str, *args) -> Any:
        return await self._read("controller", market.controller, CONTROLLER_ABI, method, *args)

    async def _amm(self, market: MarketDescriptor, method: str, *args) -> Any:
        return await self._read("amm", market.amm, AMM_ABI, method, *args)

    async def _batch(
        self,
        target: str,
        signature: str,
        input_types: List[str],
        arg_lists: Sequence[List[Any]],
        output_types: List[str],
    ) -> List[Any]:
        async def call(web3: AsyncWeb3):
            multicall = MulticallService(web3)
            calls = [
                multicall.build_call(target, signature, input_types, args)
                for args in arg_lists
            ]
            return await multicall.call_all(calls, output_types)

        method = signature.split("(")[0]
        tracked = track_contract_call("multicall", method)(self._provider.execute_with_fallback)
        return await tracked(call)

    @staticmethod
    def _user(address: str) -> str:
        return AsyncWeb3.to_checksum_address(address)

    # StateReader

    async def read_user_state(self, market: MarketDescriptor, address: str) -> UserPosition:
        collateral, borrowed, debt, n = await self._controller(market, "user_state", self._user(address))
        return UserPosition(collateral=collateral, borrowed=borrowed, debt=debt, n=n)

    async def read_tokens_to_liquidate(self, market: MarketDescriptor, address: str) -> int:
        return await self._controller(market, "tokens_to_liquidate", self._user(address))

    async def read_min_collateral(self, market: MarketDescriptor, debt: int, n: int) -> int:
        return await self._controller(market, "min_collateral", debt, n)

    async def read_loan_exists(self, market: MarketDescriptor, address: str) -> bool:
        return await self._controller(market, "loan_exists", self._user(address))

    async def read_user_ticks(self, market: MarketDescriptor, address: str) -> Tuple[int, int]:
        n1, n2 = await self._amm(market, "read_user_tick_numbers", self._user(address))
        return n1, n2

    async def read_user_prices(self, market: MarketDescriptor, address: str) -> Tuple[int, int]:
        upper, lower = await self._controller(market, "user_prices", self._user(address))
        return upper, lower

    async def read_health(self, market: MarketDescriptor, address: str, full: bool) -> int:
        return await self._controller(market, "health", self._user(address), full)

    async def health_calculator(
        self,
        market: MarketDescriptor,
        address: str,
        d_collateral: int,
        d_debt: int,
        full: bool,
        n: int,
    ) -> int:
        return await self._controller(
            market, "health_calculator", self._user(address), d_collateral, d_debt, full, n
        )

    async def read_liquidation_discount(self, market: MarketDescriptor) -> int:
        return await self._controller(market, "liquidation_discount")

    async def read_loan_discount(self, market: MarketDescriptor) -> int:
        return await self._controller(market, "loan_discount")

    # OracleReader

    async def price_at_tick_down(self, market: MarketDescriptor, tick: int) -> int:
        return await self._amm(market, "p_oracle_down", tick)

    async def price_at_tick_up(self, market: MarketDescriptor, tick: int) -> int:
        return await self._amm(market, "p_oracle_up", tick)

    async def debt_n1(self, market: MarketDescriptor, collateral: int, debt: int, range_: int) -> int:
        return await self._controller(market, "calculate_debt_n1", collateral, debt, range_)

    async def max_borrowable(
        self, market: MarketDescriptor, collateral: int, range_: int, existing_debt: int = 0
    ) -> int:
        return await self._controller(market, "max_borrowable", collateral, range_, existing_debt)

    async def max_borrowable_all_ranges(
        self, market: MarketDescriptor, collateral: int, ranges: Sequence[int]
    ) -> List[int]:
        return await self._batch(
            market.controller,
            "max_borrowable(uint256,uint256,uint256)",
            ["uint256", "uint256", "uint256"],
            [[collateral, n, 0] for n in ranges],
            ["uint256"],
        )

    async def debt_n1_all_ranges(
        self, market: MarketDescriptor, collateral: int, debt: int, ranges: Sequence[int]
    ) -> List[int]:
        return await self._batch(
            market.controller,
            "calculate_debt_n1(uint256,uint256,uint256)",
            ["uint256", "uint256", "uint256"],
            [[collateral, debt, n] for n in ranges],
            ["int256"],
        )

    async def amm_a(self, market: MarketDescriptor) -> int:
        return await self._amm(market, "A")

    async def base_price(self, market: MarketDescriptor) -> int:
        return await self._amm(market, "get_base_price")

    async def oracle_price(self, market: MarketDescriptor) -> int:
        return await self._amm(market, "price_oracle")

    async def amm_price(self, market: MarketDescriptor) -> int:
        return await self._amm(market, "get_p")

    # AmmReader

    async def get_dy(self, market: MarketDescriptor, i: int, j: int, amount: int) -> int:
        return await self._amm(market, "get_dy", i, j, amount)

    async def get_dx(self, market: MarketDescriptor, i: int, j: int, amount: int) -> int:
        return await self._amm(market, "get_dx", i, j, amount)

    async def get_dxdy(self, market: MarketDescriptor, i: int, j: int, amount: int) -> Tuple[int, int]:
        dx, dy = await self._amm(market, "get_dxdy", i, j, amount)
        return dx, dy

    async def get_y_up(self, market: MarketDescriptor, address: str) -> int:
        return await self._amm(market, "get_y_up", self._user(address))

    async def get_xy(self, market: MarketDescriptor, address: str) -> Tuple[List[int], List[int]]:
        borrowed, collateral = await self._amm(market, "get_xy", self._user(address))
        return list(borrowed), list(collateral)

    async def bands_x(self, market: MarketDescriptor, n: int) -> int:
        return await self._amm(market, "bands_x", n)

    async def bands_y(self, market: MarketDescriptor, n: int) -> int:
        return await self._amm(market, "bands_y", n)

    async def bands_balances(
        self, market: MarketDescriptor, bands: Sequence[int]
    ) -> List[Tuple[int, int]]:
        if not bands:
            return []

        async def call(web3: AsyncWeb3):
            multicall = MulticallService(web3)
            calls = []
            for n in bands:
                calls.append(multicall.build_call(market.amm, "bands_x(int256)", ["int256"], [n]))
                calls.append(multicall.build_call(market.amm, "bands_y(int256)", ["int256"], [n]))
            return await multicall.call_all(calls, ["uint256"])

        tracked = track_contract_call("multicall", "bands_balances")(self._provider.execute_with_fallback)
        values = await tracked(call)
        return [(values[2 * i], values[2 * i + 1]) for i in range(len(bands))]

    async def active_band(self, market: MarketDescriptor) -> int:
        return await self._amm(market, "active_band_with_skip")

    async def min_band(self, market: MarketDescriptor) -> int:
        return await self._amm(market, "min_band")

    async def max_band(self, market: MarketDescriptor) -> int:
        return await self._amm(market, "max_band")

    async def fee(self, market: MarketDescriptor) -> int:
        return await self._amm(market, "fee")

    async def admin_fee(self, market: MarketDescriptor) -> int:
        return await self._amm(market, "admin_fee")
