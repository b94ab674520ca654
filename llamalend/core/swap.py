"""Quotes and execution for swaps through the market's AMM.

The AMM holds exactly two coins, indexed 0 (borrowed token) and 1
(collateral token), so the only valid directions are (0, 1) and (1, 0).
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import List

from llamalend.config import Settings
from llamalend.core.engine import MarketEngine
from llamalend.core.errors import InvalidIndex
from llamalend.core.position import UserPositionReader
from llamalend.core.units import (
    MAX_ALLOWANCE,
    Amount,
    cut_zeros,
    decimal_context,
    format_units,
    from_decimal,
    parse_units,
    round_to,
    to_decimal,
)
from llamalend.protocols.base import (
    AllowanceManager,
    AmmReader,
    ContractCall,
    MarketDescriptor,
    Token,
    TransactionSubmitter,
)

logger = logging.getLogger(__name__)

# Probe trades aim at ~1e15 base units of either side
PRICE_IMPACT_TARGET = Decimal(10) ** 15
PRICE_IMPACT_MAX_K = Decimal("0.2")


def check_swap_indices(i: int, j: int) -> None:
    if (i, j) not in ((0, 1), (1, 0)):
        raise InvalidIndex(i, j)


def check_coin_index(i: int) -> None:
    if i not in (0, 1):
        raise InvalidIndex(i)


def probe_amount(amount_int: Decimal, output_int: Decimal, in_decimals: int) -> Decimal:
    """Size of the small reference trade, in input base units.

    k = min(max(1e15 / x, 1e15 / y), 0.2) and x0 = min(x * k, 10**decimals).
    """
    with localcontext(decimal_context()):
        if output_int > 0:
            k = max(PRICE_IMPACT_TARGET / amount_int, PRICE_IMPACT_TARGET / output_int)
        else:
            k = PRICE_IMPACT_MAX_K
        k = min(k, PRICE_IMPACT_MAX_K)
        return min(amount_int * k, Decimal(10) ** in_decimals)


def price_impact(
    amount: Decimal, output: Decimal, small_amount: Decimal, small_output: Decimal
) -> str:
    """Percent by which the full trade's rate falls short of the probe's rate.

    Returns "0" when the full trade gets a better rate than the probe.
    """
    with localcontext(decimal_context()):
        if small_output <= 0:
            return "0"
        rate = output / amount
        small_rate = small_output / small_amount
        if rate > small_rate:
            return "0"
        impact = (1 - rate / small_rate) * 100
    return cut_zeros(round_to(impact, 6))


class SwapQuoter(MarketEngine):
    def __init__(
        self,
        market: MarketDescriptor,
        positions: UserPositionReader,
        amm: AmmReader,
        submitter: TransactionSubmitter,
        allowances: AllowanceManager,
        settings: Settings | None = None,
    ):
        super().__init__(market, positions, submitter, allowances, settings)
        self._amm = amm

    def _coin(self, i: int) -> Token:
        if i == 0:
            return self._market.borrowed_token
        return self._market.collateral_token

    async def max_swappable(self, i: int, j: int) -> Decimal:
        """Largest input the AMM can currently absorb in direction (i, j)."""
        check_swap_indices(i, j)
        in_amount, out_amount = await self._amm.get_dxdy(self._market, i, j, MAX_ALLOWANCE)
        if out_amount == 0:
            return Decimal(0)
        return format_units(in_amount, self._coin(i).decimals)

    async def swap_expected(self, i: int, j: int, amount: Amount) -> Decimal:
        check_swap_indices(i, j)
        expected = await self._amm.get_dy(
            self._market, i, j, parse_units(amount, self._coin(i).decimals)
        )
        return format_units(expected, self._coin(j).decimals)

    async def swap_required(self, i: int, j: int, out_amount: Amount) -> Decimal:
        """Input needed to receive ``out_amount`` of coin ``j``."""
        check_swap_indices(i, j)
        required = await self._amm.get_dx(
            self._market, i, j, parse_units(out_amount, self._coin(j).decimals)
        )
        return format_units(required, self._coin(i).decimals)

    async def swap_price_impact(self, i: int, j: int, amount: Amount) -> str:
        check_swap_indices(i, j)
        in_decimals = self._coin(i).decimals
        out_decimals = self._coin(j).decimals
        amount = to_decimal(amount)
        raw_amount = parse_units(amount, in_decimals)
        raw_output = await self._amm.get_dy(self._market, i, j, raw_amount)

        with localcontext(decimal_context()):
            amount_int = amount * Decimal(10) ** in_decimals
        if amount_int <= 0:
            return "0"
        small_amount_int = probe_amount(amount_int, Decimal(raw_output), in_decimals)
        raw_small_amount = int(small_amount_int.quantize(Decimal(1), rounding=ROUND_HALF_UP))
        if raw_small_amount == 0:
            return "0"

        raw_small_output = await self._amm.get_dy(self._market, i, j, raw_small_amount)
        return price_impact(
            amount,
            format_units(raw_output, out_decimals),
            format_units(raw_small_amount, in_decimals),
            format_units(raw_small_output, out_decimals),
        )

    async def swap_is_approved(self, i: int, amount: Amount) -> bool:
        check_coin_index(i)
        return await self._is_approved(self._coin(i), amount, self._market.amm)

    async def swap_approve(self, i: int, amount: Amount) -> List[str]:
        check_coin_index(i)
        return await self._approve(self._coin(i), amount, self._market.amm)

    async def swap_approve_estimate_gas(self, i: int, amount: Amount) -> int:
        check_coin_index(i)
        return await self._approve_estimate_gas(self._coin(i), amount, self._market.amm)

    async def _swap(
        self, i: int, j: int, amount: Amount, slippage: float, estimate_gas: bool
    ) -> int | str:
        check_swap_indices(i, j)
        in_token, out_token = self._coin(i), self._coin(j)
        raw_amount = parse_units(amount, in_token.decimals)
        expected = format_units(
            await self._amm.get_dy(self._market, i, j, raw_amount), out_token.decimals
        )
        with localcontext(decimal_context()):
            min_recv = expected * (100 - to_decimal(slippage)) / 100
        call = ContractCall(
            self._market.amm,
            "exchange",
            (i, j, raw_amount, from_decimal(min_recv, out_token.decimals)),
        )
        return await self._execute(call, estimate_gas)

    async def swap_estimate_gas(
        self, i: int, j: int, amount: Amount, slippage: float | None = None
    ) -> int:
        check_swap_indices(i, j)
        await self._require_approval(self._coin(i), amount, self._market.amm)
        return await self._swap(i, j, amount, self._slippage(slippage), True)

    async def swap(self, i: int, j: int, amount: Amount, slippage: float | None = None) -> str:
        check_swap_indices(i, j)
        await self.swap_approve(i, amount)
        return await self._swap(i, j, amount, self._slippage(slippage), False)

    def _slippage(self, slippage: float | None) -> float:
        return self._settings.default_slippage if slippage is None else slippage
