"""Hard liquidation of positions in soft liquidation.

A liquidator repays ``tokens_to_liquidate`` of the borrowed token and
receives the position's collateral plus whatever borrowed token the AMM
already holds for it. Partial liquidation repays a fraction ``frac`` of that
amount, where ``10**18`` means the whole position.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import List

from llamalend.config import Settings
from llamalend.core.engine import MarketEngine
from llamalend.core.errors import (
    AmountExceedsLiquidatable,
    AmountMustBePositive,
    LoanNotFound,
    NotInLiquidation,
    SlippageOutOfRange,
)
from llamalend.core.position import UserPositionReader
from llamalend.core.units import (
    ZERO_ADDRESS,
    Amount,
    decimal_context,
    format_units,
    from_decimal,
    to_decimal,
)
from llamalend.protocols.base import (
    AllowanceManager,
    ContractCall,
    MarketDescriptor,
    StateReader,
    TransactionSubmitter,
    UserPosition,
)

logger = logging.getLogger(__name__)

FRAC_PRECISION = 18


@dataclass(frozen=True)
class PartialFrac:
    frac: int               # 10**18 == 100%
    frac_decimal: Decimal   # amount / tokens_to_liquidate
    amount: Decimal         # borrowed token to repay


def calc_partial_frac(amount: Amount, tokens_to_liquidate: Amount) -> PartialFrac:
    amount = to_decimal(amount)
    tokens_to_liquidate = to_decimal(tokens_to_liquidate)
    if amount > tokens_to_liquidate:
        raise AmountExceedsLiquidatable(amount, tokens_to_liquidate)
    if amount <= 0:
        raise AmountMustBePositive(amount)

    with localcontext(decimal_context()):
        frac_decimal = amount / tokens_to_liquidate
    return PartialFrac(
        frac=from_decimal(frac_decimal, FRAC_PRECISION),
        frac_decimal=frac_decimal,
        amount=amount,
    )


def check_slippage(slippage: Amount) -> Decimal:
    value = to_decimal(slippage)
    if value <= 0 or value > 100:
        raise SlippageOutOfRange(slippage)
    return value


class LiquidationEngine(MarketEngine):
    def __init__(
        self,
        market: MarketDescriptor,
        positions: UserPositionReader,
        state: StateReader,
        submitter: TransactionSubmitter,
        allowances: AllowanceManager,
        settings: Settings | None = None,
    ):
        super().__init__(market, positions, submitter, allowances, settings)
        self._state = state

    def _slippage(self, slippage: Amount | None) -> Amount:
        return self._settings.default_slippage if slippage is None else slippage

    def _call(self, method: str, *args) -> ContractCall:
        return ContractCall(self._market.controller, method, tuple(args))

    def _borrowed(self, position: UserPosition) -> Decimal:
        return format_units(position.borrowed, self._market.borrowed_token.decimals)

    def _min_amount(self, expected: Decimal, slippage: Decimal) -> int:
        with localcontext(decimal_context()):
            minimum = expected * (100 - slippage) / 100
        return from_decimal(minimum, self._market.borrowed_token.decimals)

    async def _liquidatable(self, address: str, slippage: Amount) -> tuple:
        """Validated (position, slippage) for a liquidation of ``address``."""
        slippage = check_slippage(slippage)
        position = await self._user_position(address)
        if not position.has_loan:
            raise LoanNotFound(address)
        if not position.in_soft_liquidation:
            raise NotInLiquidation(address)
        return position, slippage

    async def tokens_to_liquidate(self, address: str | None = None) -> Decimal:
        raw = await self._state.read_tokens_to_liquidate(self._market, self._address(address))
        return format_units(raw, self._market.borrowed_token.decimals)

    async def calc_partial_frac(self, amount: Amount, address: str | None = None) -> PartialFrac:
        return calc_partial_frac(amount, await self.tokens_to_liquidate(address))

    # ---------------- LIQUIDATE ----------------

    async def liquidate_is_approved(self, address: str | None = None) -> bool:
        amount = await self.tokens_to_liquidate(address)
        return await self._is_approved(self._market.borrowed_token, amount, self._market.controller)

    async def liquidate_approve(self, address: str | None = None) -> List[str]:
        amount = await self.tokens_to_liquidate(address)
        return await self._approve(self._market.borrowed_token, amount, self._market.controller)

    async def liquidate_approve_estimate_gas(self, address: str | None = None) -> int:
        amount = await self.tokens_to_liquidate(address)
        return await self._approve_estimate_gas(
            self._market.borrowed_token, amount, self._market.controller
        )

    async def _liquidate(self, address: str, slippage: Amount, estimate_gas: bool) -> int | str:
        position, slippage = await self._liquidatable(address, slippage)
        min_amount = self._min_amount(self._borrowed(position), slippage)
        call = self._call("liquidate", address, min_amount)
        return await self._execute(call, estimate_gas, refresh_address=address)

    async def liquidate_estimate_gas(self, address: str, slippage: Amount | None = None) -> int:
        amount = await self.tokens_to_liquidate(address)
        await self._require_approval(self._market.borrowed_token, amount, self._market.controller)
        return await self._liquidate(address, self._slippage(slippage), True)

    async def liquidate(self, address: str, slippage: Amount | None = None) -> str:
        await self.liquidate_approve(address)
        return await self._liquidate(address, self._slippage(slippage), False)

    # ---------------- SELF-LIQUIDATE ----------------

    async def self_liquidate_is_approved(self) -> bool:
        return await self.liquidate_is_approved()

    async def self_liquidate_approve(self) -> List[str]:
        return await self.liquidate_approve()

    async def self_liquidate_approve_estimate_gas(self) -> int:
        return await self.liquidate_approve_estimate_gas()

    async def self_liquidate_estimate_gas(self, slippage: Amount | None = None) -> int:
        return await self.liquidate_estimate_gas(self._address(), slippage)

    async def self_liquidate(self, slippage: Amount | None = None) -> str:
        return await self.liquidate(self._address(), slippage)

    # ---------------- PARTIAL LIQUIDATE ----------------

    async def partial_liquidate_is_approved(self, partial_frac: PartialFrac) -> bool:
        return await self._is_approved(
            self._market.borrowed_token, partial_frac.amount, self._market.controller
        )

    async def partial_liquidate_approve(self, partial_frac: PartialFrac) -> List[str]:
        return await self._approve(
            self._market.borrowed_token, partial_frac.amount, self._market.controller
        )

    async def partial_liquidate_approve_estimate_gas(self, partial_frac: PartialFrac) -> int:
        return await self._approve_estimate_gas(
            self._market.borrowed_token, partial_frac.amount, self._market.controller
        )

    async def _partial_liquidate(
        self, address: str, partial_frac: PartialFrac, slippage: Amount, estimate_gas: bool
    ) -> int | str:
        position, slippage = await self._liquidatable(address, slippage)
        with localcontext(decimal_context()):
            expected = self._borrowed(position) * partial_frac.frac_decimal
        min_amount = self._min_amount(expected, slippage)
        call = self._call(
            "liquidate_extended", address, min_amount, partial_frac.frac, ZERO_ADDRESS, []
        )
        return await self._execute(call, estimate_gas, refresh_address=address)

    async def partial_liquidate_estimate_gas(
        self, address: str, partial_frac: PartialFrac, slippage: Amount | None = None
    ) -> int:
        await self._require_approval(
            self._market.borrowed_token, partial_frac.amount, self._market.controller
        )
        return await self._partial_liquidate(address, partial_frac, self._slippage(slippage), True)

    async def partial_liquidate(
        self, address: str, partial_frac: PartialFrac, slippage: Amount | None = None
    ) -> str:
        await self.partial_liquidate_approve(partial_frac)
        return await self._partial_liquidate(address, partial_frac, self._slippage(slippage), False)

    async def partial_self_liquidate_is_approved(self, partial_frac: PartialFrac) -> bool:
        return await self.partial_liquidate_is_approved(partial_frac)

    async def partial_self_liquidate_approve(self, partial_frac: PartialFrac) -> List[str]:
        return await self.partial_liquidate_approve(partial_frac)

    async def partial_self_liquidate_estimate_gas(
        self, partial_frac: PartialFrac, slippage: Amount | None = None
    ) -> int:
        return await self.partial_liquidate_estimate_gas(self._address(), partial_frac, slippage)

    async def partial_self_liquidate(
        self, partial_frac: PartialFrac, slippage: Amount | None = None
    ) -> str:
        return await self.partial_liquidate(self._address(), partial_frac, slippage)
