"""Loan lifecycle: create, borrow more, add/remove collateral, repay.

Each operation exposes read-only previews (bands, prices, health) next to
the approval and execution entry points, so a UI can quote the outcome
before anything is sent.
"""

from __future__ import annotations

import logging
from decimal import Decimal, localcontext
from typing import Dict, List, Optional, Tuple

from llamalend.config import Settings
from llamalend.core.bands import BandMath, format_health
from llamalend.core.engine import MarketEngine
from llamalend.core.errors import AlreadyInLiquidation, LoanAlreadyExists, LoanNotFound
from llamalend.core.health import LoanState, allows_band_changes, classify
from llamalend.core.position import UserPositionReader
from llamalend.core.units import (
    MAX_ACTIVE_BAND,
    ZERO_ADDRESS,
    Amount,
    decimal_context,
    format_units,
    to_decimal,
)
from llamalend.protocols.base import (
    AllowanceManager,
    ContractCall,
    MarketDescriptor,
    OracleReader,
    StateReader,
    TransactionSubmitter,
    UserPosition,
)

logger = logging.getLogger(__name__)

FULL_REPAY_BUFFER = Decimal("1.0001")


def full_repay_amount(debt: Amount) -> Decimal:
    """Debt plus a 0.01% margin for interest accrued before inclusion."""
    with localcontext(decimal_context()):
        return to_decimal(debt) * FULL_REPAY_BUFFER


def active_band_for_repay(position: UserPosition, n1: int) -> int:
    """Band hint for controller.repay.

    In soft liquidation the active band may move freely, so the sentinel is
    passed; otherwise the band just below the user's top band.
    """
    if position.in_soft_liquidation:
        return MAX_ACTIVE_BAND
    return n1 - 1


class LoanEngine(MarketEngine):
    def __init__(
        self,
        market: MarketDescriptor,
        positions: UserPositionReader,
        state: StateReader,
        oracle: OracleReader,
        submitter: TransactionSubmitter,
        allowances: AllowanceManager,
        bands: BandMath | None = None,
        settings: Settings | None = None,
    ):
        super().__init__(market, positions, submitter, allowances, settings)
        self._state = state
        self._oracle = oracle
        self._bands = bands or BandMath(market, oracle, settings=self._settings)

    @property
    def bands(self) -> BandMath:
        return self._bands

    def _collateral(self, amount: Amount) -> int:
        return self._units(self._market.collateral_token, amount)

    def _debt(self, amount: Amount) -> int:
        return self._units(self._market.borrowed_token, amount)

    def _call(self, method: str, *args) -> ContractCall:
        return ContractCall(self._market.controller, method, tuple(args))

    async def _health(
        self, address: str, d_collateral: int, d_debt: int, full: bool, n: int
    ) -> Decimal:
        raw = await self._state.health_calculator(
            self._market, address, d_collateral, d_debt, full, n
        )
        return format_health(raw)

    async def _existing_loan(self, address: str) -> UserPosition:
        position = await self._user_position(address)
        if not position.has_loan:
            raise LoanNotFound(address)
        return position

    async def _healthy_loan(self, address: str) -> UserPosition:
        """Position that may still change its bands (loan exists, not liquidating)."""
        position = await self._existing_loan(address)
        if not allows_band_changes(classify(position)):
            raise AlreadyInLiquidation(address, position.borrowed)
        return position

    # ---------------- CREATE LOAN ----------------

    async def create_loan_max_recv(self, collateral: Amount, range_: int) -> Decimal:
        return await self._bands.max_borrowable(collateral, range_)

    async def create_loan_max_recv_all_ranges(self, collateral: Amount) -> Dict[int, Decimal]:
        return await self._bands.max_borrowable_all_ranges(collateral)

    async def get_max_range(self, collateral: Amount, debt: Amount) -> int:
        return await self._bands.max_range_for(collateral, debt)

    async def create_loan_bands(self, collateral: Amount, debt: Amount, range_: int) -> Tuple[int, int]:
        return await self._bands.calc_bands(collateral, debt, range_)

    async def create_loan_bands_all_ranges(
        self, collateral: Amount, debt: Amount
    ) -> Dict[int, Optional[Tuple[int, int]]]:
        return await self._bands.bands_all_ranges(collateral, debt)

    async def create_loan_prices(
        self, collateral: Amount, debt: Amount, range_: int
    ) -> Tuple[Decimal, Decimal]:
        n2, n1 = await self.create_loan_bands(collateral, debt, range_)
        return await self._bands.prices_for(n2, n1)

    async def create_loan_prices_all_ranges(
        self, collateral: Amount, debt: Amount
    ) -> Dict[int, Optional[Tuple[Decimal, Decimal]]]:
        return await self._bands.prices_all_ranges(collateral, debt)

    async def create_loan_health(
        self, collateral: Amount, debt: Amount, range_: int, full: bool = True
    ) -> Decimal:
        return await self._health(
            ZERO_ADDRESS, self._collateral(collateral), self._debt(debt), full, range_
        )

    async def create_loan_is_approved(self, collateral: Amount) -> bool:
        return await self._is_approved(
            self._market.collateral_token, collateral, self._market.controller
        )

    async def create_loan_approve(self, collateral: Amount) -> List[str]:
        return await self._approve(
            self._market.collateral_token, collateral, self._market.controller
        )

    async def create_loan_approve_estimate_gas(self, collateral: Amount) -> int:
        return await self._approve_estimate_gas(
            self._market.collateral_token, collateral, self._market.controller
        )

    async def _create_loan(
        self, collateral: Amount, debt: Amount, range_: int, estimate_gas: bool
    ) -> int | str:
        address = self._address()
        if await self._positions.user_loan_exists(address):
            raise LoanAlreadyExists(address)
        self._bands.check_range(range_)

        call = self._call("create_loan", self._collateral(collateral), self._debt(debt), range_)
        return await self._execute(call, estimate_gas, refresh_address=address)

    async def create_loan_estimate_gas(self, collateral: Amount, debt: Amount, range_: int) -> int:
        await self._require_approval(
            self._market.collateral_token, collateral, self._market.controller
        )
        return await self._create_loan(collateral, debt, range_, True)

    async def create_loan(self, collateral: Amount, debt: Amount, range_: int) -> str:
        await self.create_loan_approve(collateral)
        return await self._create_loan(collateral, debt, range_, False)

    # ---------------- BORROW MORE ----------------

    async def borrow_more_max_recv(self, collateral: Amount, address: str | None = None) -> Decimal:
        """Extra debt the current loan can take after adding ``collateral``."""
        position = await self._user_position(address)
        max_debt = await self._oracle.max_borrowable(
            self._market,
            position.collateral + self._collateral(collateral),
            position.n,
            position.debt,
        )
        return format_units(max_debt - position.debt, self._market.borrowed_token.decimals)

    async def borrow_more_bands(
        self, collateral: Amount, debt: Amount, address: str | None = None
    ) -> Tuple[int, int]:
        address = self._address(address)
        position = await self._existing_loan(address)
        return await self._bands.bands_for_position(
            position.collateral + self._collateral(collateral),
            position.debt + self._debt(debt),
            position.n,
        )

    async def borrow_more_prices(
        self, collateral: Amount, debt: Amount, address: str | None = None
    ) -> Tuple[Decimal, Decimal]:
        n2, n1 = await self.borrow_more_bands(collateral, debt, address)
        return await self._bands.prices_for(n2, n1)

    async def borrow_more_health(
        self, collateral: Amount, debt: Amount, full: bool = True, address: str | None = None
    ) -> Decimal:
        return await self._health(
            self._address(address), self._collateral(collateral), self._debt(debt), full, 0
        )

    async def borrow_more_is_approved(self, collateral: Amount) -> bool:
        return await self.create_loan_is_approved(collateral)

    async def borrow_more_approve(self, collateral: Amount) -> List[str]:
        return await self.create_loan_approve(collateral)

    async def borrow_more_approve_estimate_gas(self, collateral: Amount) -> int:
        return await self.create_loan_approve_estimate_gas(collateral)

    async def _borrow_more(self, collateral: Amount, debt: Amount, estimate_gas: bool) -> int | str:
        address = self._address()
        await self._healthy_loan(address)
        call = self._call("borrow_more", self._collateral(collateral), self._debt(debt))
        return await self._execute(call, estimate_gas, refresh_address=address)

    async def borrow_more_estimate_gas(self, collateral: Amount, debt: Amount) -> int:
        await self._require_approval(
            self._market.collateral_token, collateral, self._market.controller
        )
        return await self._borrow_more(collateral, debt, True)

    async def borrow_more(self, collateral: Amount, debt: Amount) -> str:
        await self.borrow_more_approve(collateral)
        return await self._borrow_more(collateral, debt, False)

    # ---------------- ADD COLLATERAL ----------------

    async def add_collateral_bands(self, collateral: Amount, address: str | None = None) -> Tuple[int, int]:
        address = self._address(address)
        position = await self._existing_loan(address)
        return await self._bands.bands_for_position(
            position.collateral + self._collateral(collateral), position.debt, position.n
        )

    async def add_collateral_prices(
        self, collateral: Amount, address: str | None = None
    ) -> Tuple[Decimal, Decimal]:
        n2, n1 = await self.add_collateral_bands(collateral, address)
        return await self._bands.prices_for(n2, n1)

    async def add_collateral_health(
        self, collateral: Amount, full: bool = True, address: str | None = None
    ) -> Decimal:
        return await self._health(self._address(address), self._collateral(collateral), 0, full, 0)

    async def add_collateral_is_approved(self, collateral: Amount) -> bool:
        return await self.create_loan_is_approved(collateral)

    async def add_collateral_approve(self, collateral: Amount) -> List[str]:
        return await self.create_loan_approve(collateral)

    async def add_collateral_approve_estimate_gas(self, collateral: Amount) -> int:
        return await self.create_loan_approve_estimate_gas(collateral)

    async def _add_collateral(self, collateral: Amount, address: str, estimate_gas: bool) -> int | str:
        await self._healthy_loan(address)
        call = self._call("add_collateral", self._collateral(collateral), address)
        return await self._execute(call, estimate_gas, refresh_address=address)

    async def add_collateral_estimate_gas(self, collateral: Amount, address: str | None = None) -> int:
        address = self._address(address)
        await self._require_approval(
            self._market.collateral_token, collateral, self._market.controller
        )
        return await self._add_collateral(collateral, address, True)

    async def add_collateral(self, collateral: Amount, address: str | None = None) -> str:
        address = self._address(address)
        await self.add_collateral_approve(collateral)
        return await self._add_collateral(collateral, address, False)

    # ---------------- REMOVE COLLATERAL ----------------

    async def max_removable(self, address: str | None = None) -> Decimal:
        position = await self._user_position(address)
        required = await self._state.read_min_collateral(self._market, position.debt, position.n)
        return format_units(
            position.collateral - required, self._market.collateral_token.decimals
        )

    async def remove_collateral_bands(self, collateral: Amount, address: str | None = None) -> Tuple[int, int]:
        address = self._address(address)
        position = await self._existing_loan(address)
        return await self._bands.bands_for_position(
            position.collateral - self._collateral(collateral), position.debt, position.n
        )

    async def remove_collateral_prices(
        self, collateral: Amount, address: str | None = None
    ) -> Tuple[Decimal, Decimal]:
        n2, n1 = await self.remove_collateral_bands(collateral, address)
        return await self._bands.prices_for(n2, n1)

    async def remove_collateral_health(
        self, collateral: Amount, full: bool = True, address: str | None = None
    ) -> Decimal:
        return await self._health(
            self._address(address), -self._collateral(collateral), 0, full, 0
        )

    async def _remove_collateral(self, collateral: Amount, estimate_gas: bool) -> int | str:
        address = self._address()
        await self._healthy_loan(address)
        call = self._call("remove_collateral", self._collateral(collateral))
        return await self._execute(call, estimate_gas, refresh_address=address)

    async def remove_collateral_estimate_gas(self, collateral: Amount) -> int:
        # Nothing is pulled from the user, so no allowance is involved
        return await self._remove_collateral(collateral, True)

    async def remove_collateral(self, collateral: Amount) -> str:
        return await self._remove_collateral(collateral, False)

    # ---------------- REPAY ----------------

    async def repay_bands(self, debt: Amount, address: str | None = None) -> Tuple[int, int]:
        """Bands after repaying ``debt``.

        While in soft liquidation the bands cannot move, so the current
        user bands are returned unchanged.
        """
        address = self._address(address)
        position = await self._existing_loan(address)
        if position.in_soft_liquidation:
            return await self._positions.user_bands(address)
        return await self._bands.bands_for_position(
            position.collateral, position.debt - self._debt(debt), position.n
        )

    async def repay_prices(self, debt: Amount, address: str | None = None) -> Tuple[Decimal, Decimal]:
        n2, n1 = await self.repay_bands(debt, address)
        return await self._bands.prices_for(n2, n1)

    async def repay_health(
        self, debt: Amount, full: bool = True, address: str | None = None
    ) -> Decimal:
        return await self._health(self._address(address), 0, -self._debt(debt), full, 0)

    async def repay_state(self, debt: Amount, address: str | None = None) -> LoanState:
        """Loan state the position would be in after repaying ``debt``."""
        address = self._address(address)
        position = await self._existing_loan(address)
        if self._debt(debt) >= position.debt:
            return LoanState.CLOSED
        if position.in_soft_liquidation:
            return LoanState.SOFT_LIQUIDATION
        return LoanState.HEALTHY

    async def repay_is_approved(self, debt: Amount) -> bool:
        return await self._is_approved(self._market.borrowed_token, debt, self._market.controller)

    async def repay_approve(self, debt: Amount) -> List[str]:
        return await self._approve(self._market.borrowed_token, debt, self._market.controller)

    async def repay_approve_estimate_gas(self, debt: Amount) -> int:
        return await self._approve_estimate_gas(
            self._market.borrowed_token, debt, self._market.controller
        )

    async def _repay(self, debt: Amount, address: str, estimate_gas: bool) -> int | str:
        position = await self._existing_loan(address)
        _, n1 = await self._positions.user_bands(address)
        n = active_band_for_repay(position, n1)
        call = self._call("repay", self._debt(debt), address, n)
        return await self._execute(call, estimate_gas, refresh_address=address)

    async def repay_estimate_gas(self, debt: Amount, address: str | None = None) -> int:
        address = self._address(address)
        await self._require_approval(self._market.borrowed_token, debt, self._market.controller)
        return await self._repay(debt, address, True)

    async def repay(self, debt: Amount, address: str | None = None) -> str:
        address = self._address(address)
        await self.repay_approve(debt)
        return await self._repay(debt, address, False)

    # ---------------- FULL REPAY ----------------

    async def full_repay_amount(self, address: str | None = None) -> Decimal:
        state = await self._positions.user_state_human(address)
        return full_repay_amount(state.debt)

    async def full_repay_is_approved(self, address: str | None = None) -> bool:
        return await self.repay_is_approved(await self.full_repay_amount(address))

    async def full_repay_approve(self, address: str | None = None) -> List[str]:
        return await self.repay_approve(await self.full_repay_amount(address))

    async def full_repay_approve_estimate_gas(self, address: str | None = None) -> int:
        return await self.repay_approve_estimate_gas(await self.full_repay_amount(address))

    async def full_repay_estimate_gas(self, address: str | None = None) -> int:
        address = self._address(address)
        amount = await self.full_repay_amount(address)
        await self._require_approval(self._market.borrowed_token, amount, self._market.controller)
        return await self._repay(amount, address, True)

    async def full_repay(self, address: str | None = None) -> str:
        address = self._address(address)
        amount = await self.full_repay_amount(address)
        await self.repay_approve(amount)
        return await self._repay(amount, address, False)
