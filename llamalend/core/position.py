"""Read-only view of a borrower's position in one market."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Dict, Tuple

from llamalend.config import Settings, get_settings
from llamalend.core.bands import BandBalance, format_health
from llamalend.core.errors import AddressRequired
from llamalend.core.health import LoanState, classify
from llamalend.core.units import decimal_context, format_units, round_to
from llamalend.protocols.base import (
    AmmReader,
    MarketDescriptor,
    OracleReader,
    StateReader,
    UserPosition,
)
from llamalend.services.api import StatisticsApiClient
from llamalend.services.cache import memoize

logger = logging.getLogger(__name__)


def _address_key(args) -> str:
    """Cache key for one account regardless of checksum casing."""
    return args[0].lower()


@dataclass(frozen=True)
class UserState:
    """``UserPosition`` scaled to human amounts."""
    collateral: Decimal
    borrowed: Decimal
    debt: Decimal
    n: int


@dataclass(frozen=True)
class UserLoss:
    deposited_collateral: Decimal
    current_collateral_estimation: Decimal
    loss: Decimal
    loss_pct: Decimal


@dataclass(frozen=True)
class CurrentPnL:
    """Position value and profit in borrowed-token terms."""
    current_position: Decimal
    deposited: Decimal
    current_profit: Decimal
    percentage: Decimal


class UserPositionReader:
    """User state, health, bands and prices for one market.

    ``user_state`` snapshots are cached for a few seconds; engines evict the
    entry after submitting a transaction for that address.
    """

    def __init__(
        self,
        market: MarketDescriptor,
        state: StateReader,
        amm: AmmReader | None = None,
        api: StatisticsApiClient | None = None,
        signer_address: str | None = None,
        oracle: OracleReader | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._market = market
        self._state = state
        self._amm = amm
        self._oracle = oracle
        self._api = api
        self.signer_address = signer_address
        self._user_state = memoize(
            self._read_user_state,
            self._settings.user_state_cache_ttl_seconds,
            create_key=_address_key,
            name=f"{market.name}.user_state",
        )

    def get_address(self, address: str | None = None) -> str:
        address = address or self.signer_address
        if not address:
            raise AddressRequired()
        return address

    async def _read_user_state(self, address: str) -> UserPosition:
        return await self._state.read_user_state(self._market, address)

    async def user_state(self, address: str | None = None) -> UserPosition:
        return await self._user_state(self.get_address(address))

    def prime_user_state(self, position: UserPosition, address: str | None = None) -> None:
        self._user_state.set(position, self.get_address(address))

    def invalidate_user_state(self, address: str | None = None) -> None:
        self._user_state.delete(self.get_address(address))

    async def user_state_human(self, address: str | None = None) -> UserState:
        position = await self.user_state(address)
        return UserState(
            collateral=format_units(position.collateral, self._market.collateral_token.decimals),
            borrowed=format_units(position.borrowed, self._market.borrowed_token.decimals),
            debt=format_units(position.debt, self._market.borrowed_token.decimals),
            n=int(position.n),
        )

    async def loan_state(self, address: str | None = None) -> LoanState:
        return classify(await self.user_state(address))

    async def user_loan_exists(self, address: str | None = None) -> bool:
        return await self._state.read_loan_exists(self._market, self.get_address(address))

    async def user_health(self, full: bool = True, address: str | None = None) -> Decimal:
        raw = await self._state.read_health(self._market, self.get_address(address), full)
        return format_health(raw)

    async def user_bands(self, address: str | None = None) -> Tuple[int, int]:
        """(n2, n1) of the user's current band range."""
        n1, n2 = await self._state.read_user_ticks(self._market, self.get_address(address))
        return int(n2), int(n1)

    async def user_range(self, address: str | None = None) -> int:
        n2, n1 = await self.user_bands(address)
        if n1 == n2:
            return 0
        return n2 - n1 + 1

    async def user_bands_balances(self, address: str | None = None) -> Dict[int, BandBalance]:
        """Per-band amounts of the user's position, keyed by band number."""
        address = self.get_address(address)
        n2, n1 = await self.user_bands(address)
        if n1 == 0 and n2 == 0:
            return {}

        borrowed, collateral = await self._require_amm().get_xy(self._market, address)
        return {
            n: BandBalance(
                borrowed=format_units(borrowed[n - n1], self._market.borrowed_token.decimals),
                collateral=format_units(collateral[n - n1], self._market.collateral_token.decimals),
            )
            for n in range(n1, n2 + 1)
        }

    async def user_prices(self, address: str | None = None) -> Tuple[Decimal, Decimal]:
        """(lower, upper) liquidation prices of the user's bands."""
        upper, lower = await self._state.read_user_prices(self._market, self.get_address(address))
        return format_units(lower), format_units(upper)

    def _require_api(self) -> StatisticsApiClient:
        if self._api is None:
            raise RuntimeError(f"{self._market.name}: statistics API client is not configured")
        return self._api

    def _require_amm(self) -> AmmReader:
        if self._amm is None:
            raise RuntimeError(f"{self._market.name}: AMM reader is not configured")
        return self._amm

    def _require_oracle(self) -> OracleReader:
        if self._oracle is None:
            raise RuntimeError(f"{self._market.name}: oracle reader is not configured")
        return self._oracle

    async def user_loss(self, address: str | None = None) -> UserLoss:
        """Collateral lost to soft liquidation versus what was deposited."""
        address = self.get_address(address)
        api = self._require_api()
        amm = self._require_amm()

        collateral_history, raw_y_up = await asyncio.gather(
            api.get_user_collateral(self._settings.network, self._market.controller, address),
            amm.get_y_up(self._market, address),
        )
        deposited = collateral_history.total_deposit_precise
        current = format_units(raw_y_up, self._market.collateral_token.decimals)
        if deposited <= 0:
            return UserLoss(deposited, current, Decimal(0), Decimal(0))

        with localcontext(decimal_context()):
            loss = deposited - current
            loss_pct = loss / deposited * 100
        return UserLoss(deposited, current, loss, loss_pct)

    async def current_leverage(self, address: str | None = None) -> Decimal:
        address = self.get_address(address)
        api = self._require_api()
        collateral_history, state = await asyncio.gather(
            api.get_user_collateral(self._settings.network, self._market.controller, address),
            self.user_state_human(address),
        )
        deposited = collateral_history.total_deposit_from_user_precise
        if deposited <= 0:
            return Decimal(0)
        with localcontext(decimal_context()):
            return state.collateral / deposited

    async def force_update_user_state(self, new_tx: str, address: str | None = None) -> None:
        """Push a fresh transaction to the prices API and drop cached state."""
        address = self.get_address(address)
        await self._require_api().force_user_collateral_update(
            self._settings.network, self._market.controller, address, new_tx
        )
        self._user_state.delete(address)

    async def current_pnl(self, address: str | None = None) -> CurrentPnL:
        """Value of the position at the oracle price against the USD deposited.

        position = amm collateral * oracle price + amm borrowed + (total borrowed - debt)
        """
        address = self.get_address(address)
        api = self._require_api()
        oracle = self._require_oracle()
        collateral_history, state, raw_oracle_price = await asyncio.gather(
            api.get_user_collateral(self._settings.network, self._market.controller, address),
            self.user_state_human(address),
            oracle.oracle_price(self._market),
        )
        oracle_price = format_units(raw_oracle_price)
        deposited = collateral_history.total_deposit_from_user_usd_value
        decimals = self._market.borrowed_token.decimals

        with localcontext(decimal_context()):
            current_position = (
                state.collateral * oracle_price
                + state.borrowed
                + (collateral_history.total_borrowed - state.debt)
            )
            current_profit = current_position - collateral_history.total_deposit_usd_value
            percentage = current_profit / deposited * 100 if deposited > 0 else Decimal(0)

        return CurrentPnL(
            current_position=round_to(current_position, decimals),
            deposited=deposited,
            current_profit=round_to(current_profit, decimals),
            percentage=round_to(percentage, 2),
        )
