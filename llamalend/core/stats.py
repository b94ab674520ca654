"""Market statistics.

Rates, debt and balances come from the statistics API. Protocol parameters
and band occupancy are read from the AMM and controller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from llamalend.config import Settings, get_settings
from llamalend.core.bands import BandBalance
from llamalend.core.errors import MarketNotFoundInApi
from llamalend.core.units import format_units, round_to
from llamalend.protocols.base import AmmReader, MarketDescriptor, OracleReader, StateReader
from llamalend.services.api import StatisticsApiClient, get_api_client
from llamalend.services.cache import memoize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketRates:
    """Rates in percent."""
    borrow_apr: Decimal
    lend_apr: Decimal
    borrow_apy: Decimal
    lend_apy: Decimal


@dataclass(frozen=True)
class AmmBalances:
    borrowed: Decimal
    collateral: Decimal


@dataclass(frozen=True)
class CapAndAvailable:
    cap: Decimal
    available: Decimal


@dataclass(frozen=True)
class MarketParameters:
    """Fees and discounts in percent."""
    fee: Decimal
    admin_fee: Decimal
    liquidation_discount: Decimal
    loan_discount: Decimal
    base_price: Decimal
    A: int


@dataclass(frozen=True)
class BandsInfo:
    active_band: int
    max_band: int
    min_band: int
    # Active band when it holds both coins, i.e. is being converted
    liquidation_band: Optional[int]


def _num(value: Any) -> Decimal:
    return Decimal(str(value))


def _percent(value: int) -> Decimal:
    return format_units(int(value) * 100, 18)


class MarketStats:
    def __init__(
        self,
        market: MarketDescriptor,
        api: StatisticsApiClient | None = None,
        settings: Settings | None = None,
        state: StateReader | None = None,
        oracle: OracleReader | None = None,
        amm: AmmReader | None = None,
    ):
        self._settings = settings or get_settings()
        self._market = market
        self._api = api or get_api_client()
        self._state = state
        self._oracle = oracle
        self._amm = amm
        self._parameters = memoize(
            self._read_parameters,
            self._settings.stats_cache_ttl_seconds,
            name=f"{market.name}.parameters",
        )
        self._bands_info = memoize(
            self._read_bands_info,
            self._settings.bands_info_cache_ttl_seconds,
            name=f"{market.name}.bands_info",
        )

    async def _market_data(self) -> Dict[str, Any]:
        network = self._settings.network
        data = await self._api.get_markets_data(network)
        vault = (self._market.vault or "").lower()
        for item in data.get("lendingVaultData", []):
            if item.get("address", "").lower() == vault:
                return item
        logger.error(f"{self._market.name}: vault {self._market.vault} missing from API data")
        raise MarketNotFoundInApi(self._market.vault or "", network)

    async def rates(self) -> MarketRates:
        rates = (await self._market_data())["rates"]
        return MarketRates(
            borrow_apr=_num(rates["borrowApr"]) * 100,
            lend_apr=_num(rates["lendApr"]) * 100,
            borrow_apy=_num(rates["borrowApy"]) * 100,
            lend_apy=_num(rates["lendApy"]) * 100,
        )

    async def total_debt(self) -> Decimal:
        return _num((await self._market_data())["borrowed"]["total"])

    async def amm_balances(self) -> AmmBalances:
        balances = (await self._market_data())["ammBalances"]
        return AmmBalances(
            borrowed=_num(balances["ammBalanceBorrowed"]),
            collateral=_num(balances["ammBalanceCollateral"]),
        )

    async def cap_and_available(self) -> CapAndAvailable:
        data = await self._market_data()
        return CapAndAvailable(
            cap=_num(data["totalSupplied"]["total"]),
            available=_num(data["availableToBorrow"]["total"]),
        )

    async def usd_rate(self, token_address: str) -> float:
        return await self._api.get_usd_rate(self._settings.network, token_address)

    def _chain_readers(self) -> tuple:
        if self._state is None or self._oracle is None or self._amm is None:
            raise RuntimeError(f"{self._market.name}: on-chain readers are not configured")
        return self._state, self._oracle, self._amm

    async def _read_parameters(self) -> MarketParameters:
        state, oracle, amm = self._chain_readers()
        fee, admin_fee, liquidation_discount, loan_discount, base_price, a = await asyncio.gather(
            amm.fee(self._market),
            amm.admin_fee(self._market),
            state.read_liquidation_discount(self._market),
            state.read_loan_discount(self._market),
            oracle.base_price(self._market),
            oracle.amm_a(self._market),
        )
        return MarketParameters(
            fee=_percent(fee),
            admin_fee=_percent(admin_fee),
            liquidation_discount=_percent(liquidation_discount),
            loan_discount=_percent(loan_discount),
            base_price=format_units(base_price),
            A=int(a),
        )

    async def parameters(self) -> MarketParameters:
        return await self._parameters()

    def _band_balance(self, raw_x: int, raw_y: int) -> BandBalance:
        # bands_x and bands_y are always 18 decimals
        return BandBalance(
            borrowed=round_to(format_units(raw_x), self._market.borrowed_token.decimals),
            collateral=round_to(format_units(raw_y), self._market.collateral_token.decimals),
        )

    async def band_balances(self, n: int) -> BandBalance:
        _, _, amm = self._chain_readers()
        raw_x, raw_y = await asyncio.gather(
            amm.bands_x(self._market, n), amm.bands_y(self._market, n)
        )
        return self._band_balance(raw_x, raw_y)

    async def _read_bands_info(self) -> BandsInfo:
        _, _, amm = self._chain_readers()
        active_band, max_band, min_band = await asyncio.gather(
            amm.active_band(self._market),
            amm.max_band(self._market),
            amm.min_band(self._market),
        )
        active = await self.band_balances(int(active_band))
        liquidation_band = None
        if active.borrowed > 0 and active.collateral > 0:
            liquidation_band = int(active_band)
        return BandsInfo(
            active_band=int(active_band),
            max_band=int(max_band),
            min_band=int(min_band),
            liquidation_band=liquidation_band,
        )

    async def bands_info(self) -> BandsInfo:
        return await self._bands_info()

    async def bands_balances(self) -> Dict[int, BandBalance]:
        """Balances of every band from min_band to max_band."""
        _, _, amm = self._chain_readers()
        info = await self.bands_info()
        bands = list(range(info.min_band, info.max_band + 1))
        balances = await amm.bands_balances(self._market, bands)
        return {n: self._band_balance(x, y) for n, (x, y) in zip(bands, balances)}
