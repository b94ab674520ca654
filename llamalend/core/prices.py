"""AMM price math: tick prices, band edges and the oracle band."""

from __future__ import annotations

import logging
from decimal import Decimal, localcontext
from typing import Tuple

from llamalend.config import Settings, get_settings
from llamalend.core.units import decimal_context, format_units, round_to, strip_zeros
from llamalend.protocols.base import MarketDescriptor, OracleReader
from llamalend.services.cache import memoize

logger = logging.getLogger(__name__)


class PriceMath:
    """Price queries for one market.

    ``A`` and the base price are immutable per AMM and cached for a day;
    the oracle price is cached for a minute.
    """

    def __init__(
        self,
        market: MarketDescriptor,
        oracle: OracleReader,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self._market = market
        self._oracle = oracle
        self._a = memoize(
            self._read_a, settings.amm_parameters_cache_ttl_seconds, name=f"{market.name}.A"
        )
        self._base_price = memoize(
            self._read_base_price, settings.amm_parameters_cache_ttl_seconds,
            name=f"{market.name}.base_price",
        )
        self._oracle_price = memoize(
            self._read_oracle_price, settings.oracle_price_cache_ttl_seconds,
            name=f"{market.name}.oracle_price",
        )

    async def _read_a(self) -> int:
        return int(await self._oracle.amm_a(self._market))

    async def _read_base_price(self) -> Decimal:
        return format_units(await self._oracle.base_price(self._market))

    async def _read_oracle_price(self) -> Decimal:
        return format_units(await self._oracle.oracle_price(self._market))

    async def a(self) -> int:
        return await self._a()

    async def base_price(self) -> Decimal:
        return await self._base_price()

    async def oracle_price(self) -> Decimal:
        return await self._oracle_price()

    async def price(self) -> Decimal:
        """Current AMM spot price, uncached."""
        return format_units(await self._oracle.amm_price(self._market))

    async def calc_tick_price(self, n: int) -> Decimal:
        """base_price * ((A - 1) / A) ** n, at 18 places."""
        base = await self.base_price()
        a = Decimal(await self.a())
        with localcontext(decimal_context()):
            price = base * ((a - 1) / a) ** n
        return strip_zeros(round_to(price, 18))

    async def calc_band_prices(self, n: int) -> Tuple[Decimal, Decimal]:
        """(lower, upper) price edges of band ``n``."""
        return await self.calc_tick_price(n + 1), await self.calc_tick_price(n)

    async def calc_range_pct(self, range_: int) -> Decimal:
        """Width of ``range_`` bands as a percentage of the top price, 6 places."""
        a = Decimal(await self.a())
        with localcontext(decimal_context()):
            pct = (1 - ((a - 1) / a) ** range_) * 100
        return round_to(pct, 6)

    async def oracle_price_band(self) -> int:
        """Band number that currently contains the oracle price."""
        oracle_price = await self.oracle_price()
        base_price = await self.base_price()
        a = Decimal(await self.a())

        band = 0
        with localcontext(decimal_context()):
            if oracle_price <= base_price:
                multiplier = (a - 1) / a
                tick_price = base_price * multiplier
                while oracle_price <= tick_price:
                    tick_price *= multiplier
                    band += 1
            else:
                multiplier = a / (a - 1)
                tick_price = base_price
                while oracle_price > tick_price:
                    tick_price *= multiplier
                    band -= 1
        return band
