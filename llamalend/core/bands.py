"""Band and borrowing-capacity math.

A loan's collateral is spread over ``N`` consecutive bands ``n1..n2`` with
``n2 = n1 + N - 1``. Wider ranges liquidate more gently but lower how much
can be borrowed, so the largest usable ``N`` for a given debt is found by
scanning ranges in ascending order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from llamalend.config import Settings, get_settings
from llamalend.core.errors import RangeOutOfBounds
from llamalend.core.prices import PriceMath
from llamalend.core.units import Amount, format_units, parse_units, to_decimal
from llamalend.protocols.base import MarketDescriptor, OracleReader
from llamalend.services.cache import memoize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BandBalance:
    borrowed: Decimal
    collateral: Decimal


def check_range(range_: int, min_bands: int, max_bands: int) -> None:
    if range_ < min_bands or range_ > max_bands:
        raise RangeOutOfBounds(range_, min_bands, max_bands)


def bands_for(n1: int, range_: int) -> Tuple[int, int]:
    """(n2, n1) for a loan whose top band is ``n1``."""
    return n1 + range_ - 1, n1


def scan_max_range(
    capacities: Mapping[int, Decimal],
    debt: Decimal,
    min_bands: int,
    max_bands: int,
) -> int:
    """Largest range before the first shortfall, scanning ``min_bands`` upward.

    Ranges whose capacity is below ``debt`` before any range covered it are
    skipped, so a non-monotonic capacity table still yields the end of the
    first covered run. Returns ``min_bands - 1`` when no range covers the
    debt and ``max_bands`` when every range from the first covered one does.
    """
    covered = False
    for n in range(min_bands, max_bands + 1):
        if debt > capacities[n]:
            if covered:
                return n - 1
        else:
            covered = True
    return max_bands if covered else min_bands - 1


def format_health(raw_health: int) -> Decimal:
    """Contract health (1e18 == 100%) as a percentage."""
    return format_units(int(raw_health) * 100, 18)


class BandMath:
    """Chain-backed band computations for one market."""

    def __init__(
        self,
        market: MarketDescriptor,
        oracle: OracleReader,
        prices: PriceMath | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self._market = market
        self._oracle = oracle
        self._prices = prices or PriceMath(market, oracle, settings)
        self._max_borrowable_all_ranges = memoize(
            self._read_max_borrowable_all_ranges,
            settings.stats_cache_ttl_seconds,
            name=f"{market.name}.max_borrowable_all_ranges",
        )

    @property
    def market(self) -> MarketDescriptor:
        return self._market

    def check_range(self, range_: int) -> None:
        check_range(range_, self._market.min_bands, self._market.max_bands)

    def _collateral_units(self, amount: Amount) -> int:
        return parse_units(amount, self._market.collateral_token.decimals)

    def _borrowed_units(self, amount: Amount) -> int:
        return parse_units(amount, self._market.borrowed_token.decimals)

    def _format_borrowed(self, value: int) -> Decimal:
        return format_units(value, self._market.borrowed_token.decimals)

    async def debt_n1(self, collateral: int, debt: int, range_: int) -> int:
        """Top band for raw ``collateral``/``debt`` spread over ``range_`` bands."""
        self.check_range(range_)
        return int(await self._oracle.debt_n1(self._market, collateral, debt, range_))

    async def calc_n1(self, collateral: Amount, debt: Amount, range_: int) -> int:
        self.check_range(range_)
        return await self.debt_n1(
            self._collateral_units(collateral), self._borrowed_units(debt), range_
        )

    async def calc_bands(self, collateral: Amount, debt: Amount, range_: int) -> Tuple[int, int]:
        n1 = await self.calc_n1(collateral, debt, range_)
        return bands_for(n1, range_)

    async def bands_for_position(self, collateral: int, debt: int, range_: int) -> Tuple[int, int]:
        n1 = await self.debt_n1(collateral, debt, range_)
        return bands_for(n1, range_)

    async def max_borrowable(self, collateral: Amount, range_: int) -> Decimal:
        """Maximum debt a fresh loan of ``range_`` bands can take."""
        self.check_range(range_)
        value = await self._oracle.max_borrowable(
            self._market, self._collateral_units(collateral), range_, 0
        )
        return self._format_borrowed(value)

    async def _read_max_borrowable_all_ranges(self, collateral: Decimal) -> Dict[int, Decimal]:
        ranges = list(self._market.ranges)
        values = await self._oracle.max_borrowable_all_ranges(
            self._market, self._collateral_units(collateral), ranges
        )
        return {n: self._format_borrowed(v) for n, v in zip(ranges, values)}

    async def max_borrowable_all_ranges(self, collateral: Amount) -> Dict[int, Decimal]:
        """Capacity for every allowed range, cached per collateral amount."""
        # Normalize so "1", "1.0" and 1 share one cache entry
        collateral = to_decimal(collateral).normalize()
        return await self._max_borrowable_all_ranges(collateral)

    async def max_range_for(self, collateral: Amount, debt: Amount) -> int:
        capacities = await self.max_borrowable_all_ranges(collateral)
        return scan_max_range(
            capacities, to_decimal(debt), self._market.min_bands, self._market.max_bands
        )

    async def calc_n1_all_ranges(
        self, collateral: Amount, debt: Amount, max_n: int
    ) -> Dict[int, int]:
        ranges = list(range(self._market.min_bands, max_n + 1))
        if not ranges:
            return {}
        values = await self._oracle.debt_n1_all_ranges(
            self._market,
            self._collateral_units(collateral),
            self._borrowed_units(debt),
            ranges,
        )
        return {n: int(v) for n, v in zip(ranges, values)}

    async def bands_all_ranges(
        self, collateral: Amount, debt: Amount
    ) -> Dict[int, Optional[Tuple[int, int]]]:
        """Band pair per range; None for ranges that cannot carry ``debt``."""
        max_n = await self.max_range_for(collateral, debt)
        n1s = await self.calc_n1_all_ranges(collateral, debt, max_n)
        return {
            n: bands_for(n1s[n], n) if n in n1s else None
            for n in self._market.ranges
        }

    async def prices_for(self, n2: int, n1: int) -> Tuple[Decimal, Decimal]:
        """(lower, upper) liquidation prices from the AMM oracle ticks."""
        lower, upper = await asyncio.gather(
            self._oracle.price_at_tick_down(self._market, n2),
            self._oracle.price_at_tick_up(self._market, n1),
        )
        return format_units(lower), format_units(upper)

    async def calc_prices(self, n2: int, n1: int) -> Tuple[Decimal, Decimal]:
        """(lower, upper) from the tick price formula, no per-band calls."""
        return await self._prices.calc_tick_price(n2 + 1), await self._prices.calc_tick_price(n1)

    async def prices_all_ranges(
        self, collateral: Amount, debt: Amount
    ) -> Dict[int, Optional[Tuple[Decimal, Decimal]]]:
        bands = await self.bands_all_ranges(collateral, debt)
        result: Dict[int, Optional[Tuple[Decimal, Decimal]]] = {}
        for n, pair in bands.items():
            result[n] = await self.calc_prices(*pair) if pair is not None else None
        return result
