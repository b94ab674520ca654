from decimal import Decimal

import pytest

from llamalend.core.prices import PriceMath

E18 = 10**18


class TestPriceMath:
    @pytest.fixture
    def prices(self, market, oracle, settings):
        oracle.amm_a.return_value = 100
        oracle.base_price.return_value = 2000 * E18
        oracle.oracle_price.return_value = 1990 * E18
        return PriceMath(market, oracle, settings)

    @pytest.mark.asyncio
    async def test_amm_parameters_are_cached(self, prices, oracle):
        assert await prices.a() == 100
        assert await prices.a() == 100
        assert await prices.base_price() == Decimal(2000)
        await prices.base_price()

        assert oracle.amm_a.await_count == 1
        assert oracle.base_price.await_count == 1

    @pytest.mark.asyncio
    async def test_spot_price_is_not_cached(self, prices, oracle):
        oracle.amm_price.return_value = 1995 * E18

        assert await prices.price() == Decimal(1995)
        await prices.price()
        assert oracle.amm_price.await_count == 2

    @pytest.mark.asyncio
    async def test_calc_tick_price(self, prices):
        assert await prices.calc_tick_price(0) == Decimal(2000)
        assert await prices.calc_tick_price(1) == Decimal(1980)
        assert await prices.calc_tick_price(2) == Decimal("1960.2")

    @pytest.mark.asyncio
    async def test_calc_tick_price_negative_band(self, prices):
        price = await prices.calc_tick_price(-1)
        assert price == Decimal("2020.202020202020202020")

    @pytest.mark.asyncio
    async def test_calc_band_prices(self, prices):
        assert await prices.calc_band_prices(0) == (Decimal(1980), Decimal(2000))

    @pytest.mark.asyncio
    async def test_calc_range_pct(self, prices):
        assert await prices.calc_range_pct(1) == Decimal(1)
        assert await prices.calc_range_pct(2) == Decimal("1.99")

    @pytest.mark.asyncio
    async def test_oracle_price_band_inside_first_band(self, prices):
        assert await prices.oracle_price_band() == 0

    @pytest.mark.asyncio
    async def test_oracle_price_band_below(self, market, oracle, settings):
        oracle.amm_a.return_value = 100
        oracle.base_price.return_value = 2000 * E18
        oracle.oracle_price.return_value = 1970 * E18

        assert await PriceMath(market, oracle, settings).oracle_price_band() == 1

    @pytest.mark.asyncio
    async def test_oracle_price_band_above_base(self, market, oracle, settings):
        oracle.amm_a.return_value = 100
        oracle.base_price.return_value = 2000 * E18
        oracle.oracle_price.return_value = 2010 * E18

        assert await PriceMath(market, oracle, settings).oracle_price_band() == -1
