from decimal import Decimal

import pytest

from llamalend.core.errors import (
    AmountExceedsLiquidatable,
    AmountMustBePositive,
    ApprovalRequired,
    LoanNotFound,
    NotInLiquidation,
    SlippageOutOfRange,
)
from llamalend.core.liquidation import LiquidationEngine, calc_partial_frac, check_slippage
from llamalend.core.units import ZERO_ADDRESS
from llamalend.protocols.base import ContractCall, UserPosition

E18 = 10**18
USER = "0x" + "aa" * 20
TARGET = "0x" + "cc" * 20


@pytest.fixture
def liquidation(market, positions, state, submitter, allowances, settings):
    state.read_tokens_to_liquidate.return_value = 50 * E18
    return LiquidationEngine(market, positions, state, submitter, allowances, settings)


class TestCalcPartialFrac:
    def test_quarter(self):
        result = calc_partial_frac("25", "100")

        assert result.frac == 25 * 10**16
        assert result.frac_decimal == Decimal("0.25")
        assert result.amount == Decimal(25)

    def test_whole_position(self):
        assert calc_partial_frac(100, 100).frac == E18

    def test_round_trip_recovers_amount(self):
        result = calc_partial_frac("33", "99")

        recovered = Decimal(result.frac) / E18 * 99
        assert abs(recovered - 33) < Decimal("1e-15")

    def test_exceeds_liquidatable(self):
        with pytest.raises(AmountExceedsLiquidatable) as exc:
            calc_partial_frac("101", "100")
        assert exc.value.tokens_to_liquidate == Decimal(100)

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_must_be_positive(self, amount):
        with pytest.raises(AmountMustBePositive):
            calc_partial_frac(amount, "100")


class TestCheckSlippage:
    @pytest.mark.parametrize("value", [0.1, 1, 100])
    def test_valid(self, value):
        assert check_slippage(value) == Decimal(str(value))

    @pytest.mark.parametrize("value", [0, -1, 100.5])
    def test_out_of_range(self, value):
        with pytest.raises(SlippageOutOfRange):
            check_slippage(value)


class TestLiquidate:
    @pytest.mark.asyncio
    async def test_liquidate_min_amount_from_amm_borrowed(
        self, liquidation, state, submitter, market
    ):
        state.read_user_state.return_value = UserPosition(10 * E18, 5 * E18, 100 * E18, 10)

        assert await liquidation.liquidate(TARGET) == "0xabc"

        # 5 * (100 - 0.1) / 100
        submitter.submit.assert_awaited_once_with(
            ContractCall(market.controller, "liquidate", (TARGET, 4995 * 10**15)), 130_000
        )

    @pytest.mark.asyncio
    async def test_min_amount_uses_borrowed_decimals(
        self, market_factory, positions, state, submitter, allowances, settings
    ):
        market = market_factory(borrowed_decimals=6)
        state.read_user_state.return_value = UserPosition(10 * E18, 5 * 10**6, 100 * 10**6, 10)
        state.read_tokens_to_liquidate.return_value = 50 * 10**6
        engine = LiquidationEngine(market, positions, state, submitter, allowances, settings)

        await engine.liquidate(TARGET, slippage=1)

        call = submitter.submit.await_args.args[0]
        assert call.args == (TARGET, 4_950_000)

    @pytest.mark.asyncio
    async def test_approves_tokens_to_liquidate(self, liquidation, state, allowances, market):
        state.read_user_state.return_value = UserPosition(10 * E18, 5 * E18, 100 * E18, 10)

        await liquidation.liquidate(TARGET)

        allowances.ensure_allowance.assert_awaited_once_with(
            [market.borrowed_token.address], [50 * E18], market.controller
        )

    @pytest.mark.asyncio
    async def test_not_in_liquidation(self, liquidation, state, submitter):
        state.read_user_state.return_value = UserPosition(10 * E18, 0, 100 * E18, 10)

        with pytest.raises(NotInLiquidation):
            await liquidation.liquidate(TARGET)
        submitter.estimate_gas.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_loan(self, liquidation, submitter):
        with pytest.raises(LoanNotFound):
            await liquidation.liquidate(TARGET)
        submitter.estimate_gas.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_slippage_checked_before_state(self, liquidation, state):
        with pytest.raises(SlippageOutOfRange):
            await liquidation.liquidate(TARGET, slippage=0)
        state.read_user_state.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_estimate_gas_requires_approval(self, liquidation, allowances, submitter):
        allowances.has_allowance.return_value = False

        with pytest.raises(ApprovalRequired):
            await liquidation.liquidate_estimate_gas(TARGET)
        submitter.estimate_gas.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_estimate_gas(self, liquidation, state, submitter):
        state.read_user_state.return_value = UserPosition(10 * E18, 5 * E18, 100 * E18, 10)

        assert await liquidation.liquidate_estimate_gas(TARGET) == 100_000
        submitter.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_self_liquidate_targets_signer(self, liquidation, state, submitter, market):
        state.read_user_state.return_value = UserPosition(10 * E18, 5 * E18, 100 * E18, 10)

        await liquidation.self_liquidate()

        state.read_user_state.assert_awaited_once_with(market, USER)
        assert submitter.submit.await_args.args[0].args[0] == USER

    @pytest.mark.asyncio
    async def test_tokens_to_liquidate(self, liquidation, state, market):
        assert await liquidation.tokens_to_liquidate(TARGET) == Decimal(50)
        state.read_tokens_to_liquidate.assert_awaited_once_with(market, TARGET)


class TestPartialLiquidate:
    @pytest.mark.asyncio
    async def test_calc_partial_frac_from_chain(self, liquidation):
        result = await liquidation.calc_partial_frac("10", TARGET)
        assert result.frac == 2 * 10**17

    @pytest.mark.asyncio
    async def test_calc_partial_frac_rejects_excess(self, liquidation):
        with pytest.raises(AmountExceedsLiquidatable):
            await liquidation.calc_partial_frac("51", TARGET)

    @pytest.mark.asyncio
    async def test_partial_liquidate(self, liquidation, state, submitter, allowances, market):
        state.read_user_state.return_value = UserPosition(10 * E18, 5 * E18, 100 * E18, 10)
        frac = calc_partial_frac("25", "100")

        await liquidation.partial_liquidate(TARGET, frac)

        # 5 * 0.25 * (100 - 0.1) / 100
        expected = ContractCall(
            market.controller,
            "liquidate_extended",
            (TARGET, 124875 * 10**13, 25 * 10**16, ZERO_ADDRESS, []),
        )
        submitter.submit.assert_awaited_once_with(expected, 130_000)
        allowances.ensure_allowance.assert_awaited_once_with(
            [market.borrowed_token.address], [25 * E18], market.controller
        )

    @pytest.mark.asyncio
    async def test_partial_self_liquidate_estimate_gas(self, liquidation, state, submitter):
        state.read_user_state.return_value = UserPosition(10 * E18, 5 * E18, 100 * E18, 10)

        gas = await liquidation.partial_self_liquidate_estimate_gas(calc_partial_frac(1, 2))

        assert gas == 100_000
        assert submitter.estimate_gas.await_args.args[0].args[0] == USER
