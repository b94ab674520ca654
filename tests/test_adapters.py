from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from web3 import AsyncWeb3

from llamalend.core.errors import AddressRequired, MulticallError
from llamalend.core.market import LendMarket
from llamalend.core.units import MAX_ALLOWANCE
from llamalend.protocols.base import ContractCall, UserPosition
from llamalend.protocols.controller import Web3MarketReader
from llamalend.protocols.erc20 import Web3AllowanceManager
from llamalend.protocols.submitter import Web3TransactionSubmitter

E18 = 10**18
USER = "0x" + "aa" * 20
SPENDER = "0x" + "11" * 20
TOKEN = "0x" + "33" * 20


class FakeProvider:
    """Runs every call against one mocked web3 instance."""

    def __init__(self, web3):
        self.web3 = web3

    def get_web3(self):
        return self.web3

    async def execute_with_fallback(self, func, *args, **kwargs):
        return await func(self.web3, *args, **kwargs)


@pytest.fixture
def contract():
    return MagicMock()


@pytest.fixture
def web3(contract):
    mock = MagicMock()
    mock.eth.contract.return_value = contract
    mock.eth.wait_for_transaction_receipt = AsyncMock()
    return mock


@pytest.fixture
def provider(web3):
    return FakeProvider(web3)


class TestWeb3MarketReader:
    @pytest.fixture
    def reader(self, provider):
        return Web3MarketReader(provider)

    @pytest.mark.asyncio
    async def test_read_user_state(self, reader, contract, web3, market):
        contract.functions.user_state.return_value.call = AsyncMock(
            return_value=[2 * E18, 0, 1000 * E18, 10]
        )

        position = await reader.read_user_state(market, USER)

        assert position == UserPosition(2 * E18, 0, 1000 * E18, 10)
        contract.functions.user_state.assert_called_once_with(AsyncWeb3.to_checksum_address(USER))
        assert web3.eth.contract.call_args.kwargs["address"] == AsyncWeb3.to_checksum_address(
            market.controller
        )

    @pytest.mark.asyncio
    async def test_read_user_ticks_from_amm(self, reader, contract, web3, market):
        contract.functions.read_user_tick_numbers.return_value.call = AsyncMock(return_value=[10, 13])

        assert await reader.read_user_ticks(market, USER) == (10, 13)
        assert web3.eth.contract.call_args.kwargs["address"] == AsyncWeb3.to_checksum_address(
            market.amm
        )

    @pytest.mark.asyncio
    async def test_health_calculator_arguments(self, reader, contract, market):
        contract.functions.health_calculator.return_value.call = AsyncMock(return_value=5 * 10**16)

        assert await reader.health_calculator(market, USER, E18, -5, True, 10) == 5 * 10**16
        contract.functions.health_calculator.assert_called_once_with(
            AsyncWeb3.to_checksum_address(USER), E18, -5, True, 10
        )

    @pytest.mark.asyncio
    async def test_get_dxdy(self, reader, contract, market):
        contract.functions.get_dxdy.return_value.call = AsyncMock(return_value=[7, 9])
        assert await reader.get_dxdy(market, 0, 1, 100) == (7, 9)

    @pytest.mark.asyncio
    async def test_max_borrowable_all_ranges_uses_multicall(self, reader, contract, market_factory):
        market = market_factory(min_bands=4, max_bands=6)
        contract.functions.aggregate3.return_value.call = AsyncMock(return_value=[
            (True, encode(["uint256"], [v * E18])) for v in (100, 150, 90)
        ])

        result = await reader.max_borrowable_all_ranges(market, E18, list(market.ranges))

        assert result == [100 * E18, 150 * E18, 90 * E18]
        batch = contract.functions.aggregate3.call_args.args[0]
        assert len(batch) == 3
        assert batch[0][2][4:] == encode(["uint256"] * 3, [E18, 4, 0])

    @pytest.mark.asyncio
    async def test_debt_n1_all_ranges_decodes_signed(self, reader, contract, market):
        contract.functions.aggregate3.return_value.call = AsyncMock(return_value=[
            (True, encode(["int256"], [-3])),
            (True, encode(["int256"], [2])),
        ])

        assert await reader.debt_n1_all_ranges(market, E18, 100 * E18, [4, 5]) == [-3, 2]

    @pytest.mark.asyncio
    async def test_failed_batch_raises(self, reader, contract, market):
        contract.functions.aggregate3.return_value.call = AsyncMock(return_value=[(False, b"")])

        with pytest.raises(MulticallError):
            await reader.max_borrowable_all_ranges(market, E18, [4])

    @pytest.mark.asyncio
    async def test_get_xy_returns_lists(self, reader, contract, market):
        contract.functions.get_xy.return_value.call = AsyncMock(
            return_value=[(0, 5), (E18, 2 * E18)]
        )

        assert await reader.get_xy(market, USER) == ([0, 5], [E18, 2 * E18])
        contract.functions.get_xy.assert_called_once_with(AsyncWeb3.to_checksum_address(USER))

    @pytest.mark.asyncio
    async def test_active_band_skips_empty_bands(self, reader, contract, market):
        contract.functions.active_band_with_skip.return_value.call = AsyncMock(return_value=-7)

        assert await reader.active_band(market) == -7

    @pytest.mark.asyncio
    async def test_bands_balances_pairs_multicall_results(self, reader, contract, market):
        contract.functions.aggregate3.return_value.call = AsyncMock(return_value=[
            (True, encode(["uint256"], [v])) for v in (E18, 0, 0, 3 * E18)
        ])

        assert await reader.bands_balances(market, [4, 5]) == [(E18, 0), (0, 3 * E18)]
        batch = contract.functions.aggregate3.call_args.args[0]
        assert len(batch) == 4
        assert batch[1][2][4:] == encode(["int256"], [4])

    @pytest.mark.asyncio
    async def test_bands_balances_empty(self, reader, contract, market):
        assert await reader.bands_balances(market, []) == []
        contract.functions.aggregate3.assert_not_called()


class TestWeb3AllowanceManager:
    @pytest.fixture
    def manager(self, provider, settings):
        return Web3AllowanceManager(USER, provider, settings=settings)

    @pytest.mark.asyncio
    async def test_has_allowance(self, manager, contract):
        contract.functions.allowance.return_value.call = AsyncMock(return_value=100)

        assert await manager.has_allowance([TOKEN], [100], USER, SPENDER) is True
        assert await manager.has_allowance([TOKEN], [101], USER, SPENDER) is False
        # Second read served from cache
        assert contract.functions.allowance.return_value.call.await_count == 1

    @pytest.mark.asyncio
    async def test_ensure_allowance_approves_max(self, manager, contract, web3):
        contract.functions.allowance.return_value.call = AsyncMock(return_value=0)
        approve = contract.functions.approve.return_value
        approve.estimate_gas = AsyncMock(return_value=50_000)
        approve.transact = AsyncMock(return_value=b"\x01" * 32)

        tx_hashes = await manager.ensure_allowance([TOKEN], [E18], SPENDER)

        assert tx_hashes == ["0x" + "01" * 32]
        contract.functions.approve.assert_called_with(
            AsyncWeb3.to_checksum_address(SPENDER), MAX_ALLOWANCE
        )
        approve.transact.assert_awaited_once_with(
            {"from": AsyncWeb3.to_checksum_address(USER), "gas": 65_000}
        )
        web3.eth.wait_for_transaction_receipt.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ensure_allowance_refreshes_cache(self, manager, contract):
        contract.functions.allowance.return_value.call = AsyncMock(side_effect=[0, MAX_ALLOWANCE])
        approve = contract.functions.approve.return_value
        approve.estimate_gas = AsyncMock(return_value=50_000)
        approve.transact = AsyncMock(return_value=b"\x01" * 32)

        await manager.ensure_allowance([TOKEN], [E18], SPENDER)

        assert await manager.has_allowance([TOKEN], [E18], USER, SPENDER) is True

    @pytest.mark.asyncio
    async def test_sufficient_allowance_sends_nothing(self, manager, contract):
        contract.functions.allowance.return_value.call = AsyncMock(return_value=MAX_ALLOWANCE)
        approve = contract.functions.approve.return_value
        approve.transact = AsyncMock()

        assert await manager.ensure_allowance([TOKEN], [E18], SPENDER) == []
        assert await manager.ensure_allowance_estimate_gas([TOKEN], [E18], SPENDER) == 0
        approve.transact.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_estimate_gas_sums_approvals(self, manager, contract):
        contract.functions.allowance.return_value.call = AsyncMock(return_value=0)
        contract.functions.approve.return_value.estimate_gas = AsyncMock(return_value=46_000)

        other = "0x" + "44" * 20
        assert await manager.ensure_allowance_estimate_gas([TOKEN, other], [1, 1], SPENDER) == 92_000


class TestWeb3TransactionSubmitter:
    @pytest.fixture
    def submitter(self, provider, market):
        submitter = Web3TransactionSubmitter(USER, provider)
        submitter.register_market(market.controller, market.amm)
        return submitter

    @pytest.mark.asyncio
    async def test_estimate_gas(self, submitter, contract, market):
        contract.functions.repay.return_value.estimate_gas = AsyncMock(return_value=210_000)

        call = ContractCall(market.controller, "repay", (E18, USER, 9))
        assert await submitter.estimate_gas(call) == 210_000

        contract.functions.repay.assert_called_once_with(
            E18, AsyncWeb3.to_checksum_address(USER), 9
        )

    @pytest.mark.asyncio
    async def test_submit(self, submitter, contract, market):
        contract.functions.exchange.return_value.transact = AsyncMock(return_value=b"\xab" * 32)

        tx_hash = await submitter.submit(ContractCall(market.amm, "exchange", (1, 0, E18, 5)), 300_000)

        assert tx_hash == "0x" + "ab" * 32
        contract.functions.exchange.return_value.transact.assert_awaited_once_with(
            {"from": AsyncWeb3.to_checksum_address(USER), "gas": 300_000}
        )

    @pytest.mark.asyncio
    async def test_unknown_contract(self, submitter):
        with pytest.raises(KeyError):
            await submitter.estimate_gas(ContractCall("0x" + "99" * 20, "repay", ()))


class TestLendMarket:
    def test_modules_share_user_reader(self, market, state, oracle, amm, submitter, allowances, settings):
        lend_market = LendMarket(
            market, state, oracle, amm, submitter, allowances,
            signer_address=USER, settings=settings,
        )

        assert lend_market.name == market.name
        assert lend_market.signer_address == USER
        assert lend_market.loan.signer_address == USER
        assert lend_market.swap.signer_address == USER
        assert lend_market.liquidation.signer_address == USER
        assert lend_market.loan.bands is lend_market.bands

    @pytest.mark.asyncio
    async def test_read_only_market_refuses_writes(self, market, provider, settings):
        lend_market = LendMarket.from_web3(market, provider=provider, settings=settings)

        with pytest.raises(AddressRequired):
            await lend_market.swap.swap_approve(0, "1")
        with pytest.raises(AddressRequired):
            await lend_market.loan.create_loan("1", "1000", 10)

    @pytest.mark.asyncio
    async def test_web3_market_reads_through_provider(self, market, provider, contract, settings):
        contract.functions.user_state.return_value.call = AsyncMock(
            return_value=[E18, 0, 100 * E18, 4]
        )
        lend_market = LendMarket.from_web3(market, signer_address=USER, provider=provider, settings=settings)

        state = await lend_market.user.user_state_human()
        assert state.debt == 100
