from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from eth_abi import encode

from llamalend.config import Settings
from llamalend.core.errors import MulticallError
from llamalend.services.multicall import MulticallService
from llamalend.services.rpc import FallbackWeb3Provider, RateLimiter, get_web3_provider

TARGET = "0x" + "11" * 20


@pytest.fixture
def provider():
    with patch("llamalend.services.rpc._make_web3", side_effect=lambda url: MagicMock(name=url)):
        yield FallbackWeb3Provider(endpoints=["http://primary", "http://backup"], calls_per_second=0)


class TestSettingsRpcUrls:
    def test_fallbacks_follow_primary(self):
        settings = Settings(rpc_url="http://a", fallback_rpc_urls="http://b, http://c,,http://a")
        assert settings.get_rpc_urls() == ["http://a", "http://b", "http://c"]

    def test_slippage_validated(self):
        with pytest.raises(ValueError):
            Settings(default_slippage=0)


class TestFallbackWeb3Provider:
    def test_endpoint_names(self, provider):
        assert [e.name for e in provider.endpoints] == ["primary", "fallback_1"]

    @pytest.mark.asyncio
    async def test_success_on_primary(self, provider):
        func = AsyncMock(return_value="ok")

        assert await provider.execute_with_fallback(func, 1, key="v") == "ok"

        web3 = func.await_args.args[0]
        assert web3._mock_name == "http://primary"
        assert func.await_args.args[1:] == (1,)
        assert func.await_args.kwargs == {"key": "v"}

    @pytest.mark.asyncio
    async def test_falls_back_on_error(self, provider):
        func = AsyncMock(side_effect=[ConnectionError("down"), "ok"])

        assert await provider.execute_with_fallback(func) == "ok"
        assert func.await_args.args[0]._mock_name == "http://backup"
        assert provider.endpoints[0].failures == 1
        assert provider.stats["errors"] == 1

    @pytest.mark.asyncio
    async def test_failed_endpoint_in_cooldown(self, provider):
        func = AsyncMock(side_effect=[ConnectionError("down"), "ok", "ok"])
        await provider.execute_with_fallback(func)

        await provider.execute_with_fallback(func)
        assert func.await_args.args[0]._mock_name == "http://backup"

    @pytest.mark.asyncio
    async def test_raises_last_error_when_all_fail(self, provider):
        func = AsyncMock(side_effect=[ConnectionError("first"), TimeoutError("second")])

        with pytest.raises(TimeoutError):
            await provider.execute_with_fallback(func)
        assert func.await_count == 2

    def test_get_web3_prefers_primary(self, provider):
        assert provider.get_web3()._mock_name == "http://primary"

    def test_shared_provider(self):
        with patch("llamalend.services.rpc._make_web3", return_value=MagicMock()):
            assert get_web3_provider() is get_web3_provider()


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_unlimited(self):
        limiter = RateLimiter(0)
        await limiter.acquire()
        await limiter.acquire()
        assert limiter.min_interval == 0


def create_multicall(results):
    web3 = MagicMock()
    contract = MagicMock()
    contract.functions.aggregate3.return_value.call = AsyncMock(return_value=results)
    web3.eth.contract.return_value = contract
    return MulticallService(web3), contract


class TestMulticallService:
    def test_build_call(self):
        multicall, _ = create_multicall([])

        call = multicall.build_call(
            TARGET, "max_borrowable(uint256,uint256,uint256)", ["uint256"] * 3, [1, 2, 3]
        )

        assert len(call.call_data) == 4 + 32 * 3
        assert call.call_data[4:] == encode(["uint256"] * 3, [1, 2, 3])
        assert call.target.lower() == TARGET
        assert call.allow_failure is False

    @pytest.mark.asyncio
    async def test_call_all_decodes_single_outputs(self):
        multicall, contract = create_multicall([
            (True, encode(["uint256"], [5])),
            (True, encode(["uint256"], [6])),
        ])
        calls = [
            multicall.build_call(TARGET, "f(uint256)", ["uint256"], [n]) for n in (1, 2)
        ]

        assert await multicall.call_all(calls, ["uint256"]) == [5, 6]
        sent = contract.functions.aggregate3.call_args.args[0]
        assert [c[1] for c in sent] == [False, False]

    @pytest.mark.asyncio
    async def test_call_all_keeps_tuples_for_multiple_outputs(self):
        multicall, _ = create_multicall([(True, encode(["uint256", "int256"], [1, -2]))])
        calls = [multicall.build_call(TARGET, "g()", [], [])]

        assert await multicall.call_all(calls, ["uint256", "int256"]) == [(1, -2)]

    @pytest.mark.asyncio
    async def test_failed_sub_call_raises(self):
        multicall, _ = create_multicall([
            (True, encode(["uint256"], [5])),
            (False, b""),
        ])
        calls = [multicall.build_call(TARGET, "f(uint256)", ["uint256"], [n]) for n in (1, 2)]

        with pytest.raises(MulticallError) as exc:
            await multicall.call_all(calls, ["uint256"])
        assert exc.value.index == 1

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        multicall, contract = create_multicall([])

        assert await multicall.execute([]) == []
        contract.functions.aggregate3.assert_not_called()
