from unittest.mock import AsyncMock

import pytest

import llamalend.services.api as api_module
import llamalend.services.rpc as rpc_module
from llamalend.config import Settings
from llamalend.core.position import UserPositionReader
from llamalend.protocols.base import (
    AllowanceManager,
    AmmReader,
    MarketDescriptor,
    OracleReader,
    StateReader,
    Token,
    TransactionSubmitter,
    UserPosition,
)

CONTROLLER = "0x" + "11" * 20
AMM = "0x" + "22" * 20
COLLATERAL = "0x" + "33" * 20
BORROWED = "0x" + "44" * 20
VAULT = "0x" + "55" * 20
USER = "0x" + "aa" * 20


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset the shared API client and RPC provider between tests."""
    api_module._api_client = None
    rpc_module._web3_provider = None
    yield
    api_module._api_client = None
    rpc_module._web3_provider = None


@pytest.fixture
def settings():
    return Settings(
        rpc_url="http://127.0.0.1:8545",
        fallback_rpc_urls="",
        network="ethereum",
        stats_cache_ttl_seconds=300,
        user_state_cache_ttl_seconds=10,
        allowance_cache_ttl_seconds=5,
        default_slippage=0.1,
    )


@pytest.fixture
def market_factory():
    def create_market(
        min_bands: int = 4,
        max_bands: int = 50,
        collateral_decimals: int = 18,
        borrowed_decimals: int = 18,
    ) -> MarketDescriptor:
        return MarketDescriptor(
            name="wsteth-long",
            controller=CONTROLLER,
            amm=AMM,
            collateral_token=Token(COLLATERAL, "wstETH", collateral_decimals),
            borrowed_token=Token(BORROWED, "crvUSD", borrowed_decimals),
            vault=VAULT,
            min_bands=min_bands,
            max_bands=max_bands,
        )

    return create_market


@pytest.fixture
def market(market_factory):
    return market_factory()


@pytest.fixture
def state():
    reader = AsyncMock(spec=StateReader)
    reader.read_user_state.return_value = UserPosition(0, 0, 0, 0)
    reader.read_loan_exists.return_value = False
    reader.read_user_ticks.return_value = (10, 13)
    return reader


@pytest.fixture
def oracle():
    return AsyncMock(spec=OracleReader)


@pytest.fixture
def amm():
    return AsyncMock(spec=AmmReader)


@pytest.fixture
def submitter():
    mock = AsyncMock(spec=TransactionSubmitter)
    mock.estimate_gas.return_value = 100_000
    mock.submit.return_value = "0xabc"
    return mock


@pytest.fixture
def allowances():
    mock = AsyncMock(spec=AllowanceManager)
    mock.has_allowance.return_value = True
    mock.ensure_allowance.return_value = []
    mock.ensure_allowance_estimate_gas.return_value = 0
    return mock


@pytest.fixture
def positions(market, state, amm, settings):
    return UserPositionReader(market, state, amm=amm, signer_address=USER, settings=settings)
