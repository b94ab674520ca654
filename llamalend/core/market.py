"""One lending market with every module wired to the same collaborators."""

from __future__ import annotations

import logging

from llamalend.config import Settings, get_settings
from llamalend.core.bands import BandMath
from llamalend.core.errors import AddressRequired
from llamalend.core.liquidation import LiquidationEngine
from llamalend.core.loan import LoanEngine
from llamalend.core.position import UserPositionReader
from llamalend.core.prices import PriceMath
from llamalend.core.stats import MarketStats
from llamalend.core.swap import SwapQuoter
from llamalend.protocols.base import (
    AllowanceManager,
    AmmReader,
    MarketDescriptor,
    OracleReader,
    StateReader,
    TransactionSubmitter,
)
from llamalend.protocols.controller import Web3MarketReader
from llamalend.protocols.erc20 import Web3AllowanceManager
from llamalend.protocols.submitter import Web3TransactionSubmitter
from llamalend.services.api import StatisticsApiClient, get_api_client
from llamalend.services.rpc import FallbackWeb3Provider, get_web3_provider

logger = logging.getLogger(__name__)


class LendMarket:
    """Facade exposing ``user``, ``prices``, ``bands``, ``loan``, ``swap``,
    ``liquidation`` and ``stats`` for a single market.

    All modules share one ``UserPositionReader`` so a submission made through
    any engine evicts the same cached user state.
    """

    def __init__(
        self,
        market: MarketDescriptor,
        state: StateReader,
        oracle: OracleReader,
        amm: AmmReader,
        submitter: TransactionSubmitter,
        allowances: AllowanceManager,
        api: StatisticsApiClient | None = None,
        signer_address: str | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.descriptor = market
        self.user = UserPositionReader(
            market, state, amm=amm, api=api, signer_address=signer_address,
            oracle=oracle, settings=settings,
        )
        self.prices = PriceMath(market, oracle, settings)
        self.bands = BandMath(market, oracle, prices=self.prices, settings=settings)
        self.loan = LoanEngine(
            market, self.user, state, oracle, submitter, allowances,
            bands=self.bands, settings=settings,
        )
        self.swap = SwapQuoter(market, self.user, amm, submitter, allowances, settings)
        self.liquidation = LiquidationEngine(
            market, self.user, state, submitter, allowances, settings
        )
        self.stats = MarketStats(
            market, api=api, settings=settings, state=state, oracle=oracle, amm=amm
        )

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def signer_address(self) -> str | None:
        return self.user.signer_address

    @classmethod
    def from_web3(
        cls,
        market: MarketDescriptor,
        signer_address: str | None = None,
        provider: FallbackWeb3Provider | None = None,
        settings: Settings | None = None,
    ) -> "LendMarket":
        """Build a market backed by the web3 collaborators.

        Without ``signer_address`` the market is read-only: previews work,
        approvals and submissions raise ``AddressRequired``.
        """
        settings = settings or get_settings()
        provider = provider or get_web3_provider()
        reader = Web3MarketReader(provider)

        if signer_address:
            submitter = Web3TransactionSubmitter(signer_address, provider)
            submitter.register_market(market.controller, market.amm)
            allowances = Web3AllowanceManager(signer_address, provider, settings=settings)
        else:
            submitter = _ReadOnlySubmitter()
            allowances = _ReadOnlyAllowances()

        logger.info(f"{market.name}: controller={market.controller} amm={market.amm}")
        return cls(
            market, reader, reader, reader, submitter, allowances,
            api=get_api_client(), signer_address=signer_address, settings=settings,
        )


class _ReadOnlySubmitter(TransactionSubmitter):
    async def estimate_gas(self, call):
        raise AddressRequired()

    async def submit(self, call, gas_limit):
        raise AddressRequired()


class _ReadOnlyAllowances(AllowanceManager):
    async def has_allowance(self, tokens, amounts, owner, spender):
        raise AddressRequired()

    async def ensure_allowance(self, tokens, amounts, spender):
        raise AddressRequired()

    async def ensure_allowance_estimate_gas(self, tokens, amounts, spender):
        raise AddressRequired()
