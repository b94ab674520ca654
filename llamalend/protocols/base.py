"""Market data models and the collaborator interfaces the engines depend on.

The engines never talk to web3 directly. They read chain state through
``StateReader``, ``OracleReader`` and ``AmmReader``, hand transactions to a
``TransactionSubmitter`` and manage ERC20 approvals through an
``AllowanceManager``. Default web3-backed implementations live next to this
module; tests substitute mocks.

All amounts crossing these interfaces are raw integers in token base units.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple


@dataclass(frozen=True)
class Token:
    address: str
    symbol: str
    decimals: int = 18


@dataclass(frozen=True)
class MarketDescriptor:
    """Static description of one lending market.

    Coin indices used by the AMM follow the contract order:
    0 is the borrowed token, 1 is the collateral token.
    """
    name: str
    controller: str
    amm: str
    collateral_token: Token
    borrowed_token: Token
    vault: str | None = None
    min_bands: int = 4
    max_bands: int = 50

    def __post_init__(self):
        if self.min_bands <= 0 or self.max_bands <= 0:
            raise ValueError(
                f"min_bands and max_bands must be positive, got {self.min_bands}/{self.max_bands}"
            )
        if self.min_bands > self.max_bands:
            raise ValueError(
                f"min_bands ({self.min_bands}) must not exceed max_bands ({self.max_bands})"
            )

    @property
    def coin_addresses(self) -> Tuple[str, str]:
        return (self.borrowed_token.address, self.collateral_token.address)

    @property
    def coin_decimals(self) -> Tuple[int, int]:
        return (self.borrowed_token.decimals, self.collateral_token.decimals)

    @property
    def ranges(self) -> range:
        """Every allowed band count, ascending."""
        return range(self.min_bands, self.max_bands + 1)


@dataclass(frozen=True)
class UserPosition:
    """Raw on-chain snapshot of a borrower (controller.user_state)."""
    collateral: int
    borrowed: int   # borrowed token already held by the AMM (soft liquidation)
    debt: int
    n: int          # number of bands

    @property
    def has_loan(self) -> bool:
        return self.debt > 0

    @property
    def in_soft_liquidation(self) -> bool:
        return self.borrowed > 0


@dataclass(frozen=True)
class ContractCall:
    """A mutating contract call, ready for gas estimation or submission."""
    address: str
    method: str
    args: Tuple = field(default_factory=tuple)

    def describe(self) -> str:
        return f"{self.method}@{self.address}"


class StateReader(ABC):
    @abstractmethod
    async def read_user_state(self, market: MarketDescriptor, address: str) -> UserPosition:
        """controller.user_state(address)."""
        pass

    @abstractmethod
    async def read_tokens_to_liquidate(self, market: MarketDescriptor, address: str) -> int:
        pass

    @abstractmethod
    async def read_min_collateral(self, market: MarketDescriptor, debt: int, n: int) -> int:
        pass

    @abstractmethod
    async def read_loan_exists(self, market: MarketDescriptor, address: str) -> bool:
        pass

    @abstractmethod
    async def read_user_ticks(self, market: MarketDescriptor, address: str) -> Tuple[int, int]:
        """amm.read_user_tick_numbers(address) as (n1, n2)."""
        pass

    @abstractmethod
    async def read_user_prices(self, market: MarketDescriptor, address: str) -> Tuple[int, int]:
        """controller.user_prices(address) as (upper, lower)."""
        pass

    @abstractmethod
    async def read_health(self, market: MarketDescriptor, address: str, full: bool) -> int:
        pass

    @abstractmethod
    async def health_calculator(
        self,
        market: MarketDescriptor,
        address: str,
        d_collateral: int,
        d_debt: int,
        full: bool,
        n: int,
    ) -> int:
        """Projected health (1e18 = 100%) after the given deltas."""
        pass

    @abstractmethod
    async def read_liquidation_discount(self, market: MarketDescriptor) -> int:
        pass

    @abstractmethod
    async def read_loan_discount(self, market: MarketDescriptor) -> int:
        pass


class OracleReader(ABC):
    @abstractmethod
    async def price_at_tick_down(self, market: MarketDescriptor, tick: int) -> int:
        pass

    @abstractmethod
    async def price_at_tick_up(self, market: MarketDescriptor, tick: int) -> int:
        pass

    @abstractmethod
    async def debt_n1(self, market: MarketDescriptor, collateral: int, debt: int, range_: int) -> int:
        pass

    @abstractmethod
    async def max_borrowable(
        self, market: MarketDescriptor, collateral: int, range_: int, existing_debt: int = 0
    ) -> int:
        pass

    async def max_borrowable_all_ranges(
        self, market: MarketDescriptor, collateral: int, ranges: Sequence[int]
    ) -> List[int]:
        """One max_borrowable per range. Batched implementations override this."""
        return list(await asyncio.gather(
            *(self.max_borrowable(market, collateral, n, 0) for n in ranges)
        ))

    async def debt_n1_all_ranges(
        self, market: MarketDescriptor, collateral: int, debt: int, ranges: Sequence[int]
    ) -> List[int]:
        return list(await asyncio.gather(
            *(self.debt_n1(market, collateral, debt, n) for n in ranges)
        ))

    @abstractmethod
    async def amm_a(self, market: MarketDescriptor) -> int:
        pass

    @abstractmethod
    async def base_price(self, market: MarketDescriptor) -> int:
        pass

    @abstractmethod
    async def oracle_price(self, market: MarketDescriptor) -> int:
        pass

    @abstractmethod
    async def amm_price(self, market: MarketDescriptor) -> int:
        """Current AMM spot price (amm.get_p)."""
        pass


class AmmReader(ABC):
    @abstractmethod
    async def get_dy(self, market: MarketDescriptor, i: int, j: int, amount: int) -> int:
        pass

    @abstractmethod
    async def get_dx(self, market: MarketDescriptor, i: int, j: int, amount: int) -> int:
        pass

    @abstractmethod
    async def get_dxdy(self, market: MarketDescriptor, i: int, j: int, amount: int) -> Tuple[int, int]:
        """(amount actually taken in, amount out) for at most ``amount`` in."""
        pass

    @abstractmethod
    async def get_y_up(self, market: MarketDescriptor, address: str) -> int:
        pass

    @abstractmethod
    async def get_xy(self, market: MarketDescriptor, address: str) -> Tuple[List[int], List[int]]:
        """amm.get_xy(address): per-band (borrowed, collateral) from n1 to n2."""
        pass

    @abstractmethod
    async def bands_x(self, market: MarketDescriptor, n: int) -> int:
        """Borrowed token held in band ``n``, always 18 decimals."""
        pass

    @abstractmethod
    async def bands_y(self, market: MarketDescriptor, n: int) -> int:
        """Collateral held in band ``n``, always 18 decimals."""
        pass

    async def bands_balances(
        self, market: MarketDescriptor, bands: Sequence[int]
    ) -> List[Tuple[int, int]]:
        """(bands_x, bands_y) per band. Batched implementations override this."""
        async def read(n: int) -> Tuple[int, int]:
            return await self.bands_x(market, n), await self.bands_y(market, n)

        return list(await asyncio.gather(*(read(n) for n in bands)))

    @abstractmethod
    async def active_band(self, market: MarketDescriptor) -> int:
        """amm.active_band_with_skip()."""
        pass

    @abstractmethod
    async def min_band(self, market: MarketDescriptor) -> int:
        pass

    @abstractmethod
    async def max_band(self, market: MarketDescriptor) -> int:
        pass

    @abstractmethod
    async def fee(self, market: MarketDescriptor) -> int:
        pass

    @abstractmethod
    async def admin_fee(self, market: MarketDescriptor) -> int:
        pass


class TransactionSubmitter(ABC):
    @abstractmethod
    async def estimate_gas(self, call: ContractCall) -> int:
        pass

    @abstractmethod
    async def submit(self, call: ContractCall, gas_limit: int) -> str:
        """Send the call and return its transaction hash."""
        pass


class AllowanceManager(ABC):
    @abstractmethod
    async def has_allowance(
        self, tokens: Sequence[str], amounts: Sequence[int], owner: str, spender: str
    ) -> bool:
        pass

    @abstractmethod
    async def ensure_allowance(
        self, tokens: Sequence[str], amounts: Sequence[int], spender: str
    ) -> List[str]:
        """Approve where the allowance is short; returns the approval tx hashes."""
        pass

    @abstractmethod
    async def ensure_allowance_estimate_gas(
        self, tokens: Sequence[str], amounts: Sequence[int], spender: str
    ) -> int:
        pass
