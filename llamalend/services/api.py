"""Statistics API client.

Aggregate market data, pool listings (used to build USD price dictionaries)
and per-user collateral history come from the public Curve APIs. Every read
goes through a ``MemoizedCache`` so repeated queries within the TTL cost one
request.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List

import aiohttp

from llamalend.config import Settings, get_settings
from llamalend.core.errors import ApiError
from llamalend.services.cache import memoize
from llamalend.services.metrics import record_api_request

logger = logging.getLogger(__name__)

POOL_TYPES = (
    "main",
    "crypto",
    "factory",
    "factory-crvusd",
    "factory-crypto",
    "factory-twocrypto",
    "factory-tricrypto",
    "factory-stable-ng",
)


@dataclass(frozen=True)
class UserCollateral:
    """Deposit history of one borrower, as reported by the prices API."""
    total_borrowed: Decimal
    total_deposit_precise: Decimal
    total_deposit_from_user_precise: Decimal
    total_deposit_from_user: Decimal
    total_deposit_usd_value: Decimal
    total_deposit_from_user_usd_value: Decimal

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "UserCollateral":
        def num(key: str) -> Decimal:
            value = data.get(key)
            return Decimal(str(value)) if value is not None else Decimal(0)

        return cls(
            total_borrowed=num("total_borrowed"),
            total_deposit_precise=num("total_deposit_precise"),
            total_deposit_from_user_precise=num("total_deposit_from_user_precise"),
            total_deposit_from_user=num("total_deposit_from_user"),
            total_deposit_usd_value=num("total_deposit_usd_value"),
            total_deposit_from_user_usd_value=num("total_deposit_from_user_usd_value"),
        )


def create_usd_prices_dict(pools_by_type: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    """Lowercased token address -> USD price taken from the highest-TVL pool.

    LP tokens are priced at ``usdTotal / totalSupply``; coins and gauge reward
    tokens use the price the API attaches to them.
    """
    candidates: Dict[str, List[tuple]] = {}

    def add(address: str, price: float, tvl: float) -> None:
        candidates.setdefault(address.lower(), []).append((price, tvl))

    for pools in pools_by_type:
        for pool in pools.get("poolData", []):
            tvl = pool.get("usdTotal") or 0
            lp_token = pool.get("lpTokenAddress") or pool["address"]
            total_supply = (pool.get("totalSupply") or 0) / 10**18
            add(lp_token, tvl / total_supply if tvl and total_supply else 0, tvl)

            for coin in pool.get("coins", []):
                if isinstance(coin.get("usdPrice"), (int, float)):
                    add(coin["address"], coin["usdPrice"], tvl)

            for reward in pool.get("gaugeRewards") or []:
                if isinstance(reward.get("tokenPrice"), (int, float)):
                    add(reward["tokenAddress"], reward["tokenPrice"], tvl)

    prices: Dict[str, float] = {}
    for address, items in candidates.items():
        best_price, best_tvl = items[0]
        for price, tvl in items[1:]:
            # Ties keep the first pool seen
            if tvl > best_tvl:
                best_price, best_tvl = price, tvl
        prices[address] = best_price
    return prices


class StatisticsApiClient:
    """Cached access to the statistics and prices APIs."""

    def __init__(
        self,
        settings: Settings | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self._settings = settings or get_settings()
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=self._settings.request_timeout_seconds)

        ttl = self._settings.stats_cache_ttl_seconds
        self._pools = memoize(self._fetch_pools, ttl, name="api.pools")
        self._markets_data = memoize(self._fetch_markets_data, ttl, name="api.markets_data")
        self._user_collateral = memoize(
            self._fetch_user_collateral,
            self._settings.user_collateral_cache_ttl_seconds,
            name="api.user_collateral",
        )

    async def _fetch_json(
        self, url: str, endpoint: str, params: Dict[str, str] | None = None
    ) -> Any:
        try:
            if self._session is not None:
                return await self._request(self._session, url, endpoint, params)
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                return await self._request(session, url, endpoint, params)
        except aiohttp.ClientError as e:
            record_api_request(endpoint, "error")
            logger.error(f"Statistics API request to {url} failed: {e}")
            raise ApiError(url, reason=str(e)) from e
        except asyncio.TimeoutError as e:
            record_api_request(endpoint, "timeout")
            logger.error(f"Statistics API request to {url} timed out")
            raise ApiError(url, reason="timeout") from e

    async def _request(
        self,
        session: aiohttp.ClientSession,
        url: str,
        endpoint: str,
        params: Dict[str, str] | None,
    ) -> Any:
        headers = {"accept": "application/json"}
        async with session.get(url, params=params, headers=headers, timeout=self._timeout) as response:
            if response.status != 200:
                record_api_request(endpoint, str(response.status))
                logger.error(f"Statistics API returned {response.status} for {url}")
                raise ApiError(url, status=response.status, reason=response.reason or "")
            record_api_request(endpoint, "200")
            return await response.json()

    async def _fetch_pools(self, network: str, pool_type: str) -> Dict[str, Any]:
        payload = await self._fetch_json(
            f"{self._settings.api_url}/getPools/{network}/{pool_type}", "getPools"
        )
        data = (payload or {}).get("data")
        return data or {"poolData": [], "tvl": 0, "tvlAll": 0}

    async def _fetch_markets_data(self, network: str) -> Dict[str, Any]:
        payload = await self._fetch_json(
            f"{self._settings.api_url}/getLendingVaults/{network}/oneway", "getLendingVaults"
        )
        return payload["data"]

    async def _fetch_user_collateral(
        self, network: str, controller: str, user: str
    ) -> UserCollateral:
        data = await self._fetch_json(
            self._user_collateral_url(network, controller, user), "collateral_events"
        )
        return UserCollateral.from_api(data)

    def _user_collateral_url(self, network: str, controller: str, user: str) -> str:
        return (
            f"{self._settings.prices_api_url}/v1/lending/collateral_events/"
            f"{network}/{controller}/{user}"
        )

    async def get_pools(self, network: str, pool_type: str) -> Dict[str, Any]:
        return await self._pools(network, pool_type)

    async def get_all_pools(self, network: str) -> List[Dict[str, Any]]:
        return list(await asyncio.gather(
            *(self.get_pools(network, pool_type) for pool_type in POOL_TYPES)
        ))

    async def get_usd_prices(self, network: str) -> Dict[str, float]:
        return create_usd_prices_dict(await self.get_all_pools(network))

    async def get_usd_rate(self, network: str, token_address: str) -> float:
        """USD price of a token, 0 when no pool lists it."""
        prices = await self.get_usd_prices(network)
        return prices.get(token_address.lower(), 0)

    async def get_markets_data(self, network: str) -> Dict[str, Any]:
        return await self._markets_data(network)

    async def get_user_collateral(self, network: str, controller: str, user: str) -> UserCollateral:
        return await self._user_collateral(network, controller, user)

    async def force_user_collateral_update(
        self, network: str, controller: str, user: str, new_tx: str
    ) -> None:
        """Tell the API about a fresh transaction and drop the cached history."""
        await self._fetch_json(
            self._user_collateral_url(network, controller, user),
            "collateral_events",
            params={"new_tx": new_tx},
        )
        self._user_collateral.delete(network, controller, user)

    def clear(self) -> None:
        self._pools.clear()
        self._markets_data.clear()
        self._user_collateral.clear()


_api_client: StatisticsApiClient | None = None


def get_api_client() -> StatisticsApiClient:
    """Get the shared StatisticsApiClient instance."""
    global _api_client
    if _api_client is None:
        _api_client = StatisticsApiClient()
    return _api_client
