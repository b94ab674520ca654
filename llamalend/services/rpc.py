"""RPC access with endpoint fallback and client-side rate limiting.

Read calls made by the web3-backed collaborators go through
``FallbackWeb3Provider.execute_with_fallback`` so a failing node is put in
cooldown and the next configured endpoint takes over.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List

from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.eth import AsyncEth

from llamalend.config import get_settings
from llamalend.services.metrics import record_rpc_error

logger = logging.getLogger(__name__)


@dataclass
class RPCEndpoint:
    url: str
    name: str
    priority: int = 0
    failures: int = 0
    last_failure: float = 0

    def in_cooldown(self, now: float, cooldown_seconds: float) -> bool:
        return self.failures > 0 and now < self.last_failure + cooldown_seconds


class RateLimiter:
    """Spaces calls at least ``1 / calls_per_second`` apart."""

    def __init__(self, calls_per_second: float = 10):
        self.min_interval = 1.0 / calls_per_second if calls_per_second > 0 else 0.0
        self.last_call_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            elapsed = time.monotonic() - self.last_call_time
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self.last_call_time = time.monotonic()


def _make_web3(url: str) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(url), modules={"eth": (AsyncEth,)})


class FallbackWeb3Provider:
    """AsyncWeb3 instances for several endpoints, tried in priority order."""

    FAILURE_COOLDOWN_SECONDS = 60

    def __init__(
        self,
        endpoints: List[str] | None = None,
        calls_per_second: float | None = None,
    ):
        settings = get_settings()
        urls = endpoints or settings.get_rpc_urls()
        self._endpoints = [
            RPCEndpoint(url=url, name="primary" if i == 0 else f"fallback_{i}", priority=i)
            for i, url in enumerate(urls)
        ]
        self._rate_limiter = RateLimiter(
            calls_per_second if calls_per_second is not None else settings.rpc_calls_per_second
        )
        self._web3_instances: Dict[str, AsyncWeb3] = {}
        self._calls = 0
        self._errors = 0

    @property
    def endpoints(self) -> List[RPCEndpoint]:
        return list(self._endpoints)

    def _get_web3_for_endpoint(self, endpoint: RPCEndpoint) -> AsyncWeb3:
        if endpoint.url not in self._web3_instances:
            self._web3_instances[endpoint.url] = _make_web3(endpoint.url)
        return self._web3_instances[endpoint.url]

    def _get_available_endpoint(self) -> RPCEndpoint | None:
        """Healthiest endpoint not in cooldown, else the least failing one."""
        now = time.time()
        ordered = sorted(self._endpoints, key=lambda e: (e.failures, e.priority))
        for endpoint in ordered:
            if endpoint.in_cooldown(now, self.FAILURE_COOLDOWN_SECONDS):
                continue
            if endpoint.failures > 0:
                endpoint.failures = 0
            return endpoint
        return ordered[0] if ordered else None

    def _mark_endpoint_failed(self, endpoint: RPCEndpoint, error: Exception):
        endpoint.failures += 1
        endpoint.last_failure = time.time()
        self._errors += 1
        record_rpc_error(endpoint.name, error)
        logger.warning(
            f"RPC endpoint {endpoint.name} failed ({type(error).__name__}: {error}), "
            f"total failures: {endpoint.failures}"
        )

    def get_web3(self) -> AsyncWeb3:
        """AsyncWeb3 bound to the currently preferred endpoint."""
        endpoint = self._get_available_endpoint()
        if endpoint is None:
            raise RuntimeError("No RPC endpoints configured")
        return self._get_web3_for_endpoint(endpoint)

    async def execute_with_fallback(
        self, func: Callable[..., Awaitable[Any]], *args, **kwargs
    ) -> Any:
        """Run ``func(web3, *args, **kwargs)``, moving to the next endpoint on failure."""
        last_error: Exception | None = None

        for _ in range(len(self._endpoints)):
            endpoint = self._get_available_endpoint()
            if endpoint is None:
                break
            await self._rate_limiter.acquire()
            self._calls += 1
            try:
                result = await func(self._get_web3_for_endpoint(endpoint), *args, **kwargs)
            except Exception as e:
                last_error = e
                self._mark_endpoint_failed(endpoint, e)
                continue
            endpoint.failures = 0
            return result

        raise last_error or RuntimeError("All RPC endpoints failed")

    @property
    def stats(self) -> dict:
        return {
            "calls": self._calls,
            "errors": self._errors,
            "endpoints": [
                {"name": e.name, "failures": e.failures, "priority": e.priority}
                for e in self._endpoints
            ],
        }


_web3_provider: FallbackWeb3Provider | None = None


def get_web3_provider() -> FallbackWeb3Provider:
    """Get the shared fallback provider."""
    global _web3_provider
    if _web3_provider is None:
        _web3_provider = FallbackWeb3Provider()
    return _web3_provider


def get_web3() -> AsyncWeb3:
    """AsyncWeb3 on the preferred endpoint of the shared provider."""
    return get_web3_provider().get_web3()
