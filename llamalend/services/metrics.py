"""
Prometheus metrics for the LlamaLend SDK.

Counters live in a private registry so embedding applications can expose
them next to their own without name clashes.
"""

import time
from functools import wraps
from typing import Callable

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
)

REGISTRY = CollectorRegistry()

SDK_INFO = Info(
    "llamalend_sdk",
    "LlamaLend SDK info",
    registry=REGISTRY,
)
SDK_INFO.info({
    "version": "0.1.0",
    "name": "llamalend-sdk",
})

# Cache metrics
CACHE_REQUESTS_TOTAL = Counter(
    "llamalend_cache_requests_total",
    "Memoized cache lookups",
    ["cache", "result"],
    registry=REGISTRY,
)

CACHE_EVICTIONS_TOTAL = Counter(
    "llamalend_cache_evictions_total",
    "Memoized cache evictions",
    ["cache", "reason"],
    registry=REGISTRY,
)

# Contract call metrics
CONTRACT_CALLS_TOTAL = Counter(
    "llamalend_contract_calls_total",
    "Total number of contract read calls",
    ["contract", "method", "status"],
    registry=REGISTRY,
)

CONTRACT_CALL_DURATION_SECONDS = Histogram(
    "llamalend_contract_call_duration_seconds",
    "Contract read call duration in seconds",
    ["contract", "method"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

RPC_ERRORS_TOTAL = Counter(
    "llamalend_rpc_errors_total",
    "Total number of RPC errors",
    ["endpoint", "error_type"],
    registry=REGISTRY,
)

# Statistics API metrics
API_REQUESTS_TOTAL = Counter(
    "llamalend_api_requests_total",
    "Statistics API requests",
    ["endpoint", "status"],
    registry=REGISTRY,
)

# Transaction metrics
TRANSACTIONS_SUBMITTED_TOTAL = Counter(
    "llamalend_transactions_submitted_total",
    "Transactions handed to the submitter",
    ["method"],
    registry=REGISTRY,
)

GAS_ESTIMATED = Histogram(
    "llamalend_gas_estimated",
    "Estimated gas per operation",
    ["method"],
    buckets=[50_000, 100_000, 200_000, 400_000, 800_000, 1_600_000],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Get all metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the Prometheus content type."""
    return CONTENT_TYPE_LATEST


def track_contract_call(contract: str, method: str):
    """Decorator to track contract read call metrics."""
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()
            status = "success"
            try:
                return await func(*args, **kwargs)
            except Exception:
                status = "error"
                raise
            finally:
                duration = time.time() - start_time
                CONTRACT_CALLS_TOTAL.labels(contract=contract, method=method, status=status).inc()
                CONTRACT_CALL_DURATION_SECONDS.labels(contract=contract, method=method).observe(duration)
        return wrapper
    return decorator


def record_cache_request(cache: str, hit: bool):
    CACHE_REQUESTS_TOTAL.labels(cache=cache, result="hit" if hit else "miss").inc()


def record_cache_eviction(cache: str, reason: str):
    CACHE_EVICTIONS_TOTAL.labels(cache=cache, reason=reason).inc()


def record_rpc_error(endpoint: str, error: Exception):
    RPC_ERRORS_TOTAL.labels(endpoint=endpoint, error_type=type(error).__name__).inc()


def record_api_request(endpoint: str, status: str):
    API_REQUESTS_TOTAL.labels(endpoint=endpoint, status=status).inc()


def record_gas_estimate(method: str, gas: int):
    GAS_ESTIMATED.labels(method=method).observe(gas)


def record_transaction(method: str):
    TRANSACTIONS_SUBMITTED_TOTAL.labels(method=method).inc()
