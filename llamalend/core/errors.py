"""Error taxonomy for the lending SDK.

Every precondition failure raised by the engines is a subclass of
``LlamalendError`` carrying an ``ErrorKind`` and the offending values, so
callers can branch on ``err.kind`` without parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict


class ErrorKind(Enum):
    RANGE_OUT_OF_BOUNDS = "range_out_of_bounds"
    LOAN_NOT_FOUND = "loan_not_found"
    LOAN_ALREADY_EXISTS = "loan_already_exists"
    ALREADY_IN_LIQUIDATION = "already_in_liquidation"
    NOT_IN_LIQUIDATION = "not_in_liquidation"
    INVALID_INDEX = "invalid_index"
    APPROVAL_REQUIRED = "approval_required"
    AMOUNT_EXCEEDS_LIQUIDATABLE = "amount_exceeds_liquidatable"
    AMOUNT_MUST_BE_POSITIVE = "amount_must_be_positive"
    SLIPPAGE_OUT_OF_RANGE = "slippage_out_of_range"
    INVALID_AMOUNT = "invalid_amount"
    ADDRESS_REQUIRED = "address_required"
    MARKET_NOT_FOUND_IN_API = "market_not_found_in_api"
    API_ERROR = "api_error"
    MULTICALL_ERROR = "multicall_error"


class LlamalendError(Exception):
    """Base class for all SDK errors."""

    kind: ErrorKind

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context: Dict[str, Any] = context

    def __getattr__(self, name: str) -> Any:
        context = self.__dict__.get("context", {})
        if name in context:
            return context[name]
        raise AttributeError(name)


class RangeOutOfBounds(LlamalendError):
    kind = ErrorKind.RANGE_OUT_OF_BOUNDS

    def __init__(self, range_: int, min_bands: int, max_bands: int):
        if range_ < min_bands:
            message = f"Range ({range_}) must be >= {min_bands}"
        else:
            message = f"Range ({range_}) must be <= {max_bands}"
        super().__init__(
            message,
            range=range_,
            min_bands=min_bands,
            max_bands=max_bands,
        )


class LoanNotFound(LlamalendError):
    kind = ErrorKind.LOAN_NOT_FOUND

    def __init__(self, address: str):
        super().__init__(f"Loan for {address} does not exist", address=address)


class LoanAlreadyExists(LlamalendError):
    kind = ErrorKind.LOAN_ALREADY_EXISTS

    def __init__(self, address: str):
        super().__init__(f"Loan for {address} is already created", address=address)


class AlreadyInLiquidation(LlamalendError):
    kind = ErrorKind.ALREADY_IN_LIQUIDATION

    def __init__(self, address: str, borrowed: Any = None):
        super().__init__(
            f"User {address} is already in liquidation mode",
            address=address,
            borrowed=borrowed,
        )


class NotInLiquidation(LlamalendError):
    kind = ErrorKind.NOT_IN_LIQUIDATION

    def __init__(self, address: str):
        super().__init__(f"User {address} is not in liquidation mode", address=address)


class InvalidIndex(LlamalendError):
    kind = ErrorKind.INVALID_INDEX

    def __init__(self, i: int, j: int | None = None):
        if j is None:
            message = f"Wrong index {i}: expected 0 or 1"
        else:
            message = f"Wrong index ({i}, {j}): expected (0, 1) or (1, 0)"
        super().__init__(message, i=i, j=j)


class ApprovalRequired(LlamalendError):
    kind = ErrorKind.APPROVAL_REQUIRED

    def __init__(self, tokens: Any, spender: str):
        super().__init__(
            f"Approval is needed for gas estimation (spender {spender})",
            tokens=tokens,
            spender=spender,
        )


class AmountExceedsLiquidatable(LlamalendError):
    kind = ErrorKind.AMOUNT_EXCEEDS_LIQUIDATABLE

    def __init__(self, amount: Any, tokens_to_liquidate: Any):
        super().__init__(
            f"Amount {amount} is greater than tokens to liquidate {tokens_to_liquidate}",
            amount=amount,
            tokens_to_liquidate=tokens_to_liquidate,
        )


class AmountMustBePositive(LlamalendError):
    kind = ErrorKind.AMOUNT_MUST_BE_POSITIVE

    def __init__(self, amount: Any):
        super().__init__(f"Amount must be > 0, got {amount}", amount=amount)


class SlippageOutOfRange(LlamalendError):
    kind = ErrorKind.SLIPPAGE_OUT_OF_RANGE

    def __init__(self, slippage: Any):
        super().__init__(
            f"Slippage must be in (0, 100], got {slippage}", slippage=slippage
        )


class InvalidAmount(LlamalendError):
    kind = ErrorKind.INVALID_AMOUNT

    def __init__(self, value: Any, reason: str = "not a finite number"):
        super().__init__(f"Invalid amount {value!r}: {reason}", value=value, reason=reason)


class AddressRequired(LlamalendError):
    kind = ErrorKind.ADDRESS_REQUIRED

    def __init__(self):
        super().__init__("Address is required: pass one or configure a signer address")


class MarketNotFoundInApi(LlamalendError):
    kind = ErrorKind.MARKET_NOT_FOUND_IN_API

    def __init__(self, vault: str, network: str):
        super().__init__(
            f"Market {vault} not found in API data for {network}",
            vault=vault,
            network=network,
        )


class ApiError(LlamalendError):
    kind = ErrorKind.API_ERROR

    def __init__(self, url: str, status: int | None = None, reason: str = ""):
        super().__init__(
            f"Statistics API request to {url} failed"
            + (f" with status {status}" if status is not None else "")
            + (f": {reason}" if reason else ""),
            url=url,
            status=status,
        )


class MulticallError(LlamalendError):
    kind = ErrorKind.MULTICALL_ERROR

    def __init__(self, target: str, signature: str, index: int):
        super().__init__(
            f"Multicall sub-call #{index} {signature} on {target} failed",
            target=target,
            signature=signature,
            index=index,
        )
