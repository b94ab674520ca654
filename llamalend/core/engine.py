"""Shared plumbing for the mutating engines (loan, swap, liquidation).

Every mutating operation follows the same two phases:

1. approval: make sure the spender may pull the tokens the call needs;
2. estimate-or-submit: estimate gas, then either return the estimate or
   submit with a gas limit of ``estimate * 1.3``.

``*_estimate_gas`` variants refuse to run without the allowance already in
place, because the node cannot simulate a transfer that would revert.
"""

from __future__ import annotations

import logging
from typing import List

from llamalend.config import Settings, get_settings
from llamalend.core.errors import ApprovalRequired
from llamalend.core.position import UserPositionReader
from llamalend.core.units import Amount, mul_by_1_3, parse_units
from llamalend.protocols.base import (
    AllowanceManager,
    ContractCall,
    MarketDescriptor,
    Token,
    TransactionSubmitter,
    UserPosition,
)
from llamalend.services.metrics import record_gas_estimate, record_transaction

logger = logging.getLogger(__name__)


class MarketEngine:
    def __init__(
        self,
        market: MarketDescriptor,
        positions: UserPositionReader,
        submitter: TransactionSubmitter,
        allowances: AllowanceManager,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._market = market
        self._positions = positions
        self._submitter = submitter
        self._allowances = allowances

    @property
    def market(self) -> MarketDescriptor:
        return self._market

    @property
    def signer_address(self) -> str | None:
        return self._positions.signer_address

    def _address(self, address: str | None = None) -> str:
        return self._positions.get_address(address)

    async def _user_position(self, address: str | None = None) -> UserPosition:
        return await self._positions.user_state(address)

    @staticmethod
    def _units(token: Token, amount: Amount) -> int:
        return parse_units(amount, token.decimals)

    async def _is_approved(self, token: Token, amount: Amount, spender: str) -> bool:
        return await self._allowances.has_allowance(
            [token.address], [self._units(token, amount)], self._address(), spender
        )

    async def _approve(self, token: Token, amount: Amount, spender: str) -> List[str]:
        tx_hashes = await self._allowances.ensure_allowance(
            [token.address], [self._units(token, amount)], spender
        )
        if tx_hashes:
            logger.info(
                f"{self._market.name}: approved {token.symbol} for {spender} ({', '.join(tx_hashes)})"
            )
        return tx_hashes

    async def _approve_estimate_gas(self, token: Token, amount: Amount, spender: str) -> int:
        return await self._allowances.ensure_allowance_estimate_gas(
            [token.address], [self._units(token, amount)], spender
        )

    async def _require_approval(self, token: Token, amount: Amount, spender: str) -> None:
        if not await self._is_approved(token, amount, spender):
            raise ApprovalRequired([token.address], spender)

    async def _execute(
        self,
        call: ContractCall,
        estimate_gas: bool,
        refresh_address: str | None = None,
    ) -> int | str:
        """Estimate gas for ``call``; submit it unless only estimating."""
        gas = int(await self._submitter.estimate_gas(call))
        record_gas_estimate(call.method, gas)
        if estimate_gas:
            return gas

        gas_limit = mul_by_1_3(gas)
        tx_hash = await self._submitter.submit(call, gas_limit)
        record_transaction(call.method)
        logger.info(
            f"{self._market.name}: submitted {call.describe()} tx={tx_hash} gas_limit={gas_limit}"
        )
        if refresh_address:
            self._positions.invalidate_user_state(refresh_address)
        return tx_hash
