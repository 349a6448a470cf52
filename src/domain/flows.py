from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from domain.assets import AssetResolver, ResolvedAsset
from domain.base_types import AssetId, Direction, OwnerScope, WalletAddress, fiat_asset_id, is_fiat_symbol
from domain.ledger import (
    BlockchainTransaction,
    DepositEvent,
    ExchangeEvent,
    FiatSellEvent,
    Flow,
    TradeEvent,
    TradeSide,
    WithdrawalEvent,
)
from utils.misc import decimal_to_int, int_to_decimal

logger = logging.getLogger(__name__)

SOL_NATIVE = ResolvedAsset(asset_id=AssetId("So11111111111111111111111111111111111111112"), decimals=9)

NATIVE_ASSETS: dict[str, ResolvedAsset] = {
    "solana": SOL_NATIVE,
}


class RawTokenAmount(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token_amount: int = Field(alias="tokenAmount")
    decimals: int = 0


class TokenBalanceChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_account: str = Field(default="", alias="userAccount")
    mint: str = ""
    raw_token_amount: RawTokenAmount = Field(alias="rawTokenAmount")


class AccountBalanceDelta(BaseModel):
    """Per-account balance changes of one transaction as reported by the chain indexer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    account: str = ""
    native_balance_change: Decimal = Field(default=Decimal(0), alias="nativeBalanceChange")
    token_balance_changes: list[dict[str, Any]] = Field(default_factory=list, alias="tokenBalanceChanges")


class FlowExtractor:
    """Decompose transactions into signed per-asset balance deltas."""

    def __init__(self, *, native_asset: ResolvedAsset = SOL_NATIVE) -> None:
        self._native_asset = native_asset

    def extract(
        self,
        transaction: BlockchainTransaction,
        *,
        wallet_address: WalletAddress,
        payload: Mapping[str, Any] | None = None,
    ) -> list[Flow]:
        raw = payload if payload is not None else transaction.raw_payload
        account_data = (raw or {}).get("accountData") or []
        if not account_data:
            return []

        deltas: list[AccountBalanceDelta] = []
        for entry in account_data:
            try:
                deltas.append(AccountBalanceDelta.model_validate(entry))
            except ValidationError:
                logger.warning("Skipping malformed account entry in transaction %s", transaction.signature)

        address = wallet_address.lower()
        scope = OwnerScope.wallet(transaction.wallet_id)
        flows: list[Flow] = []

        # The native delta already includes the network fee paid by the account.
        for delta in deltas:
            if delta.account.lower() != address:
                continue
            lamports = int(delta.native_balance_change.to_integral_value(rounding=ROUND_HALF_UP))
            if lamports != 0:
                flows.append(
                    self._chain_flow(
                        transaction,
                        scope=scope,
                        asset_id=self._native_asset.asset_id,
                        decimals=self._native_asset.decimals,
                        raw_delta=lamports,
                        leg_index=len(flows),
                    )
                )
            break

        for delta in deltas:
            for entry in delta.token_balance_changes:
                try:
                    change = TokenBalanceChange.model_validate(entry)
                except ValidationError:
                    logger.warning("Skipping malformed token change in transaction %s", transaction.signature)
                    continue
                if change.user_account.lower() != address or not change.mint:
                    continue
                if change.raw_token_amount.token_amount == 0:
                    continue
                flows.append(
                    self._chain_flow(
                        transaction,
                        scope=scope,
                        asset_id=AssetId(change.mint),
                        decimals=change.raw_token_amount.decimals,
                        raw_delta=change.raw_token_amount.token_amount,
                        leg_index=len(flows),
                    )
                )

        return flows

    @staticmethod
    def _chain_flow(
        transaction: BlockchainTransaction,
        *,
        scope: OwnerScope,
        asset_id: AssetId,
        decimals: int,
        raw_delta: int,
        leg_index: int,
    ) -> Flow:
        raw_amount = abs(raw_delta)
        return Flow(
            transaction_id=transaction.id,
            transaction_type=transaction.tx_type.value,
            timestamp=transaction.timestamp,
            scope=scope,
            asset_id=asset_id,
            decimals=decimals,
            raw_amount=raw_amount,
            amount=int_to_decimal(raw_amount, decimals),
            direction=Direction.IN if raw_delta > 0 else Direction.OUT,
            leg_index=leg_index,
        )


class ExchangeFlowMapper:
    """Map normalized exchange events to flows scoped to their exchange connection."""

    def __init__(self, resolver: AssetResolver) -> None:
        self._resolver = resolver

    def map(self, event: ExchangeEvent) -> list[Flow]:
        legs: list[tuple[str, Decimal | None, Direction, bool, Decimal | None]] = []

        if isinstance(event, DepositEvent):
            legs.append((event.asset, event.amount, Direction.IN, False, None))
        elif isinstance(event, WithdrawalEvent):
            legs.append((event.asset, event.amount, Direction.OUT, False, None))
            legs.append((event.asset, event.fee_amount, Direction.OUT, True, None))
        elif isinstance(event, TradeEvent):
            base_direction = Direction.IN if event.side == TradeSide.BUY else Direction.OUT
            quote_direction = Direction.OUT if event.side == TradeSide.BUY else Direction.IN
            price = None
            if event.quote_amount is not None and event.quote_amount > 0:
                price = event.quote_amount / event.amount
            legs.append((event.asset, event.amount, base_direction, False, price))
            if event.quote_asset:
                legs.append((event.quote_asset, event.quote_amount, quote_direction, False, None))
            if event.fee_asset:
                legs.append((event.fee_asset, event.fee_amount, Direction.OUT, True, None))
        elif isinstance(event, FiatSellEvent):
            legs.append((event.asset, event.amount, Direction.OUT, False, None))
            legs.append((event.fiat_currency, event.fiat_amount, Direction.IN, False, None))

        scope = OwnerScope.exchange(event.connection_id)
        flows: list[Flow] = []
        for leg_index, (symbol, amount, direction, is_fee, price) in enumerate(legs):
            if amount is None or amount <= 0:
                continue
            flow = self._exchange_flow(
                event,
                scope=scope,
                symbol=symbol,
                amount=amount,
                direction=direction,
                is_fee=is_fee,
                price=price,
                leg_index=leg_index,
            )
            if flow is not None:
                flows.append(flow)
        return flows

    def _exchange_flow(
        self,
        event: ExchangeEvent,
        *,
        scope: OwnerScope,
        symbol: str,
        amount: Decimal,
        direction: Direction,
        is_fee: bool,
        price: Decimal | None,
        leg_index: int,
    ) -> Flow | None:
        if is_fiat_symbol(symbol):
            asset_id, decimals = fiat_asset_id(symbol), 2
        else:
            asset_id, decimals = self._resolver.asset_id_or_pseudo(symbol, event.network)

        raw_amount = decimal_to_int(amount, decimals)
        if raw_amount == 0:
            logger.debug("Dropping dust leg %s %s in exchange event %s", amount, symbol, event.external_id)
            return None

        return Flow(
            transaction_id=event.id,
            transaction_type=event.kind.value,
            timestamp=event.timestamp,
            scope=scope,
            asset_id=asset_id,
            symbol=symbol.upper(),
            decimals=decimals,
            raw_amount=raw_amount,
            amount=int_to_decimal(raw_amount, decimals),
            direction=direction,
            is_fee=is_fee,
            leg_index=leg_index,
            price_at_execution=price,
        )
