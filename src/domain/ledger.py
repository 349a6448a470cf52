from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from domain.base_types import (
    AssetId,
    ConnectionId,
    Direction,
    ExchangeEventId,
    FlowId,
    OwnerScope,
    TransactionId,
    UserId,
    WalletAddress,
    WalletId,
)


class TransactionType(StrEnum):
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    SWAP = "SWAP"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    UNKNOWN = "UNKNOWN"


class ExchangeEventType(StrEnum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRADE = "TRADE"
    FIAT_SELL = "FIAT_SELL"
    OTHER = "OTHER"


class TradeSide(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class Wallet(BaseModel):
    id: WalletId
    user_id: UserId
    address: WalletAddress
    network: str
    is_active: bool = True


class ExchangeConnection(BaseModel):
    id: ConnectionId
    user_id: UserId
    exchange_name: str


class ChainTransfer(BaseModel):
    asset_id: AssetId
    amount: Decimal

    @model_validator(mode="after")
    def _validate_amount(self) -> ChainTransfer:
        if not self.amount.is_finite():
            raise ValueError("ChainTransfer.amount must be finite")
        return self


class BlockchainTransaction(BaseModel):
    id: TransactionId = TransactionId(Field(default_factory=uuid4))
    signature: str
    timestamp: datetime
    tx_type: TransactionType
    wallet_id: WalletId
    transfers: list[ChainTransfer] = Field(default_factory=list)
    linked_event_id: ExchangeEventId | None = None
    total_value: Decimal | None = None
    raw_payload: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> BlockchainTransaction:
        if not self.signature:
            raise ValueError("BlockchainTransaction.signature must be non-empty")
        return self


class _ExchangeEventBase(BaseModel):
    id: ExchangeEventId = ExchangeEventId(Field(default_factory=uuid4))
    connection_id: ConnectionId
    external_id: str
    timestamp: datetime
    asset: str
    amount: Decimal
    network: str | None = None
    total_value: Decimal | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    linked_transaction_id: TransactionId | None = None
    match_confidence: Decimal | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> _ExchangeEventBase:
        if not self.external_id:
            raise ValueError("ExchangeEvent.external_id must be non-empty")
        if not self.asset:
            raise ValueError("ExchangeEvent.asset must be non-empty")
        if self.amount <= 0:
            raise ValueError("ExchangeEvent.amount must be > 0")
        if self.match_confidence is not None:
            if self.linked_transaction_id is None:
                raise ValueError("match_confidence is only set on linked events")
            if not Decimal(0) <= self.match_confidence <= Decimal(1):
                raise ValueError("match_confidence must be within [0, 1]")
        return self


class _TransferEventBase(_ExchangeEventBase):
    chain_reference: str | None = None
    is_fiat_order: bool = False
    fee_amount: Decimal | None = None


class DepositEvent(_TransferEventBase):
    kind: Literal[ExchangeEventType.DEPOSIT] = ExchangeEventType.DEPOSIT


class WithdrawalEvent(_TransferEventBase):
    kind: Literal[ExchangeEventType.WITHDRAWAL] = ExchangeEventType.WITHDRAWAL


class TradeEvent(_ExchangeEventBase):
    kind: Literal[ExchangeEventType.TRADE] = ExchangeEventType.TRADE
    side: TradeSide
    quote_asset: str | None = None
    quote_amount: Decimal | None = None
    fee_asset: str | None = None
    fee_amount: Decimal | None = None


class FiatSellEvent(_ExchangeEventBase):
    kind: Literal[ExchangeEventType.FIAT_SELL] = ExchangeEventType.FIAT_SELL
    fiat_currency: str
    fiat_amount: Decimal | None = None


class OtherExchangeEvent(_ExchangeEventBase):
    kind: Literal[ExchangeEventType.OTHER] = ExchangeEventType.OTHER
    record_type: str


ExchangeEvent = Annotated[
    Union[DepositEvent, WithdrawalEvent, TradeEvent, FiatSellEvent, OtherExchangeEvent],
    Field(discriminator="kind"),
]
TransferEvent = DepositEvent | WithdrawalEvent

EXCHANGE_EVENT_ADAPTER: TypeAdapter[ExchangeEvent] = TypeAdapter(ExchangeEvent)


def is_sell_event(event: ExchangeEvent) -> bool:
    if isinstance(event, FiatSellEvent):
        return True
    return isinstance(event, TradeEvent) and event.side == TradeSide.SELL


class Flow(BaseModel):
    """One signed balance delta of one asset for one owning scope.

    ``amount`` is always positive; the sign lives in ``direction``.
    """

    id: FlowId = FlowId(Field(default_factory=uuid4))
    transaction_id: TransactionId | ExchangeEventId
    transaction_type: str
    timestamp: datetime
    scope: OwnerScope
    asset_id: AssetId
    symbol: str | None = None
    decimals: int
    raw_amount: int
    amount: Decimal
    direction: Direction
    is_fee: bool = False
    # Position among the legs extracted from one transaction for one scope.
    leg_index: int = 0
    value: Decimal | None = None
    price_at_execution: Decimal | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> Flow:
        if self.decimals < 0:
            raise ValueError("Flow.decimals must be >= 0")
        if self.leg_index < 0:
            raise ValueError("Flow.leg_index must be >= 0")
        if self.raw_amount <= 0 or self.amount <= 0:
            raise ValueError("Flow amounts must be positive; zero deltas are not flows")
        return self

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == Direction.IN else -self.amount


class AssetMapping(BaseModel):
    symbol: str
    network: str
    asset_id: AssetId
    decimals: int
    is_default: bool = False

    @model_validator(mode="after")
    def _normalize(self) -> AssetMapping:
        if not self.symbol or not self.asset_id:
            raise ValueError("AssetMapping requires symbol and asset_id")
        self.symbol = self.symbol.upper()
        return self
