from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.orm import Session

from db.repositories import ExchangeEventRepository, FlowRepository
from domain.assets import AssetResolver
from domain.base_types import ConnectionId, is_fiat_symbol
from domain.flows import ExchangeFlowMapper
from domain.ledger import (
    DepositEvent,
    ExchangeEvent,
    FiatSellEvent,
    OtherExchangeEvent,
    TradeEvent,
    TradeSide,
    WithdrawalEvent,
)
from domain.valuation import ValueAttributor

logger = logging.getLogger(__name__)

# Where each provider keeps the on-chain hash of a deposit or withdrawal inside its raw payload.
CHAIN_REFERENCE_KEYS: dict[str, tuple[str, ...]] = {
    "binance": ("txId",),
    "okx": ("txId",),
    "bybit": ("txID", "txId"),
    "coinbase": ("network_transaction_hash", "hash"),
}
DEFAULT_CHAIN_REFERENCE_KEYS = ("txId", "txID", "txHash", "hash")

# Transfers settled inside the exchange carry a descriptive text instead of a chain hash.
INTERNAL_REFERENCE_PREFIXES = ("internal transfer", "off-chain transfer")

TRADE_RECORD_TYPES = frozenset({"TRADE", "CONVERT", "DUST_CONVERT", "C2C_TRADE"})


class ExchangeRecord(BaseModel):
    """Record as delivered by an exchange sync, before normalization."""

    model_config = ConfigDict(populate_by_name=True)

    external_id: str | None = Field(default=None, alias="externalId")
    type: str
    timestamp: datetime
    asset: str
    amount: Decimal
    total_value: Decimal | None = Field(default=None, alias="totalValueUsd")
    fee_amount: Decimal | None = Field(default=None, alias="feeAmount")
    fee_asset: str | None = Field(default=None, alias="feeAsset")
    side: str | None = None
    quote_asset: str | None = Field(default=None, alias="quoteAsset")
    quote_amount: Decimal | None = Field(default=None, alias="quoteAmount")
    network: str | None = None
    tx_id: str | None = Field(default=None, alias="txId")
    raw_data: dict[str, Any] = Field(default_factory=dict, alias="rawData")

    @field_validator("timestamp", mode="after")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("type", "asset", mode="after")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("side", "quote_asset", "fee_asset", "network", "tx_id", mode="before")
    @classmethod
    def _empty_to_none(cls, value: str | None) -> str | None:
        if value == "":
            return None
        return value


def chain_reference(record: ExchangeRecord, provider: str) -> str | None:
    candidates = [record.tx_id] + [
        record.raw_data.get(key) for key in CHAIN_REFERENCE_KEYS.get(provider.lower(), DEFAULT_CHAIN_REFERENCE_KEYS)
    ]
    for candidate in candidates:
        if not isinstance(candidate, str) or not candidate.strip():
            continue
        if candidate.strip().lower().startswith(INTERNAL_REFERENCE_PREFIXES):
            return None
        return candidate.strip()
    return None


def normalize_network(network: str | None, provider: str) -> str | None:
    if not network:
        return None
    # OKX reports chains as "<CCY>-<chain>", e.g. "USDC-Solana".
    if provider.lower() == "okx" and "-" in network:
        network = network.split("-", 1)[1]
    return network.strip().lower()


def _external_id(record: ExchangeRecord) -> str:
    if record.external_id:
        return record.external_id
    return f"{record.type.lower()}-{record.timestamp.isoformat()}-{record.asset}-{record.amount}"


def normalize_record(record: ExchangeRecord, *, provider: str, connection_id: ConnectionId) -> ExchangeEvent:
    """Turn a provider record into one of the canonical event variants.

    Raises ``ValidationError`` for records that cannot form a valid event (non-positive amount and the like).
    """
    common: dict[str, Any] = {
        "connection_id": connection_id,
        "external_id": _external_id(record),
        "timestamp": record.timestamp,
        "asset": record.asset,
        "amount": abs(record.amount),
        "network": normalize_network(record.network, provider),
        "total_value": record.total_value,
        "raw_payload": record.raw_data,
    }

    if record.type in ("DEPOSIT", "WITHDRAWAL"):
        transfer_fields = {
            "chain_reference": chain_reference(record, provider),
            "is_fiat_order": bool(record.raw_data.get("isFiatOrder")) or is_fiat_symbol(record.asset),
            "fee_amount": record.fee_amount,
        }
        if record.type == "DEPOSIT":
            return DepositEvent(**common, **transfer_fields)
        return WithdrawalEvent(**common, **transfer_fields)

    side = (record.side or "").upper()
    if record.type in TRADE_RECORD_TYPES and side in TradeSide.__members__:
        return TradeEvent(
            **common,
            side=TradeSide(side),
            quote_asset=record.quote_asset.upper() if record.quote_asset else None,
            quote_amount=abs(record.quote_amount) if record.quote_amount is not None else None,
            fee_asset=record.fee_asset.upper() if record.fee_asset else None,
            fee_amount=record.fee_amount,
        )

    if record.type == "FIAT_SELL" and record.quote_asset:
        return FiatSellEvent(
            **common,
            fiat_currency=record.quote_asset.upper(),
            fiat_amount=abs(record.quote_amount) if record.quote_amount is not None else None,
        )

    return OtherExchangeEvent(**common, record_type=record.type)


class ExchangeRecordImporter:
    """Store exchange records as canonical events together with their connection-scoped flows."""

    def __init__(
        self,
        session: Session,
        resolver: AssetResolver,
        attributor: ValueAttributor | None = None,
    ) -> None:
        self._events = ExchangeEventRepository(session)
        self._flows = FlowRepository(session)
        self._mapper = ExchangeFlowMapper(resolver)
        self._attributor = attributor or ValueAttributor()

    def import_records(
        self,
        records: Iterable[dict[str, Any] | ExchangeRecord],
        *,
        provider: str,
        connection_id: ConnectionId,
    ) -> list[ExchangeEvent]:
        events: dict[str, ExchangeEvent] = {}
        for raw in records:
            try:
                record = raw if isinstance(raw, ExchangeRecord) else ExchangeRecord.model_validate(raw)
                event = normalize_record(record, provider=provider, connection_id=connection_id)
            except ValidationError as err:
                logger.warning("Skipping malformed %s record: %s", provider, err.errors()[0].get("msg"))
                continue
            events.setdefault(event.external_id, event)

        known = self._events.existing_external_ids(connection_id, events)
        new_events = [event for external_id, event in events.items() if external_id not in known]
        self._events.create_many(new_events)

        flow_count = 0
        for event in new_events:
            flows = self._attributor.attribute(
                self._mapper.map(event), transaction_type=event.kind.value, total_value=event.total_value
            )
            flow_count += self._flows.create_many(flows)

        logger.info(
            "Imported %d new %s events (%d already known) with %d flows for connection %s",
            len(new_events),
            provider,
            len(known),
            flow_count,
            connection_id,
        )
        return new_events
