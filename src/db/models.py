from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class IntAsString(TypeDecorator):
    """Raw token amounts overflow 64-bit integer columns."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value: int | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> int | None:
        if value is None:
            return None
        return int(value)


class Base(DeclarativeBase):
    pass


class WalletOrm(Base):
    __tablename__ = "wallets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    address: Mapped[str] = mapped_column(String, nullable=False)
    network: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ExchangeConnectionOrm(Base):
    __tablename__ = "exchange_connections"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    exchange_name: Mapped[str] = mapped_column(String, nullable=False)


class BlockchainTransactionOrm(Base):
    __tablename__ = "blockchain_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    signature: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tx_type: Mapped[str] = mapped_column(String, nullable=False)
    wallet_id: Mapped[str] = mapped_column(String, ForeignKey("wallets.id"), nullable=False)
    # Mirror of exchange_events.linked_transaction_id; unique so a transfer is never claimed twice.
    linked_event_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, unique=True)
    total_value: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    transfers: Mapped[list["ChainTransferOrm"]] = relationship(
        cascade="all, delete-orphan",
        back_populates="transaction",
        lazy="selectin",
        order_by="ChainTransferOrm.position",
    )

    __table_args__ = (Index("ix_blockchain_tx_candidates", "wallet_id", "tx_type", "timestamp"),)


class ChainTransferOrm(Base):
    __tablename__ = "chain_transfers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    transaction_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("blockchain_transactions.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    # Nullable: indexers occasionally deliver transfers without an amount.
    amount: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)

    transaction: Mapped[BlockchainTransactionOrm] = relationship(back_populates="transfers")


class ExchangeEventOrm(Base):
    __tablename__ = "exchange_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    connection_id: Mapped[str] = mapped_column(String, ForeignKey("exchange_connections.id"), nullable=False)
    external_id: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    asset: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    network: Mapped[str | None] = mapped_column(String, nullable=True)
    total_value: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)

    chain_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    is_fiat_order: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    side: Mapped[str | None] = mapped_column(String, nullable=True)
    quote_asset: Mapped[str | None] = mapped_column(String, nullable=True)
    quote_amount: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    fee_asset: Mapped[str | None] = mapped_column(String, nullable=True)
    fee_amount: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    fiat_currency: Mapped[str | None] = mapped_column(String, nullable=True)
    fiat_amount: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    record_type: Mapped[str | None] = mapped_column(String, nullable=True)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    linked_transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, unique=True)
    match_confidence: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)

    __table_args__ = (
        UniqueConstraint("connection_id", "external_id", name="uq_exchange_event_external"),
        Index("ix_exchange_event_order", "connection_id", "timestamp"),
    )


class FlowOrm(Base):
    __tablename__ = "flows"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    transaction_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    transaction_type: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scope_kind: Mapped[str] = mapped_column(String, nullable=False)
    scope_id: Mapped[str] = mapped_column(String, nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    symbol: Mapped[str | None] = mapped_column(String, nullable=True)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    raw_amount: Mapped[int] = mapped_column(IntAsString, nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    direction: Mapped[str] = mapped_column(String, nullable=False)
    is_fee: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    leg_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    value: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    price_at_execution: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    value_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "transaction_id",
            "scope_kind",
            "scope_id",
            "asset_id",
            "direction",
            "is_fee",
            "leg_index",
            name="uq_flow_identity",
        ),
        CheckConstraint("scope_kind IN ('WALLET', 'EXCHANGE')", name="ck_flow_scope_kind"),
        CheckConstraint("direction IN ('IN', 'OUT')", name="ck_flow_direction"),
        Index("ix_flow_scope", "scope_kind", "scope_id", "timestamp"),
    )


class AssetMappingOrm(Base):
    __tablename__ = "asset_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    network: Mapped[str] = mapped_column(String, nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (UniqueConstraint("symbol", "network", name="uq_asset_mapping_symbol_network"),)


class PendingClassificationOrm(Base):
    __tablename__ = "pending_classifications"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    transaction_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    suggested_category: Mapped[str] = mapped_column(String, nullable=False)
    estimated_value: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_category: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("transaction_id", "kind", name="uq_classification_transaction_kind"),)


class ReconciliationLockOrm(Base):
    __tablename__ = "reconciliation_locks"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    run_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
