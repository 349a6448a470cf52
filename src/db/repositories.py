from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import exists, func, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from db import models
from domain.assets import AssetResolver
from domain.base_types import (
    AssetId,
    ConnectionId,
    Direction,
    ExchangeEventId,
    FlowId,
    OwnerScope,
    ScopeKind,
    TransactionId,
    UserId,
    WalletAddress,
    WalletId,
)
from domain.classification import (
    ClassificationId,
    ClassificationKind,
    ClassificationStatus,
    PendingClassification,
    TaxCategory,
)
from domain.ledger import (
    EXCHANGE_EVENT_ADAPTER,
    AssetMapping,
    BlockchainTransaction,
    ChainTransfer,
    ExchangeConnection,
    ExchangeEvent,
    ExchangeEventType,
    Flow,
    TransactionType,
    Wallet,
)


_EXCHANGE_EVENT_COLUMNS = tuple(column.name for column in models.ExchangeEventOrm.__table__.columns)


def _to_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


class WalletRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, wallets: list[Wallet]) -> list[Wallet]:
        self._session.add_all(
            [
                models.WalletOrm(
                    id=wallet.id,
                    user_id=wallet.user_id,
                    address=wallet.address,
                    network=wallet.network,
                    is_active=wallet.is_active,
                )
                for wallet in wallets
            ]
        )
        self._session.commit()
        return wallets

    def get(self, wallet_id: WalletId) -> Wallet | None:
        orm_wallet = self._session.get(models.WalletOrm, wallet_id)
        if orm_wallet is None:
            return None
        return self._to_domain(orm_wallet)

    def list_active_by_user(self, user_id: UserId) -> list[Wallet]:
        stmt = (
            select(models.WalletOrm)
            .where(models.WalletOrm.user_id == user_id, models.WalletOrm.is_active.is_(True))
            .order_by(models.WalletOrm.id)
        )
        return [self._to_domain(wallet) for wallet in self._session.scalars(stmt)]

    def deactivate(self, wallet_id: WalletId) -> None:
        self._session.execute(
            update(models.WalletOrm).where(models.WalletOrm.id == wallet_id).values(is_active=False)
        )
        self._session.commit()

    @staticmethod
    def _to_domain(orm_wallet: models.WalletOrm) -> Wallet:
        return Wallet(
            id=WalletId(orm_wallet.id),
            user_id=UserId(orm_wallet.user_id),
            address=WalletAddress(orm_wallet.address),
            network=orm_wallet.network,
            is_active=orm_wallet.is_active,
        )


class ExchangeConnectionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, connections: list[ExchangeConnection]) -> list[ExchangeConnection]:
        self._session.add_all(
            [
                models.ExchangeConnectionOrm(
                    id=connection.id, user_id=connection.user_id, exchange_name=connection.exchange_name
                )
                for connection in connections
            ]
        )
        self._session.commit()
        return connections

    def list_by_user(self, user_id: UserId) -> list[ExchangeConnection]:
        stmt = (
            select(models.ExchangeConnectionOrm)
            .where(models.ExchangeConnectionOrm.user_id == user_id)
            .order_by(models.ExchangeConnectionOrm.id)
        )
        return [
            ExchangeConnection(
                id=ConnectionId(connection.id),
                user_id=UserId(connection.user_id),
                exchange_name=connection.exchange_name,
            )
            for connection in self._session.scalars(stmt)
        ]


class BlockchainTransactionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, transactions: list[BlockchainTransaction]) -> list[BlockchainTransaction]:
        orm_transactions: list[models.BlockchainTransactionOrm] = []
        for transaction in transactions:
            orm_transaction = models.BlockchainTransactionOrm(
                id=transaction.id,
                signature=transaction.signature,
                timestamp=_to_utc(transaction.timestamp),
                tx_type=transaction.tx_type.value,
                wallet_id=transaction.wallet_id,
                linked_event_id=transaction.linked_event_id,
                total_value=transaction.total_value,
                raw_payload=transaction.raw_payload,
            )
            orm_transaction.transfers = [
                models.ChainTransferOrm(position=position, asset_id=transfer.asset_id, amount=transfer.amount)
                for position, transfer in enumerate(transaction.transfers)
            ]
            orm_transactions.append(orm_transaction)

        self._session.add_all(orm_transactions)
        self._session.commit()
        return transactions

    def get(self, transaction_id: TransactionId) -> BlockchainTransaction | None:
        orm_transaction = self._session.get(models.BlockchainTransactionOrm, transaction_id)
        if orm_transaction is None:
            return None
        return self.to_domain(orm_transaction)

    def find_by_signature(self, signature: str) -> BlockchainTransaction | None:
        stmt = select(models.BlockchainTransactionOrm).where(models.BlockchainTransactionOrm.signature == signature)
        orm_transaction = self._session.scalar(stmt)
        if orm_transaction is None:
            return None
        return self.to_domain(orm_transaction)

    def find_unlinked_in_window(
        self,
        *,
        wallet_ids: Sequence[WalletId],
        tx_type: TransactionType,
        start: datetime,
        end: datetime,
        limit: int,
        newest_first: bool,
    ) -> list[models.BlockchainTransactionOrm]:
        """Rows are returned unconverted so callers can skip malformed ones individually."""
        order = (
            models.BlockchainTransactionOrm.timestamp.desc()
            if newest_first
            else models.BlockchainTransactionOrm.timestamp.asc()
        )
        stmt = (
            select(models.BlockchainTransactionOrm)
            .where(
                models.BlockchainTransactionOrm.wallet_id.in_(list(wallet_ids)),
                models.BlockchainTransactionOrm.tx_type == tx_type.value,
                models.BlockchainTransactionOrm.timestamp >= _to_utc(start),
                models.BlockchainTransactionOrm.timestamp <= _to_utc(end),
                models.BlockchainTransactionOrm.linked_event_id.is_(None),
            )
            .order_by(order)
            .limit(limit)
        )
        return list(self._session.scalars(stmt))

    def list_without_flows(self, limit: int) -> list[tuple[BlockchainTransaction, WalletAddress]]:
        """Transactions of active wallets that never got flows, oldest first."""
        has_flows = exists().where(models.FlowOrm.transaction_id == models.BlockchainTransactionOrm.id)
        stmt = (
            select(models.BlockchainTransactionOrm, models.WalletOrm.address)
            .join(models.WalletOrm, models.WalletOrm.id == models.BlockchainTransactionOrm.wallet_id)
            .where(~has_flows, models.WalletOrm.is_active.is_(True))
            .order_by(models.BlockchainTransactionOrm.timestamp.asc())
            .limit(limit)
        )
        return [(self.to_domain(row), WalletAddress(address)) for row, address in self._session.execute(stmt)]

    @staticmethod
    def to_domain(orm_transaction: models.BlockchainTransactionOrm) -> BlockchainTransaction:
        return BlockchainTransaction(
            id=TransactionId(orm_transaction.id),
            signature=orm_transaction.signature,
            timestamp=_to_utc(orm_transaction.timestamp),
            tx_type=TransactionType(orm_transaction.tx_type),
            wallet_id=WalletId(orm_transaction.wallet_id),
            transfers=[
                ChainTransfer(asset_id=AssetId(transfer.asset_id), amount=transfer.amount)  # type: ignore[arg-type]
                for transfer in orm_transaction.transfers
            ],
            linked_event_id=(
                ExchangeEventId(orm_transaction.linked_event_id) if orm_transaction.linked_event_id else None
            ),
            total_value=orm_transaction.total_value,
            raw_payload=orm_transaction.raw_payload,
        )


class ExchangeEventRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, events: list[ExchangeEvent]) -> int:
        """Insert events, ignoring ones already stored for the same connection and external id."""
        if not events:
            return 0
        rows = [self._to_row(event) for event in events]
        stmt = insert(models.ExchangeEventOrm).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["connection_id", "external_id"])
        result = self._session.execute(stmt)
        self._session.commit()
        return result.rowcount

    def get(self, event_id: ExchangeEventId) -> ExchangeEvent | None:
        orm_event = self._session.get(models.ExchangeEventOrm, event_id)
        if orm_event is None:
            return None
        return self.to_domain(orm_event)

    def existing_external_ids(self, connection_id: ConnectionId, external_ids: Iterable[str]) -> set[str]:
        stmt = select(models.ExchangeEventOrm.external_id).where(
            models.ExchangeEventOrm.connection_id == connection_id,
            models.ExchangeEventOrm.external_id.in_(list(external_ids)),
        )
        return set(self._session.scalars(stmt))

    def list_unlinked_transfers(self, connection_ids: Sequence[ConnectionId]) -> list[models.ExchangeEventOrm]:
        stmt = (
            select(models.ExchangeEventOrm)
            .where(
                models.ExchangeEventOrm.connection_id.in_(list(connection_ids)),
                models.ExchangeEventOrm.kind.in_([ExchangeEventType.DEPOSIT.value, ExchangeEventType.WITHDRAWAL.value]),
                models.ExchangeEventOrm.linked_transaction_id.is_(None),
                models.ExchangeEventOrm.is_fiat_order.is_(False),
            )
            .order_by(models.ExchangeEventOrm.timestamp.asc())
        )
        return list(self._session.scalars(stmt))

    def list_by_connection(
        self,
        connection_id: ConnectionId,
        *,
        kinds: Iterable[ExchangeEventType] | None = None,
    ) -> list[ExchangeEvent]:
        stmt = select(models.ExchangeEventOrm).where(models.ExchangeEventOrm.connection_id == connection_id)
        if kinds is not None:
            stmt = stmt.where(models.ExchangeEventOrm.kind.in_([kind.value for kind in kinds]))
        stmt = stmt.order_by(models.ExchangeEventOrm.timestamp.asc())
        return [self.to_domain(event) for event in self._session.scalars(stmt)]

    @staticmethod
    def _to_row(event: ExchangeEvent) -> dict[str, object]:
        # Multi-row inserts need identical keys, so variant-specific columns are filled with None.
        dumped = event.model_dump(mode="python")
        row: dict[str, object] = {column: dumped.get(column) for column in _EXCHANGE_EVENT_COLUMNS}
        row["kind"] = event.kind.value
        row["timestamp"] = _to_utc(event.timestamp)
        row["is_fiat_order"] = bool(dumped.get("is_fiat_order", False))
        row["raw_payload"] = dumped.get("raw_payload") or {}
        if row["side"] is not None:
            row["side"] = str(row["side"])
        return row

    @staticmethod
    def to_domain(orm_event: models.ExchangeEventOrm) -> ExchangeEvent:
        kind = ExchangeEventType(orm_event.kind)
        payload: dict[str, object] = {
            "id": orm_event.id,
            "kind": kind,
            "connection_id": orm_event.connection_id,
            "external_id": orm_event.external_id,
            "timestamp": _to_utc(orm_event.timestamp),
            "asset": orm_event.asset,
            "amount": orm_event.amount,
            "network": orm_event.network,
            "total_value": orm_event.total_value,
            "raw_payload": orm_event.raw_payload or {},
            "linked_transaction_id": orm_event.linked_transaction_id,
            "match_confidence": orm_event.match_confidence,
        }
        if kind in (ExchangeEventType.DEPOSIT, ExchangeEventType.WITHDRAWAL):
            payload.update(
                chain_reference=orm_event.chain_reference,
                is_fiat_order=orm_event.is_fiat_order,
                fee_amount=orm_event.fee_amount,
            )
        elif kind == ExchangeEventType.TRADE:
            payload.update(
                side=orm_event.side,
                quote_asset=orm_event.quote_asset,
                quote_amount=orm_event.quote_amount,
                fee_asset=orm_event.fee_asset,
                fee_amount=orm_event.fee_amount,
            )
        elif kind == ExchangeEventType.FIAT_SELL:
            payload.update(fiat_currency=orm_event.fiat_currency, fiat_amount=orm_event.fiat_amount)
        else:
            payload.update(record_type=orm_event.record_type)
        return EXCHANGE_EVENT_ADAPTER.validate_python(payload)


class FlowRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, flows: list[Flow]) -> int:
        """Append flows; a flow already recorded for the same transaction, scope, asset and side is skipped."""
        if not flows:
            return 0
        rows = [
            {
                "id": flow.id,
                "transaction_id": flow.transaction_id,
                "transaction_type": flow.transaction_type,
                "timestamp": _to_utc(flow.timestamp),
                "scope_kind": flow.scope.kind.value,
                "scope_id": flow.scope.id,
                "asset_id": flow.asset_id,
                "symbol": flow.symbol,
                "decimals": flow.decimals,
                "raw_amount": flow.raw_amount,
                "amount": flow.amount,
                "direction": flow.direction.value,
                "is_fee": flow.is_fee,
                "leg_index": flow.leg_index,
                "value": flow.value,
                "price_at_execution": flow.price_at_execution,
            }
            for flow in flows
        ]
        stmt = insert(models.FlowOrm).values(rows)
        stmt = stmt.on_conflict_do_nothing(
            index_elements=[
                "transaction_id",
                "scope_kind",
                "scope_id",
                "asset_id",
                "direction",
                "is_fee",
                "leg_index",
            ]
        )
        result = self._session.execute(stmt)
        self._session.commit()
        return result.rowcount

    def list_by_transaction(self, transaction_id: UUID) -> list[Flow]:
        stmt = select(models.FlowOrm).where(models.FlowOrm.transaction_id == transaction_id)
        return [self._to_domain(flow) for flow in self._session.scalars(stmt)]

    def list_for_scopes(
        self,
        scopes: Iterable[OwnerScope],
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Flow]:
        wallet_ids = [scope.id for scope in scopes if scope.kind == ScopeKind.WALLET]
        connection_ids = [scope.id for scope in scopes if scope.kind == ScopeKind.EXCHANGE]
        flows: list[Flow] = []
        for kind, ids in ((ScopeKind.WALLET, wallet_ids), (ScopeKind.EXCHANGE, connection_ids)):
            if not ids:
                continue
            stmt = select(models.FlowOrm).where(
                models.FlowOrm.scope_kind == kind.value, models.FlowOrm.scope_id.in_(ids)
            )
            if start is not None:
                stmt = stmt.where(models.FlowOrm.timestamp >= _to_utc(start))
            if end is not None:
                stmt = stmt.where(models.FlowOrm.timestamp <= _to_utc(end))
            flows.extend(self._to_domain(flow) for flow in self._session.scalars(stmt))
        flows.sort(key=lambda flow: flow.timestamp)
        return flows

    def list_unpriced_transaction_ids(self, limit: int) -> list[UUID]:
        """Transactions with unvalued flows; never checked first, then least recently checked."""
        last_checked = func.max(models.FlowOrm.value_checked_at)
        stmt = (
            select(models.FlowOrm.transaction_id)
            .where(models.FlowOrm.value.is_(None))
            .group_by(models.FlowOrm.transaction_id)
            .order_by(last_checked.asc().nulls_first(), models.FlowOrm.transaction_id)
            .limit(limit)
        )
        return list(self._session.scalars(stmt))

    def mark_value_checked(self, transaction_ids: Iterable[UUID], checked_at: datetime) -> None:
        ids = list(transaction_ids)
        if not ids:
            return
        self._session.execute(
            update(models.FlowOrm)
            .where(models.FlowOrm.transaction_id.in_(ids), models.FlowOrm.value.is_(None))
            .values(value_checked_at=_to_utc(checked_at))
        )
        self._session.commit()

    def update_values(self, flows: Iterable[Flow]) -> int:
        """Back-fill value fields; every other column of a flow is immutable."""
        updated = 0
        for flow in flows:
            result = self._session.execute(
                update(models.FlowOrm)
                .where(models.FlowOrm.id == flow.id)
                .values(value=flow.value, price_at_execution=flow.price_at_execution)
            )
            updated += result.rowcount
        self._session.commit()
        return updated

    @staticmethod
    def _to_domain(orm_flow: models.FlowOrm) -> Flow:
        return Flow(
            id=FlowId(orm_flow.id),
            transaction_id=TransactionId(orm_flow.transaction_id),
            transaction_type=orm_flow.transaction_type,
            timestamp=_to_utc(orm_flow.timestamp),
            scope=OwnerScope(kind=ScopeKind(orm_flow.scope_kind), id=orm_flow.scope_id),
            asset_id=AssetId(orm_flow.asset_id),
            symbol=orm_flow.symbol,
            decimals=orm_flow.decimals,
            raw_amount=orm_flow.raw_amount,
            amount=orm_flow.amount,
            direction=Direction(orm_flow.direction),
            is_fee=orm_flow.is_fee,
            leg_index=orm_flow.leg_index,
            value=orm_flow.value,
            price_at_execution=orm_flow.price_at_execution,
        )


class AssetMappingRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def upsert_many(self, mappings: list[AssetMapping]) -> None:
        if not mappings:
            return
        rows = [
            {
                "symbol": mapping.symbol.upper(),
                "network": mapping.network,
                "asset_id": mapping.asset_id,
                "decimals": mapping.decimals,
                "is_default": mapping.is_default,
            }
            for mapping in mappings
        ]
        stmt = insert(models.AssetMappingOrm).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["symbol", "network"],
            set_={
                "asset_id": stmt.excluded.asset_id,
                "decimals": stmt.excluded.decimals,
                "is_default": stmt.excluded.is_default,
            },
        )
        self._session.execute(stmt)
        self._session.commit()

    def list(self) -> list[AssetMapping]:
        stmt = select(models.AssetMappingOrm).order_by(models.AssetMappingOrm.id.asc())
        return [
            AssetMapping(
                symbol=mapping.symbol,
                network=mapping.network,
                asset_id=AssetId(mapping.asset_id),
                decimals=mapping.decimals,
                is_default=mapping.is_default,
            )
            for mapping in self._session.scalars(stmt)
        ]

    def snapshot(self) -> AssetResolver:
        return AssetResolver(self.list())


class PendingClassificationRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_if_absent(self, classification: PendingClassification) -> bool:
        """Store the review item unless one of the same kind exists for the transaction."""
        stmt = insert(models.PendingClassificationOrm).values(
            id=classification.id,
            user_id=classification.user_id,
            transaction_id=classification.transaction_id,
            kind=classification.kind.value,
            status=classification.status.value,
            priority=classification.priority,
            suggested_category=classification.suggested_category.value,
            estimated_value=classification.estimated_value,
            notes=classification.notes,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["transaction_id", "kind"])
        result = self._session.execute(stmt)
        self._session.commit()
        return result.rowcount == 1

    def list_pending(self, user_id: UserId, *, limit: int = 50, offset: int = 0) -> list[PendingClassification]:
        stmt = select(models.PendingClassificationOrm).where(
            models.PendingClassificationOrm.user_id == user_id,
            models.PendingClassificationOrm.status == ClassificationStatus.PENDING.value,
        )
        pending = [self._to_domain(row) for row in self._session.scalars(stmt)]
        # Values are stored as strings, so ordering happens here rather than in SQL.
        pending.sort(
            key=lambda item: (item.estimated_value is not None, item.estimated_value or Decimal(0), item.priority),
            reverse=True,
        )
        return pending[offset : offset + limit]

    def count_pending(self, user_id: UserId) -> int:
        return len(self.list_pending(user_id, limit=10**9))

    def resolve(self, classification_id: ClassificationId, category: TaxCategory, notes: str | None = None) -> None:
        values: dict[str, object] = {
            "status": ClassificationStatus.RESOLVED.value,
            "resolved_category": category.value,
            "resolved_at": datetime.now(timezone.utc),
        }
        if notes is not None:
            values["notes"] = notes
        self._session.execute(
            update(models.PendingClassificationOrm)
            .where(models.PendingClassificationOrm.id == classification_id)
            .values(**values)
        )
        self._session.commit()

    def list_for_transaction(self, transaction_id: TransactionId) -> list[PendingClassification]:
        stmt = select(models.PendingClassificationOrm).where(
            models.PendingClassificationOrm.transaction_id == transaction_id
        )
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    @staticmethod
    def _to_domain(row: models.PendingClassificationOrm) -> PendingClassification:
        return PendingClassification(
            id=ClassificationId(row.id),
            user_id=UserId(row.user_id),
            transaction_id=TransactionId(row.transaction_id),
            kind=ClassificationKind(row.kind),
            suggested_category=TaxCategory(row.suggested_category),
            priority=row.priority,
            estimated_value=row.estimated_value,
            notes=row.notes,
            status=ClassificationStatus(row.status),
            resolved_category=TaxCategory(row.resolved_category) if row.resolved_category else None,
            resolved_at=_to_utc(row.resolved_at) if row.resolved_at else None,
        )
