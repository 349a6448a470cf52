from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from time import perf_counter
from typing import Protocol
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from db.repositories import BlockchainTransactionRepository, FlowRepository
from domain.flows import FlowExtractor
from domain.valuation import ValueAttributor

logger = logging.getLogger(__name__)


class TransactionValueProvider(Protocol):
    def total_value(self, transaction_id: UUID) -> Decimal | None:
        """Fiat value of the whole transaction, or None when no price is known."""
        ...


class RunValueCache:
    """Memoizes provider answers for the duration of one backfill run, misses included."""

    def __init__(self, provider: TransactionValueProvider) -> None:
        self._provider = provider
        self._values: dict[UUID, Decimal | None] = {}

    def total_value(self, transaction_id: UUID) -> Decimal | None:
        if transaction_id not in self._values:
            self._values[transaction_id] = self._provider.total_value(transaction_id)
        return self._values[transaction_id]


class FlowBackfill:
    """Extract flows for blockchain transactions that were stored without any."""

    def __init__(
        self,
        session: Session,
        *,
        extractor: FlowExtractor | None = None,
        attributor: ValueAttributor | None = None,
        batch_size: int = 500,
    ) -> None:
        self._transactions = BlockchainTransactionRepository(session)
        self._flows = FlowRepository(session)
        self._extractor = extractor or FlowExtractor()
        self._attributor = attributor or ValueAttributor()
        self._batch_size = batch_size

    def run(self) -> int:
        start_time = perf_counter()
        orphans = self._transactions.list_without_flows(self._batch_size)
        created = 0
        for transaction, address in orphans:
            flows = self._extractor.extract(transaction, wallet_address=address)
            if not flows:
                logger.debug("Transaction %s has no balance changes for %s", transaction.signature, address)
                continue
            flows = self._attributor.attribute(
                flows, transaction_type=transaction.tx_type.value, total_value=transaction.total_value
            )
            created += self._flows.create_many(flows)

        logger.info(
            "Backfilled %d flows for %d transactions in %.2fs", created, len(orphans), perf_counter() - start_time
        )
        return created


class ValueBackfill:
    """Fill in flow values that were unknown when the flows were written."""

    def __init__(
        self,
        session: Session,
        provider: TransactionValueProvider,
        *,
        attributor: ValueAttributor | None = None,
        batch_size: int = 500,
    ) -> None:
        self._flows = FlowRepository(session)
        self._provider = provider
        self._attributor = attributor or ValueAttributor()
        self._batch_size = batch_size

    def run(self) -> int:
        cache = RunValueCache(self._provider)
        updated = 0
        batch = self._flows.list_unpriced_transaction_ids(self._batch_size)
        for transaction_id in batch:
            try:
                flows = self._flows.list_by_transaction(transaction_id)
            except ValidationError:
                logger.warning("Skipping transaction %s with malformed flows", transaction_id)
                continue
            total_value = cache.total_value(transaction_id)
            if total_value is None:
                continue
            priced = self._attributor.attribute(
                flows, transaction_type=flows[0].transaction_type, total_value=total_value
            )
            updated += self._flows.update_values([flow for flow in priced if flow.value is not None])

        # Anything still unvalued goes behind never-checked transactions next run.
        self._flows.mark_value_checked(batch, datetime.now(timezone.utc))
        logger.info("Back-filled values on %d flows", updated)
        return updated
