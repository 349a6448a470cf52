from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import models
from domain.base_types import ExchangeEventId, TransactionId

logger = logging.getLogger(__name__)


class LinkConflictError(Exception):
    def __init__(self, *, event_id: ExchangeEventId, transaction_id: TransactionId, reason: str) -> None:
        self.event_id = event_id
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"Cannot link event={event_id} transaction={transaction_id}: {reason}")


class Linker:
    """Record a match on both sides in a single database transaction.

    Both updates are guarded by ``IS NULL`` on the link column, so a record that was
    claimed in the meantime makes the whole link fail instead of leaving one side set.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def link(self, *, event_id: ExchangeEventId, transaction_id: TransactionId, confidence: Decimal) -> None:
        if not Decimal(0) <= confidence <= Decimal(1):
            raise ValueError(f"confidence must be within [0, 1], got {confidence}")

        try:
            claimed_transaction = self._session.execute(
                update(models.BlockchainTransactionOrm)
                .where(
                    models.BlockchainTransactionOrm.id == transaction_id,
                    models.BlockchainTransactionOrm.linked_event_id.is_(None),
                )
                .values(linked_event_id=event_id)
            )
            if claimed_transaction.rowcount != 1:
                raise LinkConflictError(
                    event_id=event_id, transaction_id=transaction_id, reason="transaction missing or already linked"
                )

            claimed_event = self._session.execute(
                update(models.ExchangeEventOrm)
                .where(
                    models.ExchangeEventOrm.id == event_id,
                    models.ExchangeEventOrm.linked_transaction_id.is_(None),
                )
                .values(linked_transaction_id=transaction_id, match_confidence=confidence)
            )
            if claimed_event.rowcount != 1:
                raise LinkConflictError(
                    event_id=event_id, transaction_id=transaction_id, reason="event missing or already linked"
                )

            self._session.commit()
        except LinkConflictError:
            self._session.rollback()
            raise
        except IntegrityError as err:
            self._session.rollback()
            raise LinkConflictError(
                event_id=event_id, transaction_id=transaction_id, reason="uniqueness constraint violated"
            ) from err

        logger.debug("Linked event=%s transaction=%s confidence=%s", event_id, transaction_id, confidence)
