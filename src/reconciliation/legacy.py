from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from db.repositories import BlockchainTransactionRepository, ExchangeEventRepository
from domain.base_types import ExchangeEventId
from domain.ledger import DepositEvent, WithdrawalEvent
from reconciliation.linker import LinkConflictError, Linker


@dataclass(frozen=True)
class LegacyMatch:
    """Older consumers identify the matched transfer by its chain signature."""

    matched_reference: str
    match_confidence: Decimal


class LegacyLinkAdapter:
    def __init__(self, session: Session) -> None:
        self._events = ExchangeEventRepository(session)
        self._transactions = BlockchainTransactionRepository(session)
        self._linker = Linker(session)

    def read(self, event_id: ExchangeEventId) -> LegacyMatch | None:
        event = self._events.get(event_id)
        if event is None or event.linked_transaction_id is None:
            return None
        transaction = self._transactions.get(event.linked_transaction_id)
        if transaction is None:
            return None
        return LegacyMatch(
            matched_reference=transaction.signature,
            match_confidence=event.match_confidence if event.match_confidence is not None else Decimal(0),
        )

    def adopt(self, event_id: ExchangeEventId, legacy: LegacyMatch) -> None:
        """Store a legacy pair as a canonical link; raises ``LinkConflictError`` if it cannot be applied."""
        event = self._events.get(event_id)
        transaction = self._transactions.find_by_signature(legacy.matched_reference)
        if event is None or transaction is None:
            raise LinkConflictError(
                event_id=event_id,
                transaction_id=transaction.id if transaction else None,  # type: ignore[arg-type]
                reason="event or referenced transaction not found",
            )
        if not isinstance(event, (DepositEvent, WithdrawalEvent)):
            raise LinkConflictError(
                event_id=event_id, transaction_id=transaction.id, reason=f"{event.kind} events are never linked"
            )
        self._linker.link(event_id=event_id, transaction_id=transaction.id, confidence=legacy.match_confidence)
