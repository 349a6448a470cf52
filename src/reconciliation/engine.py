from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from time import perf_counter
from typing import Sequence
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from config import AppSettings, config
from db.repositories import (
    AssetMappingRepository,
    BlockchainTransactionRepository,
    ExchangeConnectionRepository,
    ExchangeEventRepository,
    PendingClassificationRepository,
    WalletRepository,
)
from domain.assets import AssetResolver
from domain.base_types import ConnectionId, UserId, WalletId
from domain.ledger import DepositEvent, ExchangeEvent, ExchangeEventType, TransferEvent
from domain.matching import MatchParameters
from domain.off_ramp import OffRampDetector
from reconciliation.candidates import MatchCandidateFinder, TransferMatcher
from reconciliation.linker import LinkConflictError, Linker
from reconciliation.locks import UserRunLock

logger = logging.getLogger(__name__)

SELL_EVENT_TYPES = (ExchangeEventType.TRADE, ExchangeEventType.FIAT_SELL)


@dataclass
class ReconciliationSummary:
    matched: int = 0
    unmatched: int = 0
    off_ramps: int = 0


class ReconciliationEngine:
    """Link a user's unlinked exchange deposits and withdrawals to their on-chain transfers.

    A run is a batch over everything currently unlinked. Each link is committed on its own,
    so a failing event never undoes earlier matches and re-running only picks up what is left.
    """

    def __init__(
        self,
        session: Session,
        *,
        settings: AppSettings | None = None,
        resolver: AssetResolver | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or config()
        self._resolver = resolver
        self._params = MatchParameters.from_settings(self._settings)

        self._wallets = WalletRepository(session)
        self._connections = ExchangeConnectionRepository(session)
        self._transactions = BlockchainTransactionRepository(session)
        self._events = ExchangeEventRepository(session)
        self._classifications = PendingClassificationRepository(session)
        self._linker = Linker(session)
        self._lock = UserRunLock(session, ttl=timedelta(minutes=self._settings.lock_ttl_minutes))

    def reconcile_user(
        self, user_id: UserId, connection_ids: Sequence[ConnectionId] | None = None
    ) -> ReconciliationSummary:
        wallet_ids = [wallet.id for wallet in self._wallets.list_active_by_user(user_id)]
        if not wallet_ids:
            logger.info("User %s has no active wallets; nothing to reconcile", user_id)
            return ReconciliationSummary()

        if connection_ids is None:
            connection_ids = [connection.id for connection in self._connections.list_by_user(user_id)]
        if not connection_ids:
            return ReconciliationSummary()

        with self._lock.hold(user_id) as run_id:
            return self._run(user_id, run_id, wallet_ids, connection_ids)

    def reconcile_connection(self, connection_id: ConnectionId, user_id: UserId) -> ReconciliationSummary:
        return self.reconcile_user(user_id, [connection_id])

    def _run(
        self,
        user_id: UserId,
        run_id: UUID,
        wallet_ids: list[WalletId],
        connection_ids: Sequence[ConnectionId],
    ) -> ReconciliationSummary:
        start_time = perf_counter()
        summary = ReconciliationSummary()

        resolver = self._resolver or AssetMappingRepository(self._session).snapshot()
        matcher = TransferMatcher(
            MatchCandidateFinder(self._transactions, fetch_cap=self._settings.candidate_fetch_cap),
            resolver,
            params=self._params,
        )
        detector = OffRampDetector(
            resolver,
            window=timedelta(hours=self._settings.off_ramp_window_hours),
            priority=self._settings.off_ramp_priority,
        )

        events: list[TransferEvent] = []
        for row in self._events.list_unlinked_transfers(connection_ids):
            try:
                events.append(ExchangeEventRepository.to_domain(row))  # type: ignore[arg-type]
            except ValidationError:
                logger.warning("Skipping malformed exchange event %s", row.external_id)
                summary.unmatched += 1

        sells_by_connection: dict[ConnectionId, list[ExchangeEvent]] = {}
        for event in events:
            self._lock.renew(user_id, run_id)
            try:
                candidate = matcher.find_match(event, wallet_ids)
                if candidate is None:
                    summary.unmatched += 1
                    continue

                self._linker.link(
                    event_id=event.id,
                    transaction_id=candidate.transaction_id,
                    confidence=candidate.confidence,
                )
            except LinkConflictError as err:
                logger.warning("Event %s lost its candidate: %s", event.external_id, err.reason)
                summary.unmatched += 1
                continue
            except Exception:
                logger.exception("Failed to reconcile exchange event %s", event.external_id)
                self._session.rollback()
                summary.unmatched += 1
                continue

            summary.matched += 1
            if isinstance(event, DepositEvent):
                try:
                    if event.connection_id not in sells_by_connection:
                        sells_by_connection[event.connection_id] = self._events.list_by_connection(
                            event.connection_id, kinds=SELL_EVENT_TYPES
                        )
                    classification = detector.detect(
                        user_id=user_id,
                        deposit=event,
                        matched_transaction_id=candidate.transaction_id,
                        exchange_events=sells_by_connection[event.connection_id],
                    )
                    if classification is not None and self._classifications.create_if_absent(classification):
                        summary.off_ramps += 1
                except Exception:
                    logger.exception("Off-ramp check failed for deposit %s", event.external_id)
                    self._session.rollback()

        logger.info(
            "Reconciled user=%s matched=%d unmatched=%d off_ramps=%d in %.2fs",
            user_id,
            summary.matched,
            summary.unmatched,
            summary.off_ramps,
            perf_counter() - start_time,
        )
        return summary
