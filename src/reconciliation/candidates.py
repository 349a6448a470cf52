from __future__ import annotations

import logging
from typing import Sequence

from pydantic import ValidationError

from db.repositories import BlockchainTransactionRepository
from domain.assets import AssetResolver, Unresolved
from domain.base_types import WalletId
from domain.ledger import BlockchainTransaction, DepositEvent, TransactionType, TransferEvent
from domain.matching import (
    MatchCandidate,
    MatchParameters,
    MatchWindow,
    exact_match,
    match_window,
    score_transaction,
    select_best,
)

logger = logging.getLogger(__name__)


class MatchCandidateFinder:
    """Fetch unlinked on-chain transfers of the user's wallets that could back an exchange event."""

    def __init__(self, transactions: BlockchainTransactionRepository, *, fetch_cap: int = 200) -> None:
        self._transactions = transactions
        self._fetch_cap = fetch_cap

    def by_reference(self, event: TransferEvent, wallet_ids: Sequence[WalletId]) -> BlockchainTransaction | None:
        if not event.chain_reference:
            return None
        try:
            transaction = self._transactions.find_by_signature(event.chain_reference)
        except ValidationError:
            logger.warning("Referenced transaction %s is malformed", event.chain_reference)
            return None
        if transaction is None or transaction.linked_event_id is not None:
            return None
        if transaction.wallet_id not in wallet_ids:
            return None
        return transaction

    def in_window(self, window: MatchWindow, wallet_ids: Sequence[WalletId]) -> list[BlockchainTransaction]:
        # Nearest to the exchange timestamp first: deposits look back, withdrawals look forward.
        rows = self._transactions.find_unlinked_in_window(
            wallet_ids=wallet_ids,
            tx_type=window.expected_type,
            start=window.start,
            end=window.end,
            limit=self._fetch_cap,
            newest_first=window.expected_type == TransactionType.TRANSFER_OUT,
        )
        candidates: list[BlockchainTransaction] = []
        for row in rows:
            try:
                candidates.append(BlockchainTransactionRepository.to_domain(row))
            except ValidationError:
                logger.warning("Skipping malformed candidate transaction %s", row.signature)
        return candidates


class TransferMatcher:
    def __init__(
        self,
        finder: MatchCandidateFinder,
        resolver: AssetResolver,
        *,
        params: MatchParameters | None = None,
    ) -> None:
        self._finder = finder
        self._resolver = resolver
        self._params = params or MatchParameters()

    def find_match(self, event: TransferEvent, wallet_ids: Sequence[WalletId]) -> MatchCandidate | None:
        referenced = self._finder.by_reference(event, wallet_ids)
        if referenced is not None:
            return exact_match(referenced)

        resolved = self._resolver.resolve(event.asset, event.network)
        if isinstance(resolved, Unresolved):
            logger.info("Event %s asset %s is unresolved; not matching", event.external_id, event.asset)
            return None

        window = match_window(event, self._params)
        candidates = self._finder.in_window(window, wallet_ids)
        scored = [
            candidate
            for candidate in (
                score_transaction(
                    transaction,
                    asset_id=resolved.asset_id,
                    amount=event.amount,
                    event_timestamp=event.timestamp,
                    window=window,
                    params=self._params,
                )
                for transaction in candidates
            )
            if candidate is not None
        ]
        best = select_best(scored)
        if best is None:
            logger.debug(
                "No candidate for %s %s of %s %s among %d transactions",
                "deposit" if isinstance(event, DepositEvent) else "withdrawal",
                event.external_id,
                event.amount,
                event.asset,
                len(candidates),
            )
        return best
