from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from config import AppSettings
from domain.base_types import AssetId, TransactionId
from domain.ledger import BlockchainTransaction, DepositEvent, TransactionType, TransferEvent

AMOUNT_EPSILON = Decimal("0.0001")


@dataclass(frozen=True)
class MatchParameters:
    deposit_window: timedelta = timedelta(hours=1)
    withdrawal_window: timedelta = timedelta(hours=2)
    amount_tolerance: Decimal = Decimal("0.02")
    amount_weight: Decimal = Decimal("0.7")
    time_weight: Decimal = Decimal("0.3")

    @classmethod
    def from_settings(cls, settings: AppSettings) -> MatchParameters:
        return cls(
            deposit_window=timedelta(minutes=settings.deposit_window_minutes),
            withdrawal_window=timedelta(minutes=settings.withdrawal_window_minutes),
            amount_tolerance=settings.amount_tolerance,
            amount_weight=settings.amount_weight,
            time_weight=settings.time_weight,
        )


@dataclass(frozen=True)
class MatchWindow:
    start: datetime
    end: datetime
    length: timedelta
    expected_type: TransactionType


@dataclass(frozen=True)
class MatchCandidate:
    transaction_id: TransactionId
    timestamp: datetime
    score: Decimal
    amount_diff: Decimal
    time_diff: timedelta

    @property
    def confidence(self) -> Decimal:
        return Decimal(1) - self.score


def match_window(event: TransferEvent, params: MatchParameters) -> MatchWindow:
    """Deposits leave a wallet shortly before the exchange credits them; withdrawals land after."""
    if isinstance(event, DepositEvent):
        return MatchWindow(
            start=event.timestamp - params.deposit_window,
            end=event.timestamp,
            length=params.deposit_window,
            expected_type=TransactionType.TRANSFER_OUT,
        )
    return MatchWindow(
        start=event.timestamp,
        end=event.timestamp + params.withdrawal_window,
        length=params.withdrawal_window,
        expected_type=TransactionType.TRANSFER_IN,
    )


def exact_match(transaction: BlockchainTransaction) -> MatchCandidate:
    return MatchCandidate(
        transaction_id=transaction.id,
        timestamp=transaction.timestamp,
        score=Decimal(0),
        amount_diff=Decimal(0),
        time_diff=timedelta(0),
    )


def amount_difference(transfer_amount: Decimal, expected_amount: Decimal) -> Decimal:
    return abs(abs(transfer_amount) - expected_amount) / max(expected_amount, AMOUNT_EPSILON)


def score_transaction(
    transaction: BlockchainTransaction,
    *,
    asset_id: AssetId,
    amount: Decimal,
    event_timestamp: datetime,
    window: MatchWindow,
    params: MatchParameters,
) -> MatchCandidate | None:
    """Best in-tolerance transfer of ``asset_id`` inside ``transaction``, if any."""
    time_diff = abs(transaction.timestamp - event_timestamp)
    elapsed = Decimal(str(time_diff.total_seconds()))
    window_seconds = Decimal(str(window.length.total_seconds()))

    best: MatchCandidate | None = None
    for transfer in transaction.transfers:
        if transfer.asset_id != asset_id:
            continue
        amount_diff = amount_difference(transfer.amount, amount)
        if amount_diff > params.amount_tolerance:
            continue
        score = params.amount_weight * amount_diff + params.time_weight * elapsed / window_seconds
        if best is None or score < best.score:
            best = MatchCandidate(
                transaction_id=transaction.id,
                timestamp=transaction.timestamp,
                score=score,
                amount_diff=amount_diff,
                time_diff=time_diff,
            )
    return best


def select_best(candidates: Iterable[MatchCandidate]) -> MatchCandidate | None:
    """Lowest score wins; equal scores go to the earliest transaction."""
    return min(
        candidates,
        key=lambda candidate: (candidate.score, candidate.timestamp, str(candidate.transaction_id)),
        default=None,
    )
