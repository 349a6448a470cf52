from datetime import timedelta
from decimal import Decimal

from domain.ledger import ChainTransfer, TransactionType
from domain.matching import (
    MatchCandidate,
    MatchParameters,
    amount_difference,
    exact_match,
    match_window,
    score_transaction,
    select_best,
)
from tests.constants import SOL, T0, USDC
from tests.helpers.factories import make_deposit, make_transaction, make_withdrawal


def test_deposit_window_looks_back_for_outgoing_transfers() -> None:
    window = match_window(make_deposit(timestamp=T0), MatchParameters())

    assert window.start == T0 - timedelta(hours=1)
    assert window.end == T0
    assert window.expected_type == TransactionType.TRANSFER_OUT


def test_withdrawal_window_looks_forward_for_incoming_transfers() -> None:
    window = match_window(make_withdrawal(timestamp=T0), MatchParameters())

    assert window.start == T0
    assert window.end == T0 + timedelta(hours=2)
    assert window.expected_type == TransactionType.TRANSFER_IN


def test_amount_difference_is_relative_and_ignores_sign() -> None:
    assert amount_difference(Decimal("-5.08"), Decimal("5")) == Decimal("0.016")
    # Tiny expected amounts are measured against the epsilon floor.
    assert amount_difference(Decimal("0.00005"), Decimal("0.00001")) == Decimal("0.4")


def test_score_combines_amount_and_time() -> None:
    params = MatchParameters()
    deposit = make_deposit(timestamp=T0, amount="5.00")
    window = match_window(deposit, params)
    transaction = make_transaction(timestamp=T0 - timedelta(minutes=10), amount="5.00")

    candidate = score_transaction(
        transaction, asset_id=SOL, amount=deposit.amount, event_timestamp=T0, window=window, params=params
    )

    assert candidate is not None
    assert candidate.amount_diff == 0
    assert candidate.score == Decimal("0.05")
    assert candidate.confidence == Decimal("0.95")


def test_out_of_tolerance_and_other_assets_are_rejected() -> None:
    params = MatchParameters()
    window = match_window(make_deposit(timestamp=T0), params)
    too_far = make_transaction(timestamp=T0, amount="5.11")
    wrong_asset = make_transaction(timestamp=T0, amount="5.00", asset_id=USDC)

    for transaction in (too_far, wrong_asset):
        assert (
            score_transaction(
                transaction, asset_id=SOL, amount=Decimal("5.00"), event_timestamp=T0, window=window, params=params
            )
            is None
        )


def test_boundary_tolerance_is_accepted() -> None:
    params = MatchParameters()
    window = match_window(make_deposit(timestamp=T0), params)
    transaction = make_transaction(timestamp=T0, amount="5.10")

    candidate = score_transaction(
        transaction, asset_id=SOL, amount=Decimal("5.00"), event_timestamp=T0, window=window, params=params
    )

    assert candidate is not None
    assert candidate.amount_diff == Decimal("0.02")


def test_best_transfer_inside_a_transaction_is_used() -> None:
    params = MatchParameters()
    window = match_window(make_deposit(timestamp=T0), params)
    transaction = make_transaction(timestamp=T0, amount="5.09")
    transaction.transfers.append(ChainTransfer(asset_id=SOL, amount=Decimal("5.01")))

    candidate = score_transaction(
        transaction, asset_id=SOL, amount=Decimal("5.00"), event_timestamp=T0, window=window, params=params
    )

    assert candidate is not None
    assert candidate.amount_diff == Decimal("0.002")


def test_lower_score_wins_then_earliest_timestamp() -> None:
    first = make_transaction(timestamp=T0 - timedelta(minutes=30), amount="1")
    second = make_transaction(timestamp=T0 - timedelta(minutes=10), amount="1")

    def candidate(transaction_id, timestamp, score: str) -> MatchCandidate:  # type: ignore[no-untyped-def]
        return MatchCandidate(
            transaction_id=transaction_id,
            timestamp=timestamp,
            score=Decimal(score),
            amount_diff=Decimal(0),
            time_diff=timedelta(0),
        )

    assert select_best(
        [candidate(first.id, first.timestamp, "0.2"), candidate(second.id, second.timestamp, "0.1")]
    ).transaction_id == second.id  # type: ignore[union-attr]
    assert select_best(
        [candidate(second.id, second.timestamp, "0.1"), candidate(first.id, first.timestamp, "0.1")]
    ).transaction_id == first.id  # type: ignore[union-attr]
    assert select_best([]) is None


def test_exact_match_has_full_confidence() -> None:
    transaction = make_transaction(timestamp=T0, amount="1")

    candidate = exact_match(transaction)

    assert candidate.score == 0
    assert candidate.confidence == 1
