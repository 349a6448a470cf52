from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.orm import Session

from db import models
from db.repositories import (
    BlockchainTransactionRepository,
    ExchangeEventRepository,
    PendingClassificationRepository,
    WalletRepository,
)
from domain.assets import AssetResolver
from domain.classification import ClassificationKind, TaxCategory
from domain.ledger import TransactionType, Wallet
from reconciliation.candidates import TransferMatcher
from reconciliation.engine import ReconciliationEngine, ReconciliationSummary
from reconciliation.locks import ReconciliationInProgressError, UserRunLock
from tests.constants import (
    FOREIGN_ADDRESS,
    FOREIGN_WALLET,
    OTHER_CONNECTION,
    OTHER_USER,
    SOL,
    T0,
    USER,
    WALLET,
)
from tests.helpers.factories import (
    make_deposit,
    make_sell,
    make_transaction,
    make_withdrawal,
    seed_user,
    store_events,
    store_transactions,
)


@pytest.fixture()
def engine(test_session: Session, seeded_mappings: AssetResolver) -> ReconciliationEngine:
    seed_user(test_session)
    return ReconciliationEngine(test_session)


def _event(session: Session, event_id):  # type: ignore[no-untyped-def]
    return ExchangeEventRepository(session).get(event_id)


def _transaction(session: Session, transaction_id):  # type: ignore[no-untyped-def]
    return BlockchainTransactionRepository(session).get(transaction_id)


def test_deposit_is_linked_symmetrically(test_session: Session, engine: ReconciliationEngine) -> None:
    transaction = make_transaction(timestamp=T0 - timedelta(minutes=10), amount="5.00")
    deposit = make_deposit(timestamp=T0, amount="5.00")
    store_transactions(test_session, transaction)
    store_events(test_session, deposit)

    summary = engine.reconcile_user(USER)

    assert summary == ReconciliationSummary(matched=1, unmatched=0, off_ramps=0)
    stored_event = _event(test_session, deposit.id)
    assert stored_event.linked_transaction_id == transaction.id
    assert stored_event.match_confidence == Decimal("0.95")
    assert _transaction(test_session, transaction.id).linked_event_id == deposit.id


def test_lower_score_candidate_is_selected(test_session: Session, engine: ReconciliationEngine) -> None:
    exact_amount = make_transaction(timestamp=T0 - timedelta(minutes=10), amount="5.00")
    costlier = make_transaction(timestamp=T0 - timedelta(minutes=50), amount="5.08")
    deposit = make_deposit(timestamp=T0, amount="5.00")
    store_transactions(test_session, costlier, exact_amount)
    store_events(test_session, deposit)

    engine.reconcile_user(USER)

    assert _event(test_session, deposit.id).linked_transaction_id == exact_amount.id
    assert _transaction(test_session, costlier.id).linked_event_id is None


def test_out_of_tolerance_amount_is_not_matched(test_session: Session, engine: ReconciliationEngine) -> None:
    store_transactions(test_session, make_transaction(timestamp=T0 - timedelta(minutes=1), amount="5.11"))
    deposit = make_deposit(timestamp=T0, amount="5.00")
    store_events(test_session, deposit)

    summary = engine.reconcile_user(USER)

    assert summary == ReconciliationSummary(matched=0, unmatched=1, off_ramps=0)
    assert _event(test_session, deposit.id).linked_transaction_id is None


def test_withdrawal_matches_later_incoming_transfer(test_session: Session, engine: ReconciliationEngine) -> None:
    before = make_transaction(
        timestamp=T0 - timedelta(minutes=5), amount="3", tx_type=TransactionType.TRANSFER_IN
    )
    after = make_transaction(timestamp=T0 + timedelta(minutes=40), amount="2.99", tx_type=TransactionType.TRANSFER_IN)
    outgoing = make_transaction(timestamp=T0 + timedelta(minutes=1), amount="3")
    withdrawal = make_withdrawal(timestamp=T0, amount="3")
    store_transactions(test_session, before, after, outgoing)
    store_events(test_session, withdrawal)

    summary = engine.reconcile_user(USER)

    assert summary.matched == 1
    assert _event(test_session, withdrawal.id).linked_transaction_id == after.id


def test_one_transfer_is_never_linked_twice(test_session: Session, engine: ReconciliationEngine) -> None:
    transaction = make_transaction(timestamp=T0 - timedelta(minutes=5), amount="5")
    first = make_deposit(timestamp=T0, amount="5")
    second = make_deposit(timestamp=T0 + timedelta(minutes=1), amount="5")
    store_transactions(test_session, transaction)
    store_events(test_session, first, second)

    summary = engine.reconcile_user(USER)

    assert summary == ReconciliationSummary(matched=1, unmatched=1, off_ramps=0)
    assert _event(test_session, first.id).linked_transaction_id == transaction.id
    assert _event(test_session, second.id).linked_transaction_id is None


def test_rerun_creates_no_new_links_or_off_ramps(test_session: Session, engine: ReconciliationEngine) -> None:
    store_transactions(test_session, make_transaction(timestamp=T0 - timedelta(minutes=5), amount="5"))
    store_events(
        test_session,
        make_deposit(timestamp=T0, amount="5"),
        make_deposit(timestamp=T0 + timedelta(days=3), amount="7"),
        make_sell(timestamp=T0 + timedelta(hours=2)),
    )

    first = engine.reconcile_user(USER)
    second = engine.reconcile_user(USER)

    assert first == ReconciliationSummary(matched=1, unmatched=1, off_ramps=1)
    assert second == ReconciliationSummary(matched=0, unmatched=1, off_ramps=0)
    assert PendingClassificationRepository(test_session).count_pending(USER) == 1


def test_sell_after_deposit_creates_one_disposal_review(test_session: Session, engine: ReconciliationEngine) -> None:
    transaction = make_transaction(timestamp=T0 - timedelta(minutes=5), amount="5")
    store_transactions(test_session, transaction)
    store_events(
        test_session,
        make_deposit(timestamp=T0, amount="5"),
        make_sell(timestamp=T0 + timedelta(hours=2), total_value="750"),
        make_sell(timestamp=T0 + timedelta(hours=3), total_value="10"),
    )

    summary = engine.reconcile_user(USER)

    assert summary.off_ramps == 1
    [classification] = PendingClassificationRepository(test_session).list_for_transaction(transaction.id)
    assert classification.kind == ClassificationKind.OFFRAMP
    assert classification.suggested_category == TaxCategory.DISPOSAL_SALE
    assert classification.estimated_value == Decimal("750")
    assert classification.user_id == USER


def test_withdrawal_never_triggers_off_ramp(test_session: Session, engine: ReconciliationEngine) -> None:
    store_transactions(
        test_session,
        make_transaction(timestamp=T0 + timedelta(minutes=5), amount="5", tx_type=TransactionType.TRANSFER_IN),
    )
    store_events(
        test_session, make_withdrawal(timestamp=T0, amount="5"), make_sell(timestamp=T0 + timedelta(hours=1))
    )

    summary = engine.reconcile_user(USER)

    assert summary == ReconciliationSummary(matched=1, unmatched=0, off_ramps=0)


def test_claimed_reference_is_accepted_outright(test_session: Session, engine: ReconciliationEngine) -> None:
    # Far outside the window and amount tolerance; only the reference ties them together.
    transaction = make_transaction(timestamp=T0 - timedelta(days=2), amount="4.2", signature="5xRefSig")
    deposit = make_deposit(timestamp=T0, amount="5", chain_reference="5xRefSig")
    store_transactions(test_session, transaction)
    store_events(test_session, deposit)

    summary = engine.reconcile_user(USER)

    assert summary.matched == 1
    stored = _event(test_session, deposit.id)
    assert stored.linked_transaction_id == transaction.id
    assert stored.match_confidence == Decimal(1)


def test_reference_to_linked_transaction_does_not_relink(test_session: Session, engine: ReconciliationEngine) -> None:
    transaction = make_transaction(timestamp=T0 - timedelta(minutes=5), amount="5", signature="5xTaken")
    owner = make_deposit(timestamp=T0, amount="5")
    store_transactions(test_session, transaction)
    store_events(test_session, owner)
    engine.reconcile_user(USER)

    claimant = make_deposit(timestamp=T0 + timedelta(minutes=1), amount="5", chain_reference="5xTaken")
    store_events(test_session, claimant)
    summary = engine.reconcile_user(USER)

    assert summary == ReconciliationSummary(matched=0, unmatched=1, off_ramps=0)
    assert _transaction(test_session, transaction.id).linked_event_id == owner.id
    assert _event(test_session, claimant.id).linked_transaction_id is None


def test_reference_to_foreign_wallet_is_ignored(test_session: Session, engine: ReconciliationEngine) -> None:
    WalletRepository(test_session).create_many(
        [Wallet(id=FOREIGN_WALLET, user_id=OTHER_USER, address=FOREIGN_ADDRESS, network="solana")]
    )
    foreign = make_transaction(timestamp=T0 - timedelta(days=1), amount="5", wallet_id=FOREIGN_WALLET, signature="5xF")
    deposit = make_deposit(timestamp=T0, amount="5", chain_reference="5xF")
    store_transactions(test_session, foreign)
    store_events(test_session, deposit)

    summary = engine.reconcile_user(USER)

    assert summary.matched == 0
    assert _transaction(test_session, foreign.id).linked_event_id is None


def test_unresolved_asset_is_unmatched(test_session: Session, engine: ReconciliationEngine) -> None:
    store_transactions(test_session, make_transaction(timestamp=T0 - timedelta(minutes=1), amount="5"))
    store_events(test_session, make_deposit(timestamp=T0, amount="5", asset="WIF"))

    summary = engine.reconcile_user(USER)

    assert summary == ReconciliationSummary(matched=0, unmatched=1, off_ramps=0)


def test_fiat_orders_are_not_reconciled(test_session: Session, engine: ReconciliationEngine) -> None:
    store_events(test_session, make_deposit(timestamp=T0, amount="500", asset="BRL", is_fiat_order=True))

    assert engine.reconcile_user(USER) == ReconciliationSummary()


def test_malformed_candidate_is_skipped(test_session: Session, engine: ReconciliationEngine) -> None:
    broken = models.BlockchainTransactionOrm(
        id=uuid4(),
        signature="broken",
        timestamp=T0 - timedelta(minutes=1),
        tx_type=TransactionType.TRANSFER_OUT.value,
        wallet_id=WALLET,
    )
    broken.transfers = [models.ChainTransferOrm(position=0, asset_id=SOL, amount=None)]
    test_session.add(broken)
    test_session.commit()
    valid = make_transaction(timestamp=T0 - timedelta(minutes=20), amount="5")
    store_transactions(test_session, valid)
    deposit = make_deposit(timestamp=T0, amount="5")
    store_events(test_session, deposit)

    summary = engine.reconcile_user(USER)

    assert summary.matched == 1
    assert _event(test_session, deposit.id).linked_transaction_id == valid.id


def test_user_without_wallets_gets_empty_summary(test_session: Session, seeded_mappings: AssetResolver) -> None:
    seed_user(test_session, user_id=OTHER_USER, wallets=(), connections=(OTHER_CONNECTION,))
    store_events(test_session, make_deposit(timestamp=T0, connection_id=OTHER_CONNECTION))

    summary = ReconciliationEngine(test_session).reconcile_user(OTHER_USER)

    assert summary == ReconciliationSummary(matched=0, unmatched=0, off_ramps=0)


def test_deactivated_wallet_transfers_are_not_candidates(test_session: Session, engine: ReconciliationEngine) -> None:
    store_transactions(test_session, make_transaction(timestamp=T0 - timedelta(minutes=1), amount="5"))
    store_events(test_session, make_deposit(timestamp=T0, amount="5"))
    WalletRepository(test_session).deactivate(WALLET)

    assert engine.reconcile_user(USER) == ReconciliationSummary()


def test_run_is_refused_while_another_holds_the_lock(test_session: Session, engine: ReconciliationEngine) -> None:
    store_events(test_session, make_deposit(timestamp=T0))

    with UserRunLock(test_session).hold(USER):
        with pytest.raises(ReconciliationInProgressError):
            engine.reconcile_user(USER)


def test_failing_event_does_not_stop_the_run(
    test_session: Session, engine: ReconciliationEngine, monkeypatch: pytest.MonkeyPatch
) -> None:
    store_transactions(
        test_session,
        make_transaction(timestamp=T0 - timedelta(minutes=1), amount="5"),
        make_transaction(timestamp=T0 + timedelta(hours=4, minutes=-1), amount="6"),
    )
    failing = make_deposit(timestamp=T0, amount="5")
    healthy = make_deposit(timestamp=T0 + timedelta(hours=4), amount="6")
    store_events(test_session, failing, healthy)

    original = TransferMatcher.find_match

    def find_match(self, event, wallet_ids):  # type: ignore[no-untyped-def]
        if event.id == failing.id:
            raise RuntimeError("indexer hiccup")
        return original(self, event, wallet_ids)

    monkeypatch.setattr(TransferMatcher, "find_match", find_match)

    summary = engine.reconcile_user(USER)

    assert summary == ReconciliationSummary(matched=1, unmatched=1, off_ramps=0)
    assert _event(test_session, healthy.id).linked_transaction_id is not None


def test_reconcile_connection_limits_scope(test_session: Session, seeded_mappings: AssetResolver) -> None:
    seed_user(test_session, connections=("binance-1", OTHER_CONNECTION))
    store_transactions(
        test_session,
        make_transaction(timestamp=T0 - timedelta(minutes=1), amount="5"),
        make_transaction(timestamp=T0 - timedelta(minutes=2), amount="5"),
    )
    okx_deposit = make_deposit(timestamp=T0, amount="5", connection_id=OTHER_CONNECTION)
    binance_deposit = make_deposit(timestamp=T0, amount="5")
    store_events(test_session, okx_deposit, binance_deposit)

    summary = ReconciliationEngine(test_session).reconcile_connection(OTHER_CONNECTION, USER)

    assert summary.matched == 1
    assert _event(test_session, okx_deposit.id).linked_transaction_id is not None
    assert _event(test_session, binance_deposit.id).linked_transaction_id is None
