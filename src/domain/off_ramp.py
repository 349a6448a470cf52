from __future__ import annotations

from datetime import timedelta
from typing import Iterable

from domain.assets import AssetResolver
from domain.base_types import TransactionId, UserId
from domain.classification import ClassificationKind, PendingClassification, TaxCategory
from domain.ledger import DepositEvent, ExchangeEvent, is_sell_event
from utils.formatting import format_amount


class OffRampDetector:
    """Flag deposits that were sold shortly after landing on the exchange.

    Heuristic only: the result is a review item, the transactions stay untouched.
    """

    def __init__(
        self,
        resolver: AssetResolver,
        *,
        window: timedelta = timedelta(hours=24),
        priority: int = 10,
    ) -> None:
        self._resolver = resolver
        self._window = window
        self._priority = priority

    def detect(
        self,
        *,
        user_id: UserId,
        deposit: DepositEvent,
        matched_transaction_id: TransactionId,
        exchange_events: Iterable[ExchangeEvent],
    ) -> PendingClassification | None:
        asset_id, _ = self._resolver.asset_id_or_pseudo(deposit.asset, deposit.network)
        window_start = deposit.timestamp
        window_end = deposit.timestamp + self._window

        sells = sorted(
            (
                event
                for event in exchange_events
                if is_sell_event(event)
                and window_start <= event.timestamp < window_end
                and self._resolver.asset_id_or_pseudo(event.asset, event.network)[0] == asset_id
            ),
            key=lambda event: event.timestamp,
        )
        if not sells:
            return None

        sell = sells[0]
        return PendingClassification(
            user_id=user_id,
            transaction_id=matched_transaction_id,
            kind=ClassificationKind.OFFRAMP,
            suggested_category=TaxCategory.DISPOSAL_SALE,
            priority=self._priority,
            estimated_value=sell.total_value,
            notes=f"Off-ramp detected: sent to exchange, sold {format_amount(sell.amount)} {sell.asset.upper()}",
        )
