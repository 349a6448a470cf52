from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from domain.base_types import AssetId, Direction, ScopeKind, is_placeholder_asset
from domain.ledger import ExchangeEventType, Flow

# These movements are the cross-ledger transfers themselves and already show up on the wallet side.
EXCHANGE_TRANSFER_TYPES = frozenset({ExchangeEventType.DEPOSIT.value, ExchangeEventType.WITHDRAWAL.value})


@dataclass
class PortfolioRow:
    asset_id: AssetId
    decimals: int
    total_bought: Decimal = Decimal(0)
    total_sold: Decimal = Decimal(0)
    priced_bought: Decimal = Decimal(0)
    priced_sold: Decimal = Decimal(0)
    total_bought_value: Decimal = Decimal(0)
    total_sold_value: Decimal = Decimal(0)
    first_activity: datetime | None = None
    last_activity: datetime | None = None
    _buy_transactions: set[str] = field(default_factory=set, repr=False)
    _sell_transactions: set[str] = field(default_factory=set, repr=False)

    @property
    def buy_count(self) -> int:
        return len(self._buy_transactions)

    @property
    def sell_count(self) -> int:
        return len(self._sell_transactions)

    @property
    def net(self) -> Decimal:
        return self.total_bought - self.total_sold

    @property
    def traded_value(self) -> Decimal:
        return self.total_bought_value + self.total_sold_value

    def add(self, flow: Flow) -> None:
        value = flow.value or Decimal(0)
        if flow.direction == Direction.IN:
            self.total_bought += flow.amount
            self.total_bought_value += value
            if flow.value is not None:
                self.priced_bought += flow.amount
            self._buy_transactions.add(str(flow.transaction_id))
        else:
            self.total_sold += flow.amount
            self.total_sold_value += value
            if flow.value is not None:
                self.priced_sold += flow.amount
            self._sell_transactions.add(str(flow.transaction_id))

        self.decimals = max(self.decimals, flow.decimals)
        if self.first_activity is None or flow.timestamp < self.first_activity:
            self.first_activity = flow.timestamp
        if self.last_activity is None or flow.timestamp > self.last_activity:
            self.last_activity = flow.timestamp


def is_aggregated(flow: Flow, *, holdings_only: bool = True) -> bool:
    if flow.is_fee:
        return False
    if flow.scope.kind == ScopeKind.EXCHANGE and flow.transaction_type in EXCHANGE_TRANSFER_TYPES:
        return False
    if holdings_only and is_placeholder_asset(flow.asset_id):
        return False
    return True


def aggregate_portfolio(
    flows: Iterable[Flow],
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    holdings_only: bool = True,
) -> list[PortfolioRow]:
    """Sum flows per asset; the time window is inclusive on both ends."""
    rows: dict[AssetId, PortfolioRow] = {}
    for flow in flows:
        if start is not None and flow.timestamp < start:
            continue
        if end is not None and flow.timestamp > end:
            continue
        if not is_aggregated(flow, holdings_only=holdings_only):
            continue
        row = rows.get(flow.asset_id)
        if row is None:
            row = rows[flow.asset_id] = PortfolioRow(asset_id=flow.asset_id, decimals=flow.decimals)
        row.add(flow)

    return sorted(rows.values(), key=lambda row: (-row.traded_value, row.asset_id))


def portfolio_for_asset(
    flows: Iterable[Flow],
    asset_id: AssetId,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> PortfolioRow | None:
    rows = aggregate_portfolio(
        (flow for flow in flows if flow.asset_id == asset_id), start=start, end=end, holdings_only=False
    )
    return rows[0] if rows else None
