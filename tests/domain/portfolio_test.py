from datetime import timedelta
from decimal import Decimal

from domain.base_types import Direction, OwnerScope
from domain.ledger import ExchangeEventType
from domain.portfolio import aggregate_portfolio, is_aggregated, portfolio_for_asset
from tests.constants import BONK, CONNECTION, SOL, T0
from tests.helpers.factories import make_flow


def test_fee_flows_are_excluded_from_totals() -> None:
    flows = [
        make_flow(amount="10", direction=Direction.IN, timestamp=T0),
        make_flow(amount="3", direction=Direction.OUT, timestamp=T0 + timedelta(hours=1)),
        make_flow(amount="1", direction=Direction.OUT, is_fee=True, timestamp=T0 + timedelta(hours=2)),
    ]

    [row] = aggregate_portfolio(flows)

    assert row.asset_id == SOL
    assert row.total_bought == Decimal("10")
    assert row.total_sold == Decimal("3")
    assert row.net == Decimal("7")
    assert row.buy_count == 1
    assert row.sell_count == 1
    assert row.first_activity == T0
    assert row.last_activity == T0 + timedelta(hours=1)


def test_inbound_fee_does_not_count_as_bought() -> None:
    flows = [
        make_flow(amount="10", direction=Direction.IN, timestamp=T0),
        make_flow(amount="3", direction=Direction.OUT, timestamp=T0 + timedelta(hours=1)),
        make_flow(amount="1", direction=Direction.IN, is_fee=True, timestamp=T0 + timedelta(hours=1)),
    ]

    [row] = aggregate_portfolio(flows)

    assert row.total_bought == Decimal("10")
    assert row.total_sold == Decimal("3")
    assert row.net == Decimal("7")


def test_priced_totals_only_count_valued_flows() -> None:
    flows = [
        make_flow(amount="2", direction=Direction.IN, value="300"),
        make_flow(amount="1", direction=Direction.IN),
        make_flow(amount="1", direction=Direction.OUT, value="160"),
    ]

    [row] = aggregate_portfolio(flows)

    assert row.total_bought == Decimal("3")
    assert row.priced_bought == Decimal("2")
    assert row.total_bought_value == Decimal("300")
    assert row.priced_sold == Decimal("1")
    assert row.total_sold_value == Decimal("160")
    assert row.traded_value == Decimal("460")


def test_exchange_side_of_transfers_is_not_counted_twice() -> None:
    exchange = OwnerScope.exchange(CONNECTION)
    flows = [
        make_flow(amount="5", direction=Direction.OUT),
        make_flow(amount="5", direction=Direction.IN, scope=exchange, transaction_type=ExchangeEventType.DEPOSIT.value),
        make_flow(amount="5", direction=Direction.OUT, scope=exchange, transaction_type=ExchangeEventType.TRADE.value),
    ]

    [row] = aggregate_portfolio(flows)

    assert row.total_bought == 0
    assert row.total_sold == Decimal("10")
    assert not is_aggregated(flows[1])


def test_placeholder_assets_only_hidden_in_holdings_view() -> None:
    flows = [
        make_flow(amount="5", direction=Direction.IN, asset_id="exchange:WIF", decimals=8),
        make_flow(amount="100", direction=Direction.IN, asset_id="fiat:BRL", decimals=2),
        make_flow(amount="1", direction=Direction.IN, asset_id="native"),
        make_flow(amount="1", direction=Direction.IN, asset_id="USD", decimals=2),
        make_flow(amount="1", direction=Direction.IN, asset_id=SOL),
    ]

    assert [row.asset_id for row in aggregate_portfolio(flows)] == [SOL]
    assert len(aggregate_portfolio(flows, holdings_only=False)) == 5


def test_rows_sorted_by_traded_value_then_asset() -> None:
    flows = [
        make_flow(amount="1", direction=Direction.IN, asset_id=SOL, value="100"),
        make_flow(amount="1", direction=Direction.IN, asset_id=BONK, decimals=5, value="500"),
        make_flow(amount="1", direction=Direction.IN, asset_id="AAA"),
        make_flow(amount="1", direction=Direction.IN, asset_id="ZZZ"),
    ]

    assert [row.asset_id for row in aggregate_portfolio(flows)] == [BONK, SOL, "AAA", "ZZZ"]


def test_time_window_is_inclusive() -> None:
    flows = [
        make_flow(amount="1", direction=Direction.IN, timestamp=T0 - timedelta(seconds=1)),
        make_flow(amount="2", direction=Direction.IN, timestamp=T0),
        make_flow(amount="4", direction=Direction.IN, timestamp=T0 + timedelta(days=1)),
        make_flow(amount="8", direction=Direction.IN, timestamp=T0 + timedelta(days=1, seconds=1)),
    ]

    [row] = aggregate_portfolio(flows, start=T0, end=T0 + timedelta(days=1))

    assert row.total_bought == Decimal("6")


def test_single_asset_lookup() -> None:
    flows = [
        make_flow(amount="1", direction=Direction.IN, asset_id=SOL),
        make_flow(amount="7", direction=Direction.IN, asset_id=BONK, decimals=5),
    ]

    row = portfolio_for_asset(flows, BONK)

    assert row is not None
    assert row.total_bought == Decimal("7")
    assert portfolio_for_asset(flows, "missing") is None
