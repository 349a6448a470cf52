from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from db.repositories import ExchangeConnectionRepository, FlowRepository, WalletRepository
from domain.base_types import OwnerScope, UserId
from domain.portfolio import PortfolioRow, aggregate_portfolio

from .formatting import format_amount, format_usd


def compute_portfolio(
    session: Session,
    user_id: UserId,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[PortfolioRow]:
    scopes = [OwnerScope.wallet(wallet.id) for wallet in WalletRepository(session).list_active_by_user(user_id)]
    scopes += [
        OwnerScope.exchange(connection.id)
        for connection in ExchangeConnectionRepository(session).list_by_user(user_id)
    ]
    if not scopes:
        return []
    flows = FlowRepository(session).list_for_scopes(scopes, start=start, end=end)
    return aggregate_portfolio(flows, start=start, end=end)


def render_portfolio(rows: list[PortfolioRow]) -> None:
    print("Portfolio:")
    if not rows:
        print("  (empty)")
        return

    labels = ("Asset", "Bought", "Sold", "Net", "Buys", "Sells", "Value USD")
    lines_data: list[tuple[str, ...]] = [
        (
            row.asset_id,
            format_amount(row.total_bought, row.decimals),
            format_amount(row.total_sold, row.decimals),
            format_amount(row.net, row.decimals),
            str(row.buy_count),
            str(row.sell_count),
            format_usd(row.traded_value),
        )
        for row in rows
    ]

    widths = [max(len(label), max(len(data[index]) for data in lines_data)) for index, label in enumerate(labels)]

    header = " ".join(
        f"{label:<{width}}" if index == 0 else f"{label:>{width}}"
        for index, (label, width) in enumerate(zip(labels, widths))
    )
    lines = [header, "-" * len(header)]
    for data in lines_data:
        lines.append(
            " ".join(
                f"{text:<{width}}" if index == 0 else f"{text:>{width}}"
                for index, (text, width) in enumerate(zip(data, widths))
            )
        )
    lines.append("-" * len(header))
    print("\n".join(lines))
