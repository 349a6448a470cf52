from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from domain.base_types import AssetId
from domain.ledger import Flow, TransactionType

VALUE_QUANTUM = Decimal("0.00000001")

STABLECOIN_ASSET_IDS: frozenset[str] = frozenset(
    {
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",  # USDC
        "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",  # USDT
    }
)
STABLECOIN_SYMBOLS: frozenset[str] = frozenset(
    {
        "USDT", "USDC", "BUSD", "FDUSD", "USD1", "DAI", "TUSD", "USDP", "GUSD",
        "FRAX", "PYUSD", "USDD", "CUSD", "SUSD", "LUSD", "USD",
    }
)  # fmt: skip

SWAP_TYPES = frozenset({TransactionType.SWAP.value, "TRADE"})


class ValueAttributor:
    """Split a transaction's fiat value across its flows.

    A stable leg in a swap is its own price, so the counter legs take the stable amount.
    Without a stable leg every flow carries the transaction total.
    """

    def __init__(
        self,
        *,
        stable_asset_ids: Iterable[AssetId | str] = STABLECOIN_ASSET_IDS,
        stable_symbols: Iterable[str] = STABLECOIN_SYMBOLS,
    ) -> None:
        self._stable_asset_ids = frozenset(stable_asset_ids)
        self._stable_symbols = frozenset(symbol.upper() for symbol in stable_symbols)

    def is_stable(self, flow: Flow) -> bool:
        if flow.asset_id in self._stable_asset_ids:
            return True
        return flow.symbol is not None and flow.symbol.upper() in self._stable_symbols

    def attribute(self, flows: list[Flow], *, transaction_type: str, total_value: Decimal | None) -> list[Flow]:
        """Return copies of ``flows`` with ``value`` filled; unchanged when there is nothing to price."""
        if not flows or total_value is None or total_value <= 0:
            return flows

        stable_flow = next((flow for flow in flows if self.is_stable(flow)), None)

        if transaction_type in SWAP_TYPES and stable_flow is not None:
            return [
                flow.model_copy(
                    update={"value": _quantize(flow.amount if self.is_stable(flow) else stable_flow.amount)}
                )
                for flow in flows
            ]

        value = _quantize(total_value)
        return [flow.model_copy(update={"value": value}) for flow in flows]


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(VALUE_QUANTUM)
