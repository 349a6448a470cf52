from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from domain.base_types import PSEUDO_ASSET_PREFIX, AssetId, pseudo_asset_id
from domain.ledger import AssetMapping

PSEUDO_DECIMALS = 8


@dataclass(frozen=True)
class ResolvedAsset:
    asset_id: AssetId
    decimals: int


@dataclass(frozen=True)
class Unresolved:
    """No mapping exists; the pseudo id keeps the asset addressable."""

    pseudo_id: AssetId
    decimals: int = PSEUDO_DECIMALS


class AssetResolver:
    """Resolve exchange symbols to canonical asset ids over a fixed snapshot of mappings.

    Lookup order:
    1. the value is already a canonical asset id in the snapshot
    2. exact (symbol, network) mapping
    3. mapping flagged as default for the symbol
    4. any mapping for the symbol
    """

    def __init__(self, mappings: Iterable[AssetMapping]) -> None:
        self._by_symbol_network: dict[tuple[str, str], AssetMapping] = {}
        self._by_symbol: dict[str, list[AssetMapping]] = {}
        self._by_asset_id: dict[str, AssetMapping] = {}

        for mapping in mappings:
            symbol = mapping.symbol.upper()
            self._by_symbol_network.setdefault((symbol, mapping.network.lower()), mapping)
            self._by_symbol.setdefault(symbol, []).append(mapping)
            self._by_asset_id.setdefault(mapping.asset_id, mapping)

    def resolve(self, symbol_or_pseudo_id: str, network_hint: str | None = None) -> ResolvedAsset | Unresolved:
        value = symbol_or_pseudo_id.strip()
        known = self._by_asset_id.get(value)
        if known is not None:
            return ResolvedAsset(asset_id=known.asset_id, decimals=known.decimals)

        symbol = value.removeprefix(PSEUDO_ASSET_PREFIX).upper()
        mapping = self._lookup(symbol, network_hint)
        if mapping is None:
            return Unresolved(pseudo_id=pseudo_asset_id(symbol))
        return ResolvedAsset(asset_id=mapping.asset_id, decimals=mapping.decimals)

    def asset_id_or_pseudo(self, symbol_or_pseudo_id: str, network_hint: str | None = None) -> tuple[AssetId, int]:
        resolved = self.resolve(symbol_or_pseudo_id, network_hint)
        if isinstance(resolved, Unresolved):
            return resolved.pseudo_id, resolved.decimals
        return resolved.asset_id, resolved.decimals

    def _lookup(self, symbol: str, network_hint: str | None) -> AssetMapping | None:
        if network_hint:
            exact = self._by_symbol_network.get((symbol, network_hint.strip().lower()))
            if exact is not None:
                return exact

        candidates = self._by_symbol.get(symbol)
        if not candidates:
            return None
        for mapping in candidates:
            if mapping.is_default:
                return mapping
        return candidates[0]
