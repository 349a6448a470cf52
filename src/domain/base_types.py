from __future__ import annotations

from enum import StrEnum
from typing import NewType
from uuid import UUID

from pydantic import BaseModel, ConfigDict, model_validator

AssetId = NewType("AssetId", str)
UserId = NewType("UserId", str)
WalletId = NewType("WalletId", str)
ConnectionId = NewType("ConnectionId", str)
WalletAddress = NewType("WalletAddress", str)

TransactionId = NewType("TransactionId", UUID)
ExchangeEventId = NewType("ExchangeEventId", UUID)
FlowId = NewType("FlowId", UUID)

PSEUDO_ASSET_PREFIX = "exchange:"
FIAT_ASSET_PREFIX = "fiat:"
NATIVE_PLACEHOLDER = "native"

FIAT_CURRENCIES = frozenset(
    {
        "USD", "BRL", "EUR", "GBP", "AUD", "CAD", "JPY", "TRY", "RUB", "NGN",
        "ARS", "COP", "KES", "ZAR", "INR", "IDR", "PHP", "VND", "THB", "MYR",
    }
)  # fmt: skip


class Direction(StrEnum):
    IN = "IN"
    OUT = "OUT"


class ScopeKind(StrEnum):
    WALLET = "WALLET"
    EXCHANGE = "EXCHANGE"


class OwnerScope(BaseModel):
    """The account a flow is attributed to: a wallet or an exchange connection."""

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    id: str

    @model_validator(mode="after")
    def _validate_id(self) -> OwnerScope:
        if not self.id:
            raise ValueError("OwnerScope.id must be non-empty")
        return self

    @classmethod
    def wallet(cls, wallet_id: str) -> OwnerScope:
        return cls(kind=ScopeKind.WALLET, id=wallet_id)

    @classmethod
    def exchange(cls, connection_id: str) -> OwnerScope:
        return cls(kind=ScopeKind.EXCHANGE, id=connection_id)


def pseudo_asset_id(symbol: str) -> AssetId:
    return AssetId(f"{PSEUDO_ASSET_PREFIX}{symbol.strip().upper()}")


def fiat_asset_id(currency: str) -> AssetId:
    return AssetId(f"{FIAT_ASSET_PREFIX}{currency.strip().upper()}")


def is_fiat_symbol(symbol: str) -> bool:
    return symbol.strip().upper() in FIAT_CURRENCIES


def is_placeholder_asset(asset_id: str) -> bool:
    """True for pseudo, fiat and native placeholder ids that are not real tokens."""
    return (
        asset_id.startswith(PSEUDO_ASSET_PREFIX)
        or asset_id.startswith(FIAT_ASSET_PREFIX)
        or asset_id == NATIVE_PLACEHOLDER
        or asset_id.upper() in FIAT_CURRENCIES
    )
