"""Domain models and pure logic for cross-ledger reconciliation.

This package contains in-memory (Pydantic) models for wallets, blockchain
transactions, exchange events and flows, plus the matching, valuation and
aggregation rules over them. They are independent from persistence models so
that business logic and testing can evolve without DB coupling.
"""

__all__ = [
    "assets",
    "base_types",
    "classification",
    "flows",
    "ledger",
    "matching",
    "off_ramp",
    "portfolio",
    "valuation",
]
