"""Persistent creator fee ledger and token registry."""

from spark_fees.ledger.registry import RegisteredToken, SqliteTokenRegistry, TokenRegistry
from spark_fees.ledger.store import LedgerStore

__all__ = ["LedgerStore", "RegisteredToken", "SqliteTokenRegistry", "TokenRegistry"]
