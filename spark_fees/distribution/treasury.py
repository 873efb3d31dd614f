"""
Treasury Assignment.

Each project is mapped to one wallet from the treasury pool by a stable
string hash of its id. The mapping is stored the first time it is computed
and never rewritten, so later changes to the pool do not move a project.
"""

import logging
from typing import List, Sequence

from spark_fees.errors import ConfigurationError
from spark_fees.ledger.store import LedgerStore

logger = logging.getLogger(__name__)


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def project_hash(project_id: str) -> int:
    """``hash = hash * 31 + unit`` over UTF-16 code units, wrapped to signed 32 bits."""
    encoded = project_id.encode("utf-16-le", "surrogatepass")
    h = 0
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = _to_int32(h * 31 + unit)
    return h


def select_treasury_wallet(
    project_id: str,
    treasury_wallets: Sequence[str],
    admin_addresses: Sequence[str] = (),
) -> str:
    """Pure selection: no persistence."""
    pool: List[str] = [w for w in treasury_wallets if w] or [a for a in admin_addresses if a]
    if not pool:
        raise ConfigurationError("No treasury wallets or admin addresses configured")
    return pool[abs(project_hash(project_id)) % len(pool)]


class TreasuryAssigner:
    """Assigns a treasury wallet per project and persists it exactly once."""

    def __init__(self, store: LedgerStore, treasury_wallets: Sequence[str], admin_addresses: Sequence[str] = ()):
        self.store = store
        self.treasury_wallets = list(treasury_wallets)
        self.admin_addresses = list(admin_addresses)

    def assign(self, project_id: str) -> str:
        existing = self.store.get_treasury_assignment(project_id)
        if existing:
            return existing

        wallet = select_treasury_wallet(project_id, self.treasury_wallets, self.admin_addresses)
        stored = self.store.save_treasury_assignment(project_id, wallet)
        logger.info(f"Assigned treasury {stored} to project {project_id}")
        return stored
