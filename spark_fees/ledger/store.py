"""
Ledger Store - durable earned vs. claimed accounting per creator and token.

Invariant per row: 0 <= total_claimed_by_creator <= total_earned.

All balance changes are SQL increments (``col = col + ?``) inside
``BEGIN IMMEDIATE`` transactions, so two writers never read-modify-write the
same value. Earned increments are keyed by claim signature, which makes a
retried sweep safe to replay.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from spark_fees.errors import LedgerOverdrawError
from spark_fees.types import CreatorFeeSummaryDict, TokenFeeDict, TransferDirection

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LedgerStore:
    """SQLite-backed fee ledger plus the audit tables around it."""

    def __init__(self, db_path: Union[str, Path] = "data/fee_engine.db"):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_database(self):
        """Initialize SQLite database."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS fee_ledger (
                    creator_id TEXT NOT NULL,
                    token_mint TEXT NOT NULL,
                    total_earned INTEGER NOT NULL DEFAULT 0,
                    total_claimed_by_creator INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (creator_id, token_mint),
                    CHECK (total_claimed_by_creator >= 0),
                    CHECK (total_claimed_by_creator <= total_earned)
                )
            """)

            # One row per confirmed claim transaction credited to the ledger
            conn.execute("""
                CREATE TABLE IF NOT EXISTS claim_events (
                    signature TEXT PRIMARY KEY,
                    creator_id TEXT NOT NULL,
                    token_mint TEXT NOT NULL,
                    pool_address TEXT,
                    action TEXT,
                    claimed_amount INTEGER NOT NULL,
                    earned_amount INTEGER NOT NULL,
                    method TEXT,
                    recorded_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS payouts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    creator_id TEXT NOT NULL,
                    destination TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    tx_signature TEXT UNIQUE NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            # At most one in-flight payout per creator; cleared when it settles
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pending_payouts (
                    creator_id TEXT PRIMARY KEY,
                    destination TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    tx_signature TEXT NOT NULL,
                    last_valid_block_height INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS distributions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    token_mint TEXT NOT NULL,
                    stakeholder_id TEXT NOT NULL,
                    address TEXT,
                    percentage_bps INTEGER NOT NULL,
                    amount INTEGER NOT NULL,
                    rent_topup INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    tx_signature TEXT,
                    error_detail TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS treasury_assignments (
                    project_id TEXT PRIMARY KEY,
                    wallet_address TEXT NOT NULL,
                    assigned_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS investments (
                    signature TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    investor TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    direction TEXT NOT NULL,
                    recorded_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS project_raised (
                    project_id TEXT PRIMARY KEY,
                    raised_amount INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
            """)

        logger.info(f"Fee ledger database initialized at {self.db_path}")

    # ==================== EARNED / CLAIMED ====================

    def increase_earned(
        self,
        creator_id: str,
        token_mint: str,
        amount: int,
        source_signature: Optional[str] = None,
        claimed_amount: Optional[int] = None,
        pool_address: Optional[str] = None,
        action: Optional[str] = None,
        method: Optional[str] = None,
    ) -> bool:
        """
        Credit ``amount`` to the creator's earned total for ``token_mint``.

        When ``source_signature`` is given and already recorded, nothing
        changes and False is returned.
        """
        if amount < 0:
            raise ValueError(f"Earned increment must be non-negative, got {amount}")

        with self._transaction() as conn:
            if source_signature:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO claim_events (
                        signature, creator_id, token_mint, pool_address, action,
                        claimed_amount, earned_amount, method, recorded_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        source_signature, creator_id, token_mint, pool_address, action,
                        claimed_amount if claimed_amount is not None else amount,
                        amount, method, _now(),
                    ),
                )
                if cursor.rowcount == 0:
                    logger.info(f"Claim {source_signature[:16]}... already credited, skipping")
                    return False

            conn.execute(
                """
                INSERT INTO fee_ledger (creator_id, token_mint, total_earned, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(creator_id, token_mint) DO UPDATE SET
                    total_earned = total_earned + ?,
                    updated_at = ?
                """,
                (creator_id, token_mint, amount, _now(), amount, _now()),
            )

        logger.info(f"Earned +{amount} for creator {creator_id} on {token_mint}")
        return True

    def increase_claimed(self, creator_id: str, token_mint: str, amount: int) -> None:
        """Debit ``amount``; raises LedgerOverdrawError and changes nothing when it exceeds available."""
        if amount < 0:
            raise ValueError(f"Claimed increment must be non-negative, got {amount}")

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT total_earned, total_claimed_by_creator FROM fee_ledger "
                "WHERE creator_id = ? AND token_mint = ?",
                (creator_id, token_mint),
            ).fetchone()
            available = (row["total_earned"] - row["total_claimed_by_creator"]) if row else 0
            if amount > available:
                raise LedgerOverdrawError(creator_id, amount, available, token_mint)

            conn.execute(
                """
                UPDATE fee_ledger
                SET total_claimed_by_creator = total_claimed_by_creator + ?,
                    updated_at = ?
                WHERE creator_id = ? AND token_mint = ?
                """,
                (amount, _now(), creator_id, token_mint),
            )

        logger.info(f"Claimed +{amount} for creator {creator_id} on {token_mint}")

    def get_entry(self, creator_id: str, token_mint: str) -> TokenFeeDict:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT total_earned, total_claimed_by_creator FROM fee_ledger "
                "WHERE creator_id = ? AND token_mint = ?",
                (creator_id, token_mint),
            ).fetchone()
        earned = row["total_earned"] if row else 0
        claimed = row["total_claimed_by_creator"] if row else 0
        return {"token_mint": token_mint, "total_earned": earned, "total_claimed": claimed, "available": earned - claimed}

    def get_available(self, creator_id: str) -> CreatorFeeSummaryDict:
        """Earned, claimed and available summed across all of a creator's tokens."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT token_mint, total_earned, total_claimed_by_creator FROM fee_ledger "
                "WHERE creator_id = ? ORDER BY token_mint",
                (creator_id,),
            ).fetchall()

        per_token: List[TokenFeeDict] = []
        for row in rows:
            earned = row["total_earned"]
            claimed = row["total_claimed_by_creator"]
            per_token.append({
                "token_mint": row["token_mint"],
                "total_earned": earned,
                "total_claimed": claimed,
                "available": earned - claimed,
            })

        total_earned = sum(t["total_earned"] for t in per_token)
        total_claimed = sum(t["total_claimed"] for t in per_token)
        return {
            "creator_id": creator_id,
            "total_earned": total_earned,
            "total_claimed": total_claimed,
            "available": total_earned - total_claimed,
            "per_token": per_token,
        }

    # ==================== PAYOUTS ====================

    def record_payout(
        self,
        creator_id: str,
        destination: str,
        amount: int,
        tx_signature: str,
    ) -> Dict[str, int]:
        """
        Debit one payout across the creator's tokens in a single transaction.

        Tokens are drained in mint order. Returns the per-token debit.
        """
        debits: Dict[str, int] = {}
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT token_mint, total_earned, total_claimed_by_creator FROM fee_ledger "
                "WHERE creator_id = ? ORDER BY token_mint",
                (creator_id,),
            ).fetchall()
            available = sum(r["total_earned"] - r["total_claimed_by_creator"] for r in rows)
            if amount > available:
                raise LedgerOverdrawError(creator_id, amount, available)

            remaining = amount
            for row in rows:
                if remaining <= 0:
                    break
                share = min(remaining, row["total_earned"] - row["total_claimed_by_creator"])
                if share <= 0:
                    continue
                conn.execute(
                    """
                    UPDATE fee_ledger
                    SET total_claimed_by_creator = total_claimed_by_creator + ?,
                        updated_at = ?
                    WHERE creator_id = ? AND token_mint = ?
                    """,
                    (share, _now(), creator_id, row["token_mint"]),
                )
                debits[row["token_mint"]] = share
                remaining -= share

            conn.execute(
                """
                INSERT INTO payouts (creator_id, destination, amount, tx_signature, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (creator_id, destination, amount, tx_signature, _now()),
            )
            conn.execute(
                "DELETE FROM pending_payouts WHERE creator_id = ? AND tx_signature = ?",
                (creator_id, tx_signature),
            )

        logger.info(f"Payout {tx_signature[:16]}... recorded for creator {creator_id}: {amount}")
        return debits

    def list_payouts(self, creator_id: str) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM payouts WHERE creator_id = ? ORDER BY id", (creator_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    def save_pending_payout(
        self,
        creator_id: str,
        destination: str,
        amount: int,
        tx_signature: str,
        last_valid_block_height: int,
    ) -> None:
        """Remember a payout transaction before it is sent."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO pending_payouts
                    (creator_id, destination, amount, tx_signature, last_valid_block_height, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (creator_id, destination, amount, tx_signature, last_valid_block_height, _now()),
            )

    def get_pending_payout(self, creator_id: str) -> Optional[Dict[str, Any]]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pending_payouts WHERE creator_id = ?", (creator_id,)
            ).fetchone()
        return dict(row) if row else None

    def clear_pending_payout(self, creator_id: str, tx_signature: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM pending_payouts WHERE creator_id = ? AND tx_signature = ?",
                (creator_id, tx_signature),
            )

    # ==================== DISTRIBUTIONS ====================

    def record_distributions(self, token_mint: str, legs: List[Dict[str, Any]], run_id: Optional[str] = None) -> None:
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO distributions (
                    run_id, token_mint, stakeholder_id, address, percentage_bps,
                    amount, rent_topup, status, tx_signature, error_detail, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        run_id, token_mint, leg["stakeholder_id"], leg.get("address"), leg["percentage_bps"],
                        leg["amount"], leg.get("rent_topup", 0), leg["status"], leg.get("tx_signature"),
                        leg.get("error_detail"), _now(),
                    )
                    for leg in legs
                ],
            )

    def list_distributions(self, token_mint: str) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM distributions WHERE token_mint = ? ORDER BY id", (token_mint,)
            ).fetchall()
        return [dict(row) for row in rows]

    # ==================== TREASURY ASSIGNMENTS ====================

    def get_treasury_assignment(self, project_id: str) -> Optional[str]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT wallet_address FROM treasury_assignments WHERE project_id = ?", (project_id,)
            ).fetchone()
        return row["wallet_address"] if row else None

    def save_treasury_assignment(self, project_id: str, wallet_address: str) -> str:
        """Persist an assignment once; returns whichever address is stored."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO treasury_assignments (project_id, wallet_address, assigned_at) VALUES (?, ?, ?)",
                (project_id, wallet_address, _now()),
            )
            row = conn.execute(
                "SELECT wallet_address FROM treasury_assignments WHERE project_id = ?", (project_id,)
            ).fetchone()
        return row["wallet_address"]

    # ==================== INVESTMENTS ====================

    def record_investment(
        self,
        project_id: str,
        signature: str,
        investor: str,
        amount: int,
        direction: TransferDirection,
    ) -> bool:
        """Record a verified investment and move the project's raised total. False if already recorded."""
        delta = amount if direction == TransferDirection.DEPOSIT else -amount
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO investments (signature, project_id, investor, amount, direction, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (signature, project_id, investor, amount, direction.value, _now()),
            )
            if cursor.rowcount == 0:
                logger.info(f"Investment {signature[:16]}... already recorded")
                return False

            conn.execute(
                """
                INSERT INTO project_raised (project_id, raised_amount, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(project_id) DO UPDATE SET
                    raised_amount = raised_amount + ?,
                    updated_at = ?
                """,
                (project_id, delta, _now(), delta, _now()),
            )
        return True

    def get_project_raised(self, project_id: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT raised_amount FROM project_raised WHERE project_id = ?", (project_id,)
            ).fetchone()
        return row["raised_amount"] if row else 0
