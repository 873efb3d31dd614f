"""Token registry: which tokens, pools and creators the sweep should visit."""

import logging
import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Union

logger = logging.getLogger(__name__)


@dataclass
class RegisteredToken:
    creator_id: str
    token_mint: str
    name: str = ""
    dbc_pool_address: Optional[str] = None
    damm_pool_address: Optional[str] = None
    dao_treasury: Optional[str] = None
    project_id: Optional[str] = None


class TokenRegistry(Protocol):
    def list_tokens(self, limit: Optional[int] = None) -> List[RegisteredToken]:
        ...

    def find_by_pool(self, pool_address: str) -> Optional[RegisteredToken]:
        ...


class SqliteTokenRegistry:
    """Registry backed by a ``tokens`` table, usually in the ledger database."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tokens (
                    token_mint TEXT PRIMARY KEY,
                    creator_id TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    dbc_pool_address TEXT,
                    damm_pool_address TEXT,
                    dao_treasury TEXT,
                    project_id TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def upsert_token(self, token: RegisteredToken) -> None:
        row = asdict(token)
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO tokens (token_mint, creator_id, name, dbc_pool_address, damm_pool_address, dao_treasury, project_id)
                VALUES (:token_mint, :creator_id, :name, :dbc_pool_address, :damm_pool_address, :dao_treasury, :project_id)
                ON CONFLICT(token_mint) DO UPDATE SET
                    creator_id = excluded.creator_id,
                    name = excluded.name,
                    dbc_pool_address = excluded.dbc_pool_address,
                    damm_pool_address = excluded.damm_pool_address,
                    dao_treasury = excluded.dao_treasury,
                    project_id = excluded.project_id
                """,
                row,
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _from_row(row: sqlite3.Row) -> RegisteredToken:
        return RegisteredToken(
            creator_id=row["creator_id"],
            token_mint=row["token_mint"],
            name=row["name"] or "",
            dbc_pool_address=row["dbc_pool_address"],
            damm_pool_address=row["damm_pool_address"],
            dao_treasury=row["dao_treasury"],
            project_id=row["project_id"],
        )

    def list_tokens(self, limit: Optional[int] = None) -> List[RegisteredToken]:
        query = (
            "SELECT * FROM tokens "
            "WHERE dbc_pool_address IS NOT NULL OR damm_pool_address IS NOT NULL "
            "ORDER BY created_at DESC, token_mint"
        )
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [self._from_row(row) for row in rows]

    def find_by_pool(self, pool_address: str) -> Optional[RegisteredToken]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM tokens WHERE dbc_pool_address = ? OR damm_pool_address = ?",
                (pool_address, pool_address),
            ).fetchone()
        finally:
            conn.close()
        return self._from_row(row) if row else None
