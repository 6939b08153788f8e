"""
SQLite block database.

Optional per-block telemetry for a test run:

- One row per chain and run in `chains`
- One row per observed block in `blocks`
- One row per transaction hash in `txs`

The database is the only state the harness persists. Rows from earlier runs
are kept; each run gets its own `chains` rows.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from interchain_harness.chain import BlockSummary


@dataclass(frozen=True, slots=True)
class ChainsNamespace:
    """Chains observed by a run."""

    TABLE_NAME: str = "chains"

    CREATE_TABLE: str = """
        CREATE TABLE IF NOT EXISTS chains (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            test_name TEXT NOT NULL,
            chain_id TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """


@dataclass(frozen=True, slots=True)
class BlocksNamespace:
    """Blocks keyed by chain row and height."""

    TABLE_NAME: str = "blocks"

    CREATE_TABLE: str = """
        CREATE TABLE IF NOT EXISTS blocks (
            chain INTEGER NOT NULL REFERENCES chains(id),
            height INTEGER NOT NULL,
            hash TEXT NOT NULL,
            time TEXT NOT NULL,
            num_txs INTEGER NOT NULL,
            PRIMARY KEY (chain, height)
        )
    """


@dataclass(frozen=True, slots=True)
class TxsNamespace:
    """Transaction hashes by block."""

    TABLE_NAME: str = "txs"

    CREATE_TABLE: str = """
        CREATE TABLE IF NOT EXISTS txs (
            chain INTEGER NOT NULL REFERENCES chains(id),
            height INTEGER NOT NULL,
            idx INTEGER NOT NULL,
            hash TEXT NOT NULL,
            PRIMARY KEY (chain, height, idx)
        )
    """

    CREATE_INDEX: str = """
        CREATE INDEX IF NOT EXISTS idx_txs_hash ON txs(hash)
    """


CHAINS = ChainsNamespace()
BLOCKS = BlocksNamespace()
TXS = TxsNamespace()


@dataclass(frozen=True, slots=True)
class BlockRecord:
    """A stored block."""

    chain_id: str
    height: int
    hash: str
    time: str
    num_txs: int


class BlockDatabase:
    """
    SQLite store for observed blocks.

    One connection shared by the collector tasks of every chain. All of them
    run on the event loop thread, so writes never interleave.
    """

    def __init__(self, path: Path | str) -> None:
        """
        Open (and create if needed) a block database.

        Args:
            path: Database file. Use ":memory:" for an in-memory database.
        """
        self._path = Path(path) if isinstance(path, str) else path
        if str(self._path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute(CHAINS.CREATE_TABLE)
        cursor.execute(BLOCKS.CREATE_TABLE)
        cursor.execute(TXS.CREATE_TABLE)
        cursor.execute(TXS.CREATE_INDEX)
        self._conn.commit()

    # -------------------------------------------------------------------------
    # Chains
    # -------------------------------------------------------------------------

    def add_chain(self, test_name: str, chain_id: str) -> int:
        """Register a chain for this run and return its row id."""
        cursor = self._conn.cursor()
        cursor.execute(
            f"INSERT INTO {CHAINS.TABLE_NAME} (test_name, chain_id, created_at) VALUES (?, ?, ?)",
            (test_name, chain_id, datetime.now(UTC).isoformat()),
        )
        self._conn.commit()
        assert cursor.lastrowid is not None
        return cursor.lastrowid

    # -------------------------------------------------------------------------
    # Blocks
    # -------------------------------------------------------------------------

    def put_block(self, chain: int, block: BlockSummary) -> None:
        """Store a block and its transaction hashes in one transaction."""
        with self._conn:
            self._conn.execute(
                f"""
                INSERT OR REPLACE INTO {BLOCKS.TABLE_NAME} (chain, height, hash, time, num_txs)
                VALUES (?, ?, ?, ?, ?)
                """,
                (chain, block.height, block.hash, block.time, len(block.tx_hashes)),
            )
            self._conn.executemany(
                f"""
                INSERT OR REPLACE INTO {TXS.TABLE_NAME} (chain, height, idx, hash)
                VALUES (?, ?, ?, ?)
                """,
                [(chain, block.height, i, tx_hash) for i, tx_hash in enumerate(block.tx_hashes)],
            )

    def latest_height(self, chain: int) -> int | None:
        cursor = self._conn.execute(
            f"SELECT MAX(height) AS height FROM {BLOCKS.TABLE_NAME} WHERE chain = ?", (chain,)
        )
        row = cursor.fetchone()
        return None if row is None else row["height"]

    def blocks(self, chain_id: str, test_name: str | None = None) -> list[BlockRecord]:
        """Blocks recorded for a chain id, oldest first."""
        query = f"""
            SELECT c.chain_id, b.height, b.hash, b.time, b.num_txs
            FROM {BLOCKS.TABLE_NAME} b JOIN {CHAINS.TABLE_NAME} c ON b.chain = c.id
            WHERE c.chain_id = ?
        """
        params: tuple[str, ...] = (chain_id,)
        if test_name is not None:
            query += " AND c.test_name = ?"
            params += (test_name,)
        rows = self._conn.execute(query + " ORDER BY c.id, b.height", params).fetchall()
        return [
            BlockRecord(
                chain_id=row["chain_id"],
                height=row["height"],
                hash=row["hash"],
                time=row["time"],
                num_txs=row["num_txs"],
            )
            for row in rows
        ]

    def find_tx(self, tx_hash: str) -> tuple[str, int] | None:
        """Chain id and height of the block that included a transaction."""
        row = self._conn.execute(
            f"""
            SELECT c.chain_id, t.height
            FROM {TXS.TABLE_NAME} t JOIN {CHAINS.TABLE_NAME} c ON t.chain = c.id
            WHERE t.hash = ?
            """,
            (tx_hash,),
        ).fetchone()
        return None if row is None else (row["chain_id"], row["height"])

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> BlockDatabase:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
