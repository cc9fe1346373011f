"""
SQLite ledger store: trades (source of truth), positions, allocations.

Per-key atomic updates through optimistic versioning on the positions table;
whole-table swaps for recompute inside a single IMMEDIATE transaction.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from tradeledger.config.logging import logger
from tradeledger.core.exceptions import ConcurrentMutationError, DuplicateTradeError, TradeIdConflictError
from tradeledger.core.models import OPEN, Allocation, Position, Trade
from .mapper import SqliteMapper, ts_to_text, text_to_dec, text_to_ts

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS trades (
        trade_id TEXT PRIMARY KEY,
        source TEXT NOT NULL,
        external_id TEXT NOT NULL,
        venue_key TEXT NOT NULL,
        asset TEXT NOT NULL,
        side TEXT NOT NULL,
        price TEXT NOT NULL,
        qty TEXT NOT NULL,
        fee TEXT NOT NULL,
        ts_utc TEXT NOT NULL,
        UNIQUE (source, external_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trades_asset_ts ON trades (asset, ts_utc)",
    """
    CREATE TABLE IF NOT EXISTS positions (
        position_id TEXT PRIMARY KEY,
        asset TEXT NOT NULL,
        venue_key TEXT NOT NULL,
        side TEXT NOT NULL,
        status TEXT NOT NULL,
        open_qty TEXT NOT NULL,
        closed_qty TEXT NOT NULL,
        remaining_qty TEXT NOT NULL,
        avg_open_price TEXT NOT NULL,
        avg_close_price TEXT,
        realized_pnl TEXT NOT NULL,
        total_fees TEXT NOT NULL,
        opened_at TEXT NOT NULL,
        closed_at TEXT,
        version INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_positions_key ON positions (asset, venue_key, status)",
    """
    CREATE TABLE IF NOT EXISTS allocations (
        seq INTEGER NOT NULL,
        position_id TEXT NOT NULL REFERENCES positions (position_id),
        trade_id TEXT NOT NULL REFERENCES trades (trade_id),
        matched_qty TEXT NOT NULL,
        PRIMARY KEY (seq)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_allocations_trade ON allocations (trade_id)",
    "CREATE INDEX IF NOT EXISTS idx_allocations_position ON allocations (position_id)",
)

_POSITION_COLUMNS = (
    "position_id", "asset", "venue_key", "side", "status", "open_qty", "closed_qty",
    "remaining_qty", "avg_open_price", "avg_close_price", "realized_pnl", "total_fees",
    "opened_at", "closed_at", "version",
)
_TRADE_COLUMNS = (
    "trade_id", "source", "external_id", "venue_key", "asset", "side",
    "price", "qty", "fee", "ts_utc",
)


def _insert_sql(table: str, columns: Sequence[str], verb: str = "INSERT") -> str:
    names = ", ".join(columns)
    params = ", ".join(f":{c}" for c in columns)
    return f"{verb} INTO {table} ({names}) VALUES ({params})"


class LedgerStore:
    """
    Trade / Position / Allocation tables on a single SQLite file.
    Connections are short-lived; one per call.
    """

    def __init__(self, db_path: str | Path, timeout: float = 10.0) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._path), timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """IMMEDIATE transaction: takes the write lock up front, rolls back on any error."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for stmt in _SCHEMA:
                conn.execute(stmt)

    # ------------------------------------------------------------------ trades

    @staticmethod
    def _store_trade_row(conn: sqlite3.Connection, trade: Trade) -> bool:
        """
        Insert the trade row. False when the same (source, external_id) is already
        stored; TradeIdConflictError when its trade_id belongs to a different trade.
        """
        cur = conn.execute(
            _insert_sql("trades", _TRADE_COLUMNS, "INSERT OR IGNORE"),
            SqliteMapper.trade_to_row(trade),
        )
        if cur.rowcount == 1:
            return True
        if conn.execute(
            "SELECT 1 FROM trades WHERE source = ? AND external_id = ?",
            trade.dedupe_key,
        ).fetchone():
            return False
        owner = conn.execute(
            "SELECT source, external_id FROM trades WHERE trade_id = ?", (trade.trade_id,)
        ).fetchone()
        raise TradeIdConflictError(
            f"Trade id {trade.trade_id} ({trade.source}/{trade.dedupe_key[1]}) is already used by "
            f"{owner['source']}/{owner['external_id']}"
        )

    def insert_trade(self, trade: Trade) -> bool:
        """Store a trade; returns False when (source, external_id) already exists."""
        with self.transaction() as conn:
            return self._store_trade_row(conn, trade)

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM trades WHERE trade_id = ?", (trade_id,)).fetchone()
        return SqliteMapper.row_to_trade(row) if row else None

    def list_trades(self, asset: Optional[str] = None) -> List[Trade]:
        """All trades in replay order: (timestamp, trade_id) ascending."""
        sql = "SELECT * FROM trades"
        params: tuple = ()
        if asset:
            sql += " WHERE asset = ?"
            params = (asset,)
        sql += " ORDER BY ts_utc ASC, trade_id ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [SqliteMapper.row_to_trade(r) for r in rows]

    def get_trades_for_position(self, position_id: str) -> List[Trade]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT t.* FROM trades t
                JOIN allocations a ON a.trade_id = t.trade_id
                WHERE a.position_id = ?
                ORDER BY a.seq ASC
                """,
                (position_id,),
            ).fetchall()
        return [SqliteMapper.row_to_trade(r) for r in rows]

    def latest_trade_price(self, asset: str):
        """Most recent observed trade price for the asset across all venues, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT price FROM trades WHERE asset = ? ORDER BY ts_utc DESC, trade_id DESC LIMIT 1",
                (asset,),
            ).fetchone()
        return text_to_dec(row["price"]) if row else None

    def last_applied(self, asset: str, venue_key: str) -> Optional[Tuple]:
        """(timestamp, trade_id) of the newest trade already allocated on this book."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT t.ts_utc, t.trade_id FROM allocations a
                JOIN trades t ON t.trade_id = a.trade_id
                WHERE t.asset = ? AND t.venue_key = ?
                ORDER BY t.ts_utc DESC, t.trade_id DESC LIMIT 1
                """,
                (asset, venue_key),
            ).fetchone()
        if not row:
            return None
        return (text_to_ts(row["ts_utc"]), row["trade_id"])

    # --------------------------------------------------------------- positions

    def find_open_positions(self, asset: str, venue_key: str) -> List[Position]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM positions WHERE asset = ? AND venue_key = ? AND status = ? ORDER BY opened_at, position_id",
                (asset, venue_key, OPEN),
            ).fetchall()
        return [SqliteMapper.row_to_position(r) for r in rows]

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM positions WHERE position_id = ?", (position_id,)).fetchone()
        return SqliteMapper.row_to_position(row) if row else None

    def list_positions(
        self,
        status: Optional[str] = None,
        asset: Optional[str] = None,
        closed_from=None,
        closed_to=None,
        limit: Optional[int] = None,
    ) -> List[Position]:
        """
        Filtered position listing. OPEN rows come newest-opened first, CLOSED rows
        newest-closed first; without a status filter the order is by opened_at, id.
        """
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if asset:
            clauses.append("asset = ?")
            params.append(asset)
        if closed_from is not None:
            clauses.append("closed_at >= ?")
            params.append(ts_to_text(closed_from))
        if closed_to is not None:
            clauses.append("closed_at <= ?")
            params.append(ts_to_text(closed_to))
        sql = "SELECT * FROM positions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if status == OPEN:
            sql += " ORDER BY opened_at DESC, position_id DESC"
        elif status:
            sql += " ORDER BY closed_at DESC, position_id DESC"
        else:
            sql += " ORDER BY opened_at ASC, position_id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [SqliteMapper.row_to_position(r) for r in rows]

    # ------------------------------------------------------------- allocations

    def list_allocations(self, position_id: Optional[str] = None, trade_id: Optional[str] = None) -> List[Allocation]:
        clauses, params = [], []
        if position_id:
            clauses.append("position_id = ?")
            params.append(position_id)
        if trade_id:
            clauses.append("trade_id = ?")
            params.append(trade_id)
        sql = "SELECT * FROM allocations"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [SqliteMapper.row_to_allocation(r) for r in rows]

    def is_allocated(self, trade_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM allocations WHERE trade_id = ? LIMIT 1", (trade_id,)).fetchone()
        return row is not None

    # ----------------------------------------------------------------- writes

    def commit_trade(self, trade: Trade, touched: Iterable[Tuple[Position, bool]], allocations: Iterable[Allocation]) -> List[Allocation]:
        """
        Persist the outcome of one trade atomically.

        The trade row is stored if it is not there yet. `touched` holds
        (position, is_new) pairs in application order. Existing positions are
        updated only if their stored version is still `position.version - 1` and
        they are still OPEN; new positions are inserted only if no OPEN row
        exists for their key. Either check failing rolls the whole write back
        with ConcurrentMutationError.
        """
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM allocations WHERE trade_id = ? LIMIT 1", (trade.trade_id,)).fetchone():
                raise DuplicateTradeError(f"Trade {trade.trade_id} is already allocated")
            if not self._store_trade_row(conn, trade) and not conn.execute(
                "SELECT 1 FROM trades WHERE trade_id = ?", (trade.trade_id,)
            ).fetchone():
                raise DuplicateTradeError(f"Trade {trade.trade_id} duplicates stored trade {trade.source}/{trade.dedupe_key[1]}")

            for position, is_new in touched:
                row = SqliteMapper.position_to_row(position)
                if is_new:
                    clash = conn.execute(
                        "SELECT position_id FROM positions WHERE asset = ? AND venue_key = ? AND status = ?",
                        (position.asset, position.venue_key, OPEN),
                    ).fetchone()
                    if clash:
                        raise ConcurrentMutationError(
                            f"Position {clash['position_id']} was opened for {position.asset}@{position.venue_key} concurrently"
                        )
                    conn.execute(_insert_sql("positions", _POSITION_COLUMNS), row)
                else:
                    assignments = ", ".join(f"{c} = :{c}" for c in _POSITION_COLUMNS if c != "position_id")
                    cur = conn.execute(
                        f"UPDATE positions SET {assignments} "
                        "WHERE position_id = :position_id AND version = :expected_version AND status = :open_status",
                        {**row, "expected_version": position.version - 1, "open_status": OPEN},
                    )
                    if cur.rowcount != 1:
                        raise ConcurrentMutationError(
                            f"Position {position.position_id} changed before write (expected version {position.version - 1})"
                        )

            seq = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM allocations").fetchone()[0]
            stored = []
            for alloc in allocations:
                seq += 1
                conn.execute(
                    "INSERT INTO allocations (seq, position_id, trade_id, matched_qty) VALUES (?, ?, ?, ?)",
                    (seq, alloc.position_id, alloc.trade_id, str(alloc.matched_qty)),
                )
                stored.append(Allocation(alloc.position_id, alloc.trade_id, alloc.matched_qty, seq))
            return stored

    def replace_all(self, trades: Iterable[Trade], positions: Iterable[Position], allocations: Iterable[Allocation]) -> None:
        """
        Swap the whole Position/Allocation state in one transaction.
        Trades are upserted (never deleted); readers see either the old or the new tables.
        """
        with self.transaction() as conn:
            conn.executemany(
                _insert_sql("trades", _TRADE_COLUMNS, "INSERT OR IGNORE"),
                [SqliteMapper.trade_to_row(t) for t in trades],
            )
            conn.execute("DELETE FROM allocations")
            conn.execute("DELETE FROM positions")
            conn.executemany(
                _insert_sql("positions", _POSITION_COLUMNS),
                [SqliteMapper.position_to_row(p) for p in positions],
            )
            conn.executemany(
                "INSERT INTO allocations (seq, position_id, trade_id, matched_qty) VALUES (?, ?, ?, ?)",
                [(a.seq, a.position_id, a.trade_id, str(a.matched_qty)) for a in allocations],
            )
        logger.debug(f"Ledger tables replaced in {self._path}")
