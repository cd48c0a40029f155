"""
SQLite-backed points store.

Points are awarded for deposits, trades and wins, credited to a user's
master wallet. Every credit is one row in the immutable ``point_events``
ledger; a trigger keeps the ``users`` totals in step.

Idempotency:
    Each credit carries the transaction signature, the event kind and the
    event's index within the transaction. A UNIQUE index over those three
    columns makes the insert itself the dedup check, so concurrent or
    repeated deliveries of the same event credit at most once. The insert
    and the totals update happen in one transaction.

Example:
    >>> store = PointsStore("data/points.db")
    >>> store.initialize()
    >>> store.record_trade("MasterPubkey...", 12_500_000, "yes", "buy", "5sig...")
    12
    >>> store.record_trade("MasterPubkey...", 12_500_000, "yes", "buy", "5sig...")
    0
"""

import logging
import sqlite3
from contextlib import contextmanager
from decimal import ROUND_FLOOR, Decimal
from pathlib import Path
from typing import Any, Optional

from ..config import POINTS_DB_PATH
from ..events.decoder import LAMPORTS_PER_XNT

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# Point multipliers
DEPOSIT_POINTS_PER_XNT = 10  # 1 point per 0.1 XNT deposited
TRADE_POINTS_PER_SHARE = 1  # 1 point per share traded
WIN_POINTS_PER_XNT = 20  # 2 points per 0.1 XNT profit

SHARES_E6 = 1_000_000


class PointsStoreError(Exception):
    """Raised when the points database cannot be read or written."""

    pass


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def calculate_deposit_points(amount_lamports: int) -> int:
    return _floor(Decimal(amount_lamports) / LAMPORTS_PER_XNT * DEPOSIT_POINTS_PER_XNT)


def calculate_trade_points(shares_e6: int) -> int:
    return _floor(Decimal(shares_e6) / SHARES_E6 * TRADE_POINTS_PER_SHARE)


def calculate_win_points(profit_lamports: int) -> int:
    return _floor(Decimal(profit_lamports) / LAMPORTS_PER_XNT * WIN_POINTS_PER_XNT)


class PointsStore:
    """
    Points ledger and leaderboard.

    Every ``record_*`` method is safe to call repeatedly with the same
    signature: only the first call credits points, later calls return 0.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or POINTS_DB_PATH)
        self._initialized = False

    @contextmanager
    def get_connection(self):
        """Context manager for database connections (commit or roll back)."""
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create tables, indexes and triggers if missing."""
        if self._initialized:
            return

        if not SCHEMA_PATH.exists():
            raise FileNotFoundError(f"Schema file not found: {SCHEMA_PATH}")

        schema_sql = SCHEMA_PATH.read_text()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with self.get_connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(schema_sql)
        except sqlite3.Error as e:
            raise PointsStoreError(f"Failed to initialize points database: {e}") from e

        self._initialized = True
        logger.info(f"Points database initialized: {self.db_path}")

    def close(self) -> None:
        """Nothing is held open between calls; kept for symmetric teardown."""
        self._initialized = False

    # =========================================================================
    # Idempotency
    # =========================================================================

    def signature_exists(
        self,
        tx_signature: Optional[str],
        event_type: Optional[str] = None,
        event_index: Optional[int] = None,
    ) -> bool:
        """
        Check whether a signature has already been credited.

        Args:
            tx_signature: Transaction signature.
            event_type: Narrow to one event kind ('trade', 'deposit', 'win').
            event_index: Narrow to one event within the transaction.
        """
        if not tx_signature:
            return False

        query = "SELECT 1 FROM point_events WHERE tx_signature = ?"
        params: list[Any] = [tx_signature]
        if event_type is not None:
            query += " AND event_type = ?"
            params.append(event_type)
        if event_index is not None:
            query += " AND event_index = ?"
            params.append(event_index)

        try:
            with self.get_connection() as conn:
                return conn.execute(f"{query} LIMIT 1", params).fetchone() is not None
        except sqlite3.Error as e:
            raise PointsStoreError(f"Failed to check signature {tx_signature[:8]}: {e}") from e

    def _insert_event(self, master_pubkey: str, event_type: str, points: int, **columns: Any) -> int:
        """Insert one credit; returns the points applied (0 on duplicate)."""
        fields = ["master_pubkey", "event_type", "points", *columns.keys()]
        placeholders = ", ".join("?" for _ in fields)
        sql = f"INSERT OR IGNORE INTO point_events ({', '.join(fields)}) VALUES ({placeholders})"

        try:
            with self.get_connection() as conn:
                cursor = conn.execute(sql, (master_pubkey, event_type, points, *columns.values()))
                inserted = cursor.rowcount == 1
        except sqlite3.Error as e:
            raise PointsStoreError(f"Failed to record {event_type} for {master_pubkey[:8]}: {e}") from e

        if not inserted:
            logger.info(
                f"[POINTS] Duplicate {event_type} for {(columns.get('tx_signature') or '')[:8]} ignored"
            )
            return 0
        return points

    # =========================================================================
    # Record events
    # =========================================================================

    def record_deposit(
        self,
        master_pubkey: str,
        amount_lamports: int,
        tx_signature: Optional[str] = None,
        event_index: int = 0,
        market_id: Optional[str] = None,
    ) -> int:
        """Credit deposit points. Returns points awarded."""
        points = calculate_deposit_points(amount_lamports)
        if points <= 0:
            return 0
        return self._insert_event(
            master_pubkey,
            "deposit",
            points,
            tx_signature=tx_signature,
            event_index=event_index,
            amount_lamports=amount_lamports,
            market_id=market_id,
        )

    def record_trade(
        self,
        master_pubkey: str,
        shares_e6: int,
        side: str,
        direction: str,
        tx_signature: Optional[str] = None,
        event_index: int = 0,
        market_id: Optional[str] = None,
    ) -> int:
        """Credit trade points. Returns points awarded."""
        points = calculate_trade_points(shares_e6)
        if points <= 0:
            return 0
        return self._insert_event(
            master_pubkey,
            "trade",
            points,
            tx_signature=tx_signature,
            event_index=event_index,
            shares_e6=shares_e6,
            side=side,
            direction=direction,
            market_id=market_id,
        )

    def record_win(
        self,
        master_pubkey: str,
        profit_lamports: int,
        tx_signature: Optional[str] = None,
        event_index: int = 0,
        market_id: Optional[str] = None,
    ) -> int:
        """Credit win points on realized profit. Returns points awarded."""
        points = calculate_win_points(profit_lamports)
        if points <= 0:
            return 0
        return self._insert_event(
            master_pubkey,
            "win",
            points,
            tx_signature=tx_signature,
            event_index=event_index,
            payout_lamports=profit_lamports,
            market_id=market_id,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def _fetch(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self.get_connection() as conn:
                return conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise PointsStoreError(f"Points query failed: {e}") from e

    def get_user(self, master_pubkey: str) -> Optional[dict[str, Any]]:
        rows = self._fetch("SELECT * FROM users WHERE master_pubkey = ?", (master_pubkey,))
        return dict(rows[0]) if rows else None

    def get_user_points(self, master_pubkey: str) -> int:
        user = self.get_user(master_pubkey)
        return user["total_points"] if user else 0

    def get_user_history(self, master_pubkey: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = self._fetch(
            """
            SELECT * FROM point_events
            WHERE master_pubkey = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (master_pubkey, limit),
        )
        return [dict(row) for row in rows]

    def get_leaderboard(self, limit: int = 100) -> list[dict[str, Any]]:
        rows = self._fetch(
            """
            SELECT master_pubkey, total_points, deposit_points, trade_points, win_points, updated_at
            FROM users
            ORDER BY total_points DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [dict(row) for row in rows]

    def get_user_rank(self, master_pubkey: str) -> Optional[int]:
        if self.get_user(master_pubkey) is None:
            return None
        rows = self._fetch(
            """
            SELECT COUNT(*) + 1 AS rank
            FROM users
            WHERE total_points > (SELECT total_points FROM users WHERE master_pubkey = ?)
            """,
            (master_pubkey,),
        )
        return rows[0]["rank"]

    def get_stats(self) -> dict[str, int]:
        rows = self._fetch(
            """
            SELECT
                COUNT(*) AS total_users,
                COALESCE(SUM(total_points), 0) AS total_points,
                COALESCE(SUM(deposit_points), 0) AS total_deposit_points,
                COALESCE(SUM(trade_points), 0) AS total_trade_points,
                COALESCE(SUM(win_points), 0) AS total_win_points
            FROM users
            """
        )
        return dict(rows[0])
