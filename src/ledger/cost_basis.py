"""
Cost-basis queries over the durable trading history.

The win-points path needs a user's cost basis for the current market cycle.
It is recomputed on every request by replaying the cycle's BUY/SELL rows in
chronological order with the same proportional-reduction rule the live
ledger uses. Nothing is cached.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from ..config import TRADE_HISTORY_DB_PATH
from ..events.models import Action, Side
from .positions import Position

logger = logging.getLogger(__name__)

# Trading history rows are keyed by this many leading characters of the wallet
USER_PREFIX_LENGTH = 6


class CostBasisError(Exception):
    """Raised when trading history cannot be read."""

    pass


@dataclass(frozen=True)
class CostBasisSnapshot:
    """Per-user, per-cycle cost basis for both sides."""

    yes_cost: Decimal = Decimal("0")
    no_cost: Decimal = Decimal("0")
    yes_shares: Decimal = Decimal("0")
    no_shares: Decimal = Decimal("0")
    cycle_id: Optional[Any] = None

    def larger_side(self) -> Side:
        """
        Side with the larger share count (Up on a tie).

        Used as the presumed winning side when scoring a redeem.
        """
        return Side.UP if self.yes_shares >= self.no_shares else Side.DOWN

    def cost_for(self, side: Side) -> Decimal:
        return self.yes_cost if side is Side.UP else self.no_cost


def replay_cost_basis(rows: Iterable[Mapping[str, Any]], cycle_id: Optional[Any] = None) -> CostBasisSnapshot:
    """
    Replay trade rows into a cost-basis snapshot.

    Args:
        rows: Chronological rows with ``action``, ``side``, ``shares`` and
              ``cost_usd`` keys.
        cycle_id: Carried onto the snapshot unchanged.

    Returns:
        The resulting CostBasisSnapshot.
    """
    positions = {Side.UP: Position(), Side.DOWN: Position()}

    for row in rows:
        try:
            side = Side.from_label(str(row["side"]))
            action = Action(str(row["action"]).upper())
        except ValueError:
            logger.debug(f"Skipping trading history row with side={row['side']} action={row['action']}")
            continue

        shares = Decimal(str(row["shares"]))
        cost = Decimal(str(row["cost_usd"]))
        position = positions[side]

        if action is Action.BUY:
            position.buy(shares, cost)
        else:
            position.sell(shares, cost)

    return CostBasisSnapshot(
        yes_cost=positions[Side.UP].total_cost,
        no_cost=positions[Side.DOWN].total_cost,
        yes_shares=positions[Side.UP].shares,
        no_shares=positions[Side.DOWN].shares,
        cycle_id=cycle_id,
    )


class CostBasisQueryService:
    """
    Reads a user's current-cycle trades from the trading history database.

    The database is owned by the persistence API; it is opened read-only.

    Example:
        >>> service = CostBasisQueryService("data/price_history.db")
        >>> snapshot = service.for_user("7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU")
        >>> snapshot.cost_for(snapshot.larger_side())
    """

    def __init__(self, db_path: Optional[Path] = None, read_only: bool = True):
        self.db_path = Path(db_path or TRADE_HISTORY_DB_PATH)
        self.read_only = read_only

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        if self.read_only:
            conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True)
        else:
            conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def for_user(self, wallet: str) -> CostBasisSnapshot:
        """
        Cost basis for the user's most recent cycle.

        Args:
            wallet: Full session wallet address.

        Returns:
            The snapshot; empty when the user has no history.

        Raises:
            CostBasisError: If the database cannot be read.
        """
        user_prefix = wallet[:USER_PREFIX_LENGTH]

        try:
            with self.get_connection() as conn:
                cycle_row = conn.execute(
                    """
                    SELECT cycle_id FROM trading_history
                    WHERE user_prefix = ?
                    ORDER BY timestamp DESC LIMIT 1
                    """,
                    (user_prefix,),
                ).fetchone()

                if cycle_row is None:
                    logger.info(f"[POINTS] No trading history found for {user_prefix}")
                    return CostBasisSnapshot()

                cycle_id = cycle_row["cycle_id"]
                rows = conn.execute(
                    """
                    SELECT action, side, shares, cost_usd
                    FROM trading_history
                    WHERE user_prefix = ? AND cycle_id = ?
                    ORDER BY timestamp ASC
                    """,
                    (user_prefix, cycle_id),
                ).fetchall()
        except sqlite3.Error as e:
            raise CostBasisError(f"Failed to read trading history for {user_prefix}: {e}") from e

        return replay_cost_basis(rows, cycle_id=cycle_id)
