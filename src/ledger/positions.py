"""
Position Ledger: weighted-average cost basis per (user, side).

Each user holds up to two positions, one per market side. Buys add shares
and cost; sells remove cost in proportion to the fraction of shares sold and
realize P&L against the average entry price.

Example:
    >>> ledger = PositionLedger()
    >>> ledger.apply(buy_event)   # BUY 10 shares for 5.00
    >>> update = ledger.apply(sell_event)  # SELL 10 shares for 7.00
    >>> update.realized_pnl
    Decimal('2.00')

Note:
    Neither shares nor total cost is ever driven below zero. A sell larger
    than the current holding is clamped to the holding and logged as an
    inconsistency between the monitor's view and the chain.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from ..events.models import Action, Side, TradeEvent

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class Position:
    """
    Holdings for one (user, side).

    Attributes:
        shares: Shares currently held (never negative).
        total_cost: Cost basis of the shares held (never negative).
    """

    shares: Decimal = ZERO
    total_cost: Decimal = ZERO

    @property
    def avg_cost(self) -> Decimal:
        """Weighted average entry price, 0 for an empty position."""
        if self.shares == ZERO:
            return ZERO
        return self.total_cost / self.shares

    def buy(self, shares: Decimal, cost: Decimal) -> None:
        self.shares += shares
        self.total_cost += cost

    def sell(self, shares: Decimal, proceeds: Decimal) -> tuple[Decimal, Decimal, Decimal]:
        """
        Remove shares at the average cost.

        Returns:
            (shares_sold, removed_cost, realized_pnl). ``shares_sold`` is
            clamped to the current holding.
        """
        shares_sold = min(shares, self.shares)
        removed_cost = shares_sold * self.avg_cost
        realized_pnl = proceeds - removed_cost

        self.shares = max(self.shares - shares_sold, ZERO)
        self.total_cost = max(self.total_cost - removed_cost, ZERO)
        if self.shares == ZERO:
            # Nothing held means nothing owed; drop Decimal residue
            self.total_cost = ZERO

        return shares_sold, removed_cost, realized_pnl

    def to_dict(self) -> dict[str, Any]:
        return {
            "shares": str(self.shares),
            "total_cost": str(self.total_cost),
            "avg_cost": str(self.avg_cost),
        }


@dataclass(frozen=True)
class LedgerUpdate:
    """
    Result of applying one trade to the ledger.

    Attributes:
        trade: The applied trade.
        position: Snapshot of the position after the trade.
        realized_pnl: Proceeds minus removed cost (SELL only).
        removed_cost: Cost basis released by a SELL.
        clamped: True when a SELL exceeded the holding.
    """

    trade: TradeEvent
    position: Position
    realized_pnl: Optional[Decimal] = None
    removed_cost: Decimal = ZERO
    clamped: bool = False


class PositionLedger:
    """
    Process-lifetime cache of positions keyed by (user, side).

    Entries are created lazily on first trade and never deleted; durable
    history lives in the trading-history store.

    Attributes:
        positions: Mapping of user -> {Side -> Position}.
    """

    def __init__(self):
        self.positions: dict[str, dict[Side, Position]] = {}

    def get_position(self, user: str, side: Side) -> Position:
        """Return the live position, creating an empty one if needed."""
        sides = self.positions.setdefault(user, {Side.UP: Position(), Side.DOWN: Position()})
        return sides[side]

    def has_user(self, user: str) -> bool:
        return user in self.positions

    def apply(self, trade: TradeEvent) -> LedgerUpdate:
        """
        Apply an attributed trade.

        Args:
            trade: A TradeEvent whose user has been resolved.

        Returns:
            A LedgerUpdate describing the effect.

        Raises:
            ValueError: If the trade has no resolved user.
        """
        if not trade.is_attributed:
            raise ValueError(f"Cannot apply unattributed trade {trade.signature[:8]}")

        position = self.get_position(trade.user, trade.side)
        user_tag = trade.user[:6]

        if trade.action is Action.BUY:
            position.buy(trade.share_delta, trade.net_amount)
            logger.info(
                f"[POS] {user_tag} {trade.side.value}: +{trade.share_delta:.2f} shares "
                f"@ {trade.avg_price:.4f} XNT (Total: {position.shares:.2f} shares, "
                f"Avg: {position.avg_cost:.4f} XNT)"
            )
            return LedgerUpdate(trade=trade, position=_snapshot(position))

        clamped = trade.share_delta > position.shares
        if clamped:
            logger.warning(
                f"[POS] {user_tag} {trade.side.value}: sell of {trade.share_delta} exceeds "
                f"holding {position.shares}, clamping ({trade.signature[:8]})"
            )

        _, removed_cost, realized_pnl = position.sell(trade.share_delta, trade.net_amount)
        sign = "+" if realized_pnl >= 0 else ""
        logger.info(
            f"[POS] {user_tag} {trade.side.value}: -{trade.share_delta:.2f} shares "
            f"@ {trade.avg_price:.4f} XNT (P&L: {sign}{realized_pnl:.4f} XNT, "
            f"Remaining: {position.shares:.2f} shares)"
        )
        return LedgerUpdate(
            trade=trade,
            position=_snapshot(position),
            realized_pnl=realized_pnl,
            removed_cost=removed_cost,
            clamped=clamped,
        )

    def get_user_report(self, user: str) -> dict[str, Any]:
        """Positions for one user, keyed by side."""
        sides = self.positions.get(user, {})
        return {side.value: position.to_dict() for side, position in sides.items()}


def _snapshot(position: Position) -> Position:
    return Position(shares=position.shares, total_cost=position.total_cost)
