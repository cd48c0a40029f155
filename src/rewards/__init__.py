"""
Points rewards for trades, deposits and wins.

This module provides:
- PointsStore: SQLite points ledger with signature-level idempotency
- RewardAccrual: per-event crediting with master wallet resolution
"""

from .accrual import RewardAccrual, compute_win_profit
from .points_store import (
    DEPOSIT_POINTS_PER_XNT,
    TRADE_POINTS_PER_SHARE,
    WIN_POINTS_PER_XNT,
    PointsStore,
    PointsStoreError,
    calculate_deposit_points,
    calculate_trade_points,
    calculate_win_points,
)

__all__ = [
    "PointsStore",
    "PointsStoreError",
    "RewardAccrual",
    "compute_win_profit",
    "calculate_deposit_points",
    "calculate_trade_points",
    "calculate_win_points",
    "DEPOSIT_POINTS_PER_XNT",
    "TRADE_POINTS_PER_SHARE",
    "WIN_POINTS_PER_XNT",
]
