"""
Position and cost-basis accounting.

This module provides:
- PositionLedger: live weighted-average cost basis per (user, side)
- CostBasisQueryService: current-cycle cost basis replayed from history
"""

from .cost_basis import (
    CostBasisError,
    CostBasisQueryService,
    CostBasisSnapshot,
    replay_cost_basis,
)
from .positions import LedgerUpdate, Position, PositionLedger

__all__ = [
    "Position",
    "PositionLedger",
    "LedgerUpdate",
    "CostBasisQueryService",
    "CostBasisSnapshot",
    "CostBasisError",
    "replay_cost_basis",
]
