"""
Idempotent reward accrual.

Credits trade, deposit and win points to a user's master wallet exactly once
per (signature, event). The flow for every event is:

1. Cheap guard: skip if the points store already holds this event.
2. Resolve the session wallet to its master wallet (cached).
3. Compute and record the points. The store's unique index makes the
   insert the real dedup, so two in-flight deliveries of one signature
   still credit once.

Win points are scored on profit only. The user's current-cycle cost basis is
recomputed from trading history and the side with more shares is taken as
the winning side. That pick is an approximation: a user holding both sides
is scored against the larger leg.
"""

import logging
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from ..chain.identity import IdentityResolver
from ..events.decoder import LAMPORTS_PER_XNT
from ..events.models import DepositEvent, RedeemEvent, TradeEvent
from ..ledger.cost_basis import CostBasisError, CostBasisQueryService, CostBasisSnapshot
from .points_store import PointsStore, PointsStoreError

logger = logging.getLogger(__name__)


def compute_win_profit(payout_lamports: int, snapshot: CostBasisSnapshot) -> tuple[Decimal, Decimal]:
    """
    Profit on a redeem against the presumed winning side.

    Returns:
        (profit_xnt, cost_xnt). Profit may be zero or negative.
    """
    payout_xnt = Decimal(payout_lamports) / LAMPORTS_PER_XNT
    cost_xnt = snapshot.cost_for(snapshot.larger_side())
    return payout_xnt - cost_xnt, cost_xnt


class RewardAccrual:
    """
    Applies point credits for decoded events.

    Every ``award_*`` coroutine returns the points credited (0 for skipped,
    duplicate or unprofitable events) and never raises for store or lookup
    failures; those are logged.

    Attributes:
        points_store: Durable points ledger.
        identity: Session -> master wallet resolver.
        cost_basis: Current-cycle cost basis source for win scoring.
        market_id: Recorded on each credit (AMM address), optional.
    """

    def __init__(
        self,
        points_store: PointsStore,
        identity: IdentityResolver,
        cost_basis: CostBasisQueryService,
        market_id: Optional[str] = None,
    ):
        self.points_store = points_store
        self.identity = identity
        self.cost_basis = cost_basis
        self.market_id = market_id

    async def _master_for(self, session_wallet: str, kind: str) -> Optional[str]:
        master = await self.identity.get_master_wallet(session_wallet)
        if master is None:
            logger.info(f"[POINTS] Skipping {kind} - no master wallet for {session_wallet[:8]}")
        return master

    def _already_credited(self, signature: str, event_type: str, event_index: int) -> bool:
        return self.points_store.signature_exists(signature, event_type, event_index)

    async def award_trade(self, session_wallet: str, trade: TradeEvent) -> int:
        """Credit points for a trade (size-based, independent of profit)."""
        try:
            if self._already_credited(trade.signature, "trade", trade.event_index):
                return 0

            master = await self._master_for(session_wallet, "trade")
            if master is None:
                return 0

            points = self.points_store.record_trade(
                master,
                trade.shares_e6,
                trade.side.label.lower(),
                trade.action.value.lower(),
                tx_signature=trade.signature,
                event_index=trade.event_index,
                market_id=self.market_id,
            )
        except PointsStoreError as e:
            logger.error(f"[POINTS] Failed to award trade points: {e}")
            return 0

        if points > 0:
            logger.info(
                f"[POINTS] +{points} trade points to {master[:8]} "
                f"({trade.action.value.lower()} {trade.side.label.lower()})"
            )
        return points

    async def award_deposit(self, session_wallet: str, deposit: DepositEvent) -> int:
        """Credit points for a vault deposit."""
        if deposit.amount_lamports <= 0:
            return 0

        try:
            if self._already_credited(deposit.signature, "deposit", deposit.event_index):
                return 0

            master = await self._master_for(session_wallet, "deposit")
            if master is None:
                return 0

            points = self.points_store.record_deposit(
                master,
                deposit.amount_lamports,
                tx_signature=deposit.signature,
                event_index=deposit.event_index,
                market_id=self.market_id,
            )
        except PointsStoreError as e:
            logger.error(f"[POINTS] Failed to award deposit points: {e}")
            return 0

        if points > 0:
            xnt = Decimal(deposit.amount_lamports) / LAMPORTS_PER_XNT
            logger.info(f"[POINTS] +{points} deposit points to {master[:8]} ({xnt:.2f} XNT)")
        return points

    async def award_win(self, session_wallet: str, redeem: RedeemEvent) -> int:
        """Credit points on the realized profit of a redeem."""
        if redeem.payout_lamports <= 0:
            return 0

        try:
            if self._already_credited(redeem.signature, "win", redeem.event_index):
                return 0

            master = await self._master_for(session_wallet, "win")
            if master is None:
                return 0

            try:
                snapshot = self.cost_basis.for_user(session_wallet)
            except CostBasisError as e:
                logger.error(f"[POINTS] Failed to get cost basis: {e}")
                snapshot = CostBasisSnapshot()

            winning_side = snapshot.larger_side()
            profit_xnt, cost_xnt = compute_win_profit(redeem.payout_lamports, snapshot)
            payout_xnt = Decimal(redeem.payout_lamports) / LAMPORTS_PER_XNT

            if profit_xnt <= 0:
                logger.info(
                    f"[POINTS] No win points - {winning_side.label} payout {payout_xnt:.2f} XNT, "
                    f"cost {cost_xnt:.2f} XNT, profit {profit_xnt:.2f} XNT"
                )
                return 0

            profit_lamports = int((profit_xnt * LAMPORTS_PER_XNT).to_integral_value(rounding=ROUND_FLOOR))
            points = self.points_store.record_win(
                master,
                profit_lamports,
                tx_signature=redeem.signature,
                event_index=redeem.event_index,
                market_id=self.market_id,
            )
        except PointsStoreError as e:
            logger.error(f"[POINTS] Failed to award win points: {e}")
            return 0

        if points > 0:
            logger.info(
                f"[POINTS] +{points} win points to {master[:8]} ({winning_side.label} profit: "
                f"{profit_xnt:.2f} XNT, payout: {payout_xnt:.2f} XNT, cost: {cost_xnt:.2f} XNT)"
            )
        return points
