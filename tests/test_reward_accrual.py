"""
Tests for idempotent reward accrual.

Tests cover:
- Exactly-once crediting per (signature, event)
- Master wallet resolution gating
- Win scoring against current-cycle cost basis
- Store and cost-basis failures are contained

IMPORTANT: Identity and cost basis are mocked; the points store is a real
temporary SQLite database.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.events.models import Action, DepositEvent, RedeemEvent, Side, TradeEvent
from src.ledger.cost_basis import CostBasisError, CostBasisSnapshot
from src.rewards.accrual import RewardAccrual, compute_win_profit
from src.rewards.points_store import PointsStore, PointsStoreError

SESSION = "SessionWa11et11111111111111111111111111111"
MASTER = "MasterWa11et1111111111111111111111111111111"
SIG = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnb"
XNT = 1_000_000_000


def make_trade(shares="12.5", index=0, sig=SIG):
    return TradeEvent(
        side=Side.UP,
        action=Action.BUY,
        net_amount=Decimal("5"),
        share_delta=Decimal(shares),
        avg_price=Decimal("0.4"),
        signature=sig,
        user=SESSION,
        event_index=index,
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store(tmp_path):
    store = PointsStore(tmp_path / "points.db")
    store.initialize()
    return store


@pytest.fixture
def identity():
    identity = MagicMock()
    identity.get_master_wallet = AsyncMock(return_value=MASTER)
    return identity


@pytest.fixture
def cost_basis():
    cost_basis = MagicMock()
    cost_basis.for_user.return_value = CostBasisSnapshot()
    return cost_basis


@pytest.fixture
def accrual(store, identity, cost_basis):
    return RewardAccrual(store, identity, cost_basis, market_id="amm")


# =============================================================================
# Test Trade Points
# =============================================================================


class TestTradePoints:
    """Tests for trade crediting."""

    @pytest.mark.asyncio
    async def test_credits_once(self, accrual, store):
        """Test redelivering the same event credits nothing."""
        trade = make_trade()
        assert await accrual.award_trade(SESSION, trade) == 12
        assert await accrual.award_trade(SESSION, trade) == 0
        assert await accrual.award_trade(SESSION, trade) == 0
        assert store.get_user_points(MASTER) == 12

    @pytest.mark.asyncio
    async def test_second_call_skips_lookup(self, accrual, identity):
        trade = make_trade()
        await accrual.award_trade(SESSION, trade)
        await accrual.award_trade(SESSION, trade)
        assert identity.get_master_wallet.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_credit_once(self, accrual, store, identity):
        """Test the unique index holds when every delivery passes the pre-check."""

        async def slow_lookup(session_wallet):
            await asyncio.sleep(0)
            return MASTER

        identity.get_master_wallet.side_effect = slow_lookup
        trade = make_trade()

        results = await asyncio.gather(*[accrual.award_trade(SESSION, trade) for _ in range(5)])

        assert identity.get_master_wallet.await_count == 5
        assert sorted(results) == [0, 0, 0, 0, 12]
        assert store.get_user_points(MASTER) == 12
        assert len(store.get_user_history(MASTER)) == 1

    @pytest.mark.asyncio
    async def test_each_leg_of_signature_credited(self, accrual, store):
        await accrual.award_trade(SESSION, make_trade("3", index=0))
        await accrual.award_trade(SESSION, make_trade("4", index=1))
        assert store.get_user_points(MASTER) == 7

    @pytest.mark.asyncio
    async def test_no_master_wallet(self, accrual, identity, store):
        identity.get_master_wallet.return_value = None
        assert await accrual.award_trade(SESSION, make_trade()) == 0
        assert not store.signature_exists(SIG)

    @pytest.mark.asyncio
    async def test_store_failure_contained(self, identity, cost_basis):
        store = MagicMock()
        store.signature_exists.side_effect = PointsStoreError("disk I/O error")
        accrual = RewardAccrual(store, identity, cost_basis)
        assert await accrual.award_trade(SESSION, make_trade()) == 0

    @pytest.mark.asyncio
    async def test_records_side_and_direction(self, accrual, store):
        await accrual.award_trade(SESSION, make_trade())
        event = store.get_user_history(MASTER)[0]
        assert event["side"] == "yes"
        assert event["direction"] == "buy"
        assert event["shares_e6"] == 12_500_000
        assert event["market_id"] == "amm"


# =============================================================================
# Test Deposit Points
# =============================================================================


class TestDepositPoints:
    """Tests for deposit crediting."""

    @pytest.mark.asyncio
    async def test_deposit(self, accrual, store):
        deposit = DepositEvent(amount_lamports=2 * XNT, signature=SIG)
        assert await accrual.award_deposit(SESSION, deposit) == 20
        assert await accrual.award_deposit(SESSION, deposit) == 0
        assert store.get_user(MASTER)["deposit_points"] == 20

    @pytest.mark.asyncio
    async def test_zero_deposit(self, accrual, identity):
        assert await accrual.award_deposit(SESSION, DepositEvent(0, SIG)) == 0
        identity.get_master_wallet.assert_not_awaited()


# =============================================================================
# Test Win Points
# =============================================================================


class TestWinPoints:
    """Tests for profit-gated win crediting."""

    def test_compute_profit(self):
        snapshot = CostBasisSnapshot(yes_cost=Decimal("60"), yes_shares=Decimal("100"))
        profit, cost = compute_win_profit(100 * XNT, snapshot)
        assert profit == Decimal("40")
        assert cost == Decimal("60")

    @pytest.mark.asyncio
    async def test_profitable_redeem(self, accrual, cost_basis, store):
        """Payout 100 against cost 60 earns floor(40 * 20) points."""
        cost_basis.for_user.return_value = CostBasisSnapshot(
            yes_cost=Decimal("60"), yes_shares=Decimal("100")
        )
        redeem = RedeemEvent(payout_lamports=100 * XNT, signature=SIG)

        assert await accrual.award_win(SESSION, redeem) == 800
        assert await accrual.award_win(SESSION, redeem) == 0
        assert store.get_user(MASTER)["win_points"] == 800
        cost_basis.for_user.assert_called_once_with(SESSION)

    @pytest.mark.asyncio
    async def test_losing_redeem_earns_nothing(self, accrual, cost_basis, store):
        """Payout 100 against cost 120 earns nothing."""
        cost_basis.for_user.return_value = CostBasisSnapshot(
            yes_cost=Decimal("120"), yes_shares=Decimal("100")
        )
        redeem = RedeemEvent(payout_lamports=100 * XNT, signature=SIG)

        assert await accrual.award_win(SESSION, redeem) == 0
        assert not store.signature_exists(SIG, "win")

    @pytest.mark.asyncio
    async def test_scored_against_larger_side(self, accrual, cost_basis):
        cost_basis.for_user.return_value = CostBasisSnapshot(
            yes_cost=Decimal("1"),
            yes_shares=Decimal("2"),
            no_cost=Decimal("9"),
            no_shares=Decimal("10"),
        )
        redeem = RedeemEvent(payout_lamports=10 * XNT, signature=SIG)
        # Profit 10 - 9 = 1 XNT
        assert await accrual.award_win(SESSION, redeem) == 20

    @pytest.mark.asyncio
    async def test_cost_basis_failure_uses_zero_cost(self, accrual, cost_basis):
        cost_basis.for_user.side_effect = CostBasisError("no such table: trading_history")
        redeem = RedeemEvent(payout_lamports=XNT, signature=SIG)
        assert await accrual.award_win(SESSION, redeem) == 20

    @pytest.mark.asyncio
    async def test_admin_redeem_credits_named_user(self, accrual, identity):
        redeem = RedeemEvent(payout_lamports=XNT, signature=SIG, user="NamedUser")
        await accrual.award_win(redeem.user, redeem)
        identity.get_master_wallet.assert_awaited_once_with("NamedUser")
