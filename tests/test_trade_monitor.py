"""
Tests for the TradeMonitor pipeline.

Tests cover:
- Multi-event transactions (every trade is applied and broadcast)
- Unattributed and keeper transactions are dropped wholesale
- Failed transactions are skipped
- Deposit and redeem crediting
- Task scheduling, error containment and lifecycle ordering

IMPORTANT: RPC, identity and HTTP are mocked; the points store is a real
temporary SQLite database.
"""

import json
import logging
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio
from websockets.protocol import State

from src.broadcast.hub import BroadcastHub, Subscriber
from src.events.decoder import encode_trade_snapshot
from src.events.models import Action, LogBatch, Side
from src.ledger.cost_basis import CostBasisSnapshot
from src.monitor import TradeMonitor
from src.rewards.accrual import RewardAccrual
from src.rewards.points_store import PointsStore
from src.sinks.outbound import OutboundQueue

PAYER = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
KEEPER = "AivknDqDUqnvyYVmDViiB2bEHKyUK5HcX91gWL2zgTZ4"
MASTER = "MasterWa11et1111111111111111111111111111111"
SIG = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnb"

BUY_UP = encode_trade_snapshot(Side.UP, Action.BUY, Decimal("1"), Decimal("2"), Decimal("0.5"))
SELL_UP = encode_trade_snapshot(Side.UP, Action.SELL, Decimal("0.8"), Decimal("1"), Decimal("0.8"))


class FakeConnection:
    """Records frames sent directly and through websockets.broadcast."""

    def __init__(self):
        self.sent = []
        self.protocol = MagicMock()
        self.protocol.state = State.OPEN
        self.protocol.send_text.side_effect = lambda data: self.sent.append(data.decode())
        self.fragmented_send_waiter = None
        self.logger = logging.getLogger("fake-connection")
        self.send_data = MagicMock()
        self.send = AsyncMock(side_effect=self.sent.append)

    @property
    def state(self):
        return self.protocol.state

    @property
    def frames(self):
        return [json.loads(message) for message in self.sent]


def persistence_handler(request: httpx.Request) -> httpx.Response:
    if request.method == "GET":
        return httpx.Response(200, json=[{"signature": "db2"}, {"signature": "db1"}])
    return httpx.Response(200, json={"ok": True})


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store(tmp_path):
    store = PointsStore(tmp_path / "points.db")
    store.initialize()
    return store


@pytest.fixture
def lookup():
    lookup = MagicMock()
    lookup.resolve_fee_payer = AsyncMock(return_value=PAYER)
    return lookup


@pytest.fixture
def identity():
    identity = MagicMock()
    identity.get_master_wallet = AsyncMock(return_value=MASTER)
    return identity


@pytest.fixture
def subscriber():
    subscriber = MagicMock()
    subscriber.program_ids = ["EeQNdiGDUVj4jzPMBkx59J45p1y93JpKByTWifWtuxjF"]
    subscriber.run = AsyncMock()
    subscriber.unsubscribe = AsyncMock()
    return subscriber


@pytest.fixture
def monitor(tmp_path, store, lookup, identity, subscriber):
    cost_basis = MagicMock()
    cost_basis.for_user.return_value = CostBasisSnapshot()
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(persistence_handler), base_url="http://persistence"
    )
    return TradeMonitor(
        subscriber=subscriber,
        lookup=lookup,
        rewards=RewardAccrual(store, identity, cost_basis),
        hub=BroadcastHub(chat_archive_path=tmp_path / "chat.json"),
        outbound=OutboundQueue("http://persistence", client=client),
        excluded_wallets=[KEEPER],
    )


@pytest_asyncio.fixture
async def feed(monitor):
    """A connected feed client."""
    connection = FakeConnection()
    await monitor.hub.connect(Subscriber(connection))
    return connection


# =============================================================================
# Test Trades
# =============================================================================


class TestTrades:
    """Tests for trade handling."""

    @pytest.mark.asyncio
    async def test_every_trade_in_signature_applied(self, monitor, feed, store):
        """Test two trades in one transaction yield two updates and two frames."""
        batch = LogBatch(signature=SIG, logs=("Program log: Instruction: Swap", BUY_UP, SELL_UP))

        result = await monitor.handle_batch(batch)

        assert len(result.updates) == 2
        assert result.updates[1].realized_pnl == Decimal("0.3")
        position = monitor.ledger.get_position(PAYER, Side.UP)
        assert position.shares == Decimal("1")
        assert position.total_cost == Decimal("0.5")

        trade_frames = [f for f in feed.frames if f["type"] == "trade"]
        assert [f["trade"]["action"] for f in trade_frames] == ["BUY", "SELL"]
        assert trade_frames[0]["trade"]["user"] == PAYER

        # Two history rows and one volume increment (BUY only)
        assert monitor.outbound.pending == 3
        assert result.points == 3
        assert store.get_user_points(MASTER) == 3

    @pytest.mark.asyncio
    async def test_redelivered_batch_credits_once(self, monitor, store):
        batch = LogBatch(signature=SIG, logs=(BUY_UP,))
        await monitor.handle_batch(batch)
        await monitor.handle_batch(batch)
        assert store.get_user_points(MASTER) == 2

    @pytest.mark.asyncio
    async def test_fee_payer_resolved_once_per_batch(self, monitor, lookup):
        await monitor.handle_batch(LogBatch(signature=SIG, logs=(BUY_UP, SELL_UP)))
        lookup.resolve_fee_payer.assert_awaited_once_with(SIG)

    @pytest.mark.asyncio
    async def test_unknown_identity_dropped_everywhere(self, monitor, feed, lookup, store):
        lookup.resolve_fee_payer.return_value = None

        result = await monitor.handle_batch(LogBatch(signature=SIG, logs=(BUY_UP,)))

        assert result.updates == []
        assert monitor.ledger.positions == {}
        assert not [f for f in feed.frames if f["type"] == "trade"]
        assert len(monitor.hub.trades) == 0
        assert monitor.outbound.pending == 0
        assert not store.signature_exists(SIG)
        assert monitor.stats.trades_unattributed == 1

    @pytest.mark.asyncio
    async def test_keeper_transaction_skipped(self, monitor, lookup, store):
        lookup.resolve_fee_payer.return_value = KEEPER

        result = await monitor.handle_batch(
            LogBatch(signature=SIG, logs=(BUY_UP, "Program log: Deposited 1000000000 lamports"))
        )

        assert result.skipped_reason == "keeper"
        assert monitor.ledger.positions == {}
        assert not store.signature_exists(SIG)
        assert monitor.stats.keeper_batches_skipped == 1

    @pytest.mark.asyncio
    async def test_failed_transaction_skipped(self, monitor, lookup):
        batch = LogBatch(signature=SIG, logs=(BUY_UP,), err={"InstructionError": [0, "Custom"]})

        result = await monitor.handle_batch(batch)

        assert result.skipped_reason == "failed"
        lookup.resolve_fee_payer.assert_not_awaited()
        assert monitor.ledger.positions == {}

    @pytest.mark.asyncio
    async def test_no_events_skips_lookup(self, monitor, lookup):
        result = await monitor.handle_batch(LogBatch(signature=SIG, logs=("Program log: hi",)))
        assert result.skipped_reason == "no_events"
        lookup.resolve_fee_payer.assert_not_awaited()


# =============================================================================
# Test Deposits and Redeems
# =============================================================================


class TestDepositsAndRedeems:
    """Tests for non-trade events."""

    @pytest.mark.asyncio
    async def test_deposit_credited(self, monitor, store, identity):
        result = await monitor.handle_batch(
            LogBatch(signature=SIG, logs=("Program log: Deposited 1000000000 lamports",))
        )
        assert result.points == 10
        assert store.get_user(MASTER)["deposit_points"] == 10
        identity.get_master_wallet.assert_awaited_once_with(PAYER)

    @pytest.mark.asyncio
    async def test_redeem_uses_fee_payer(self, monitor, store, identity):
        await monitor.handle_batch(
            LogBatch(signature=SIG, logs=("Program log: REDEEM pay=1000000000 lamports",))
        )
        identity.get_master_wallet.assert_awaited_once_with(PAYER)
        assert store.get_user(MASTER)["win_points"] == 20

    @pytest.mark.asyncio
    async def test_admin_redeem_uses_named_user(self, monitor, lookup, identity):
        await monitor.handle_batch(
            LogBatch(
                signature=SIG,
                logs=("Program log: ADMIN_REDEEM user=NamedUser1 pay=1000000000 lamports",),
            )
        )
        lookup.resolve_fee_payer.assert_not_awaited()
        identity.get_master_wallet.assert_awaited_once_with("NamedUser1")


# =============================================================================
# Test Scheduling
# =============================================================================


class TestScheduling:
    """Tests for per-batch tasks."""

    @pytest.mark.asyncio
    async def test_on_logs_schedules_task(self, monitor):
        monitor.on_logs(LogBatch(signature=SIG, logs=(BUY_UP,)))
        await monitor.wait_idle()

        assert monitor.stats.batches_received == 1
        assert monitor.stats.trades_applied == 1

    @pytest.mark.asyncio
    async def test_handler_error_contained(self, monitor, lookup):
        lookup.resolve_fee_payer.side_effect = RuntimeError("unexpected")

        task = monitor.on_logs(LogBatch(signature=SIG, logs=(BUY_UP,)))
        await monitor.wait_idle()

        assert task.result() is None
        assert monitor.stats.handler_errors == 1


# =============================================================================
# Test Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for start, run and shutdown."""

    @pytest.mark.asyncio
    async def test_start_seeds_history(self, monitor):
        monitor.hub.start = AsyncMock()

        await monitor.start()

        assert [t["signature"] for t in monitor.hub.trades] == ["db1", "db2"]
        monitor.hub.start.assert_awaited_once()
        await monitor.shutdown()

    @pytest.mark.asyncio
    async def test_run_shuts_down_when_stream_ends(self, monitor, subscriber):
        monitor.hub.start = AsyncMock()
        monitor.hub.close = AsyncMock()

        await monitor.run()

        subscriber.run.assert_awaited_once_with(monitor.on_logs)
        subscriber.unsubscribe.assert_awaited_once()
        monitor.hub.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_shuts_down_on_error(self, monitor, subscriber):
        monitor.hub.start = AsyncMock()
        subscriber.run.side_effect = ConnectionError("socket dropped")

        with pytest.raises(ConnectionError):
            await monitor.run()

        subscriber.unsubscribe.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, monitor, subscriber):
        await monitor.shutdown()
        await monitor.shutdown()
        subscriber.unsubscribe.assert_awaited_once()

    def test_from_config_requires_program_ids(self):
        with patch("src.monitor.trade_monitor.PROGRAM_IDS", []), patch(
            "src.monitor.trade_monitor.AsyncClient"
        ) as rpc_client:
            with pytest.raises(ValueError, match="program id"):
                TradeMonitor.from_config()
        rpc_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_shutdown_unsubscribes_before_closing_hub(self, monitor, subscriber):
        calls = []
        subscriber.unsubscribe.side_effect = lambda: calls.append("unsubscribe")
        monitor.hub.close = AsyncMock(side_effect=lambda: calls.append("hub"))

        await monitor.shutdown()

        assert calls == ["unsubscribe", "hub"]
