"""
Trade Monitor: on-chain event ingestion and P&L reconciliation.

This module wires every component into one long-lived service object. All
mutable state (positions, replay buffers, rate-limit windows, identity
cache) is owned here and mutated only from the event loop.

Per log batch:
1. Failed transactions are skipped entirely.
2. Logs are decoded into trade, deposit and redeem events.
3. The fee payer is resolved once (with retries). Keeper wallets are
   ignored; events that stay unattributed are dropped wholesale.
4. Each attributed trade updates the position ledger, is forwarded to the
   history and volume sinks, earns trade points, and is broadcast.
5. Deposits and redeems earn deposit and win points.

Each batch runs in its own task so one slow RPC lookup never blocks the
stream.

Example:
    >>> monitor = TradeMonitor.from_config()
    >>> await monitor.run()   # until stopped; tears down on every exit path
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from solana.rpc.async_api import AsyncClient

from ..broadcast.hub import BroadcastHub
from ..broadcast.rate_limiter import SlidingWindowRateLimiter
from ..chain.identity import IdentityResolver, TransactionLookup
from ..chain.log_subscriber import LogSubscriptionClient
from ..config import (
    BROADCAST_HOST,
    BROADCAST_PORT,
    CHAT_ARCHIVE_PATH,
    EXCLUDED_WALLETS,
    MAX_TRADES,
    PERSISTENCE_API_URL,
    POINTS_DB_PATH,
    PROGRAM_IDS,
    RPC_URL,
    RPC_WS_URL,
    TRADE_HISTORY_DB_PATH,
)
from ..events.decoder import EventDecoder
from ..events.models import DepositEvent, LogBatch, RedeemEvent, TradeEvent
from ..ledger.cost_basis import CostBasisQueryService
from ..ledger.positions import LedgerUpdate, PositionLedger
from ..rewards.accrual import RewardAccrual
from ..rewards.points_store import PointsStore
from ..sinks.outbound import OutboundQueue, TradeHistorySink, VolumeSink

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class MonitorStats:
    """Counters for the running monitor."""

    batches_received: int = 0
    batches_failed_tx: int = 0
    trades_applied: int = 0
    trades_unattributed: int = 0
    keeper_batches_skipped: int = 0
    points_awarded: int = 0
    handler_errors: int = 0
    start_time: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batches_received": self.batches_received,
            "batches_failed_tx": self.batches_failed_tx,
            "trades_applied": self.trades_applied,
            "trades_unattributed": self.trades_unattributed,
            "keeper_batches_skipped": self.keeper_batches_skipped,
            "points_awarded": self.points_awarded,
            "handler_errors": self.handler_errors,
            "start_time": self.start_time.isoformat() if self.start_time else None,
        }


@dataclass
class BatchResult:
    """What one batch produced (used by tests and logs)."""

    signature: str
    user: Optional[str] = None
    updates: list[LedgerUpdate] = field(default_factory=list)
    points: int = 0
    skipped_reason: Optional[str] = None


class TradeMonitor:
    """
    Owns the ingestion pipeline and its state.

    Attributes:
        subscriber: Program log stream.
        lookup: Fee payer resolution.
        decoder: Log line decoder.
        ledger: Live positions.
        rewards: Points crediting.
        hub: Broadcast fan-out.
        outbound: Sink request queue.
        excluded_wallets: Fee payers whose batches are ignored.
        stats: Running counters.
    """

    def __init__(
        self,
        subscriber: LogSubscriptionClient,
        lookup: TransactionLookup,
        rewards: RewardAccrual,
        hub: BroadcastHub,
        outbound: OutboundQueue,
        decoder: Optional[EventDecoder] = None,
        ledger: Optional[PositionLedger] = None,
        excluded_wallets: Optional[list[str]] = None,
        rpc_client: Optional[AsyncClient] = None,
        broadcast_host: str = BROADCAST_HOST,
        broadcast_port: int = BROADCAST_PORT,
    ):
        self.subscriber = subscriber
        self.lookup = lookup
        self.rewards = rewards
        self.hub = hub
        self.outbound = outbound
        self.decoder = decoder or EventDecoder()
        self.ledger = ledger or PositionLedger()
        self.history_sink = TradeHistorySink(outbound)
        self.volume_sink = VolumeSink(outbound)
        self.excluded_wallets = set(excluded_wallets if excluded_wallets is not None else EXCLUDED_WALLETS)
        self.rpc_client = rpc_client
        self.broadcast_host = broadcast_host
        self.broadcast_port = broadcast_port

        self.stats = MonitorStats()
        self._tasks: set[asyncio.Task] = set()
        self._started = False
        self._closed = False

    @classmethod
    def from_config(cls) -> "TradeMonitor":
        """
        Build a monitor from ``src.config`` settings.

        Raises:
            ValueError: If no program ids are configured.
        """
        subscriber = LogSubscriptionClient(PROGRAM_IDS, ws_url=RPC_WS_URL)
        rpc_client = AsyncClient(RPC_URL)
        points_store = PointsStore(POINTS_DB_PATH)
        rewards = RewardAccrual(
            points_store=points_store,
            identity=IdentityResolver(rpc_client, subscriber.program_ids[0]),
            cost_basis=CostBasisQueryService(TRADE_HISTORY_DB_PATH),
        )
        return cls(
            subscriber=subscriber,
            lookup=TransactionLookup(rpc_client),
            rewards=rewards,
            hub=BroadcastHub(
                rate_limiter=SlidingWindowRateLimiter(),
                chat_archive_path=CHAT_ARCHIVE_PATH,
            ),
            outbound=OutboundQueue(PERSISTENCE_API_URL),
            rpc_client=rpc_client,
        )

    # =========================================================================
    # Batch processing
    # =========================================================================

    def on_logs(self, batch: LogBatch) -> asyncio.Task:
        """Subscription callback: schedule one task per batch."""
        self.stats.batches_received += 1
        task = asyncio.create_task(self._guarded_handle(batch), name=f"batch-{batch.signature[:8]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded_handle(self, batch: LogBatch) -> Optional[BatchResult]:
        try:
            return await self.handle_batch(batch)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.stats.handler_errors += 1
            logger.exception(f"Failed to process batch {batch.signature[:8]}")
            return None

    async def handle_batch(self, batch: LogBatch) -> BatchResult:
        """Process one transaction's logs end to end."""
        result = BatchResult(signature=batch.signature)

        if batch.failed:
            self.stats.batches_failed_tx += 1
            logger.info(f"Transaction failed: {batch.signature}")
            result.skipped_reason = "failed"
            return result

        events = self.decoder.decode(batch.logs, batch.signature)
        if not events:
            result.skipped_reason = "no_events"
            return result

        trades = [e for e in events if isinstance(e, TradeEvent)]
        deposits = [e for e in events if isinstance(e, DepositEvent)]
        redeems = [e for e in events if isinstance(e, RedeemEvent)]

        # Admin redeems name their user; everything else needs the fee payer
        needs_payer = bool(trades or deposits or any(r.user is None for r in redeems))
        payer = await self.lookup.resolve_fee_payer(batch.signature) if needs_payer else None
        result.user = payer

        if payer is not None and payer in self.excluded_wallets:
            self.stats.keeper_batches_skipped += 1
            logger.info(f"Skipping keeper transaction: {len(events)} events from {batch.signature[:8]}...")
            result.skipped_reason = "keeper"
            return result

        if trades:
            if payer is None:
                self.stats.trades_unattributed += len(trades)
                logger.warning(
                    f"Dropping {len(trades)} trade events from {batch.signature[:8]}: "
                    f"fee payer unresolved"
                )
            else:
                for trade in trades:
                    update, points = await self._process_trade(replace(trade, user=payer))
                    result.updates.append(update)
                    result.points += points
                if len(trades) > 1:
                    logger.info(f"Processed {len(trades)} trade events from {batch.signature[:8]}")

        for deposit in deposits:
            if payer is None:
                logger.warning(f"Dropping deposit from {batch.signature[:8]}: fee payer unresolved")
                continue
            result.points += await self.rewards.award_deposit(payer, deposit)

        for redeem in redeems:
            user = redeem.user or payer
            if user is None:
                logger.warning(f"Dropping redeem from {batch.signature[:8]}: user unresolved")
                continue
            result.points += await self.rewards.award_win(user, redeem)

        self.stats.points_awarded += result.points
        return result

    async def _process_trade(self, trade: TradeEvent) -> tuple[LedgerUpdate, int]:
        """Apply one attributed trade to every downstream component."""
        logger.info(
            f"{trade.user[:5]} {trade.action.value} {trade.side.label}: "
            f"{trade.share_delta:.2f} shares @ {trade.avg_price:.4f} XNT"
        )

        update = self.ledger.apply(trade)
        self.stats.trades_applied += 1

        self.volume_sink.record(trade)
        self.history_sink.record(update)

        points = await self.rewards.award_trade(trade.user, trade)
        await self.hub.publish_trade(trade)
        return update, points

    async def wait_idle(self) -> None:
        """Wait for every in-flight batch task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Open stores, seed replay buffers and start the servers."""
        if self._started:
            return
        self.stats.start_time = _utc_now()

        self.rewards.points_store.initialize()
        self.hub.load_chat()
        self.hub.seed_trades(await self.outbound.fetch_recent_trades(limit=MAX_TRADES))

        await self.outbound.start()
        await self.hub.start(self.broadcast_host, self.broadcast_port)
        self._started = True
        logger.info(f"Monitoring trades on programs: {', '.join(self.subscriber.program_ids)}")

    async def run(self) -> None:
        """Start, stream until the subscription ends, then shut down."""
        try:
            await self.start()
            await self.subscriber.run(self.on_logs)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """
        Tear down in dependency order.

        Unsubscribe first so no new batches arrive, let in-flight batches
        finish, then close the hub, the sinks, the stores and the RPC client.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down...")

        await self.subscriber.unsubscribe()
        await self.wait_idle()
        await self.hub.close()
        await self.outbound.close()
        self.rewards.points_store.close()
        logger.info("Points database closed")

        if self.rpc_client is not None:
            await self.rpc_client.close()

        logger.info(f"Monitor stopped: {self.stats.to_dict()}")
