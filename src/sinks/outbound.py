"""
Fire-and-forget forwarding to the persistence API.

Ingestion never waits on these calls: requests are queued and a single
worker posts them in order. Failures and a full queue are logged and the
request is dropped.

Endpoints:
    POST /api/trading-history   per-trade history row (with realized P&L)
    POST /api/volume            cumulative volume increment (BUY only)
    GET  /api/recent-trades     startup seed for the broadcast history
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from ..config import PERSISTENCE_API_URL, SINK_QUEUE_SIZE, SINK_TIMEOUT
from ..events.models import Action, TradeEvent
from ..ledger.positions import LedgerUpdate

logger = logging.getLogger(__name__)

HISTORY_PREFIX_LENGTH = 6


@dataclass(frozen=True)
class OutboundRequest:
    """One queued POST."""

    path: str
    payload: dict[str, Any]
    description: str = ""


def _num(value: Optional[Decimal]) -> Optional[float]:
    return None if value is None else float(value)


class OutboundQueue:
    """
    Bounded queue of POSTs drained by one background worker.

    Example:
        >>> queue = OutboundQueue("http://localhost:3434")
        >>> await queue.start()
        >>> queue.submit("/api/volume", {"side": "YES", "amount": 1.5, "shares": 3.0})
        >>> await queue.close()
    """

    def __init__(
        self,
        base_url: str = PERSISTENCE_API_URL,
        timeout: float = SINK_TIMEOUT,
        max_size: int = SINK_QUEUE_SIZE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._queue: asyncio.Queue[OutboundRequest] = asyncio.Queue(maxsize=max_size)
        self._worker: Optional[asyncio.Task] = None

        # Stats
        self.sent = 0
        self.failed = 0
        self.dropped = 0

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="outbound-sink")

    def submit(self, path: str, payload: dict[str, Any], description: str = "") -> bool:
        """Queue a POST without waiting. Returns False if dropped."""
        try:
            self._queue.put_nowait(OutboundRequest(path, payload, description or path))
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Outbound queue full, dropping {description or path}")
            return False

    async def _post(self, request: OutboundRequest) -> None:
        try:
            response = await self._client.post(request.path, json=request.payload)
        except httpx.HTTPError as e:
            self.failed += 1
            logger.error(f"Error sending {request.description}: {e}")
            return

        if response.is_success:
            self.sent += 1
            logger.debug(f"{request.description} saved")
        else:
            self.failed += 1
            logger.error(f"Failed to send {request.description}: {response.status_code} {response.text}")

    async def _run(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self._post(request)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued request has been attempted."""
        if self._worker is not None:
            await self._queue.join()

    async def close(self, drain_timeout: float = 5.0) -> None:
        """Drain (bounded), stop the worker and close the HTTP client."""
        if self._worker is not None:
            try:
                await asyncio.wait_for(self.drain(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Outbound queue not drained, {self.pending} requests dropped")
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self._client.aclose()

    async def fetch_recent_trades(self, limit: int = 100) -> list[dict[str, Any]]:
        """
        Recent trades from the database, oldest first.

        Returns an empty list if the API is unavailable.
        """
        try:
            response = await self._client.get("/api/recent-trades", params={"limit": limit})
            response.raise_for_status()
            trades = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error loading trades from database: {e}")
            return []

        if not isinstance(trades, list):
            return []
        # API returns newest first
        return list(reversed(trades))


class TradeHistorySink:
    """Forwards every applied trade to the trading history store."""

    PATH = "/api/trading-history"

    def __init__(self, queue: OutboundQueue):
        self.queue = queue

    @staticmethod
    def build_payload(update: LedgerUpdate) -> dict[str, Any]:
        trade = update.trade
        return {
            "userPrefix": trade.user[:HISTORY_PREFIX_LENGTH],
            "walletPubkey": trade.user,
            "action": trade.action.value,
            "side": trade.side.value,
            "shares": float(trade.share_delta),
            "costUsd": float(trade.net_amount),
            "avgPrice": float(trade.avg_price),
            "pnl": _num(update.realized_pnl),
        }

    def record(self, update: LedgerUpdate) -> bool:
        payload = self.build_payload(update)
        return self.queue.submit(
            self.PATH, payload, description=f"trading history for {payload['userPrefix']}"
        )


class VolumeSink:
    """Forwards BUY volume increments."""

    PATH = "/api/volume"

    def __init__(self, queue: OutboundQueue):
        self.queue = queue

    def record(self, trade: TradeEvent) -> bool:
        """Queue a volume increment. Returns False when not applicable."""
        if trade.action is not Action.BUY:
            return False
        if trade.net_amount <= 0 or trade.share_delta <= 0:
            return False
        return self.queue.submit(
            self.PATH,
            {
                "side": trade.side.label,
                "amount": float(trade.net_amount),
                "shares": float(trade.share_delta),
            },
            description=f"volume {trade.side.label} +{trade.net_amount}",
        )
