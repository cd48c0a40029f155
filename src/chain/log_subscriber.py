"""
Program log subscription over the RPC websocket.

Opens one ``logsSubscribe`` per monitored program and hands each
notification to a callback as a LogBatch. Delivery is at-least-once and may
repeat signatures; deduplication happens downstream. This client does not
reconnect: if the socket drops, ``run()`` returns and the owner decides.
"""

import logging
from typing import Callable

from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.websocket_api import connect
from solders.pubkey import Pubkey
from solders.rpc.config import RpcTransactionLogsFilterMentions
from solders.rpc.responses import LogsNotification, SubscriptionResult

from ..config import RPC_WS_URL
from ..events.models import LogBatch

logger = logging.getLogger(__name__)

LogCallback = Callable[[LogBatch], None]


class LogSubscriptionClient:
    """
    Subscribes to transaction logs mentioning each program id.

    Attributes:
        ws_url: RPC websocket endpoint.
        program_ids: Programs to monitor (one subscription each).
        subscriptions: subscription id -> program id, filled as the RPC
            confirms each subscription.
    """

    def __init__(
        self,
        program_ids: list[str],
        ws_url: str = RPC_WS_URL,
        commitment: Commitment = Confirmed,
    ):
        if not program_ids:
            raise ValueError("At least one program id is required")
        self.ws_url = ws_url
        self.program_ids = list(program_ids)
        self.commitment = commitment
        self.subscriptions: dict[int, str] = {}
        self.running = False
        self._websocket = None

    async def _subscribe_all(self, websocket) -> None:
        for program_id in self.program_ids:
            await websocket.logs_subscribe(
                filter_=RpcTransactionLogsFilterMentions(Pubkey.from_string(program_id)),
                commitment=self.commitment,
            )
            response = await websocket.recv()
            for msg in response:
                if isinstance(msg, SubscriptionResult):
                    self.subscriptions[msg.result] = program_id
                    logger.info(f"Subscribed to {program_id[:8]} (subscription {msg.result})")

    def _to_batch(self, msg: LogsNotification) -> LogBatch:
        value = msg.result.value
        return LogBatch(
            signature=str(value.signature),
            logs=tuple(value.logs),
            err=value.err,
            program_id=self.subscriptions.get(msg.subscription),
        )

    async def run(self, callback: LogCallback) -> None:
        """
        Connect, subscribe and deliver batches until stopped or disconnected.

        Args:
            callback: Invoked synchronously once per notification. It must not
                block; schedule work as tasks instead.
        """
        self.running = True
        logger.info(f"Connecting to log stream: {self.ws_url}")

        async with connect(self.ws_url) as websocket:
            self._websocket = websocket
            try:
                await self._subscribe_all(websocket)

                async for batched_msgs in websocket:
                    if not self.running:
                        break
                    for msg in batched_msgs:
                        if not isinstance(msg, LogsNotification):
                            continue
                        callback(self._to_batch(msg))
            finally:
                await self.unsubscribe()
                self._websocket = None

        logger.info("Log stream closed")

    async def unsubscribe(self) -> None:
        """Remove every active subscription. Safe to call more than once."""
        websocket = self._websocket
        self.running = False
        if websocket is None:
            self.subscriptions.clear()
            return

        for subscription_id, program_id in list(self.subscriptions.items()):
            try:
                await websocket.logs_unsubscribe(subscription_id)
                logger.info(f"Unsubscribed from {program_id[:8]} (subscription {subscription_id})")
            except Exception as e:
                logger.warning(f"Failed to unsubscribe {subscription_id}: {e}")
        self.subscriptions.clear()

    def stop(self) -> None:
        self.running = False
