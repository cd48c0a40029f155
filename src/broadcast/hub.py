"""
Broadcast Hub: live trade and chat fan-out over websockets.

Keeps the last trades and chat messages in bounded ring buffers. A new
subscriber is sent a ``history`` frame and then a ``chat_history`` frame
before it is registered for live events, so replay always precedes any live
``trade`` or ``chat`` frame for that subscriber. Frames published while the
replay is in flight are queued on the subscriber and flushed right after it.

Outbound frames::

    {"type": "history", "trades": [...]}
    {"type": "chat_history", "messages": [...]}
    {"type": "trade", "trade": {...}}
    {"type": "chat", "message": {...}}
    {"type": "error", "message": "..."}   (unicast to the sender only)

Inbound frames: ``{"type": "chat", "user": "...", "text": "..."}`` only.

Delivery is best-effort. Live frames go out through ``websockets``'
``broadcast``, which writes to every connection without waiting on slow
readers. Closed subscribers are dropped the next time a frame is published.
"""

import json
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Optional, Union

from websockets.asyncio.server import Server, ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from ..config import (
    BROADCAST_HOST,
    BROADCAST_PORT,
    MAX_CHAT_MESSAGES,
    MAX_TRADES,
    REPLAY_SIZE,
)
from ..events.models import TradeEvent
from .rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

MAX_CHAT_TEXT = 300
MAX_CHAT_USER = 5


class ChatValidationError(Exception):
    """Raised when an inbound chat frame is malformed."""

    pass


class Subscriber:
    """A connected feed client."""

    def __init__(self, connection: ServerConnection):
        self.connection = connection
        # Live frames published during replay
        self.backlog: deque[str] = deque()

    @property
    def is_open(self) -> bool:
        return self.connection.state is State.OPEN

    async def send_text(self, message: str) -> None:
        await self.connection.send(message)

    async def send_json(self, payload: dict[str, Any]) -> None:
        await self.send_text(json.dumps(payload))

    def __repr__(self) -> str:
        return f"Subscriber({getattr(self.connection, 'remote_address', None)})"


def validate_chat(msg: dict[str, Any]) -> tuple[str, str]:
    """
    Check an inbound chat frame.

    Returns:
        (user, text) with the user truncated to the address prefix.

    Raises:
        ChatValidationError: If fields are missing, of the wrong type, or
            the text is too long.
    """
    text = msg.get("text")
    user = msg.get("user")
    if not isinstance(text, str) or not text:
        raise ChatValidationError("Chat text is required")
    if len(text) > MAX_CHAT_TEXT:
        raise ChatValidationError(f"Chat text exceeds {MAX_CHAT_TEXT} characters")
    if not isinstance(user, str) or not user:
        raise ChatValidationError("Chat user is required")
    return user[:MAX_CHAT_USER], text


class BroadcastHub:
    """
    Pub/sub fan-out with bounded replay.

    Attributes:
        trades: Recent trade payloads, oldest first.
        chat_messages: Recent chat messages, oldest first.
        subscribers: Registered live subscribers.
        rate_limiter: Gate in front of the chat path.
        chat_archive_path: JSON file chat is persisted to (optional).
    """

    def __init__(
        self,
        max_trades: int = MAX_TRADES,
        max_chat_messages: int = MAX_CHAT_MESSAGES,
        replay_size: int = REPLAY_SIZE,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        chat_archive_path: Optional[Path] = None,
    ):
        self.trades: deque[dict[str, Any]] = deque(maxlen=max_trades)
        self.chat_messages: deque[dict[str, Any]] = deque(maxlen=max_chat_messages)
        self.replay_size = replay_size
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.chat_archive_path = Path(chat_archive_path) if chat_archive_path else None
        self.subscribers: set[Subscriber] = set()
        self.replaying: set[Subscriber] = set()
        self._server: Optional[Server] = None

    # =========================================================================
    # Replay buffers
    # =========================================================================

    def seed_trades(self, trades: list[dict[str, Any]]) -> None:
        """Preload trade history (oldest first), e.g. from the database."""
        self.trades.extend(trades)
        logger.info(f"Loaded {len(trades)} historical trades")

    def load_chat(self) -> int:
        """Load archived chat messages. Returns the number loaded."""
        if self.chat_archive_path is None or not self.chat_archive_path.exists():
            return 0
        try:
            messages = json.loads(self.chat_archive_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load chat: {e}")
            return 0
        if not isinstance(messages, list):
            logger.error(f"Failed to load chat: expected a list in {self.chat_archive_path}")
            return 0
        self.chat_messages.extend(messages)
        logger.info(f"Loaded {len(messages)} chat messages")
        return len(messages)

    def save_chat(self) -> None:
        if self.chat_archive_path is None:
            return
        try:
            self.chat_archive_path.parent.mkdir(parents=True, exist_ok=True)
            self.chat_archive_path.write_text(json.dumps(list(self.chat_messages), indent=2))
        except OSError as e:
            logger.error(f"Failed to save chat: {e}")

    def _replay(self, buffer: deque) -> list[dict[str, Any]]:
        items = list(buffer)
        return items[-self.replay_size:] if self.replay_size > 0 else []

    # =========================================================================
    # Subscribers
    # =========================================================================

    async def connect(self, subscriber: Subscriber) -> bool:
        """
        Send replay frames, then register for live events.

        Both snapshots are taken before the first send. Anything published
        while a send is waiting lands in ``subscriber.backlog`` and is
        flushed before the subscriber joins the live set.

        Returns:
            True if registered, False if the subscriber went away during replay.
        """
        history = {"type": "history", "trades": self._replay(self.trades)}
        chat_history = {"type": "chat_history", "messages": self._replay(self.chat_messages)}
        self.replaying.add(subscriber)
        try:
            await subscriber.send_json(history)
            await subscriber.send_json(chat_history)
            while subscriber.backlog:
                await subscriber.send_text(subscriber.backlog.popleft())
        except ConnectionClosed:
            logger.info("Client disconnected during replay")
            return False
        finally:
            self.replaying.discard(subscriber)
            subscriber.backlog.clear()

        self.subscribers.add(subscriber)
        logger.info(f"Client connected to trade feed ({len(self.subscribers)} connected)")
        return True

    def disconnect(self, subscriber: Subscriber) -> None:
        if subscriber in self.subscribers:
            self.subscribers.discard(subscriber)
            logger.info(f"Client disconnected from trade feed ({len(self.subscribers)} connected)")

    def _broadcast(self, payload: dict[str, Any]) -> int:
        """
        Push one frame to every open subscriber without waiting on any of them.

        Returns:
            Number of connections the frame was handed to.
        """
        message = json.dumps(payload)
        for subscriber in self.replaying:
            subscriber.backlog.append(message)

        closed = {s for s in self.subscribers if not s.is_open}
        self.subscribers -= closed
        broadcast([s.connection for s in self.subscribers], message)
        return len(self.subscribers)

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish_trade(self, trade: Union[TradeEvent, dict[str, Any]]) -> int:
        """Buffer a trade and push it to live subscribers."""
        payload = trade.to_dict() if isinstance(trade, TradeEvent) else trade
        self.trades.append(payload)
        return self._broadcast({"type": "trade", "trade": payload})

    async def handle_inbound(self, subscriber: Subscriber, raw: Union[str, bytes]) -> None:
        """Dispatch one inbound frame from a subscriber."""
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to parse message: {e}")
            return

        if not isinstance(msg, dict) or msg.get("type") != "chat":
            return

        await self.handle_chat(subscriber, msg)

    async def handle_chat(self, subscriber: Subscriber, msg: dict[str, Any]) -> Optional[dict[str, Any]]:
        """
        Validate, rate-limit and broadcast a chat message.

        Returns:
            The stored chat message, or None if rejected.
        """
        try:
            user, text = validate_chat(msg)
        except ChatValidationError as e:
            logger.debug(f"Dropping chat message: {e}")
            return None

        if not self.rate_limiter.allow(user):
            logger.warning(f"[RATE LIMIT] {user} exceeded chat rate limit")
            if subscriber.is_open:
                try:
                    await subscriber.send_json({
                        "type": "error",
                        "message": (
                            f"Rate limit exceeded. Max {self.rate_limiter.max_messages} "
                            f"messages per minute."
                        ),
                    })
                except ConnectionClosed:
                    self.disconnect(subscriber)
            return None

        chat_msg = {"user": user, "text": text, "timestamp": int(time.time() * 1000)}
        self.chat_messages.append(chat_msg)
        self._broadcast({"type": "chat", "message": chat_msg})
        self.save_chat()

        logger.info(f"[CHAT] {user}: {text}")
        return chat_msg

    # =========================================================================
    # Server
    # =========================================================================

    async def _handle_connection(self, connection: ServerConnection) -> None:
        subscriber = Subscriber(connection)
        if not await self.connect(subscriber):
            return
        try:
            async for raw in connection:
                await self.handle_inbound(subscriber, raw)
        except ConnectionClosed:
            pass
        finally:
            self.disconnect(subscriber)

    async def start(self, host: str = BROADCAST_HOST, port: int = BROADCAST_PORT) -> None:
        """Start the websocket server."""
        self._server = await serve(self._handle_connection, host, port)
        logger.info(f"WebSocket server running on {host}:{port}")

    async def close(self) -> None:
        """Stop accepting connections and close existing ones."""
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self.subscribers.clear()
        logger.info("WebSocket server closed")
