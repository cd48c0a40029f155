"""
Binary event decoder for program transaction logs.

Trade events are emitted by the program as base64 payloads on
``Program data: `` log lines. Layout (little-endian) after the 8-byte
event discriminator::

    side          u8    1 = Up, 0 = Down
    action        u8    1 = Buy, 0 = Sell
    net_e6        i64   currency amount, scaled by AMOUNT_SCALE
    dq_e6         i64   share delta, scaled by SHARE_SCALE
    avg_price_e6  i64   average price, scaled by PRICE_SCALE

Deposits and redeems are plain text log lines.

The scale constants must match the producer bit-for-bit. A mismatch does not
crash anything, it silently mis-prices every trade.

Example:
    >>> decoder = EventDecoder()
    >>> events = decoder.decode(batch.logs, batch.signature)
    >>> trades = [e for e in events if isinstance(e, TradeEvent)]
"""

import base64
import binascii
import hashlib
import logging
import re
import struct
from decimal import Decimal
from typing import Iterable, Optional

from .models import (
    Action,
    ChainEvent,
    DepositEvent,
    RedeemEvent,
    Side,
    TradeEvent,
)

logger = logging.getLogger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "

# Fixed-point scales (integer minor units per whole unit)
AMOUNT_SCALE = 10_000_000  # net_e6 -> XNT
SHARE_SCALE = 10_000_000  # dq_e6 -> shares
PRICE_SCALE = 1_000_000  # avg_price_e6 -> price
LAMPORTS_PER_E6 = 100
LAMPORTS_PER_XNT = AMOUNT_SCALE * LAMPORTS_PER_E6

DISCRIMINATOR_SIZE = 8
_TRADE_BODY = struct.Struct("<BBqqq")
MIN_TRADE_EVENT_SIZE = DISCRIMINATOR_SIZE + _TRADE_BODY.size  # 34 bytes

# Anchor event discriminator: sha256("event:<Name>")[:8]
TRADE_SNAPSHOT_DISCRIMINATOR = hashlib.sha256(b"event:TradeSnapshot").digest()[:DISCRIMINATOR_SIZE]

_DEPOSIT_RE = re.compile(r"Deposited (\d+) lamports")
_REDEEM_RE = re.compile(r"(?<!ADMIN_)REDEEM pay=(\d+) lamports")
_ADMIN_REDEEM_RE = re.compile(r"ADMIN_REDEEM user=(\S+) pay=(\d+) lamports")

_SIDES = {1: Side.UP, 0: Side.DOWN}
_ACTIONS = {1: Action.BUY, 0: Action.SELL}


def _to_scaled(value: Decimal, scale: int) -> int:
    return int((Decimal(value) * scale).to_integral_value())


def encode_trade_snapshot(
    side: Side,
    action: Action,
    net_amount: Decimal,
    share_delta: Decimal,
    avg_price: Decimal,
    discriminator: bytes = TRADE_SNAPSHOT_DISCRIMINATOR,
) -> str:
    """
    Encode a trade the way the program emits it.

    Returns the full log line, including the ``Program data: `` prefix.
    """
    body = _TRADE_BODY.pack(
        1 if side is Side.UP else 0,
        1 if action is Action.BUY else 0,
        _to_scaled(net_amount, AMOUNT_SCALE),
        _to_scaled(share_delta, SHARE_SCALE),
        _to_scaled(avg_price, PRICE_SCALE),
    )
    payload = base64.b64encode(discriminator + body).decode("ascii")
    return f"{PROGRAM_DATA_PREFIX}{payload}"


class EventDecoder:
    """
    Turns raw log lines into typed events.

    Malformed or non-matching lines are skipped; a bad line never aborts
    the rest of the batch. Every event in a batch is returned, in log order.

    Attributes:
        trade_discriminator: When set, only ``Program data`` payloads that
            start with these 8 bytes are decoded as trades.
    """

    def __init__(self, trade_discriminator: Optional[bytes] = None):
        if trade_discriminator is not None and len(trade_discriminator) != DISCRIMINATOR_SIZE:
            raise ValueError(
                f"Discriminator must be {DISCRIMINATOR_SIZE} bytes, got {len(trade_discriminator)}"
            )
        self.trade_discriminator = trade_discriminator

    def decode_trade_line(self, line: str, signature: str, event_index: int = 0) -> Optional[TradeEvent]:
        """Decode a single ``Program data`` line, or return None."""
        if not line.startswith(PROGRAM_DATA_PREFIX):
            return None

        try:
            raw = base64.b64decode(line[len(PROGRAM_DATA_PREFIX):].strip(), validate=True)
        except (binascii.Error, ValueError):
            logger.debug(f"Skipping non-base64 program data in {signature[:8]}")
            return None

        if len(raw) < MIN_TRADE_EVENT_SIZE:
            logger.debug(f"Skipping short program data ({len(raw)} bytes) in {signature[:8]}")
            return None

        if self.trade_discriminator is not None and raw[:DISCRIMINATOR_SIZE] != self.trade_discriminator:
            return None

        side_raw, action_raw, net_e6, dq_e6, avg_price_e6 = _TRADE_BODY.unpack_from(
            raw, DISCRIMINATOR_SIZE
        )

        side = _SIDES.get(side_raw)
        action = _ACTIONS.get(action_raw)
        if side is None or action is None:
            logger.debug(
                f"Skipping program data with side={side_raw} action={action_raw} in {signature[:8]}"
            )
            return None

        return TradeEvent(
            side=side,
            action=action,
            net_amount=Decimal(net_e6) / AMOUNT_SCALE,
            share_delta=Decimal(dq_e6) / SHARE_SCALE,
            avg_price=Decimal(avg_price_e6) / PRICE_SCALE,
            signature=signature,
            event_index=event_index,
        )

    def decode(self, logs: Iterable[str], signature: str) -> list[ChainEvent]:
        """
        Decode every event in a transaction's logs.

        Args:
            logs: Raw log lines, in program order.
            signature: Transaction signature the lines belong to.

        Returns:
            Trade, deposit and redeem events in log order. Each kind is
            numbered independently through ``event_index``.
        """
        events: list[ChainEvent] = []
        trade_count = 0
        deposit_count = 0
        redeem_count = 0

        for line in logs:
            if not isinstance(line, str):
                continue

            trade = self.decode_trade_line(line, signature, trade_count)
            if trade is not None:
                events.append(trade)
                trade_count += 1
                continue

            match = _DEPOSIT_RE.search(line)
            if match:
                events.append(DepositEvent(
                    amount_lamports=int(match.group(1)),
                    signature=signature,
                    event_index=deposit_count,
                ))
                deposit_count += 1
                continue

            match = _ADMIN_REDEEM_RE.search(line)
            if match:
                events.append(RedeemEvent(
                    payout_lamports=int(match.group(2)),
                    signature=signature,
                    user=match.group(1),
                    event_index=redeem_count,
                ))
                redeem_count += 1
                continue

            match = _REDEEM_RE.search(line)
            if match:
                events.append(RedeemEvent(
                    payout_lamports=int(match.group(1)),
                    signature=signature,
                    event_index=redeem_count,
                ))
                redeem_count += 1

        return events
