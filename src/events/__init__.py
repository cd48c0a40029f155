"""
Event decoding for program transaction logs.

This module provides:
- Typed event records (TradeEvent, DepositEvent, RedeemEvent)
- The binary/text log decoder and its fixed-point scale constants
"""

from .decoder import (
    AMOUNT_SCALE,
    LAMPORTS_PER_XNT,
    PRICE_SCALE,
    SHARE_SCALE,
    EventDecoder,
    encode_trade_snapshot,
)
from .models import (
    UNKNOWN_USER,
    Action,
    ChainEvent,
    DepositEvent,
    LogBatch,
    RedeemEvent,
    Side,
    TradeEvent,
)

__all__ = [
    # Records
    "Action",
    "ChainEvent",
    "DepositEvent",
    "LogBatch",
    "RedeemEvent",
    "Side",
    "TradeEvent",
    "UNKNOWN_USER",
    # Decoding
    "EventDecoder",
    "encode_trade_snapshot",
    "AMOUNT_SCALE",
    "SHARE_SCALE",
    "PRICE_SCALE",
    "LAMPORTS_PER_XNT",
]
