"""
Typed records produced from a program's transaction logs.

A delivered log batch decodes into any number of events. Each event is one
of three immutable kinds:

- TradeEvent: a BUY or SELL of Up/Down shares (TradeSnapshot payload).
- DepositEvent: lamports deposited into the user's vault.
- RedeemEvent: a payout after market resolution.

Amounts are exact Decimals converted from the on-chain fixed-point integers
with the scale constants in ``src.events.decoder``.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

# Placeholder user for events whose fee payer could not be resolved
UNKNOWN_USER = "Unknown"


def _now_ms() -> int:
    return int(time.time() * 1000)


class Side(Enum):
    """Outcome leg of the binary market."""

    UP = "UP"
    DOWN = "DOWN"

    @property
    def label(self) -> str:
        """Wire label used by the feed and the volume API."""
        return "YES" if self is Side.UP else "NO"

    @classmethod
    def from_label(cls, value: str) -> "Side":
        """Parse any of UP/DOWN/YES/NO (case-insensitive)."""
        normalized = value.strip().upper()
        if normalized in ("UP", "YES"):
            return cls.UP
        if normalized in ("DOWN", "NO"):
            return cls.DOWN
        raise ValueError(f"Unknown side: {value!r}")


class Action(Enum):
    """Trade direction."""

    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class LogBatch:
    """
    One log notification for one transaction.

    Attributes:
        signature: Transaction signature (base58).
        logs: Raw log lines in program order.
        err: Transaction error, if the transaction failed.
        program_id: The subscription this batch arrived on.
    """

    signature: str
    logs: tuple[str, ...]
    err: Any = None
    program_id: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.err is not None


@dataclass(frozen=True)
class TradeEvent:
    """
    A decoded TradeSnapshot.

    Attributes:
        side: Up or Down.
        action: Buy or Sell.
        net_amount: Currency spent (BUY) or received (SELL), in XNT.
        share_delta: Shares bought or sold.
        avg_price: Average fill price per share.
        signature: Transaction signature.
        user: Fee payer, or UNKNOWN_USER until attributed.
        timestamp: Milliseconds since epoch when decoded.
        event_index: Position of this event within its transaction.
    """

    side: Side
    action: Action
    net_amount: Decimal
    share_delta: Decimal
    avg_price: Decimal
    signature: str
    user: str = UNKNOWN_USER
    timestamp: int = field(default_factory=_now_ms)
    event_index: int = 0

    @property
    def is_attributed(self) -> bool:
        return bool(self.user) and self.user != UNKNOWN_USER

    @property
    def shares_e6(self) -> int:
        """Shares in millionths, as recorded by the points ledger."""
        return int(self.share_delta * 1_000_000)

    def to_dict(self) -> dict[str, Any]:
        """Feed representation (matches the browser client's field names)."""
        return {
            "side": self.side.label,
            "action": self.action.value,
            "amount": f"{self.net_amount:.4f}",
            "shares": f"{self.share_delta:.2f}",
            "avgPrice": f"{self.avg_price:.4f}",
            "signature": self.signature,
            "user": self.user,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class DepositEvent:
    """Lamports deposited into a user vault."""

    amount_lamports: int
    signature: str
    event_index: int = 0


@dataclass(frozen=True)
class RedeemEvent:
    """
    A payout after resolution.

    ``user`` is set only for admin redeems, where the log names the
    recipient because the fee payer is the operator.
    """

    payout_lamports: int
    signature: str
    user: Optional[str] = None
    event_index: int = 0


ChainEvent = Union[TradeEvent, DepositEvent, RedeemEvent]
