"""
Outbound persistence sinks.

This module provides:
- OutboundQueue: bounded fire-and-forget POST queue (httpx)
- TradeHistorySink: per-trade history rows
- VolumeSink: cumulative BUY volume
"""

from .outbound import OutboundQueue, OutboundRequest, TradeHistorySink, VolumeSink

__all__ = [
    "OutboundQueue",
    "OutboundRequest",
    "TradeHistorySink",
    "VolumeSink",
]
