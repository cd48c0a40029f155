"""
Trade monitor service.

This module provides:
- TradeMonitor: owns the ingestion pipeline and all process state
- MonitorStats / BatchResult: counters and per-batch outcomes
"""

from .trade_monitor import BatchResult, MonitorStats, TradeMonitor

__all__ = ["TradeMonitor", "MonitorStats", "BatchResult"]
