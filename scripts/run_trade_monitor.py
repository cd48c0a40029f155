#!/usr/bin/env python3
"""
Run the Trade Monitor

Streams program logs from the chain, keeps live positions, credits points
and serves the trade/chat feed over websockets.

Usage:
    # Run with settings from .env
    python scripts/run_trade_monitor.py

    # Override the broadcast port
    python scripts/run_trade_monitor.py --port 3500

    # Show configuration and exit
    python scripts/run_trade_monitor.py --status

    # Verbose output
    python scripts/run_trade_monitor.py --verbose

Environment Variables:
    RPC_URL / RPC_WS_URL - Chain RPC endpoints
    PROGRAM_IDS - Comma-separated program ids to monitor
    PERSISTENCE_API_URL - Trading history / volume API
    POINTS_DB_PATH - SQLite points database

Stop with Ctrl+C (or SIGTERM); the monitor unsubscribes and closes its
stores before exiting.
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.config import (
    BROADCAST_HOST,
    BROADCAST_PORT,
    EXCLUDED_WALLETS,
    LOGS_DIR,
    PERSISTENCE_API_URL,
    POINTS_DB_PATH,
    PROGRAM_IDS,
    RPC_URL,
    RPC_WS_URL,
)
from src.monitor import TradeMonitor


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the monitor."""
    level = logging.DEBUG if verbose else logging.INFO

    console_format = "%(asctime)s [%(levelname)s] %(message)s"
    file_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(console_format, datefmt="%H:%M:%S"))

    # File handler
    log_file = LOGS_DIR / f"trade_monitor_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(file_format))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")


def show_status() -> None:
    """Show configuration without starting the monitor."""
    print("\n" + "=" * 70)
    print("Trade Monitor Configuration")
    print("=" * 70)
    print(f"\n  RPC: {RPC_URL}")
    print(f"  RPC websocket: {RPC_WS_URL}")
    print(f"  Programs: {', '.join(PROGRAM_IDS)}")
    print(f"  Excluded wallets: {len(EXCLUDED_WALLETS)}")
    print(f"  Broadcast: ws://{BROADCAST_HOST}:{BROADCAST_PORT}")
    print(f"  Persistence API: {PERSISTENCE_API_URL}")
    print(f"  Points DB: {POINTS_DB_PATH} ({'exists' if POINTS_DB_PATH.exists() else 'not created yet'})")
    print("\n" + "=" * 70)


async def run_monitor(host: str, port: int) -> None:
    """Run the monitor until the stream ends or a stop signal arrives."""
    monitor = TradeMonitor.from_config()
    monitor.broadcast_host = host
    monitor.broadcast_port = port

    print("\n" + "=" * 70)
    print("Starting Trade Monitor")
    print("=" * 70)
    print(f"\nPress Ctrl+C to stop\n")

    main_task = asyncio.create_task(monitor.run())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, main_task.cancel)

    try:
        await main_task
    except asyncio.CancelledError:
        print("\nShutdown requested...")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

        stats = monitor.stats.to_dict()
        print("\n" + "=" * 70)
        print("Session Summary")
        print("=" * 70)
        print(f"  Batches received: {stats['batches_received']}")
        print(f"  Trades applied: {stats['trades_applied']}")
        print(f"  Trades unattributed: {stats['trades_unattributed']}")
        print(f"  Keeper batches skipped: {stats['keeper_batches_skipped']}")
        print(f"  Points awarded: {stats['points_awarded']}")
        print(f"  Handler errors: {stats['handler_errors']}")
        print("\n" + "=" * 70)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the on-chain Trade Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_trade_monitor.py                 # Run with .env settings
  python scripts/run_trade_monitor.py --status        # Show configuration
  python scripts/run_trade_monitor.py --port 3500     # Custom broadcast port
        """,
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show configuration and exit",
    )
    parser.add_argument(
        "--host",
        default=BROADCAST_HOST,
        help=f"Broadcast server host (default: {BROADCAST_HOST})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=BROADCAST_PORT,
        help=f"Broadcast server port (default: {BROADCAST_PORT})",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.status:
        show_status()
        return

    setup_logging(verbose=args.verbose)

    try:
        asyncio.run(run_monitor(args.host, args.port))
    except Exception as e:
        print(f"\nFatal error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
