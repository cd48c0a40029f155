#!/usr/bin/env python3
"""
Points Report

Read-only views over the points database.

Usage:
    # Top 20 users
    python scripts/points_report.py leaderboard --limit 20

    # One user's balance, rank and recent events
    python scripts/points_report.py user <MASTER_PUBKEY>

    # Totals across all users
    python scripts/points_report.py stats
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.config import POINTS_DB_PATH
from src.rewards.points_store import PointsStore, PointsStoreError


def show_leaderboard(store: PointsStore, limit: int) -> None:
    rows = store.get_leaderboard(limit=limit)
    print("\n" + "=" * 70)
    print(f"Leaderboard (top {limit})")
    print("=" * 70)
    if not rows:
        print("\n  No users yet")
        return
    print(f"\n  {'#':>3}  {'Wallet':<46} {'Total':>8} {'Dep':>6} {'Trade':>6} {'Win':>6}")
    for rank, row in enumerate(rows, 1):
        print(
            f"  {rank:>3}  {row['master_pubkey']:<46} {row['total_points']:>8} "
            f"{row['deposit_points']:>6} {row['trade_points']:>6} {row['win_points']:>6}"
        )


def show_user(store: PointsStore, master_pubkey: str, limit: int) -> None:
    user = store.get_user(master_pubkey)
    print("\n" + "=" * 70)
    print(f"User {master_pubkey}")
    print("=" * 70)
    if user is None:
        print("\n  No points recorded")
        return

    print(f"\n  Total: {user['total_points']} (rank #{store.get_user_rank(master_pubkey)})")
    print(f"  Deposit: {user['deposit_points']}")
    print(f"  Trade: {user['trade_points']}")
    print(f"  Win: {user['win_points']}")

    history = store.get_user_history(master_pubkey, limit=limit)
    if history:
        print(f"\n  Recent events:")
        for event in history:
            sig = (event.get("tx_signature") or "")[:8]
            print(f"    {event['created_at']}  {event['event_type']:<8} +{event['points']:<6} {sig}")


def show_stats(store: PointsStore) -> None:
    stats = store.get_stats()
    print("\n" + "=" * 70)
    print("Points Statistics")
    print("=" * 70)
    print(f"\n  Users: {stats['total_users']}")
    print(f"  Total points: {stats['total_points']}")
    print(f"  Deposit points: {stats['total_deposit_points']}")
    print(f"  Trade points: {stats['total_trade_points']}")
    print(f"  Win points: {stats['total_win_points']}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Points database report")
    parser.add_argument("--db", type=Path, default=POINTS_DB_PATH, help="Points database path")
    sub = parser.add_subparsers(dest="command", required=True)

    lb = sub.add_parser("leaderboard", help="Top users by points")
    lb.add_argument("--limit", type=int, default=20)

    user = sub.add_parser("user", help="One user's points")
    user.add_argument("master_pubkey")
    user.add_argument("--limit", type=int, default=10)

    sub.add_parser("stats", help="Totals across all users")

    args = parser.parse_args()

    if not args.db.exists():
        print(f"Points database not found: {args.db}")
        sys.exit(1)

    store = PointsStore(args.db)
    try:
        if args.command == "leaderboard":
            show_leaderboard(store, args.limit)
        elif args.command == "user":
            show_user(store, args.master_pubkey, args.limit)
        else:
            show_stats(store)
    except PointsStoreError as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        store.close()
    print()


if __name__ == "__main__":
    main()
