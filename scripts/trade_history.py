#!/usr/bin/env python
"""Trade history and P&L reporter.

Usage:
    python scripts/trade_history.py --db spotbot.db summary
    python scripts/trade_history.py --db spotbot.db list [--status OPEN]
    python scripts/trade_history.py --db spotbot.db trade <trade_id>
    python scripts/trade_history.py --db spotbot.db balances [--limit 30]
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spotbot.models import TradeStatus
from spotbot.persistence_sqlite import SQLitePersistence
from spotbot.pnl import aggregate_trades


def _fmt(value, fmt=""):
    return "-" if value is None else format(value, fmt)


def summary(persistence):
    """Show realized P&L statistics across closed trades."""
    trades = persistence.find_all_trades()
    if not trades:
        print("No trades found")
        return

    agg = aggregate_trades(trades)
    open_count = len([t for t in trades if t.status is TradeStatus.OPEN])
    error_count = len([t for t in trades if t.status is TradeStatus.ERROR])

    print("\n=== Trading Summary ===")
    print(f"Closed Trades: {agg['total_trades']}")
    print(f"Open Trades: {open_count}")
    print(f"Trades needing attention (ERROR): {error_count}")
    print(f"Realized P&L: {agg['total_realized_pnl']:.2f} USDT")
    print(f"Win Rate: {agg['win_rate_percent']:.1f}% ({agg['win_count']} won / {agg['loss_count']} lost)")
    print(f"Avg Profit: {agg['avg_profit']:.2f} USDT")


def list_trades(persistence, status=None):
    """List trades, optionally filtered by status."""
    if status:
        wanted = TradeStatus(status.upper())
        trades = persistence.find_trades(lambda t: t.status is wanted)
    else:
        trades = persistence.find_all_trades()

    if not trades:
        print("No trades found")
        return

    print(f"{'ID':<6} {'Asset':<10} {'Dir':<6} {'Status':<7} {'Entry':<14} {'Exit':<14} {'Qty':<14} {'Profit':<10} {'Opened':<20}")
    print("-" * 105)
    for t in trades:
        print(
            f"{t.id:<6} {t.asset:<10} {t.direction.value:<6} {t.status.value:<7} "
            f"{_fmt(t.entry_price):<14} {_fmt(t.exit_price):<14} {_fmt(t.quantity):<14} "
            f"{_fmt(t.realized_profit_usdt, '.2f'):<10} {t.entry_timestamp:%Y-%m-%d %H:%M:%S}"
        )
    print(f"\nTotal: {len(trades)}")


def trade_detail(persistence, trade_id):
    """Show every field of a single trade."""
    trade = persistence.get_trade(trade_id)
    if not trade:
        print(f"Trade not found: {trade_id}")
        return

    print(f"\n=== Trade {trade_id} ===")
    for key, value in trade.to_dict().items():
        print(f"{key:<22} {_fmt(value)}")


def balances(persistence, limit):
    snapshots = persistence.list_snapshots(limit=limit)
    if not snapshots:
        print("No balance snapshots recorded")
        return
    for s in snapshots:
        print(f"{s.timestamp:%Y-%m-%d %H:%M:%S}  {s.balance:.2f}")


def main():
    parser = argparse.ArgumentParser(description="Trade history and P&L reporter")
    parser.add_argument("--db", required=True, help="Path to SQLite database")

    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("summary")
    list_cmd = sub.add_parser("list")
    list_cmd.add_argument("--status", choices=[s.value for s in TradeStatus], type=str.upper)

    trade_cmd = sub.add_parser("trade")
    trade_cmd.add_argument("trade_id", type=int)

    bal_cmd = sub.add_parser("balances")
    bal_cmd.add_argument("--limit", type=int, default=30)

    args = parser.parse_args()

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        sys.exit(1)

    persistence = SQLitePersistence(db_path)

    if args.cmd == "summary":
        summary(persistence)
    elif args.cmd == "list":
        list_trades(persistence, args.status)
    elif args.cmd == "trade":
        trade_detail(persistence, args.trade_id)
    elif args.cmd == "balances":
        balances(persistence, args.limit)
    else:
        parser.print_help()

    persistence.close()


if __name__ == "__main__":
    main()
