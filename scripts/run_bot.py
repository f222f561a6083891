#!/usr/bin/env python
"""Run the trading bot.

Usage:
    python scripts/run_bot.py --config config.yaml
    python scripts/run_bot.py --config config.yaml --once
    python scripts/run_bot.py --config config.yaml close BTCUSDT
    python scripts/run_bot.py --config config.yaml close-all
    python scripts/run_bot.py --config config.yaml report
    python scripts/run_bot.py --config config.yaml resolve BTCUSDT --price 47000
"""
import argparse
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spotbot.bot import TradingBot
from spotbot.config import BotConfig
from spotbot.logging_setup import logger, setup_logging
from spotbot.scheduler import BotScheduler


def main():
    parser = argparse.ArgumentParser(description="Binance spot trading bot")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--once", action="store_true", help="Run every tick a single time and exit")
    parser.add_argument("--no-console", action="store_true", help="Log to file only")

    sub = parser.add_subparsers(dest="cmd")
    close_cmd = sub.add_parser("close", help="Close the open position of one asset")
    close_cmd.add_argument("symbol", type=str.upper)
    sub.add_parser("close-all", help="Close every open position")
    sub.add_parser("report", help="Print account summary")
    resolve_cmd = sub.add_parser("resolve", help="Close ERROR trades of an asset after settling them by hand")
    resolve_cmd.add_argument("symbol", type=str.upper)
    resolve_cmd.add_argument("--price", type=Decimal, help="Exit price to record (default: last price)")

    args = parser.parse_args()

    config = BotConfig.from_yaml(args.config)
    setup_logging(
        config.persistence.log_file,
        config.persistence.log_level,
        enable_console=not args.no_console,
        order_log_file=config.persistence.order_log_file,
    )

    bot = TradingBot.from_config(config)
    scheduler = BotScheduler(bot, config.scheduler)

    try:
        if args.cmd or args.once:
            bot.initialize()

        if args.cmd == "close":
            ok = bot.positions.close_symbol(args.symbol)
            print(f"{args.symbol}: {'closed' if ok else 'no open position closed'}")
        elif args.cmd == "close-all":
            print(f"Closed {bot.positions.close_all_positions()} position(s)")
        elif args.cmd == "resolve":
            print(f"Resolved {bot.positions.resolve_error(args.symbol, args.price)} trade(s)")
        elif args.cmd == "report":
            for key, value in bot.report().items():
                print(f"{key:<26} {value}")
        elif args.once:
            print(asyncio.run(scheduler.run_once()))
        else:
            asyncio.run(scheduler.start())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        bot.persistence.close()


if __name__ == "__main__":
    main()
