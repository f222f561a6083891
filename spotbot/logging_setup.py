"""Structured logging setup using loguru.

Modules log through ``logger``. Order placements and cancellations go
through ``order_logger``, which also feeds an optional JSON-lines audit file
so every order the bot sent can be replayed without grepping the main log.
"""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def _is_order_record(record) -> bool:
    return bool(record["extra"].get("orders"))


def setup_logging(
    log_file: str = "spotbot.log",
    level: str = "INFO",
    enable_console: bool = True,
    order_log_file: Optional[str] = None,
) -> None:
    """Configure logging sinks for the bot.

    Args:
        log_file: Main log file (parent directory is created)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to stdout as well
        order_log_file: If set, order events are also written here as JSON lines
    """
    _logger.remove()

    for path in filter(None, (log_file, order_log_file)):
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    _logger.add(
        str(log_file),
        format=LOG_FORMAT,
        level=level,
        rotation="100 MB",
        retention="7 days",
        enqueue=True,  # ticks log from worker threads
    )

    if order_log_file:
        _logger.add(
            str(order_log_file),
            level="INFO",
            filter=_is_order_record,
            serialize=True,
            rotation="1 week",
            retention="90 days",
            enqueue=True,
        )

    if enable_console:
        _logger.add(sys.stdout, format=LOG_FORMAT, level=level, colorize=True)


logger = _logger
order_logger = _logger.bind(orders=True)
