import json
import sys

import pytest

from spotbot.logging_setup import logger, order_logger, setup_logging


@pytest.fixture(autouse=True)
def restore_default_sink():
    yield
    logger.remove()
    logger.add(sys.stderr)


def test_order_events_go_to_audit_file(tmp_path):
    main_log = tmp_path / "logs" / "bot.log"
    orders = tmp_path / "audit" / "orders.jsonl"
    setup_logging(str(main_log), "DEBUG", enable_console=False, order_log_file=str(orders))

    logger.info("tick finished")
    order_logger.info("Market BUY BTCUSDT: qty=0.0021 quote=100.00")
    logger.complete()
    logger.remove()

    assert "tick finished" in main_log.read_text()
    assert "Market BUY BTCUSDT" in main_log.read_text()

    records = [json.loads(line) for line in orders.read_text().splitlines()]
    assert [r["record"]["message"] for r in records] == ["Market BUY BTCUSDT: qty=0.0021 quote=100.00"]


def test_level_filters_main_log(tmp_path):
    main_log = tmp_path / "bot.log"
    setup_logging(str(main_log), "WARNING", enable_console=False)

    logger.info("quiet")
    logger.warning("loud")
    logger.remove()

    text = main_log.read_text()
    assert "loud" in text and "quiet" not in text
