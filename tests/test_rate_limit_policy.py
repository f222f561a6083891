import threading
import time
from unittest.mock import patch

from spotbot.rate_limit_policy import RateBudget, WeightQuota


def test_budget_allows_up_to_safety_threshold():
    budget = RateBudget(WeightQuota(limit=6000, safety_threshold=5000))

    budget.set_used_weight(4999)
    assert budget.is_allowed()
    budget.set_used_weight(5000)
    assert budget.is_allowed()
    budget.set_used_weight(5001)
    assert not budget.is_allowed()


def test_update_from_headers_overwrites_counter():
    budget = RateBudget()
    budget.set_used_weight(100)

    reported = budget.update_from_headers({"X-MBX-USED-WEIGHT-1M": "4200"})

    assert reported == 4200
    assert budget.used_weight == 4200


def test_update_from_headers_ignores_missing_or_malformed():
    budget = RateBudget()
    budget.set_used_weight(10)

    assert budget.update_from_headers({}) is None
    assert budget.update_from_headers({"x-mbx-used-weight-1m": "lots"}) is None
    assert budget.used_weight == 10


@patch("spotbot.rate_limit_policy.time.sleep")
def test_wait_if_needed_sleeps_until_window_and_resets(mock_sleep):
    budget = RateBudget(WeightQuota(limit=6000, safety_threshold=5000, window_seconds=60))
    budget.set_used_weight(5500)

    delay = budget.wait_if_needed()

    mock_sleep.assert_called_once_with(delay)
    assert 1.0 < delay <= 61.0
    assert budget.used_weight == 0
    assert budget.is_allowed()


@patch("spotbot.rate_limit_policy.time.sleep")
def test_wait_if_needed_is_noop_under_threshold(mock_sleep):
    budget = RateBudget()
    budget.set_used_weight(10)

    assert budget.wait_if_needed() == 0.0
    mock_sleep.assert_not_called()


def test_server_time_offset_applied_to_timestamps():
    budget = RateBudget()

    offset = budget.set_server_time(server_time_ms=1_000_500, local_time_ms=1_000_000)

    assert offset == 500
    assert budget.time_offset_ms == 500
    local_now = int(time.time() * 1000)
    assert budget.timestamp_ms() - local_now >= 499


def test_concurrent_header_updates_keep_counter_consistent():
    budget = RateBudget()
    weights = list(range(1, 201))

    threads = [threading.Thread(target=budget.update_from_headers, args=({"x-mbx-used-weight-1m": str(w)},)) for w in weights]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert budget.used_weight in weights
