"""Tests for the Tenant Rate Budget."""

import threading

from sync_kernel.models.config import RateBudgetConfig
from sync_kernel.models.rate import RateWindow
from sync_kernel.rate_budget.budget import TenantRateBudget


class _Clock:
    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _make_budget(clock: _Clock, **overrides) -> TenantRateBudget:
    return TenantRateBudget(RateBudgetConfig(**overrides), clock=clock, sleep=clock.sleep)


class TestRateWindow:
    def test_expiry_and_roll(self):
        window = RateWindow(window_start_time=0.0, limit=5, length_seconds=60)
        window.count = 5
        assert window.remaining == 0
        assert not window.expired(59.9)
        assert window.expired(60.0)
        window.roll(60.0)
        assert window.count == 0
        assert window.seconds_until_reset(70.0) == 50.0


class TestWaitIfNeeded:
    def setup_method(self):
        self.clock = _Clock()
        self.budget = _make_budget(self.clock)

    def test_headroom_below_advertised_limit(self):
        assert self.budget.config.minute_limit == 58

    def test_calls_under_limit_never_wait(self):
        for _ in range(58):
            assert self.budget.wait_if_needed("t1") == 0.0
        assert self.clock.sleeps == []
        assert self.budget.usage("t1")["used_this_minute"] == 58

    def test_sixty_one_calls_block_at_headroom_threshold(self):
        observed = []
        original_sleep = self.clock.sleep

        def sleep(seconds):
            observed.append(self.budget.usage("t1")["used_this_minute"])
            original_sleep(seconds)

        self.budget._sleep = sleep
        waits = [self.budget.wait_if_needed("t1") for _ in range(61)]

        # Call 59 is the first one to wait, and it waits for the full window.
        assert waits[:58] == [0.0] * 58
        assert waits[58] == 60.0
        assert waits[59:] == [0.0, 0.0]
        assert observed == [58]
        assert self.budget.usage("t1")["used_this_minute"] == 3

    def test_used_this_minute_never_exceeds_limit(self):
        peak = 0
        for _ in range(200):
            self.budget.wait_if_needed("t1")
            peak = max(peak, self.budget.usage("t1")["used_this_minute"])
        assert peak == 58

    def test_window_rolls_after_elapsed_time(self):
        for _ in range(10):
            self.budget.wait_if_needed("t1")
        self.clock.now += 61
        assert self.budget.usage("t1")["used_this_minute"] == 0

    def test_day_window_is_outer_limit(self):
        clock = _Clock()
        budget = _make_budget(clock, day_limit=3)
        for _ in range(3):
            budget.wait_if_needed("t1")
        clock.now += 120
        waited = budget.wait_if_needed("t1")
        assert waited == 86400 - 120
        assert budget.usage("t1")["used_today"] == 1

    def test_tenants_are_isolated(self):
        for _ in range(58):
            self.budget.wait_if_needed("t1")
        assert self.budget.wait_if_needed("t2") == 0.0
        assert self.budget.usage("t2")["used_this_minute"] == 1

    def test_concurrent_callers_share_one_count(self):
        budget = _make_budget(self.clock, advertised_minute_limit=1000, minute_headroom=0)

        def worker():
            for _ in range(50):
                budget.wait_if_needed("t1")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert budget.usage("t1")["used_this_minute"] == 400
        assert budget.usage("t1")["used_today"] == 400

    def test_total_waited_is_reported(self):
        for _ in range(59):
            self.budget.wait_if_needed("t1")
        assert self.budget.usage("t1")["total_waited_seconds"] == 60.0


class TestUpdateFromHeaders:
    def setup_method(self):
        self.clock = _Clock()
        self.budget = _make_budget(self.clock)
        for _ in range(10):
            self.budget.wait_if_needed("t1")

    def test_lower_server_remaining_tightens_local_state(self):
        self.budget.update_from_headers("t1", {"X-MinLimit-Remaining": "5"})
        usage = self.budget.usage("t1")
        assert usage["remaining_this_minute"] == 3
        assert usage["used_this_minute"] == 55

    def test_headroom_is_kept_near_exhaustion(self):
        self.budget.update_from_headers("t1", {"X-MinLimit-Remaining": "2"})
        assert self.budget.usage("t1")["remaining_this_minute"] == 0
        assert self.budget.wait_if_needed("t1") == 60.0

    def test_higher_server_remaining_never_loosens(self):
        self.budget.update_from_headers("t1", {"X-MinLimit-Remaining": "59"})
        assert self.budget.usage("t1")["used_this_minute"] == 10

    def test_zero_remaining_blocks_next_call(self):
        self.budget.update_from_headers("t1", {"x-minlimit-remaining": "0"})
        waited = self.budget.wait_if_needed("t1")
        assert waited == 60.0

    def test_generic_header_counts_as_minute_window(self):
        self.budget.update_from_headers("t1", {"X-RateLimit-Remaining": "8"})
        assert self.budget.usage("t1")["remaining_this_minute"] == 6

    def test_day_header(self):
        self.budget.update_from_headers("t1", {"X-DayLimit-Remaining": "100"})
        usage = self.budget.usage("t1")
        assert usage["remaining_today"] == 100
        assert usage["used_today"] == 4900

    def test_malformed_and_missing_headers_are_ignored(self):
        self.budget.update_from_headers("t1", {"X-MinLimit-Remaining": "lots"})
        self.budget.update_from_headers("t1", {})
        assert self.budget.usage("t1")["used_this_minute"] == 10


class TestUsageAndReset:
    def test_usage_shape(self):
        budget = _make_budget(_Clock())
        budget.wait_if_needed("t1")
        usage = budget.usage("t1")
        assert usage["daily_limit"] == 5000
        assert usage["minute_limit"] == 58
        assert usage["remaining_today"] == 4999
        assert usage["remaining_this_minute"] == 57
        assert usage["seconds_until_minute_reset"] == 60.0

    def test_reset_one_tenant(self):
        budget = _make_budget(_Clock())
        budget.wait_if_needed("t1")
        budget.wait_if_needed("t2")
        budget.reset("t1")
        assert budget.usage("t1")["used_today"] == 0
        assert budget.usage("t2")["used_today"] == 1

    def test_reset_all(self):
        budget = _make_budget(_Clock())
        budget.wait_if_needed("t1")
        budget.reset()
        assert budget.usage("t1")["used_today"] == 0
