"""
Tenant Rate Budget — gates every outbound call to the accounting API.

Each tenant owns two nested windows: a day window (outer) and a minute
window (inner, capped below the advertised limit to leave headroom).

Behavioral Contract:
- `wait_if_needed` is called before every request. It rolls expired windows,
  blocks until reset while a window is full, then counts the call.
- `update_from_headers` is called after every response. Local state may
  only become more conservative: the server's remaining count, less the
  minute headroom, wins whenever it is lower than the local estimate.
- Safe for concurrent callers in one process (one lock per tenant).
  Nothing is shared across processes.
"""

import logging
import threading
import time
from typing import Callable, Dict, Mapping, Optional

from sync_kernel.models.config import RateBudgetConfig
from sync_kernel.models.rate import RateWindow

logger = logging.getLogger(__name__)

MINUTE_REMAINING_HEADERS = ("x-minlimit-remaining", "x-ratelimit-remaining")
DAY_REMAINING_HEADERS = ("x-daylimit-remaining",)


class _TenantState:
    def __init__(self, config: RateBudgetConfig, now: float):
        self.lock = threading.Lock()
        self.minute = RateWindow(
            window_start_time=now,
            limit=config.minute_limit,
            length_seconds=config.minute_window_seconds,
        )
        self.day = RateWindow(
            window_start_time=now,
            limit=config.day_limit,
            length_seconds=config.day_window_seconds,
        )
        self.total_waited = 0.0


def _read_int_header(headers: Mapping[str, str], names) -> Optional[int]:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in names:
        raw = lowered.get(name)
        if raw is None:
            continue
        try:
            return int(str(raw).strip())
        except ValueError:
            logger.warning("Ignoring malformed rate header %s=%r", name, raw)
    return None


class TenantRateBudget:
    """
    Injectable per-tenant call quota tracker.

    The orchestration layer owns one instance and hands it to every client
    it builds; tests construct isolated instances with a fake clock.
    """

    def __init__(
        self,
        config: Optional[RateBudgetConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or RateBudgetConfig()
        self._clock = clock
        self._sleep = sleep
        self._tenants: Dict[str, _TenantState] = {}
        self._registry_lock = threading.Lock()

    def _state(self, tenant_id: str) -> _TenantState:
        with self._registry_lock:
            state = self._tenants.get(tenant_id)
            if state is None:
                state = _TenantState(self.config, self._clock())
                self._tenants[tenant_id] = state
            return state

    @staticmethod
    def _roll_expired(state: _TenantState, now: float) -> None:
        if state.day.expired(now):
            state.day.roll(now)
            logger.info("Day rate window reset")
        if state.minute.expired(now):
            state.minute.roll(now)

    def wait_if_needed(self, tenant_id: str) -> float:
        """Block until both windows have room, then count one call. Returns seconds waited."""
        state = self._state(tenant_id)
        waited = 0.0
        while True:
            with state.lock:
                now = self._clock()
                self._roll_expired(state, now)
                blocked = [w for w in (state.day, state.minute) if w.count >= w.limit]
                if not blocked:
                    state.minute.count += 1
                    state.day.count += 1
                    state.total_waited += waited
                    return waited
                wait = max(w.seconds_until_reset(now) for w in blocked)

            logger.info(
                "Rate budget for tenant %s exhausted (%d/%d this minute, %d/%d today); "
                "waiting %.1fs for window reset",
                tenant_id,
                state.minute.count,
                state.minute.limit,
                state.day.count,
                state.day.limit,
                wait,
            )
            # A zero wait still yields so the next loop iteration sees a rolled window.
            self._sleep(wait)
            waited += wait

    def update_from_headers(self, tenant_id: str, headers: Mapping[str, str]) -> None:
        """Reconcile local counts with the remaining counts the server reported."""
        minute_remaining = _read_int_header(headers, MINUTE_REMAINING_HEADERS)
        day_remaining = _read_int_header(headers, DAY_REMAINING_HEADERS)
        if minute_remaining is None and day_remaining is None:
            return

        state = self._state(tenant_id)
        with state.lock:
            now = self._clock()
            self._roll_expired(state, now)
            for window, reported, headroom in (
                (state.minute, minute_remaining, self.config.minute_headroom),
                (state.day, day_remaining, 0),
            ):
                if reported is None:
                    continue
                # The server counts against the advertised limit; keep our headroom on top.
                reported = max(0, reported - headroom)
                if reported < window.remaining:
                    window.count = min(window.limit, window.limit - reported)
                    logger.debug(
                        "Rate window tightened from headers: %d remaining of %d",
                        window.remaining,
                        window.limit,
                    )

    def usage(self, tenant_id: str) -> dict:
        """Current usage for one tenant, in the shape the API-usage surface reports."""
        state = self._state(tenant_id)
        with state.lock:
            now = self._clock()
            self._roll_expired(state, now)
            return {
                "tenant_id": tenant_id,
                "daily_limit": state.day.limit,
                "used_today": state.day.count,
                "remaining_today": state.day.remaining,
                "minute_limit": state.minute.limit,
                "used_this_minute": state.minute.count,
                "remaining_this_minute": state.minute.remaining,
                "seconds_until_minute_reset": round(state.minute.seconds_until_reset(now), 3),
                "total_waited_seconds": round(state.total_waited, 3),
            }

    def reset(self, tenant_id: Optional[str] = None) -> None:
        with self._registry_lock:
            if tenant_id is None:
                self._tenants.clear()
            else:
                self._tenants.pop(tenant_id, None)
