from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict

from mineops import settings
from mineops.config_store import ConfigStore
from mineops.currencies import BASE_CURRENCY
from mineops.periodic import schedule_periodic
from mineops.prices import PriceCache
from mineops.storage import GameStore
from mineops.yields import compute_group_yield

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickStatistics:
    total_ticks: int = 0
    last_tick_duration: float = 0.0  # ms
    average_tick_duration: float = 0.0  # ms
    errors: int = 0
    group_errors: int = 0
    groups_processed: int = 0
    tick_durations: Deque[float] = field(
        default_factory=lambda: deque(maxlen=settings.TICK_STATS_WINDOW)
    )

    def record(self, duration_ms: float) -> None:
        self.last_tick_duration = duration_ms
        # deque(maxlen) drops the oldest sample on overflow
        self.tick_durations.append(duration_ms)
        self.average_tick_duration = sum(self.tick_durations) / len(self.tick_durations)
        self.total_ticks += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_ticks": self.total_ticks,
            "last_tick_duration": self.last_tick_duration,
            "average_tick_duration": self.average_tick_duration,
            "errors": self.errors,
            "group_errors": self.group_errors,
            "groups_processed": self.groups_processed,
            "window": len(self.tick_durations),
        }


class GameEngine:
    """Tick scheduler: every tick, credit mined BTC and debit electricity for all active rigs.

    States are stopped and running. The periodic task is never reconfigured;
    a new tick period means stop + start.
    """

    def __init__(
        self,
        config: ConfigStore,
        prices: PriceCache,
        store: GameStore,
        *,
        timer_factory: Callable[..., Any] = schedule_periodic,
        restart_delay: float = settings.ENGINE_RESTART_DELAY_S,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._prices = prices
        self._store = store
        self._timer_factory = timer_factory
        self._restart_delay = restart_delay
        self._clock = clock
        self._sleep = sleep
        self._state_lock = threading.RLock()
        self._tick_lock = threading.Lock()
        self._task: Any = None
        self._running = False
        self.stats = TickStatistics()

    @property
    def running(self) -> bool:
        return self._running

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> bool:
        with self._state_lock:
            if self._running:
                logger.warning("Game engine already running")
                return False

            self._config.mark_started(self._clock())
            self._prices.start()
            interval = self._config.tick_interval
            # First tick fires right away, then every `interval` seconds.
            self._task = self._timer_factory(interval, self.process_tick, name="game-engine")
            self._running = True

        self._config.append_audit("Game engine started")
        logger.info(
            "Game engine started (tick interval: %ss, price update: %ss)",
            interval,
            self._config.price_update_interval,
        )
        return True

    def stop(self) -> bool:
        with self._state_lock:
            if not self._running:
                logger.warning("Game engine is not running")
                return False

            if self._task is not None:
                self._task.cancel()
                self._task = None
            self._prices.stop()
            self._running = False

        self._config.append_audit("Game engine stopped")
        logger.info("Game engine stopped")
        return True

    def restart(self) -> bool:
        logger.info("Restarting game engine")
        with self._state_lock:
            self.stop()
            # Let an in-flight tick finish before the new schedule starts.
            self._sleep(self._restart_delay)
            return self.start()

    # -- tick ---------------------------------------------------------------

    def process_tick(self) -> None:
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous tick still running, skipping this one")
            return

        tick_start = time.perf_counter()
        try:
            now = self._clock()
            tick_number = self._config.record_tick(now)

            if self._config.get("override", "maintenance_mode"):
                logger.debug("Tick #%s: maintenance mode, balances untouched", tick_number)
                self.stats.groups_processed = 0
            else:
                self._apply_yields(tick_number, now)

            self.stats.record((time.perf_counter() - tick_start) * 1000.0)
            if self.stats.total_ticks % settings.TICK_LOG_EVERY == 0:
                logger.info(
                    "Tick #%s (%.1fms, %s groups)",
                    self.stats.total_ticks,
                    self.stats.last_tick_duration,
                    self.stats.groups_processed,
                )
        except Exception:
            self.stats.errors += 1
            logger.exception("Error while processing tick")
        finally:
            self._tick_lock.release()

    def _apply_yields(self, tick_number: int, now: datetime) -> None:
        tick_seconds = self._config.tick_interval
        global_mult = float(self._config.get("economy", "global_hashrate_mult"))
        yield_constant = float(self._config.get("economy", "yield_constant"))
        cost_per_kwh = float(self._config.get("economy", "electricity_cost_usd"))
        max_offline_s = float(self._config.get("system", "max_offline_hours")) * 3600.0

        btc_price = self._prices.price_of(BASE_CURRENCY)
        if btc_price <= 0:
            logger.warning("BTC price unknown, electricity cost cannot be converted this tick")

        groups = self._store.active_resource_groups(active_since=now.timestamp() - max_offline_s)
        processed = 0
        for group in groups:
            try:
                result = compute_group_yield(
                    group,
                    global_multiplier=global_mult,
                    tick_seconds=tick_seconds,
                    yield_constant=yield_constant,
                    default_cost_per_kwh=cost_per_kwh,
                    btc_price_usd=btc_price,
                )
                if result is None:
                    continue
                self._store.apply_tick_yield(result, tick_number, now.timestamp())
                processed += 1
            except Exception:
                self.stats.group_errors += 1
                logger.exception("Tick #%s: failed to apply yield for user %s", tick_number, group.owner_id)
        self.stats.groups_processed = processed

    # -- status -------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        last_tick_time = self._config.get("system", "last_tick_time")
        if last_tick_time:
            tick_delta_ms = (now - datetime.fromisoformat(last_tick_time)).total_seconds() * 1000.0
        else:
            tick_delta_ms = 0.0

        return {
            "is_running": self._running,
            "server_start_time": self._config.get("system", "server_start_time"),
            "total_ticks": self._config.get("system", "total_ticks"),
            "last_tick_time": last_tick_time,
            "tick_delta_ms": tick_delta_ms,
            "tick_interval_s": self._config.tick_interval,
            "stats": self.stats.to_dict(),
            "price_service": self._prices.get_status(),
        }
