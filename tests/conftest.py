from datetime import datetime, timedelta, timezone

import pytest

from mineops.config_store import ConfigStore, SimulationConfig
from mineops.engine import GameEngine
from mineops.prices import PriceCache
from mineops.storage import GameStore


class FakeTask:
    def __init__(self, interval, func, name):
        self.interval = interval
        self.func = func
        self.name = name
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.func()


class FakeTimers:
    """Stands in for schedule_periodic; records every schedule instead of spawning threads."""

    def __init__(self):
        self.tasks = []

    def __call__(self, interval, func, *, name="periodic"):
        task = FakeTask(interval, func, name)
        self.tasks.append(task)
        return task

    def active(self, name=None):
        return [t for t in self.tasks if not t.cancelled and (name is None or t.name == name)]


class FakeFetcher:
    def __init__(self, payload=None, error=None):
        self.payload = payload if payload is not None else {
            "bitcoin": {"usd": 45000.0, "usd_24h_change": 2.5},
            "ethereum": {"usd": 2500.0, "usd_24h_change": -1.0},
            "monero": {"usd": 160.0, "usd_24h_change": 0.3},
        }
        self.error = error
        self.calls = 0

    def __call__(self, currency_ids, timeout):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.payload


class FakeClock:
    def __init__(self, start=datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def timers():
    return FakeTimers()


@pytest.fixture()
def fetcher():
    return FakeFetcher()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def config_store(clock):
    return ConfigStore(SimulationConfig(), clock=clock)


@pytest.fixture()
def price_cache(config_store, fetcher, timers, clock):
    return PriceCache(config_store, fetcher=fetcher, timer_factory=timers, clock=clock)


@pytest.fixture()
def store():
    game_store = GameStore(":memory:")
    yield game_store
    game_store.close()


@pytest.fixture()
def engine(config_store, price_cache, store, timers, clock):
    return GameEngine(
        config_store,
        price_cache,
        store,
        timer_factory=timers,
        restart_delay=0.0,
        clock=clock,
        sleep=lambda _: None,
    )
