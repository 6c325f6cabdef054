import threading

import pytest
import requests

from mineops import prices as prices_module
from mineops.prices import PriceCache, PriceFetchError, RefreshResult, fetch_coingecko_prices


def test_prices_are_zero_before_first_refresh(price_cache):
    assert not price_cache.has_data
    assert price_cache.price_of("bitcoin") == 0.0
    assert price_cache.get_status()["update_count"] == 0


def test_refresh_populates_cache(price_cache, clock):
    assert price_cache.refresh() is RefreshResult.UPDATED

    data = price_cache.get_prices()
    assert data["bitcoin"] == {"usd": 45000.0, "usd_24h_change": 2.5, "is_forced": False}
    assert data["monero"]["usd"] == 160.0
    assert price_cache.price_of("BTC") == 45000.0
    assert price_cache.has_data

    status = price_cache.get_status()
    assert status["update_count"] == 1
    assert status["last_update"] == clock.now.isoformat()
    assert status["last_error"] is None
    assert status["is_updating"] is False


def test_override_wins_over_cached_price(price_cache, config_store):
    price_cache.refresh()
    config_store.set("override", "force_btc_price", 100000)

    btc = price_cache.get_prices()["bitcoin"]
    assert btc == {"usd": 100000.0, "usd_24h_change": 0.0, "is_forced": True}
    assert price_cache.price_of("bitcoin") == 100000.0
    # other currencies untouched
    assert price_cache.get_prices()["ethereum"]["is_forced"] is False

    config_store.set("override", "force_btc_price", 0)
    assert price_cache.price_of("bitcoin") == 45000.0


def test_unknown_currency_raises(price_cache):
    with pytest.raises(KeyError):
        price_cache.price_of("dogecoin")


def test_failed_refresh_keeps_stale_prices(price_cache, fetcher):
    price_cache.refresh()
    fetcher.error = PriceFetchError("upstream down")

    assert price_cache.refresh() is RefreshResult.FAILED

    assert price_cache.price_of("bitcoin") == 45000.0
    status = price_cache.get_status()
    assert status["error_count"] == 1
    assert status["update_count"] == 1
    assert status["last_error"]["message"] == "upstream down"


def test_missing_currency_keeps_previous_price(price_cache, fetcher):
    price_cache.refresh()
    fetcher.payload = {"bitcoin": {"usd": 50000.0, "usd_24h_change": 1.0}}

    assert price_cache.refresh() is RefreshResult.UPDATED
    assert price_cache.price_of("bitcoin") == 50000.0
    assert price_cache.price_of("ethereum") == 2500.0
    assert price_cache.price_of("monero") == 160.0


def test_force_update_reports_outcome(price_cache, fetcher):
    assert price_cache.force_update() is True

    fetcher.error = PriceFetchError("timeout")
    assert price_cache.force_update() is False

    fetcher.error = None
    assert price_cache.force_update() is True
    assert price_cache.get_status()["last_error"] is None


def test_concurrent_refresh_fetches_once(config_store, timers, clock):
    entered = threading.Event()
    release = threading.Event()
    calls = []

    def blocking_fetcher(currency_ids, timeout):
        calls.append(list(currency_ids))
        entered.set()
        release.wait(5)
        return {"bitcoin": {"usd": 45000.0, "usd_24h_change": 2.5}}

    cache = PriceCache(config_store, fetcher=blocking_fetcher, timer_factory=timers, clock=clock)
    results = []
    worker = threading.Thread(target=lambda: results.append(cache.refresh()))
    worker.start()
    assert entered.wait(5)

    assert cache.get_status()["is_updating"] is True
    assert cache.refresh() is RefreshResult.SKIPPED

    release.set()
    worker.join(5)
    assert results == [RefreshResult.UPDATED]
    assert len(calls) == 1


def test_start_schedules_with_configured_interval(price_cache, timers):
    price_cache.start()

    [task] = timers.active("price-cache")
    assert task.interval == 60.0
    assert price_cache.running


def test_restart_replaces_schedule(price_cache, timers, config_store):
    price_cache.start()
    config_store.set("system", "price_update_interval_s", 30)

    price_cache.restart()

    assert len(timers.tasks) == 2
    assert timers.tasks[0].cancelled
    [task] = timers.active("price-cache")
    assert task.interval == 30.0


def test_stop_is_idempotent(price_cache, timers):
    price_cache.stop()
    price_cache.start()
    price_cache.stop()
    price_cache.stop()

    assert not price_cache.running
    assert timers.active() == []


def test_scheduled_task_runs_refresh(price_cache, timers, fetcher):
    price_cache.start()
    timers.active("price-cache")[0].fire()
    assert fetcher.calls == 1
    assert price_cache.has_data


class _FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


def test_fetch_coingecko_prices_requests_all_ids(monkeypatch):
    seen = {}

    def fake_get(url, params=None, headers=None, timeout=None):
        seen.update(url=url, params=params, timeout=timeout)
        return _FakeResponse({"bitcoin": {"usd": 1.0}})

    monkeypatch.setattr(prices_module.requests, "get", fake_get)

    data = fetch_coingecko_prices(["bitcoin", "ethereum"], timeout=3)

    assert data == {"bitcoin": {"usd": 1.0}}
    assert seen["params"]["ids"] == "bitcoin,ethereum"
    assert seen["params"]["include_24hr_change"] == "true"
    assert seen["timeout"] == 3


@pytest.mark.parametrize(
    "response",
    [_FakeResponse({}, status_code=429), _FakeResponse(["not", "a", "dict"])],
)
def test_fetch_coingecko_prices_wraps_failures(monkeypatch, response):
    monkeypatch.setattr(prices_module.requests, "get", lambda *a, **kw: response)
    with pytest.raises(PriceFetchError):
        fetch_coingecko_prices(["bitcoin"], timeout=1)


def test_fetch_coingecko_prices_wraps_network_errors(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(prices_module.requests, "get", boom)
    with pytest.raises(PriceFetchError):
        fetch_coingecko_prices(["bitcoin"], timeout=1)
