from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import requests

from mineops import settings
from mineops.config_store import ConfigStore
from mineops.currencies import CURRENCIES, QUOTE_CURRENCY, normalize_currency
from mineops.periodic import schedule_periodic

logger = logging.getLogger(__name__)

PriceFetcher = Callable[[Iterable[str], float], Mapping[str, Any]]


class PriceFetchError(RuntimeError):
    """Raised when the upstream price source cannot be read."""


@dataclass(frozen=True)
class PriceSnapshot:
    usd: float = 0.0
    usd_24h_change: float = 0.0


@dataclass
class CacheMetadata:
    last_update: Optional[str] = None
    last_error: Optional[Dict[str, str]] = None
    update_count: int = 0
    error_count: int = 0
    is_updating: bool = False


class RefreshResult(Enum):
    UPDATED = "updated"
    FAILED = "failed"
    SKIPPED = "skipped"


def fetch_coingecko_prices(currency_ids: Iterable[str], timeout: float) -> Mapping[str, Any]:
    """Fetch USD spot price and 24h change from CoinGecko's simple-price endpoint."""
    try:
        resp = requests.get(
            settings.COINGECKO_SIMPLE_PRICE_URL,
            params={
                "ids": ",".join(currency_ids),
                "vs_currencies": QUOTE_CURRENCY,
                "include_24hr_change": "true",
            },
            headers={"Accept": "application/json", "User-Agent": settings.PRICE_USER_AGENT},
            timeout=timeout,
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise PriceFetchError(f"CoinGecko request failed: {exc}") from exc

    if not isinstance(data, dict):
        raise PriceFetchError(f"Unexpected price payload from CoinGecko: {data!r}")
    return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PriceCache:
    """Near-real-time spot prices, stale-but-available when the upstream fails."""

    def __init__(
        self,
        config: ConfigStore,
        *,
        fetcher: PriceFetcher = fetch_coingecko_prices,
        timeout: float = settings.PRICE_REQUEST_TIMEOUT_S,
        timer_factory: Callable[..., Any] = schedule_periodic,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._fetcher = fetcher
        self._timeout = timeout
        self._timer_factory = timer_factory
        self._clock = clock
        self._in_flight = threading.Lock()
        self._schedule_lock = threading.Lock()
        self._task: Any = None
        self.metadata = CacheMetadata()
        # Replaced wholesale on every successful refresh, never mutated in place.
        self._snapshot: Mapping[str, PriceSnapshot] = MappingProxyType(
            {cid: PriceSnapshot() for cid in CURRENCIES}
        )

    def refresh(self) -> RefreshResult:
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Price refresh already in flight, skipping")
            return RefreshResult.SKIPPED

        self.metadata.is_updating = True
        try:
            data = self._fetcher(list(CURRENCIES), self._timeout)
            self._snapshot = self._merge(data)
        except Exception as exc:
            self.metadata.error_count += 1
            self.metadata.last_error = {"time": self._clock().isoformat(), "message": str(exc)}
            logger.error("Price refresh failed, keeping cached prices: %s", exc)
            return RefreshResult.FAILED
        else:
            self.metadata.last_update = self._clock().isoformat()
            self.metadata.update_count += 1
            self.metadata.last_error = None
            logger.info(
                "Price cache updated: %s",
                ", ".join(f"{cid}={snap.usd}" for cid, snap in self._snapshot.items()),
            )
            return RefreshResult.UPDATED
        finally:
            self.metadata.is_updating = False
            self._in_flight.release()

    def _merge(self, data: Mapping[str, Any]) -> Mapping[str, PriceSnapshot]:
        """Build the next snapshot; currencies missing upstream keep their old price."""
        previous = self._snapshot
        fresh: Dict[str, PriceSnapshot] = {}
        for cid in CURRENCIES:
            entry = data.get(cid)
            if isinstance(entry, Mapping) and entry.get("usd") is not None:
                fresh[cid] = PriceSnapshot(
                    usd=float(entry["usd"]),
                    usd_24h_change=float(entry.get("usd_24h_change") or 0.0),
                )
            else:
                fresh[cid] = previous[cid]
        return MappingProxyType(fresh)

    def get_prices(self) -> Dict[str, Dict[str, Any]]:
        snapshot = self._snapshot
        prices = {}
        for cid, meta in CURRENCIES.items():
            forced = float(self._config.get("override", meta["override_key"], 0.0) or 0.0)
            if forced > 0:
                prices[cid] = {"usd": forced, "usd_24h_change": 0.0, "is_forced": True}
            else:
                cached = snapshot[cid]
                prices[cid] = {
                    "usd": cached.usd,
                    "usd_24h_change": cached.usd_24h_change,
                    "is_forced": False,
                }
        return prices

    def price_of(self, currency: str) -> float:
        """Effective USD price (override-aware); 0.0 when nothing is known yet."""
        cid = normalize_currency(currency)
        if not cid:
            raise KeyError(currency)
        return float(self.get_prices()[cid]["usd"])

    def force_update(self) -> bool:
        logger.info("Forced price refresh")
        self.refresh()
        return self.metadata.last_error is None

    def start(self, interval: Optional[float] = None) -> None:
        interval = interval if interval is not None else self._config.price_update_interval
        with self._schedule_lock:
            if self._task is not None:
                self._task.cancel()
            # The task runs one refresh right away, then every `interval` seconds.
            self._task = self._timer_factory(interval, self.refresh, name="price-cache")
        logger.info("Price updates started (interval: %ss)", interval)

    def restart(self) -> None:
        logger.info("Restarting price updates with the configured interval")
        self.start()

    def stop(self) -> None:
        with self._schedule_lock:
            if self._task is None:
                return
            self._task.cancel()
            self._task = None
        logger.info("Price updates stopped")

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def has_data(self) -> bool:
        return any(snap.usd > 0 for snap in self._snapshot.values())

    def get_status(self) -> Dict[str, Any]:
        status = asdict(self.metadata)
        status["price_update_interval_s"] = self._config.price_update_interval
        status["has_data"] = self.has_data
        status["running"] = self.running
        return status
