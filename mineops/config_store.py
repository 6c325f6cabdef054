from __future__ import annotations

import copy
import logging
import math
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from mineops import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Setting:
    """Schema entry for one section/key pair."""

    kind: type
    default: Any
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    exclusive_minimum: bool = False
    read_only: bool = False


# Closed schema: anything not listed here cannot be read or written.
SCHEMA: Dict[str, Dict[str, Setting]] = {
    "system": {
        "tick_interval_s": Setting(float, 10.0, minimum=0.0, exclusive_minimum=True),
        "price_update_interval_s": Setting(float, 60.0, minimum=0.0, exclusive_minimum=True),
        "max_offline_hours": Setting(float, 24.0, minimum=0.0, exclusive_minimum=True),
        "server_start_time": Setting(str, None, read_only=True),
        "total_ticks": Setting(int, 0, read_only=True),
        "last_tick_time": Setting(str, None, read_only=True),
    },
    "economy": {
        # USD per kWh
        "electricity_cost_usd": Setting(float, 0.12, minimum=0.0),
        # 1.0 = normal, 2.0 = "double mining weekend"
        "global_hashrate_mult": Setting(float, 1.0, minimum=0.0),
        # BTC per GH/s per second
        "yield_constant": Setting(float, 0.00000000002, minimum=0.0),
        "market_volatility": Setting(float, 0.05, minimum=0.0),
        "min_withdrawal": Setting(float, 0.0001, minimum=0.0),
        "transaction_fee_percent": Setting(float, 2.5, minimum=0.0, maximum=100.0),
    },
    "currency": {
        "usd_starting_balance": Setting(float, 10_000.0, minimum=0.0),
        "btc_starting_balance": Setting(float, 0.0, minimum=0.0),
        "btc_sell_fee_percent": Setting(float, 1.5, minimum=0.0, maximum=100.0),
    },
    "hardware": {
        "max_quantity_per_type": Setting(int, 100, minimum=1),
    },
    "override": {
        # 0 = use the live price, > 0 = fixed price
        "force_btc_price": Setting(float, 0.0, minimum=0.0),
        "force_eth_price": Setting(float, 0.0, minimum=0.0),
        "force_xmr_price": Setting(float, 0.0, minimum=0.0),
        "maintenance_mode": Setting(bool, False),
        "maintenance_reason": Setting(str, ""),
    },
}


class UnknownSettingError(KeyError):
    """Raised by ConfigStore.get for a section/key outside the schema."""


class SetResult(Enum):
    OK = "ok"
    UNKNOWN_SECTION = "unknown_section"
    UNKNOWN_KEY = "unknown_key"
    READ_ONLY = "read_only"
    INVALID_VALUE = "invalid_value"

    def __bool__(self) -> bool:
        return self is SetResult.OK


class InvalidValue(ValueError):
    pass


def _coerce(setting: Setting, value: Any) -> Any:
    """Convert `value` to the setting's type and check its range."""
    if setting.kind is bool:
        if not isinstance(value, bool):
            raise InvalidValue(f"expected a boolean, got {value!r}")
        return value

    if setting.kind is str:
        if not isinstance(value, str):
            raise InvalidValue(f"expected a string, got {value!r}")
        return value

    # Numbers: bools are ints in Python but never a valid number here.
    if isinstance(value, bool) or value is None:
        raise InvalidValue(f"expected a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidValue(f"expected a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise InvalidValue(f"expected a finite number, got {value!r}")
    if setting.kind is int:
        if not number.is_integer():
            raise InvalidValue(f"expected an integer, got {value!r}")
        number = int(number)

    if setting.minimum is not None:
        if setting.exclusive_minimum and number <= setting.minimum:
            raise InvalidValue(f"must be greater than {setting.minimum:g}")
        if number < setting.minimum:
            raise InvalidValue(f"must be at least {setting.minimum:g}")
    if setting.maximum is not None and number > setting.maximum:
        raise InvalidValue(f"must be at most {setting.maximum:g}")
    return number


_MISSING = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SimulationConfig:
    """Live simulation parameters, one mapping per schema section.

    Owned by the process root and handed to ConfigStore; nothing else
    mutates it directly.
    """

    sections: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {
            section: {key: spec.default for key, spec in keys.items()}
            for section, keys in SCHEMA.items()
        }
    )

    @classmethod
    def with_overrides(cls, overrides: Mapping[str, Mapping[str, Any]]) -> "SimulationConfig":
        """Defaults plus validated overrides, e.g. from a test or a boot script."""
        config = cls()
        for section, values in overrides.items():
            for key, value in values.items():
                spec = SCHEMA.get(section, {}).get(key)
                if spec is None:
                    raise UnknownSettingError(f"{section}.{key}")
                config.sections[section][key] = _coerce(spec, value)
        return config


@dataclass(frozen=True)
class AuditLogEntry:
    timestamp: str
    actor: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class ConfigStore:
    """Validated, hot-reloadable access to SimulationConfig plus the admin audit log."""

    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        *,
        max_audit_entries: int = settings.AUDIT_LOG_MAX_ENTRIES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or SimulationConfig()
        self._clock = clock
        self._lock = threading.RLock()
        # appendleft on a full deque drops the rightmost (oldest) entry
        self._audit: deque[AuditLogEntry] = deque(maxlen=max_audit_entries)

    @property
    def max_audit_entries(self) -> int:
        return self._audit.maxlen or 0

    def get(self, section: str, key: str, default: Any = _MISSING) -> Any:
        with self._lock:
            values = self._config.sections.get(section)
            if values is None or key not in values:
                if default is _MISSING:
                    raise UnknownSettingError(f"{section}.{key}")
                return default
            return values[key]

    def set(self, section: str, key: str, value: Any, actor: str = "SYSTEM") -> SetResult:
        keys = SCHEMA.get(section)
        if keys is None:
            logger.warning("Rejected config write: unknown section %r", section)
            return SetResult.UNKNOWN_SECTION
        spec = keys.get(key)
        if spec is None:
            logger.warning("Rejected config write: unknown key %s.%s", section, key)
            return SetResult.UNKNOWN_KEY
        if spec.read_only:
            logger.warning("Rejected config write: %s.%s is read-only", section, key)
            return SetResult.READ_ONLY
        try:
            new_value = _coerce(spec, value)
        except InvalidValue as exc:
            logger.warning("Rejected config write %s.%s=%r: %s", section, key, value, exc)
            return SetResult.INVALID_VALUE

        with self._lock:
            old_value = self._config.sections[section][key]
            self._config.sections[section][key] = new_value
            self.append_audit(f"Changed {section}.{key} from {old_value} to {new_value}", actor)
        return SetResult.OK

    def set_many(
        self, updates: Iterable[Mapping[str, Any]], actor: str = "SYSTEM"
    ) -> List[Dict[str, Any]]:
        results = []
        for update in updates:
            section = str(update.get("section", ""))
            key = str(update.get("key", ""))
            result = self.set(section, key, update.get("value"), actor)
            results.append(
                {"section": section, "key": key, "success": bool(result), "result": result.value}
            )
        return results

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Deep copy safe to hand to API responses."""
        with self._lock:
            return copy.deepcopy(self._config.sections)

    def append_audit(self, description: str, actor: str = "SYSTEM") -> AuditLogEntry:
        entry = AuditLogEntry(
            timestamp=self._clock().isoformat(), actor=actor, description=description
        )
        with self._lock:
            self._audit.appendleft(entry)
        logger.info("[admin] %s: %s", actor, description)
        return entry

    def get_audit(self, limit: int = 50) -> List[AuditLogEntry]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._audit)[:limit]

    # -- runtime counters, written by the engine only --

    def mark_started(self, now: datetime) -> None:
        with self._lock:
            system = self._config.sections["system"]
            system["server_start_time"] = now.isoformat()
            system["total_ticks"] = 0

    def record_tick(self, now: datetime) -> int:
        with self._lock:
            system = self._config.sections["system"]
            system["total_ticks"] += 1
            system["last_tick_time"] = now.isoformat()
            return system["total_ticks"]

    @property
    def tick_interval(self) -> float:
        return float(self.get("system", "tick_interval_s"))

    @property
    def price_update_interval(self) -> float:
        return float(self.get("system", "price_update_interval_s"))
