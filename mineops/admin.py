from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping

from mineops.config_store import ConfigStore
from mineops.engine import GameEngine
from mineops.prices import PriceCache

logger = logging.getLogger(__name__)

TICK_INTERVAL = ("system", "tick_interval_s")
PRICE_INTERVAL = ("system", "price_update_interval_s")
DEFAULT_MAINTENANCE_REASON = "Scheduled maintenance"


class AdminControl:
    """Operations behind the admin panel.

    Config writes that change a schedule period restart the component that
    owns that schedule, once per request.
    """

    def __init__(self, config: ConfigStore, prices: PriceCache, engine: GameEngine) -> None:
        self.config_store = config
        self.prices = prices
        self.engine = engine

    def config(self) -> Dict[str, Dict[str, Any]]:
        return self.config_store.snapshot()

    def update_config(
        self, updates: Iterable[Mapping[str, Any]], actor: str = "SYSTEM"
    ) -> List[Dict[str, Any]]:
        results = self.config_store.set_many(updates, actor)
        changed = {(r["section"], r["key"]) for r in results if r["success"]}

        if TICK_INTERVAL in changed and self.engine.running:
            # Engine restart also restarts the price cache.
            self.engine.restart()
        elif PRICE_INTERVAL in changed and self.prices.running:
            self.prices.restart()

        summary = [{"section": r["section"], "key": r["key"], "success": r["success"]} for r in results]
        self.config_store.append_audit(f"Config updated by {actor}: {json.dumps(summary)}", actor)
        return results

    def audit_log(self, limit: int = 50) -> List[Dict[str, str]]:
        return [entry.to_dict() for entry in self.config_store.get_audit(limit)]

    def refresh_prices(self, actor: str = "SYSTEM") -> Dict[str, Any]:
        ok = self.prices.force_update()
        self.config_store.append_audit("Forced price refresh", actor)
        return {"ok": ok, "prices": self.prices.get_prices(), "cache_status": self.prices.get_status()}

    def set_maintenance(self, enabled: bool, reason: str = "", actor: str = "SYSTEM") -> Dict[str, Any]:
        reason = (reason or DEFAULT_MAINTENANCE_REASON) if enabled else ""
        self.config_store.set("override", "maintenance_mode", bool(enabled), actor)
        self.config_store.set("override", "maintenance_reason", reason, actor)
        if enabled:
            self.config_store.append_audit(f"Maintenance mode ENABLED: {reason}", actor)
        else:
            self.config_store.append_audit("Maintenance mode DISABLED", actor)
        return {"maintenance_mode": bool(enabled), "reason": reason}

    @property
    def maintenance_mode(self) -> bool:
        return bool(self.config_store.get("override", "maintenance_mode"))

    def start_engine(self, actor: str = "SYSTEM") -> bool:
        started = self.engine.start()
        if started:
            self.config_store.append_audit("Engine started manually", actor)
        return started

    def stop_engine(self, actor: str = "SYSTEM") -> bool:
        stopped = self.engine.stop()
        if stopped:
            self.config_store.append_audit("Engine stopped manually (EMERGENCY)", actor)
        return stopped

    def restart_engine(self, actor: str = "SYSTEM") -> bool:
        restarted = self.engine.restart()
        if restarted:
            self.config_store.append_audit("Engine restarted manually", actor)
        return restarted

    def status(self) -> Dict[str, Any]:
        engine_status = self.engine.get_status()
        return {
            "engine": engine_status,
            "prices": self.prices.get_prices(),
            "summary": {
                "is_online": engine_status["is_running"],
                "tick_interval_s": engine_status["tick_interval_s"],
                "last_tick_delta_ms": engine_status["tick_delta_ms"],
                "total_ticks": engine_status["total_ticks"],
                "maintenance_mode": self.maintenance_mode,
            },
        }
