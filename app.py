import logging
import math
import sys
import time
from dataclasses import asdict, dataclass
from typing import Optional

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from miners import AVAILABLE_MINERS
from mineops import settings
from mineops.admin import AdminControl
from mineops.config_store import ConfigStore, SimulationConfig
from mineops.currencies import BASE_CURRENCY
from mineops.engine import GameEngine
from mineops.formatting import format_hashrate
from mineops.prices import PriceCache
from mineops.storage import GameStore

# JSON API for the game client and the admin panel. HTML views are served by the frontend.

logger = logging.getLogger("mineops")

# No authentication yet: every admin action is attributed to this user.
ADMIN_ACTOR = "DEV_ADMIN"


@dataclass
class Services:
    config: ConfigStore
    prices: PriceCache
    store: GameStore
    engine: GameEngine
    admin: AdminControl


def build_services(
    config: Optional[SimulationConfig] = None,
    *,
    db_path: str = settings.DATABASE_PATH,
    **price_kwargs,
) -> Services:
    """Wire the simulation core together. The process root owns the result."""
    config_store = ConfigStore(config)
    prices = PriceCache(config_store, **price_kwargs)
    store = GameStore(db_path)
    engine = GameEngine(config_store, prices, store)
    admin = AdminControl(config_store, prices, engine)
    return Services(config=config_store, prices=prices, store=store, engine=engine, admin=admin)


def _services() -> Services:
    return current_app.extensions["mineops"]


def _fail(status: int, error: str, message: str = ""):
    body = {"success": False, "error": error}
    if message:
        body["message"] = message
    return jsonify(body), status


def _maintenance_block():
    svc = _services()
    if svc.admin.maintenance_mode:
        return _fail(503, "Maintenance", svc.config.get("override", "maintenance_reason"))
    return None


api = Blueprint("api", __name__, url_prefix="/api")
admin_api = Blueprint("admin_api", __name__, url_prefix="/api/admin")


# -- public game API ---------------------------------------------------------


@api.route("/health")
def health():
    svc = _services()
    return jsonify(
        {
            "status": "OK",
            "timestamp": time.time(),
            "engine_running": svc.engine.running,
            "maintenance_mode": svc.admin.maintenance_mode,
        }
    )


@api.route("/crypto/prices")
def crypto_prices():
    return jsonify({"success": True, "data": _services().prices.get_prices()})


@api.route("/hardware")
def hardware():
    """Shop listing."""
    items = []
    for spec in AVAILABLE_MINERS:
        item = asdict(spec)
        item["hashrate_display"] = format_hashrate(spec.hashrate)
        items.append(item)
    return jsonify({"success": True, "data": items})


@api.route("/users", methods=["POST"])
def create_user():
    payload = request.get_json(silent=True) or {}
    username = str(payload.get("username") or "").strip()
    if not username:
        return _fail(400, "Invalid request", "username is required")

    svc = _services()
    try:
        user = svc.store.create_user(
            username,
            usd_balance=svc.config.get("currency", "usd_starting_balance"),
            btc_balance=svc.config.get("currency", "btc_starting_balance"),
        )
    except ValueError as exc:
        return _fail(409, "Username taken", str(exc))
    return jsonify({"success": True, "data": user}), 201


@api.route("/users/<int:user_id>")
def get_user(user_id: int):
    """Wallet view. Reading it counts as activity for the offline-mining cap."""
    svc = _services()
    user = svc.store.get_user(user_id)
    if user is None:
        return _fail(404, "User not found")
    svc.store.touch_user(user_id)
    user["hardware"] = svc.store.list_hardware(user_id)
    return jsonify({"success": True, "data": user})


@api.route("/users/<int:user_id>/transactions")
def user_transactions(user_id: int):
    try:
        limit = int(request.args.get("limit", "50"))
    except ValueError:
        limit = 50
    svc = _services()
    if svc.store.get_user(user_id) is None:
        return _fail(404, "User not found")
    return jsonify({"success": True, "data": svc.store.recent_transactions(user_id, limit=limit)})


@api.route("/users/<int:user_id>/hardware/purchase", methods=["POST"])
def purchase_hardware(user_id: int):
    blocked = _maintenance_block()
    if blocked:
        return blocked

    payload = request.get_json(silent=True) or {}
    miner_key = payload.get("miner_key")
    try:
        quantity = int(payload.get("quantity", 1))
    except (TypeError, ValueError):
        quantity = 0
    if not miner_key or quantity <= 0:
        return _fail(400, "Invalid request", "miner_key and a positive quantity are required")

    svc = _services()
    if svc.store.get_user(user_id) is None:
        return _fail(404, "User not found")
    max_quantity = svc.config.get("hardware", "max_quantity_per_type")
    if not svc.store.buy_miner(user_id, miner_key, quantity, max_quantity=max_quantity):
        return _fail(400, "Purchase failed", "Not enough money, invalid miner or quantity limit reached")
    svc.store.touch_user(user_id)
    return jsonify({"success": True, "data": svc.store.get_user(user_id)})


@api.route("/users/<int:user_id>/hardware/<miner_key>/toggle", methods=["POST"])
def toggle_hardware(user_id: int, miner_key: str):
    blocked = _maintenance_block()
    if blocked:
        return blocked

    payload = request.get_json(silent=True) or {}
    active = payload.get("active")
    if not isinstance(active, bool):
        return _fail(400, "Invalid request", "active must be a boolean")
    if not _services().store.set_miner_active(user_id, miner_key, active):
        return _fail(404, "Hardware not found")
    return jsonify({"success": True, "miner_key": miner_key, "active": active})


@api.route("/users/<int:user_id>/sell", methods=["POST"])
def sell(user_id: int):
    """Sell BTC for USD at the current (override-aware) price."""
    blocked = _maintenance_block()
    if blocked:
        return blocked

    payload = request.get_json(silent=True) or {}
    try:
        amount = float(payload.get("amount", 0))
    except (TypeError, ValueError):
        amount = 0.0
    if not math.isfinite(amount) or amount <= 0:
        return _fail(400, "Invalid sell amount")

    svc = _services()
    price = svc.prices.price_of(BASE_CURRENCY)
    if price <= 0:
        return _fail(503, "Price unavailable")
    fee = svc.config.get("currency", "btc_sell_fee_percent")
    if not svc.store.sell_btc(user_id, amount, price, fee_percent=fee):
        return _fail(400, "Invalid sell amount")
    return jsonify({"success": True, "data": svc.store.get_user(user_id)})


# -- admin API ---------------------------------------------------------------


@admin_api.route("/status")
def admin_status():
    return jsonify({"success": True, "data": _services().admin.status()})


@admin_api.route("/config", methods=["GET", "POST"])
def admin_config():
    admin = _services().admin
    if request.method == "GET":
        return jsonify({"success": True, "data": admin.config()})

    payload = request.get_json(silent=True) or {}
    updates = payload.get("updates")
    if isinstance(updates, list):
        if not all(isinstance(u, dict) for u in updates):
            return _fail(400, "Invalid request", "updates must be a list of objects")
    elif payload.get("section") and payload.get("key") is not None:
        updates = [{"section": payload["section"], "key": payload["key"], "value": payload.get("value")}]
    else:
        return _fail(400, "Invalid request", "Provide { section, key, value } or { updates: [...] }")

    results = admin.update_config(updates, actor=ADMIN_ACTOR)
    return jsonify({"success": True, "results": results, "config": admin.config()})


@admin_api.route("/logs")
def admin_logs():
    try:
        limit = int(request.args.get("limit", "50"))
    except ValueError:
        limit = 50
    logs = _services().admin.audit_log(limit)
    return jsonify({"success": True, "count": len(logs), "data": logs})


@admin_api.route("/prices/refresh", methods=["POST"])
def admin_refresh_prices():
    result = _services().admin.refresh_prices(actor=ADMIN_ACTOR)
    return jsonify(
        {
            "success": True,
            "message": "Prices refreshed" if result["ok"] else "Refresh failed, serving cached prices",
            "prices": result["prices"],
            "cache_status": result["cache_status"],
        }
    )


@admin_api.route("/maintenance", methods=["POST"])
def admin_maintenance():
    payload = request.get_json(silent=True) or {}
    enabled = payload.get("enabled")
    if not isinstance(enabled, bool):
        return _fail(400, "enabled must be a boolean")
    reason = payload.get("reason") or ""
    state = _services().admin.set_maintenance(enabled, str(reason), actor=ADMIN_ACTOR)
    return jsonify({"success": True, **state})


@admin_api.route("/engine/start", methods=["POST"])
def admin_engine_start():
    admin = _services().admin
    started = admin.start_engine(actor=ADMIN_ACTOR)
    return jsonify(
        {
            "success": started,
            "message": "Engine started" if started else "Engine already running",
            "status": admin.engine.get_status(),
        }
    )


@admin_api.route("/engine/stop", methods=["POST"])
def admin_engine_stop():
    admin = _services().admin
    stopped = admin.stop_engine(actor=ADMIN_ACTOR)
    return jsonify(
        {
            "success": stopped,
            "message": "Engine stopped" if stopped else "Engine not running",
            "status": admin.engine.get_status(),
        }
    )


@admin_api.route("/engine/restart", methods=["POST"])
def admin_engine_restart():
    admin = _services().admin
    restarted = admin.restart_engine(actor=ADMIN_ACTOR)
    return jsonify(
        {
            "success": restarted,
            "message": "Engine restarted",
            "status": admin.engine.get_status(),
        }
    )


def _handle_error(exc: Exception):
    if isinstance(exc, HTTPException):
        return _fail(exc.code or 500, exc.name, exc.description or "")
    logger.exception("Unhandled error in %s", request.path)
    return _fail(500, "Internal server error", str(exc))


def create_app(services: Services) -> Flask:
    app = Flask(__name__)
    app.secret_key = settings.SECRET_KEY
    app.extensions["mineops"] = services
    app.register_blueprint(api)
    app.register_blueprint(admin_api)
    app.register_error_handler(Exception, _handle_error)
    return app


def main() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    services = build_services()
    app = create_app(services)
    logger.info("MineOps server on http://%s:%s (env: %s)", settings.HOST, settings.PORT, settings.APP_ENV)
    services.engine.start()
    try:
        # The reloader would fork a second engine, so keep it off.
        app.run(host=settings.HOST, port=settings.PORT, use_reloader=False)
    finally:
        services.engine.stop()
        services.store.close()


if __name__ == "__main__":
    # Run locally: `python app.py` and open http://127.0.0.1:3000/api/health
    main()
