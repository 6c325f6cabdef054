from __future__ import annotations

import logging
import math
import os
import sqlite3
import threading
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from miners import find_miner
from mineops.formatting import (
    btc_to_sats,
    cents_to_usd,
    format_cents,
    format_sats,
    quantize_btc,
    quantize_usd,
    sats_to_btc,
    usd_to_cents,
)
from mineops.yields import ResourceGroup, TickYield

logger = logging.getLogger(__name__)


class GameStore:
    """sqlite3-backed game persistence: users, owned hardware and the transaction log.

    Balances are integer minor units (satoshis and cents) so thousands of
    tick deltas never accumulate float error. One connection is shared
    between the HTTP threads and the tick thread, guarded by a lock.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            directory = os.path.dirname(db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._create_tables()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- schema -------------------------------------------------------------

    def _create_tables(self) -> None:
        with self._lock, self._conn as c:
            c.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
                    username             TEXT    NOT NULL UNIQUE,
                    usd_cents            INTEGER NOT NULL DEFAULT 0,
                    btc_sats             INTEGER NOT NULL DEFAULT 0,
                    total_mined_sats     INTEGER NOT NULL DEFAULT 0,
                    electricity_rate_usd REAL,
                    created_at           REAL    NOT NULL,
                    last_active_at       REAL    NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS user_hardware (
                    user_id   INTEGER NOT NULL REFERENCES users(id),
                    miner_key TEXT    NOT NULL,
                    quantity  INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    PRIMARY KEY (user_id, miner_key)
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id     INTEGER NOT NULL REFERENCES users(id),
                    timestamp   REAL    NOT NULL,
                    kind        TEXT    NOT NULL,
                    btc_sats    INTEGER NOT NULL DEFAULT 0,
                    usd_cents   INTEGER NOT NULL DEFAULT 0,
                    description TEXT    NOT NULL DEFAULT ''
                )
            """)

    def _log_transaction(
        self,
        c: sqlite3.Connection,
        user_id: int,
        kind: str,
        description: str,
        *,
        btc_sats: int = 0,
        usd_cents: int = 0,
        now: Optional[float] = None,
    ) -> None:
        c.execute(
            "INSERT INTO transactions (user_id, timestamp, kind, btc_sats, usd_cents, description) "
            "VALUES (?,?,?,?,?,?)",
            (user_id, now if now is not None else time.time(), kind, btc_sats, usd_cents, description),
        )

    # -- users --------------------------------------------------------------

    def create_user(
        self,
        username: str,
        *,
        usd_balance: float = 0.0,
        btc_balance: float = 0.0,
        electricity_rate_usd: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Create a player. Raises ValueError if the username is taken."""
        now = now if now is not None else time.time()
        with self._lock:
            try:
                with self._conn as c:
                    cur = c.execute(
                        "INSERT INTO users (username, usd_cents, btc_sats, electricity_rate_usd, "
                        "created_at, last_active_at) VALUES (?,?,?,?,?,?)",
                        (
                            username,
                            usd_to_cents(usd_balance),
                            btc_to_sats(btc_balance),
                            electricity_rate_usd,
                            now,
                            now,
                        ),
                    )
                    user_id = cur.lastrowid
                    self._log_transaction(
                        c,
                        user_id,
                        "signup",
                        "Starting balance",
                        usd_cents=usd_to_cents(usd_balance),
                        btc_sats=btc_to_sats(btc_balance),
                        now=now,
                    )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"username {username!r} is already taken") from exc
        logger.info("Created user %s (%s)", user_id, username)
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return {
            "id": row["id"],
            "username": row["username"],
            "usd_balance": format_cents(row["usd_cents"]),
            "btc_balance": format_sats(row["btc_sats"]),
            "total_mined_btc": format_sats(row["total_mined_sats"]),
            "electricity_rate_usd": row["electricity_rate_usd"],
            "created_at": row["created_at"],
            "last_active_at": row["last_active_at"],
        }

    def balances(self, user_id: int) -> Optional[Dict[str, Decimal]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT usd_cents, btc_sats FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return {"usd": cents_to_usd(row["usd_cents"]), "btc": sats_to_btc(row["btc_sats"])}

    def touch_user(self, user_id: int, now: Optional[float] = None) -> None:
        with self._lock, self._conn as c:
            c.execute(
                "UPDATE users SET last_active_at = ? WHERE id = ?",
                (now if now is not None else time.time(), user_id),
            )

    # -- hardware -----------------------------------------------------------

    def list_hardware(self, user_id: int) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT miner_key, quantity, is_active FROM user_hardware "
                "WHERE user_id = ? AND quantity > 0 ORDER BY miner_key",
                (user_id,),
            ).fetchall()
        owned = []
        for row in rows:
            spec = find_miner(row["miner_key"])
            if spec is None:
                continue
            owned.append(
                {
                    "miner_key": spec.key,
                    "name": spec.name,
                    "quantity": row["quantity"],
                    "is_active": bool(row["is_active"]),
                    "hashrate": spec.hashrate * row["quantity"],
                    "power_watts": spec.power_watts * row["quantity"],
                }
            )
        return owned

    def buy_miner(
        self, user_id: int, miner_key: str, quantity: int = 1, *, max_quantity: int = 100
    ) -> bool:
        """Attempt to buy `quantity` miners with USD. Returns True on success."""
        spec = find_miner(miner_key)
        if spec is None or quantity <= 0:
            return False
        cost_cents = usd_to_cents(quantize_usd(spec.cost) * quantity)

        with self._lock, self._conn as c:
            user = c.execute("SELECT usd_cents FROM users WHERE id = ?", (user_id,)).fetchone()
            if user is None or user["usd_cents"] < cost_cents:
                return False
            owned = c.execute(
                "SELECT quantity FROM user_hardware WHERE user_id = ? AND miner_key = ?",
                (user_id, miner_key),
            ).fetchone()
            current = owned["quantity"] if owned else 0
            if current + quantity > max_quantity:
                return False

            c.execute("UPDATE users SET usd_cents = usd_cents - ? WHERE id = ?", (cost_cents, user_id))
            c.execute(
                "INSERT INTO user_hardware (user_id, miner_key, quantity, is_active) VALUES (?,?,?,1) "
                "ON CONFLICT(user_id, miner_key) DO UPDATE SET quantity = quantity + excluded.quantity",
                (user_id, miner_key, quantity),
            )
            self._log_transaction(
                c, user_id, "hardware_purchase", f"Bought {quantity}x {spec.name}", usd_cents=-cost_cents
            )
        return True

    def set_miner_active(self, user_id: int, miner_key: str, active: bool) -> bool:
        with self._lock, self._conn as c:
            cur = c.execute(
                "UPDATE user_hardware SET is_active = ? WHERE user_id = ? AND miner_key = ? AND quantity > 0",
                (1 if active else 0, user_id, miner_key),
            )
            return cur.rowcount > 0

    # -- market -------------------------------------------------------------

    def sell_btc(
        self, user_id: int, amount_btc: float, price_usd: float, *, fee_percent: float = 0.0
    ) -> bool:
        """Sell BTC for USD at `price_usd`, minus the sell fee."""
        if not math.isfinite(amount_btc):
            return False
        amount = quantize_btc(amount_btc)
        if amount <= 0 or price_usd <= 0:
            return False
        sats = btc_to_sats(amount)
        gross = amount * Decimal(str(price_usd))
        proceeds = quantize_usd(gross * (Decimal(100) - Decimal(str(fee_percent))) / Decimal(100))

        with self._lock, self._conn as c:
            user = c.execute("SELECT btc_sats FROM users WHERE id = ?", (user_id,)).fetchone()
            if user is None or user["btc_sats"] < sats:
                return False
            c.execute(
                "UPDATE users SET btc_sats = btc_sats - ?, usd_cents = usd_cents + ? WHERE id = ?",
                (sats, usd_to_cents(proceeds), user_id),
            )
            self._log_transaction(
                c,
                user_id,
                "btc_sell",
                f"Sold {amount:.8f} BTC at {price_usd}",
                btc_sats=-sats,
                usd_cents=usd_to_cents(proceeds),
            )
        return True

    # -- tick collaborator --------------------------------------------------

    def active_resource_groups(self, active_since: Optional[float] = None) -> List[ResourceGroup]:
        """One group per user with active hardware, optionally only recently active users."""
        query = (
            "SELECT u.id AS user_id, u.electricity_rate_usd, h.miner_key, h.quantity "
            "FROM users u JOIN user_hardware h ON h.user_id = u.id "
            "WHERE h.is_active = 1 AND h.quantity > 0"
        )
        params: tuple = ()
        if active_since is not None:
            query += " AND u.last_active_at >= ?"
            params = (active_since,)
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY u.id", params).fetchall()

        totals: Dict[int, Dict[str, Any]] = {}
        for row in rows:
            spec = find_miner(row["miner_key"])
            if spec is None:
                logger.warning("User %s owns unknown miner %r", row["user_id"], row["miner_key"])
                continue
            agg = totals.setdefault(
                row["user_id"],
                {"hashrate": 0.0, "power": 0.0, "rate": row["electricity_rate_usd"]},
            )
            agg["hashrate"] += spec.hashrate * row["quantity"]
            agg["power"] += spec.power_watts * row["quantity"]

        return [
            ResourceGroup(
                owner_id=user_id,
                total_hashrate=agg["hashrate"],
                total_power_watts=agg["power"],
                electricity_cost_rate=agg["rate"],
            )
            for user_id, agg in totals.items()
        ]

    def apply_tick_yield(self, result: TickYield, tick_number: int, now: Optional[float] = None) -> None:
        """Apply one group's net yield (may be negative) and log it. Raises LookupError
        if the owner no longer exists; the caller isolates the failure."""
        net_sats = btc_to_sats(result.net_btc)
        mined_sats = btc_to_sats(result.mined_btc) if result.mined_btc > 0 else 0
        with self._lock, self._conn as c:
            cur = c.execute(
                "UPDATE users SET btc_sats = btc_sats + ?, total_mined_sats = total_mined_sats + ? "
                "WHERE id = ?",
                (net_sats, mined_sats, result.owner_id),
            )
            if cur.rowcount == 0:
                raise LookupError(f"user {result.owner_id} not found")
            self._log_transaction(
                c,
                result.owner_id,
                "mining_tick",
                f"Tick #{tick_number}: mined {quantize_btc(result.mined_btc):.8f} BTC, "
                f"power {quantize_usd(result.electricity_cost_usd):.2f} USD",
                btc_sats=net_sats,
                now=now,
            )

    def recent_transactions(self, user_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, timestamp, kind, btc_sats, usd_cents, description FROM transactions "
                "WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, max(0, limit)),
            ).fetchall()
        return [
            {
                "id": r["id"],
                "timestamp": r["timestamp"],
                "kind": r["kind"],
                "btc": format_sats(r["btc_sats"]),
                "usd": format_cents(r["usd_cents"]),
                "description": r["description"],
            }
            for r in rows
        ]
