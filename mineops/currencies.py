from __future__ import annotations

from typing import Any, Dict


# Currencies tracked by the price cache.
# Keys are the upstream (CoinGecko) ids; the game mines BTC and settles costs in USD.
CURRENCIES: Dict[str, Dict[str, Any]] = {
    "bitcoin": {
        "code": "BTC",
        "name": "Bitcoin",
        "override_key": "force_btc_price",
    },
    "ethereum": {
        "code": "ETH",
        "name": "Ethereum",
        "override_key": "force_eth_price",
    },
    "monero": {
        "code": "XMR",
        "name": "Monero",
        "override_key": "force_xmr_price",
    },
}

BASE_CURRENCY = "bitcoin"
QUOTE_CURRENCY = "usd"

_BY_CODE = {meta["code"]: cid for cid, meta in CURRENCIES.items()}


def normalize_currency(currency: str | None) -> str:
    """Map a ticker ("btc") or id ("Bitcoin") to the upstream id, or "" if unknown."""
    value = (currency or "").strip()
    if value.lower() in CURRENCIES:
        return value.lower()
    return _BY_CODE.get(value.upper(), "")

