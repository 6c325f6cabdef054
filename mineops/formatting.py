from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal

BTC_PLACES = 8
USD_PLACES = 2

SATS_PER_BTC = 10 ** BTC_PLACES
CENTS_PER_USD = 10 ** USD_PLACES

_BTC_QUANTUM = Decimal(1).scaleb(-BTC_PLACES)
_USD_QUANTUM = Decimal(1).scaleb(-USD_PLACES)


def format_hashrate(hashrate_ghs: float, *, precision: int = 2) -> str:
    """Format a hashrate given in GH/s using SI units.

    Examples:
      0.02 -> "20.00 MH/s"
      500 -> "500.00 GH/s"
      95_000 -> "95.00 TH/s"
    """

    try:
        value = float(hashrate_ghs) * 1_000_000_000.0
    except (TypeError, ValueError):
        value = 0.0

    value = max(0.0, value)
    units = ["H/s", "kH/s", "MH/s", "GH/s", "TH/s", "PH/s", "EH/s"]

    unit_index = 0
    while value >= 1000.0 and unit_index < len(units) - 1:
        value /= 1000.0
        unit_index += 1

    return f"{value:.{precision}f} {units[unit_index]}"


def quantize_btc(amount: float | str | Decimal) -> Decimal:
    """Round to 8 decimal places. Floats go through repr so 0.1 stays 0.1."""
    return Decimal(str(amount)).quantize(_BTC_QUANTUM, rounding=ROUND_HALF_EVEN)


def quantize_usd(amount: float | str | Decimal) -> Decimal:
    return Decimal(str(amount)).quantize(_USD_QUANTUM, rounding=ROUND_HALF_EVEN)


def btc_to_sats(amount: float | str | Decimal) -> int:
    return int(quantize_btc(amount) * SATS_PER_BTC)


def sats_to_btc(sats: int) -> Decimal:
    return (Decimal(int(sats)) / SATS_PER_BTC).quantize(_BTC_QUANTUM)


def usd_to_cents(amount: float | str | Decimal) -> int:
    return int(quantize_usd(amount) * CENTS_PER_USD)


def cents_to_usd(cents: int) -> Decimal:
    return (Decimal(int(cents)) / CENTS_PER_USD).quantize(_USD_QUANTUM)


def format_sats(sats: int) -> str:
    """Fixed-point BTC string for API payloads, e.g. 10 -> "0.00000010". Never exponent notation."""
    return f"{sats_to_btc(sats):.{BTC_PLACES}f}"


def format_cents(cents: int) -> str:
    return f"{cents_to_usd(cents):.{USD_PLACES}f}"
