"""Per-tick mining economics.

Everything here is a pure function of its arguments: the engine reads the
live config and prices and passes them in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

SECONDS_PER_HOUR = 3600.0
WATTS_PER_KILOWATT = 1000.0


@dataclass(frozen=True)
class ResourceGroup:
    """A user's active hardware, aggregated. Hashrate is in GH/s."""

    owner_id: int
    total_hashrate: float
    total_power_watts: float
    # USD per kWh; None means the global economy rate applies
    electricity_cost_rate: Optional[float] = None


@dataclass(frozen=True)
class TickYield:
    owner_id: int
    mined_btc: float
    electricity_cost_usd: float
    electricity_cost_btc: float
    net_btc: float


def mined_amount(
    hashrate: float, global_multiplier: float, tick_seconds: float, yield_constant: float
) -> float:
    """BTC mined in one tick. Linear in every input; no difficulty feed."""
    return hashrate * global_multiplier * yield_constant * tick_seconds


def electricity_cost(power_watts: float, cost_per_kwh: float, tick_seconds: float) -> float:
    """USD spent on power during one tick."""
    return power_watts * (cost_per_kwh / WATTS_PER_KILOWATT) * (tick_seconds / SECONDS_PER_HOUR)


def convert(quote_amount: float, unit_price: float) -> float:
    """Quote currency to base currency. A missing (zero) price converts to 0."""
    if unit_price > 0:
        return quote_amount / unit_price
    return 0.0


def net_yield(mined: float, cost: float) -> float:
    # Negative is a loss for the tick and is kept as-is.
    return mined - cost


def compute_group_yield(
    group: ResourceGroup,
    *,
    global_multiplier: float,
    tick_seconds: float,
    yield_constant: float,
    default_cost_per_kwh: float,
    btc_price_usd: float,
) -> Optional[TickYield]:
    """Yield for one resource group, or None when the group draws no power (idle)."""
    if group.total_power_watts <= 0:
        return None

    rate = (
        group.electricity_cost_rate
        if group.electricity_cost_rate is not None
        else default_cost_per_kwh
    )
    mined = mined_amount(group.total_hashrate, global_multiplier, tick_seconds, yield_constant)
    cost_usd = electricity_cost(group.total_power_watts, rate, tick_seconds)
    cost_btc = convert(cost_usd, btc_price_usd)
    return TickYield(
        owner_id=group.owner_id,
        mined_btc=mined,
        electricity_cost_usd=cost_usd,
        electricity_cost_btc=cost_btc,
        net_btc=net_yield(mined, cost_btc),
    )
