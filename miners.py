from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class MinerSpec:
    key: str
    name: str
    cost: float  # USD
    hashrate: float  # GH/s
    power_watts: float
    algorithm: str = "SHA-256"
    description: str = ""


# Specs follow the real devices loosely; every rig mines BTC in the game economy.
# Hashrate units are GH/s so they line up with economy.yield_constant (BTC per GH/s per second).
AVAILABLE_MINERS: List[MinerSpec] = [
    MinerSpec(
        key="bitaxe_ultra",
        name="Bitaxe Ultra",
        cost=150.0,
        hashrate=500.0,  # 500 GH/s
        power_watts=12.0,
        description="Open-source solo miner. Tiny power draw.",
    ),
    MinerSpec(
        key="xmr_cpu_rig",
        name="Ryzen CPU Rig",
        cost=1_200.0,
        hashrate=0.00002,  # 20 kH/s
        power_watts=180.0,
        algorithm="RandomX",
        description="CPU rig. Mostly burns electricity.",
    ),
    MinerSpec(
        key="l7_scrypt",
        name="Antminer L7",
        cost=6_500.0,
        hashrate=9.5,  # 9.5 GH/s
        power_watts=3_425.0,
        algorithm="Scrypt",
        description="Scrypt ASIC. Merged-mining workhorse.",
    ),
    MinerSpec(
        key="s19",
        name="Antminer S19",
        cost=2_800.0,
        hashrate=95_000.0,  # 95 TH/s
        power_watts=3_250.0,
        description="Entry ASIC. Big jump in speed.",
    ),
    MinerSpec(
        key="s21",
        name="Antminer S21",
        cost=5_500.0,
        hashrate=200_000.0,  # 200 TH/s
        power_watts=3_500.0,
        description="Current-gen ASIC. Very efficient.",
    ),
    MinerSpec(
        key="s21_hydro",
        name="Antminer S21 Hydro",
        cost=9_800.0,
        hashrate=335_000.0,  # 335 TH/s
        power_watts=5_360.0,
        description="Water-cooled flagship. Extreme hashrate.",
    ),
]


def find_miner(miner_key: str) -> Optional[MinerSpec]:
    return next((m for m in AVAILABLE_MINERS if m.key == miner_key), None)
