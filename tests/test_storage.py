from decimal import Decimal

import pytest

from mineops.yields import TickYield


def _user(store, name="satoshi", usd=10_000.0, **kwargs):
    return store.create_user(name, usd_balance=usd, **kwargs)["id"]


def test_create_user_sets_starting_balance(store):
    user = store.create_user("satoshi", usd_balance=10_000.0, btc_balance=0.5)

    assert user["usd_balance"] == "10000.00"
    assert user["btc_balance"] == "0.50000000"
    [tx] = store.recent_transactions(user["id"])
    assert tx["kind"] == "signup"


def test_duplicate_username_rejected(store):
    _user(store)
    with pytest.raises(ValueError):
        _user(store)


def test_missing_user(store):
    assert store.get_user(999) is None
    assert store.balances(999) is None


def test_buy_miner_debits_usd_and_adds_hardware(store):
    uid = _user(store)

    assert store.buy_miner(uid, "s19", 2)

    assert store.balances(uid)["usd"] == Decimal("4400.00")
    [owned] = store.list_hardware(uid)
    assert owned["miner_key"] == "s19"
    assert owned["quantity"] == 2
    assert owned["hashrate"] == 190_000
    assert store.recent_transactions(uid)[0]["kind"] == "hardware_purchase"


def test_buy_miner_rejections(store):
    uid = _user(store, usd=1000.0)

    assert not store.buy_miner(uid, "s19")  # too expensive
    assert not store.buy_miner(uid, "unknown_rig")
    assert not store.buy_miner(uid, "bitaxe_ultra", 0)
    assert not store.buy_miner(999, "bitaxe_ultra")
    assert store.buy_miner(uid, "bitaxe_ultra", 2, max_quantity=3)
    assert not store.buy_miner(uid, "bitaxe_ultra", 2, max_quantity=3)
    assert store.balances(uid)["usd"] == Decimal("700.00")


def test_toggle_hardware_controls_resource_groups(store):
    uid = _user(store)
    store.buy_miner(uid, "s19")
    store.buy_miner(uid, "bitaxe_ultra", 2)

    [group] = store.active_resource_groups()
    assert group.owner_id == uid
    assert group.total_hashrate == 96_000
    assert group.total_power_watts == 3274

    assert store.set_miner_active(uid, "s19", False)
    [group] = store.active_resource_groups()
    assert group.total_hashrate == 1000

    assert store.set_miner_active(uid, "bitaxe_ultra", False)
    assert store.active_resource_groups() == []
    assert not store.set_miner_active(uid, "s21", True)


def test_resource_groups_filter_inactive_users(store):
    recent = _user(store, "recent", now=10_000.0)
    stale = _user(store, "stale", now=100.0)
    store.buy_miner(recent, "bitaxe_ultra")
    store.buy_miner(stale, "bitaxe_ultra")

    owners = [g.owner_id for g in store.active_resource_groups(active_since=5_000.0)]
    assert owners == [recent]


def test_group_uses_user_electricity_rate(store):
    uid = _user(store, electricity_rate_usd=0.05)
    store.buy_miner(uid, "bitaxe_ultra")
    [group] = store.active_resource_groups()
    assert group.electricity_cost_rate == 0.05


def test_sell_btc_applies_fee(store):
    uid = store.create_user("seller", usd_balance=0.0, btc_balance=0.1)["id"]

    assert store.sell_btc(uid, 0.05, 40_000.0, fee_percent=1.5)

    balances = store.balances(uid)
    assert balances["btc"] == Decimal("0.05000000")
    assert balances["usd"] == Decimal("1970.00")


def test_sell_btc_rejects_bad_amounts(store):
    uid = store.create_user("seller", btc_balance=0.01)["id"]

    assert not store.sell_btc(uid, 0.02, 40_000.0)
    assert not store.sell_btc(uid, 0, 40_000.0)
    assert not store.sell_btc(uid, 0.01, 0)
    assert store.balances(uid)["btc"] == Decimal("0.01000000")


def test_apply_tick_yield_allows_negative_delta(store):
    uid = store.create_user("miner", btc_balance=0.001)["id"]
    loss = TickYield(
        owner_id=uid,
        mined_btc=0.00000010,
        electricity_cost_usd=0.0225,
        electricity_cost_btc=0.00000050,
        net_btc=-0.00000040,
    )

    store.apply_tick_yield(loss, tick_number=1)

    assert store.balances(uid)["btc"] == Decimal("0.00099960")
    user = store.get_user(uid)
    assert user["total_mined_btc"] == "0.00000010"
    tx = store.recent_transactions(uid)[0]
    assert tx["kind"] == "mining_tick"
    assert tx["btc"] == "-0.00000040"


def test_apply_tick_yield_for_missing_user(store):
    with pytest.raises(LookupError):
        store.apply_tick_yield(TickYield(42, 0.0, 0.0, 0.0, 0.0), tick_number=1)


def test_recent_transactions_newest_first(store):
    uid = _user(store)
    store.buy_miner(uid, "bitaxe_ultra")
    store.buy_miner(uid, "s19")

    kinds = [t["kind"] for t in store.recent_transactions(uid, limit=2)]
    assert kinds == ["hardware_purchase", "hardware_purchase"]
    assert "Antminer S19" in store.recent_transactions(uid, limit=1)[0]["description"]
    assert len(store.recent_transactions(uid)) == 3


def test_sell_btc_rejects_non_finite_amounts(store):
    uid = store.create_user("seller", btc_balance=0.01)["id"]

    assert not store.sell_btc(uid, float("nan"), 40_000.0)
    assert not store.sell_btc(uid, float("inf"), 40_000.0)
    assert store.balances(uid)["btc"] == Decimal("0.01000000")


def test_tiny_balances_are_fixed_point(store):
    uid = store.create_user("dust", btc_balance=0.0000001)["id"]

    assert store.get_user(uid)["btc_balance"] == "0.00000010"
    assert store.recent_transactions(uid)[0]["btc"] == "0.00000010"
