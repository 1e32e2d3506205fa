from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from share_ledger.calculator import effective_amount
from share_ledger.ledger import final_state, fold
from share_ledger.models import LedgerState, Order

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)
UNIT = Decimal("100")


def _orders(amounts):
    return [
        Order(id=f"gid://shopify/Order/{i + 1}", created_at=BASE + timedelta(hours=i), subtotal=Decimal(str(a)))
        for i, a in enumerate(amounts)
    ]


def _random_orders(rng, n):
    out = []
    for i in range(n):
        subtotal = Decimal(rng.randint(0, 30000)) / 100
        refunds = tuple(Decimal(rng.randint(0, 20000)) / 100 for _ in range(rng.randint(0, 2)))
        cancelled = BASE if rng.random() < 0.15 else None
        out.append(Order(id=f"gid://shopify/Order/{i + 1}", created_at=BASE + timedelta(minutes=i),
                         subtotal=subtotal, refunds=refunds, cancelled_at=cancelled))
    return out


def test_cumulative_shares_and_remainders():
    rows = list(fold(LedgerState.zero(), _orders([40, 70, 50]), UNIT))

    assert [d.cumulative_spend for _, d in rows] == [40, 110, 160]
    assert [d.order_shares for _, d in rows] == [0, 1, 0]
    assert [d.cumulative_shares for _, d in rows] == [0, 1, 1]
    assert [d.remainder for _, d in rows] == [40, 10, 60]


def test_seeded_fold_counts_shares_from_seed():
    seed = LedgerState.from_spend(Decimal("160"), UNIT)
    assert seed.cumulative_shares == 1

    [(_, d)] = list(fold(seed, _orders([50]), UNIT))

    assert d.cumulative_spend == Decimal("210")
    assert d.cumulative_shares == 2
    assert d.order_shares == 1
    assert d.remainder == Decimal("10")


def test_single_order_can_earn_several_shares():
    [(_, d)] = list(fold(LedgerState.from_spend(Decimal("90"), UNIT), _orders([325]), UNIT))
    assert d.order_shares == 4
    assert d.cumulative_shares == 4
    assert d.remainder == Decimal("15")


def test_fold_is_deterministic():
    orders = _random_orders(random.Random(7), 40)
    seed = LedgerState.from_spend(Decimal("1234.56"), UNIT)

    first = list(fold(seed, orders, UNIT))
    second = list(fold(seed, orders, UNIT))

    assert first == second
    assert final_state(seed, first) == final_state(seed, second)


def test_share_conservation_on_every_prefix():
    orders = _random_orders(random.Random(11), 60)
    rows = list(fold(LedgerState.zero(), orders, UNIT))

    running = 0
    for _, d in rows:
        running += d.order_shares
        assert running == d.cumulative_shares
        assert d.order_shares >= 0
        assert Decimal("0") <= d.remainder < UNIT


def test_effective_amounts_never_negative():
    for order in _random_orders(random.Random(3), 200):
        assert effective_amount(order) >= 0


def test_partial_fold_from_correct_seed_matches_full_fold():
    orders = _random_orders(random.Random(23), 30)
    full = list(fold(LedgerState.zero(), orders, UNIT))

    for cut in (1, 9, 17, 29):
        seed = full[cut - 1][1].state
        partial = list(fold(seed, orders[cut:], UNIT))
        assert partial == full[cut:]


def test_final_state_of_empty_fold_is_seed():
    seed = LedgerState.from_spend(Decimal("42"), UNIT)
    assert final_state(seed, []) == seed
    assert final_state(LedgerState.zero(), list(fold(LedgerState.zero(), [], UNIT))) == LedgerState.zero()


@pytest.mark.parametrize("unit", [Decimal("0"), Decimal("-5")])
def test_non_positive_share_unit_is_rejected(unit):
    with pytest.raises(ValueError):
        list(fold(LedgerState.zero(), _orders([10]), unit))


def test_negative_spend_is_not_a_state():
    with pytest.raises(ValueError):
        LedgerState.from_spend(Decimal("-1"), UNIT)
