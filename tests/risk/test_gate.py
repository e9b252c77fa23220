import itertools

import pytest

from polycopy.risk.gate import RiskGate, imbalance


def test_first_side_always_allowed():
    gate = RiskGate()
    decision = gate.check_before_execution("cid", "up", 10.0, 0.99)
    assert decision.allowed
    # checking never creates state
    assert len(gate) == 0


def test_second_leg_allowed_when_other_side_empty():
    gate = RiskGate()
    gate.record_execution("cid", "up", 10.0, 4.0)
    # first B leg: no B side exists yet, the A side has quantity
    decision = gate.check_before_execution("cid", "down", 10.0, 0.50)
    assert decision.allowed


def test_crossing_the_cost_basis_ceiling_is_rejected():
    gate = RiskGate(max_cost_basis=0.95, max_imbalance=0.25)
    gate.record_execution("cid", "up", 10.0, 4.0)      # avg 0.40
    gate.record_execution("cid", "down", 10.0, 5.0)    # avg 0.50, basis 0.90
    decision = gate.check_before_execution("cid", "down", 5.0, 0.80)
    # new down avg (5.0 + 4.0) / 15 = 0.60, basis 1.00
    assert not decision.allowed
    assert "cost basis" in decision.reason
    assert decision.cost_basis == pytest.approx(1.00)


def test_blended_fill_that_stays_below_ceiling_passes():
    gate = RiskGate(max_cost_basis=0.95, max_imbalance=0.25)
    gate.record_execution("cid", "up", 10.0, 4.0)
    gate.record_execution("cid", "down", 10.0, 5.0)
    decision = gate.check_before_execution("cid", "down", 5.0, 0.62)
    # (5.0 + 3.1) / 15 = 0.54, basis 0.94 < 0.95; imbalance 0.2 <= 0.25
    assert decision.allowed


def test_already_above_ceiling_does_not_block_improvement():
    gate = RiskGate(max_cost_basis=0.95, max_imbalance=1.0)
    gate.record_execution("cid", "up", 10.0, 5.0)    # 0.50
    gate.record_execution("cid", "down", 10.0, 5.0)  # 0.50, basis 1.00
    decision = gate.check_before_execution("cid", "down", 10.0, 0.30)
    assert decision.allowed
    assert decision.cost_basis < 1.0


def test_worsening_imbalance_beyond_ceiling_is_rejected():
    gate = RiskGate(max_cost_basis=2.0, max_imbalance=0.25)
    gate.record_execution("cid", "up", 10.0, 4.0)
    gate.record_execution("cid", "down", 10.0, 4.0)
    decision = gate.check_before_execution("cid", "up", 10.0, 0.40)
    # 20 vs 10 -> 1/3 > 0.25
    assert not decision.allowed
    assert "imbalance" in decision.reason


def test_reducing_imbalance_is_allowed_even_above_ceiling():
    gate = RiskGate(max_cost_basis=2.0, max_imbalance=0.25)
    gate.record_execution("cid", "up", 30.0, 12.0)
    gate.record_execution("cid", "down", 10.0, 4.0)
    decision = gate.check_before_execution("cid", "down", 5.0, 0.40)
    # 0.5 -> 1/3, still above 0.25 but better
    assert decision.allowed


def test_imbalance_helper():
    assert imbalance(10, 10) == 0.0
    assert imbalance(0, 0) == 0.0
    assert imbalance(30, 10) == pytest.approx(0.5)


def test_summary_counts_paired_markets():
    gate = RiskGate()
    gate.record_execution("cid-1", "up", 10.0, 4.0, slug="btc-15m")
    gate.record_execution("cid-1", "down", 10.0, 5.0)
    gate.record_execution("cid-2", "up", 5.0, 2.0)
    assert gate.summary() == {"markets": 2, "paired": 1}
    assert gate.market("cid-1").slug == "btc-15m"


_PRICES = (0.10, 0.45, 0.60, 0.90)
_OTHER_QTY = (5.0, 20.0)
_INCOMING_QTY = (1.0, 10.0, 40.0)


def _gate_with(max_cost_basis, max_imbalance, this_qty, this_price, other_qty, other_price):
    gate = RiskGate(max_cost_basis=max_cost_basis, max_imbalance=max_imbalance)
    if this_qty > 0:
        gate.record_execution("cid", "up", this_qty, this_qty * this_price)
    gate.record_execution("cid", "down", other_qty, other_qty * other_price)
    return gate


@pytest.mark.parametrize("max_cost_basis,max_imbalance", [(0.95, 0.25), (0.80, 0.10)])
@pytest.mark.parametrize("this_qty", [0.0, 5.0, 20.0])
def test_gate_is_monotonic(max_cost_basis, max_imbalance, this_qty):
    non_worsening = 0
    for this_price, other_qty, other_price, qty, price in itertools.product(
        _PRICES, _OTHER_QTY, _PRICES, _INCOMING_QTY, _PRICES,
    ):
        gate = _gate_with(max_cost_basis, max_imbalance, this_qty, this_price, other_qty, other_price)
        sides = gate.market("cid").sides
        cur_basis = (sides["up"].avg_price if "up" in sides else 0.0) + sides["down"].avg_price
        cur_imbalance = imbalance(this_qty, other_qty)

        decision = gate.check_before_execution("cid", "up", qty, price)

        imbalance_grows = decision.imbalance > cur_imbalance
        basis_rises = decision.cost_basis > cur_basis
        if not imbalance_grows and (not basis_rises or cur_basis >= max_cost_basis):
            non_worsening += 1
            assert decision.allowed, (this_price, other_qty, other_price, qty, price)
        if not decision.allowed:
            crosses = decision.cost_basis >= max_cost_basis and cur_basis < max_cost_basis
            too_lopsided = imbalance_grows and decision.imbalance > max_imbalance
            assert crosses or too_lopsided
    assert non_worsening > 0
