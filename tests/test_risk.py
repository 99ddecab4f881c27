import sys

sys.path.insert(0, '.')

import pytest

from risk.position_sizer import RiskManager, floor_to_step
from tests.fakes import make_config


def test_floor_to_step_avoids_binary_drift():
    assert floor_to_step(0.00019999, 0.00001) == pytest.approx(0.00019)
    assert floor_to_step(0.0003, 0.0001) == pytest.approx(0.0003)
    assert floor_to_step(1.23456, 0) == 1.23456


def test_position_size_floors_and_respects_minimum():
    risk = RiskManager(make_config())
    assert risk.calculate_position_size(20.0, 105000.0) == pytest.approx(0.00019)
    assert risk.calculate_position_size(0.1, 105000.0) == pytest.approx(0.00001)
    assert risk.calculate_position_size(20.0, 0.0) == 0.0


def test_safety_gate_threshold():
    risk = RiskManager(make_config())
    assert risk.round_trip_cost == pytest.approx(0.007)
    assert risk.passes_safety_gate(100000.0, 70.1)
    assert not risk.passes_safety_gate(100000.0, 69.9)
    assert not risk.passes_safety_gate(100000.0, float('nan'))


def test_stop_and_target_levels():
    risk = RiskManager(make_config(risk={'stop_atr_multiplier': 2.0}))
    assert risk.calculate_stop_price(100000.0, 300.0) == pytest.approx(99400.0)
    assert risk.calculate_target_price(100000.0, 300.0) == pytest.approx(100900.0)
    assert risk.calculate_target_price(100000.0, 10.0) == pytest.approx(100700.0)
