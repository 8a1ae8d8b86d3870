import math
import sys

sys.path.insert(0, '.')

from strategy import precision
from strategy.execution_types import SymbolInfo
from tests.fakes import symbol_payload


def test_round_to_precision_floors_to_step():
    assert precision.round_to_precision(20.0009, 0.001) == 20.0
    assert precision.round_to_precision(109.99, 0.1) == 109.9
    assert precision.round_to_precision(7, 2) == 6
    assert precision.round_to_precision(0.12345, 0.0001) == 0.1234


def test_round_to_precision_exact_division():
    # 10000 * 2% / (110 - 100) must land on 20.000, not 19.999
    assert precision.round_to_precision((10000 * 0.02) / 10, 0.001) == 20.0
    assert precision.round_to_precision(0.3, 0.1) == 0.3
    assert precision.round_to_precision(1.1 * 3, 0.1) == 3.3


def test_round_to_precision_is_idempotent():
    for value in (20.0, 0.7, 123.456789, 99999.99, 1e-3, 3.3000000000000003):
        for step in (0.001, 0.01, 0.1, 1, 0.5, 0.0001):
            once = precision.round_to_precision(value, step)
            assert precision.round_to_precision(once, step) == once


def test_round_to_precision_zero_step_returns_value():
    assert precision.round_to_precision(1.23456, 0) == 1.23456


def test_format_to_precision_uses_step_decimals():
    assert precision.format_to_precision(20, 0.001) == "20.000"
    assert precision.format_to_precision(110, 0.1) == "110.0"
    assert precision.format_to_precision(130.07, 0.01) == "130.07"
    assert precision.format_to_precision(5.9, 1) == "5"
    assert precision.step_decimals(0.00001) == 5
    assert precision.step_decimals(10) == 0


def test_validate_range_is_inclusive():
    assert precision.validate_range(1.0, 1.0, 2.0)
    assert precision.validate_range(2.0, 1.0, 2.0)
    assert not precision.validate_range(0.999, 1.0, 2.0)
    assert not precision.validate_range(2.001, 1.0, 2.0)


def test_filter_extraction():
    payload = symbol_payload(step='0.01', tick='0.5', min_qty='0.1', max_qty='50', min_price='1', max_price='9000')
    assert precision.get_quantity_step_size(payload) == 0.01
    assert precision.get_price_tick_size(payload) == 0.5
    assert precision.get_min_quantity(payload) == 0.1
    assert precision.get_max_quantity(payload) == 50
    assert precision.get_min_price(payload) == 1
    assert precision.get_max_price(payload) == 9000
    assert precision.get_min_notional(payload) == 5
    assert precision.get_lot_size_filter(payload)['filterType'] == 'LOT_SIZE'


def test_filter_defaults_when_missing():
    payload = {'symbol': 'XYZUSDT', 'filters': []}
    assert precision.get_quantity_step_size(payload) == 0.001
    assert precision.get_price_tick_size(payload) == 0.01
    assert precision.get_min_quantity(payload) == 0
    assert math.isinf(precision.get_max_quantity(payload))
    assert precision.get_min_price(None) == 0
    assert math.isinf(precision.get_max_price(None))

    info = SymbolInfo.from_payload(payload)
    assert info.symbol == 'XYZUSDT'
    assert info.quantity_step == 0.001
    assert info.price_tick == 0.01
