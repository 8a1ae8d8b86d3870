import sys

import pytest

sys.path.insert(0, '.')

from risk.position_sizer import PositionSizer
from strategy.errors import InsufficientBalance, InvalidSignal, LeverageExceeded, QuantityOutOfRange, RejectReason
from strategy.execution_types import Direction, Signal, SymbolInfo
from tests.fakes import symbol_payload


def _info(**overrides) -> SymbolInfo:
    return SymbolInfo.from_payload(symbol_payload(**overrides))


def test_quantity_risks_configured_share_of_balance():
    sizer = PositionSizer(max_position_pct=2, max_leverage=20)
    signal = Signal('BTCUSDT', Direction.BUY, 100.0, 110.0)
    assert sizer.calculate_quantity(10000.0, signal, _info()) == 20.0


def test_quantity_is_floored_to_step():
    sizer = PositionSizer(max_position_pct=2, max_leverage=20)
    signal = Signal('BTCUSDT', Direction.SELL, 100.0, 107.0)
    # 200 / 7 = 28.5714...
    assert sizer.calculate_quantity(10000.0, signal, _info(step='0.01')) == 28.57


def test_quantity_rejections():
    sizer = PositionSizer(max_position_pct=2, max_leverage=20)
    signal = Signal('BTCUSDT', Direction.BUY, 100.0, 110.0)

    with pytest.raises(InsufficientBalance):
        sizer.calculate_quantity(0.0, signal, _info())

    with pytest.raises(QuantityOutOfRange) as exc_info:
        sizer.calculate_quantity(10000.0, signal, _info(max_qty='10'))
    assert exc_info.value.reason is RejectReason.QUANTITY_OUT_OF_RANGE

    with pytest.raises(QuantityOutOfRange):
        sizer.calculate_quantity(1.0, signal, _info(min_qty='1'))

    with pytest.raises(InvalidSignal):
        sizer.calculate_quantity(10000.0, Signal('BTCUSDT', Direction.BUY, 110.0, 110.0), _info())


def test_required_leverage_rounds_up_with_floor_of_one():
    sizer = PositionSizer(max_position_pct=2, max_leverage=20)
    signal = Signal('BTCUSDT', Direction.BUY, 100.0, 110.0)
    assert sizer.required_leverage(20.0, signal, 10000.0) == 1
    # notional 4 * 100.5 = 402 on a balance of 100
    assert sizer.required_leverage(4.0, Signal('BTCUSDT', Direction.BUY, 100.0, 100.5), 100.0) == 5


def test_required_leverage_respects_cap():
    sizer = PositionSizer(max_position_pct=2, max_leverage=3)
    with pytest.raises(LeverageExceeded):
        sizer.required_leverage(4.0, Signal('BTCUSDT', Direction.BUY, 100.0, 100.5), 100.0)
