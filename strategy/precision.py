"""Precision and exchange-filter helpers for order sizing and pricing.

Everything here is pure: the functions take a number (or a raw Binance
``exchangeInfo`` symbol payload) and return a number, a string or a bool.
Rounding always floors, so a sized order never exceeds what the
caller could afford.
"""
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Dict, Optional


DEFAULT_QUANTITY_STEP = 0.001
DEFAULT_PRICE_TICK = 0.01


def _to_decimal(value: float) -> Decimal:
    # repr keeps the shortest round-tripping form, so 0.1 stays 0.1
    return Decimal(repr(float(value)))


def step_decimals(step: float) -> int:
    """Number of decimals implied by a step size (0.001 -> 3, 1 -> 0)."""
    if not step:
        return 0
    try:
        exponent = _to_decimal(step).normalize().as_tuple().exponent
    except InvalidOperation:
        return 0
    return max(0, -int(exponent))


def round_to_precision(value: float, step: float) -> float:
    if step == 0:
        return value
    step_dec = _to_decimal(step)
    units = (_to_decimal(value) / step_dec).to_integral_value(rounding=ROUND_FLOOR)
    rounded = units * step_dec
    return float(rounded.quantize(Decimal(1).scaleb(-step_decimals(step))))


def format_to_precision(value: float, step: float) -> str:
    rounded = round_to_precision(value, step)
    decimals = step_decimals(step)
    return f"{rounded:.{decimals}f}"


def validate_range(value: float, min_value: float, max_value: float) -> bool:
    return min_value <= value <= max_value


def _find_filter(symbol_info: Optional[Dict[str, Any]], filter_type: str) -> Optional[Dict[str, Any]]:
    if not symbol_info:
        return None
    for filt in symbol_info.get('filters') or []:
        if filt.get('filterType') == filter_type:
            return filt
    return None


def _filter_float(filt: Optional[Dict[str, Any]], key: str, default: float) -> float:
    if not filt or filt.get(key) in (None, ''):
        return default
    try:
        return float(filt[key])
    except (TypeError, ValueError):
        return default


def get_lot_size_filter(symbol_info: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return _find_filter(symbol_info, 'LOT_SIZE')


def get_price_filter(symbol_info: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return _find_filter(symbol_info, 'PRICE_FILTER')


def get_min_notional_filter(symbol_info: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return _find_filter(symbol_info, 'MIN_NOTIONAL')


def get_quantity_step_size(symbol_info: Optional[Dict[str, Any]]) -> float:
    return _filter_float(get_lot_size_filter(symbol_info), 'stepSize', DEFAULT_QUANTITY_STEP)


def get_price_tick_size(symbol_info: Optional[Dict[str, Any]]) -> float:
    return _filter_float(get_price_filter(symbol_info), 'tickSize', DEFAULT_PRICE_TICK)


def get_min_quantity(symbol_info: Optional[Dict[str, Any]]) -> float:
    return _filter_float(get_lot_size_filter(symbol_info), 'minQty', 0.0)


def get_max_quantity(symbol_info: Optional[Dict[str, Any]]) -> float:
    return _filter_float(get_lot_size_filter(symbol_info), 'maxQty', float('inf'))


def get_min_price(symbol_info: Optional[Dict[str, Any]]) -> float:
    return _filter_float(get_price_filter(symbol_info), 'minPrice', 0.0)


def get_max_price(symbol_info: Optional[Dict[str, Any]]) -> float:
    return _filter_float(get_price_filter(symbol_info), 'maxPrice', float('inf'))


def get_min_notional(symbol_info: Optional[Dict[str, Any]]) -> float:
    # USDⓈ-M futures name the field "notional"; spot uses "minNotional"
    filt = get_min_notional_filter(symbol_info)
    if filt and filt.get('notional') not in (None, ''):
        return _filter_float(filt, 'notional', 0.0)
    return _filter_float(filt, 'minNotional', 0.0)
