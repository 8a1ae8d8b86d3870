import logging
import math
from typing import Optional

from config import config
from strategy.errors import InsufficientBalance, InvalidSignal, LeverageExceeded, QuantityOutOfRange
from strategy.execution_types import Signal, SymbolInfo
from strategy.precision import round_to_precision, validate_range


logger = logging.getLogger(__name__)


class PositionSizer:
    """Band-risk sizing: a fixed share of the balance is lost if the band is crossed."""

    def __init__(self, max_position_pct: Optional[float] = None, max_leverage: Optional[int] = None):
        trading_cfg = config.get('trading', {}) or {}
        self.max_position_pct = float(
            max_position_pct if max_position_pct is not None else trading_cfg.get('max_position_pct', 2)
        )
        self.max_leverage = int(max_leverage if max_leverage is not None else trading_cfg.get('max_leverage', 20))

    def calculate_quantity(self, balance: float, signal: Signal, info: SymbolInfo) -> float:
        if balance <= 0:
            raise InsufficientBalance(f"Balance {balance} is not enough to size a position")
        band = signal.band_width
        if band <= 0:
            raise InvalidSignal(f"Band [{signal.low}, {signal.high}] has no width")

        risk_amount = balance * (self.max_position_pct / 100)
        quantity = round_to_precision(risk_amount / band, info.quantity_step)
        if not validate_range(quantity, info.min_quantity, info.max_quantity):
            raise QuantityOutOfRange(
                f"Calculated quantity {quantity} is outside allowed range "
                f"[{info.min_quantity}, {info.max_quantity}]"
            )
        return quantity

    def required_leverage(self, quantity: float, signal: Signal, balance: float) -> int:
        leverage = max(1, math.ceil((quantity * signal.high) / balance))
        if leverage > self.max_leverage:
            raise LeverageExceeded(
                f"Required leverage {leverage} exceeds max allowed {self.max_leverage}"
            )
        return leverage
