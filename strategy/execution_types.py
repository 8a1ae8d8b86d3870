from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from strategy import precision


class Direction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Direction":
        return Direction.SELL if self is Direction.BUY else Direction.BUY


class OrderRole(str, Enum):
    ENTRY = "ENTRY"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"

    @property
    def is_closing(self) -> bool:
        return self is not OrderRole.ENTRY


def role_for(order_type: Optional[str], closing: bool) -> OrderRole:
    if not closing:
        return OrderRole.ENTRY
    if (order_type or "").upper().startswith("TAKE_PROFIT"):
        return OrderRole.TAKE_PROFIT
    return OrderRole.STOP_LOSS


@dataclass(frozen=True)
class Signal:
    symbol: str
    direction: Direction
    low: float
    high: float

    @property
    def band_width(self) -> float:
        return self.high - self.low


@dataclass
class SymbolInfo:
    symbol: str
    quantity_step: float
    min_quantity: float
    max_quantity: float
    price_tick: float
    min_price: float
    max_price: float
    min_notional: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SymbolInfo":
        return cls(
            symbol=payload.get("symbol", ""),
            quantity_step=precision.get_quantity_step_size(payload),
            min_quantity=precision.get_min_quantity(payload),
            max_quantity=precision.get_max_quantity(payload),
            price_tick=precision.get_price_tick_size(payload),
            min_price=precision.get_min_price(payload),
            max_price=precision.get_max_price(payload),
            min_notional=precision.get_min_notional(payload),
            raw=payload,
        )


@dataclass
class OrderTicket:
    """Normalized view of an exchange order across live and paper venues."""

    symbol: str
    side: str
    type: str
    quantity: float
    order_id: int
    status: Optional[str] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    close_position: bool = False
    reduce_only: bool = False
    client_order_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_closing(self) -> bool:
        return self.close_position or self.reduce_only

    @property
    def role(self) -> OrderRole:
        return role_for(self.type, self.is_closing)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "role": self.role.value,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "stopPrice": self.stop_price,
            "closePosition": self.close_position,
            "reduceOnly": self.reduce_only,
            "clientOrderId": self.client_order_id,
        }


@dataclass
class PositionSnapshot:
    symbol: str
    position_amt: float
    entry_price: float = 0.0
    mark_price: Optional[float] = None
    leverage: Optional[int] = None
    unrealized_pnl: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def side(self) -> str:
        return "LONG" if self.position_amt > 0 else "SHORT"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "positionAmt": self.position_amt,
            "entryPrice": self.entry_price,
            "markPrice": self.mark_price,
            "leverage": self.leverage,
            "unRealizedProfit": self.unrealized_pnl,
        }


@dataclass
class RequestedOrder:
    """Durable link between an entry order id and the band of its signal."""

    order_id: int
    symbol: str
    direction: Direction
    low: float
    high: float
    request_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "low": self.low,
            "high": self.high,
            "requestTime": self.request_time.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestedOrder":
        raw_time = data.get("requestTime")
        request_time = datetime.fromisoformat(raw_time) if raw_time else datetime.now(timezone.utc)
        # records written by older versions used "type" for the direction
        direction = data.get("direction") or data.get("type")
        return cls(
            order_id=int(data["orderId"]),
            symbol=data["symbol"],
            direction=Direction(direction),
            low=float(data["low"]),
            high=float(data["high"]),
            request_time=request_time,
        )


@dataclass
class OrderEvent:
    """Normalized ``ORDER_TRADE_UPDATE`` payload from the user data stream."""

    symbol: str
    order_id: int
    status: str
    side: str = ""
    order_type: str = ""
    filled_qty: float = 0.0
    last_filled_qty: float = 0.0
    avg_price: Optional[float] = None
    close_position: bool = False
    reduce_only: bool = False
    event_time: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_closing(self) -> bool:
        return self.close_position or self.reduce_only

    @classmethod
    def from_stream(cls, payload: Dict[str, Any], event_time: int = 0) -> "OrderEvent":
        avg_raw = payload.get("ap")
        avg_price = None if avg_raw in (None, "", "0", "0.0", "0.00000") else float(avg_raw)
        return cls(
            symbol=payload.get("s", ""),
            order_id=int(payload.get("i")),
            status=(payload.get("X") or "").upper(),
            side=(payload.get("S") or "").upper(),
            order_type=payload.get("ot") or payload.get("o") or "",
            filled_qty=float(payload.get("z") or 0.0),
            last_filled_qty=float(payload.get("l") or 0.0),
            avg_price=avg_price,
            close_position=bool(payload.get("cp", False)),
            reduce_only=bool(payload.get("R", False)),
            event_time=int(event_time or payload.get("T") or 0),
            raw=payload,
        )


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: float
    timestamp: int = 0


@dataclass
class SignalResult:
    accepted: bool
    order_id: Optional[int] = None
    reason: Optional[str] = None
    message: str = ""

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.accepted, "message": self.message}
        if self.order_id is not None:
            data["orderId"] = self.order_id
        if self.reason:
            data["reason"] = self.reason
        return data