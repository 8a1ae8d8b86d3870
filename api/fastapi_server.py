import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from config import config
from strategy.errors import LifecycleError, OrderNotFound, RejectReason
from strategy.execution_types import Direction, Signal


logger = logging.getLogger(__name__)

trading_system = None

REJECTION_STATUS = {
    RejectReason.DUPLICATE_SYMBOL.value: 409,
    RejectReason.INVALID_SIGNAL.value: 422,
}


class TradingViewWebhook(BaseModel):
    symbol: str = Field(min_length=1)
    type: Direction
    low: float = Field(gt=0)
    high: float = Field(gt=0)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return value.strip().upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def check_band(self):
        if self.high <= self.low:
            raise ValueError("high must be greater than low")
        return self


class CancelRequest(BaseModel):
    symbol: str = Field(min_length=1)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()


class FakePrice(BaseModel):
    symbol: str = Field(min_length=1)
    price: float = Field(gt=0)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    if trading_system is None:
        from main import TradingSystem
        trading_system = TradingSystem()
    await trading_system.start()
    try:
        yield
    finally:
        await trading_system.stop()


app = FastAPI(title="Band Signal Service", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=(config.get('api', {}) or {}).get('cors_origins', ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _unavailable(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"success": False, "reason": RejectReason.GATEWAY_UNAVAILABLE.value, "message": message},
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
        for err in errors
    )
    return JSONResponse(
        status_code=422,
        content={"success": False, "reason": RejectReason.INVALID_SIGNAL.value, "message": message},
    )


@app.get("/")
async def root():
    return {
        "service": "Band Signal Service",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped"
    }


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "system_running": trading_system.running if trading_system else False,
        "system": trading_system.status() if trading_system else None,
    }


@app.post("/webhook/tradingview")
async def tradingview_webhook(payload: TradingViewWebhook):
    signal = Signal(symbol=payload.symbol, direction=payload.type, low=payload.low, high=payload.high)
    logger.info("Webhook signal: %s %s [%s, %s]", signal.direction.value, signal.symbol, signal.low, signal.high)
    result = await trading_system.coordinator.process_signal(signal)
    if result.accepted:
        return result.as_dict()
    return JSONResponse(status_code=REJECTION_STATUS.get(result.reason, 400), content=result.as_dict())


@app.delete("/webhook/cancelOrder/{order_id}")
async def cancel_order(order_id: int, payload: CancelRequest):
    try:
        await trading_system.coordinator.cancel(payload.symbol, order_id)
    except OrderNotFound as exc:
        return JSONResponse(
            status_code=404,
            content={"success": False, "reason": exc.reason.value, "message": exc.message},
        )
    except LifecycleError as exc:
        logger.error("Cancel of %s on %s failed: %s", order_id, payload.symbol, exc.message)
        return _unavailable(exc.message)
    return {"success": True, "message": f"Order {order_id} cancelled", "orderId": order_id}


@app.get("/webhook/info")
async def info():
    try:
        snapshot = await trading_system.coordinator.refresh_snapshot()
    except LifecycleError as exc:
        return _unavailable(exc.message)
    data = snapshot.to_dict()
    data["counts"] = {
        "openOrders": len(snapshot.open_orders),
        "activePositions": len(snapshot.active_positions),
        "pendingCorrelations": len(snapshot.requested_orders),
    }
    data["watchedSymbols"] = sorted(trading_system.coordinator.watchlist.symbols)
    data["timestamp"] = datetime.now(timezone.utc).isoformat()
    return data


@app.post("/webhook/fakeprice")
async def fake_price(payload: FakePrice):
    await trading_system.inject_price(payload.symbol, payload.price)
    return {"success": True, "symbol": payload.symbol, "price": payload.price}
