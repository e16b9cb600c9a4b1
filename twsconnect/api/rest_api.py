from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Union
from decimal import Decimal
import logging

from ..core.client import TWSClient
from ..core.errors import (
    ConnectError, ConnectionLost, EncodingError, OrderStateError, RequestError, RequestTimeout,
    UnknownOrderError, UnknownSubscriptionError
)
from ..core.order import Contract, OrderAction, OrderState, OrderType, TimeInForce

# configure logging
logger = logging.getLogger(__name__)

ACTIONS = [a.value for a in OrderAction]
TIFS = [t.value for t in TimeInForce]


def _decimal(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


# pydantic models for request and response validation
class OrderRequest(BaseModel):
    action : str = Field(..., description= "BUY, SELL, SSHORT, SLONG or CLOSE")
    symbol : str = Field(..., description = "Ticker symbol, e.g. 'GOOG'")
    quantity : float = Field(..., gt = 0, description= "Order quantity, must be positive.")
    order_type : str = Field('LMT', description= "Order type: MKT, LMT, STP, STP LMT, TRAIL ...")
    limit_price : Optional[float] = Field(None, gt = 0, description= "Limit price (required for limit types)")
    aux_price : Optional[float] = Field(None, gt = 0, description= "Stop/trigger price")
    tif : str = Field('GTC', description= "Time in force")
    sec_type : str = 'STK'
    exchange : str = 'SMART'
    currency : str = 'USD'
    expiry : str = ''
    strike : float = 0
    right : str = ''
    multiplier : str = ''
    local_symbol : str = ''
    con_id : int = 0
    account : str = ''
    order_ref : str = ''
    outside_rth : bool = False
    oca_group : str = ''
    oca_type : int = Field(2, ge = 1, le = 3)
    trailing_percent : Optional[float] = Field(None, gt = 0)
    good_after_time : str = ''
    good_till_date : str = ''
    what_if : bool = False
    bracket_delta : Optional[Union[float, List[float]]] = Field(
        None, description= "Bracket offset, or [lower, upper] offsets, from the limit price")
    bracket_types : Optional[List[str]] = Field(None, description= "Child types [lower, upper]")
    order_id : Optional[int] = Field(None, ge = 0, description = "Optional client-chosen order ID")
    hold : bool = Field(False, description = "Register without transmitting")

    @field_validator('action')
    @classmethod
    def validate_action(cls, v):
        if v.upper() not in ACTIONS:
            raise ValueError(f"Invalid action. Must be one of: {', '.join(ACTIONS)}.")
        return v.upper()

    @field_validator('order_type')
    @classmethod
    def validate_order_type(cls, v):
        return OrderType.parse(v).value

    @field_validator('tif')
    @classmethod
    def validate_tif(cls, v):
        if v.upper() not in TIFS:
            raise ValueError(f"Invalid time in force. Must be one of: {', '.join(TIFS)}.")
        return v.upper()

    @field_validator('bracket_delta')
    @classmethod
    def validate_bracket_delta(cls, v):
        values = v if isinstance(v, list) else [v] if v is not None else []
        if len(values) > 2 or any(d <= 0 for d in values):
            raise ValueError("bracket_delta must be one or two positive offsets")
        return v

    @model_validator(mode='after')
    def validate_prices_for_order_type(self):
        order_type = OrderType.parse(self.order_type)
        if order_type.requires_limit_price and self.limit_price is None:
            raise ValueError(f'limit_price is required for {order_type.value} orders')
        if order_type.requires_aux_price and self.aux_price is None:
            raise ValueError(f'aux_price is required for {order_type.value} orders')
        if self.bracket_delta is not None and self.limit_price is None:
            raise ValueError('bracket orders need a limit_price')
        return self


class ModifyOrderRequest(BaseModel):
    quantity : Optional[float] = Field(None, gt = 0)
    limit_price : Optional[float] = Field(None, gt = 0)
    aux_price : Optional[float] = Field(None, gt = 0)
    tif : Optional[str] = None
    outside_rth : Optional[bool] = None


class OrderResponse(BaseModel):
    status : str
    order : Optional[dict] = None
    children : Optional[List[dict]] = None
    message : Optional[str] = None


class SubscribeRequest(BaseModel):
    symbol : str = Field(..., description = "Ticker symbol")
    sec_type : str = 'STK'
    exchange : str = 'SMART'
    currency : str = 'USD'
    capacity : Optional[int] = Field(None, ge = 1, description = "Quote buffer size (server default when unset)")
    reconnect_every : Optional[int] = Field(None, ge = 0, description = "Cycle the session every N quotes")
    generic_ticks : str = ''


class QuoteResponse(BaseModel):
    symbol: str
    request_id: int
    bid_price: Optional[str]
    bid_size: Optional[str]
    ask_price: Optional[str]
    ask_size: Optional[str]
    last_price: Optional[str]
    last_size: Optional[str]
    open: Optional[str]
    high: Optional[str]
    low: Optional[str]
    close: Optional[str]
    volume: Optional[str]
    tick_type: Optional[int]
    arrival_time: str
    event_time: Optional[str]


def _order_response(client: TWSClient, order_id: int) -> OrderResponse:
    order = client.get_order(order_id)
    children = [client.get_order(cid).to_dict() for cid in order.child_ids]
    return OrderResponse(status='success', order=order.to_dict(), children=children or None)


def create_rest_api(app: FastAPI, client: TWSClient):
    """
    Register the bridge endpoints on `app`.

    :param client: the TWSClient the endpoints drive
    :return: FastAPI app instance
    """

    @app.get("/")
    async def root():
        return {
            "message": "TWS gateway bridge API",
            "status": "running",
            "connected": client.is_connected,
            "version": "1.0.0"
        }

    @app.post("/orders", response_model=OrderResponse)
    async def submit_order(order_request: OrderRequest):
        """
        Submit an order to the gateway.

        - **action**: BUY / SELL / SSHORT / SLONG / CLOSE
        - **symbol**: ticker
        - **quantity**: amount to trade (must be positive)
        - **limit_price**: required for limit types
        - **bracket_delta**: adds stop-loss / take-profit children
        - **hold**: register without transmitting (see /orders/{id}/transmit)
        """
        fields = order_request.model_dump()
        hold = fields.pop('hold')
        order = client.make_order(
            action=fields.pop('action'),
            symbol=fields.pop('symbol'),
            quantity=_decimal(fields.pop('quantity')),
            order_type=fields.pop('order_type'),
            limit_price=_decimal(fields.pop('limit_price')),
            aux_price=_decimal(fields.pop('aux_price')),
            trailing_percent=_decimal(fields.pop('trailing_percent')),
            strike=_decimal(fields.pop('strike')),
            **fields
        )
        order_id = await client.place_order(order, hold=hold)
        return _order_response(client, order_id)

    @app.get("/orders")
    async def list_orders(state: Optional[str] = None, symbol: Optional[str] = None):
        """List tracked orders, optionally filtered by state and symbol."""
        state_filter = None
        if state is not None:
            try:
                state_filter = OrderState(state.lower())
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown order state: {state}")
        orders = client.list_orders(state_filter, symbol)
        return {
            "orders": [o.to_dict() for o in orders],
            "count": len(orders)
        }

    @app.get("/orders/open")
    async def get_open_orders():
        """Ask the gateway for its open orders (and fold them into the registry)."""
        reports = await client.request_open_orders()
        return {
            "orders": [client.get_order(r.order_id).to_dict() for r in reports if r.order_id in client.orders.orders],
            "count": len(reports)
        }

    @app.get("/orders/{order_id}", response_model=OrderResponse)
    async def get_order_status(order_id: int):
        """Get the status of a specific order."""
        return _order_response(client, order_id)

    @app.post("/orders/{order_id}/transmit", response_model=OrderResponse)
    async def transmit_order(order_id: int):
        """Transmit a held order (a held bracket goes out as one group)."""
        parent_id = await client.transmit(order_id)
        return _order_response(client, parent_id)

    @app.patch("/orders/{order_id}", response_model=OrderResponse)
    async def modify_order(order_id: int, changes: ModifyOrderRequest):
        """Modify a working or held order in place."""
        updates = {k: v for k, v in changes.model_dump().items() if v is not None}
        if not updates:
            raise HTTPException(status_code=400, detail="No changes given")
        await client.modify_order(order_id, **updates)
        return _order_response(client, order_id)

    @app.delete("/orders/{order_id}", response_model=OrderResponse)
    async def cancel_order(order_id: int):
        """Cancel an order by order ID."""
        await client.cancel_order(order_id)
        return _order_response(client, order_id)

    @app.post("/orders/{order_id}/await", response_model=OrderResponse)
    async def await_order(order_id: int, timeout: float = Query(30.0, gt = 0, le = 3600)):
        """Block until the order is filled, cancelled or rejected."""
        await client.await_order(order_id, timeout)
        return _order_response(client, order_id)

    @app.get("/executions")
    async def get_executions(symbol: str = '', side: str = '', account: str = ''):
        """Today's executions reported by the gateway."""
        executions = await client.request_executions(symbol=symbol, side=side, account=account)
        return {
            "executions": [
                {
                    'exec_id': e.exec_id,
                    'order_id': e.order_id,
                    'symbol': e.contract.symbol,
                    'side': e.side,
                    'shares': str(e.shares),
                    'price': str(e.price),
                    'time': e.time,
                    'account': e.account
                }
                for e in executions
            ],
            "count": len(executions)
        }

    @app.post("/market-data/subscriptions")
    async def subscribe(request: SubscribeRequest):
        """Start a live quote stream; returns its request id."""
        contract = Contract(symbol=request.symbol, sec_type=request.sec_type,
                            exchange=request.exchange, currency=request.currency)
        request_id = await client.subscribe(contract, request.capacity, request.reconnect_every,
                                            request.generic_ticks)
        return {"status": "success", "request_id": request_id}

    @app.get("/market-data/subscriptions")
    async def list_subscriptions():
        return client.subscriptions.get_statistics()

    @app.get("/market-data/subscriptions/{request_id}/quotes", response_model=List[QuoteResponse])
    async def pop_quotes(request_id: int):
        """Drain the buffered quotes of a subscription, oldest first."""
        return [QuoteResponse(**q.to_dict()) for q in client.pop_quotes(request_id)]

    @app.delete("/market-data/subscriptions/{request_id}", response_model=List[QuoteResponse])
    async def unsubscribe(request_id: int):
        """Stop a quote stream; returns the quotes that were never drained."""
        quotes = await client.unsubscribe(request_id)
        return [QuoteResponse(**q.to_dict()) for q in quotes]

    @app.get("/market-data/{symbol}/snapshot", response_model=QuoteResponse)
    async def snapshot_quote(symbol: str):
        """One-shot quote for a symbol."""
        quote = await client.snapshot_quote(symbol.upper())
        return QuoteResponse(**quote.to_dict())

    @app.get("/time")
    async def server_time():
        return {"server_time": await client.current_time()}

    @app.get("/statistics")
    async def get_client_statistics():
        """Client statistics: connection, orders, market data."""
        return client.get_statistics()

    # Error handlers
    def _error(status_code: int, exc: Exception):
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(EncodingError)
    async def encoding_error_handler(request, exc):
        return _error(400, exc)

    @app.exception_handler(ValueError)
    async def value_error_handler(request, exc):
        return _error(400, exc)

    @app.exception_handler(UnknownOrderError)
    async def unknown_order_handler(request, exc):
        return _error(404, exc)

    @app.exception_handler(UnknownSubscriptionError)
    async def unknown_subscription_handler(request, exc):
        return _error(404, exc)

    @app.exception_handler(OrderStateError)
    async def order_state_handler(request, exc):
        return _error(409, exc)

    @app.exception_handler(ConnectionLost)
    async def connection_lost_handler(request, exc):
        logger.warning(f"Request failed, gateway not connected: {exc}")
        return _error(503, exc)

    @app.exception_handler(ConnectError)
    async def connect_error_handler(request, exc):
        return _error(503, exc)

    @app.exception_handler(RequestTimeout)
    async def timeout_handler(request, exc):
        return _error(504, exc)

    @app.exception_handler(RequestError)
    async def request_error_handler(request, exc):
        return _error(502, exc)

    return app
