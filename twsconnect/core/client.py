import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Type, Union

from .connection import Connection, ConnectionManager, ConnectionSettings
from .correlator import Correlator
from .events import (
    CurrentTime, Event, ExecDetails, ExecDetailsEnd, NextValidId, OpenOrderEnd, OpenOrderEvent
)
from .handlers import EventBus
from .order import Bracket, Contract, Order, OrderState
from .order_manager import OrderManager
from .quote import Quote
from .requests import RequestCurrentTime, RequestExecutions, RequestIds, RequestOpenOrders
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


class TWSClient:
    """
    Client for a TWS-style gateway. Wires the connection manager, the
    correlator, the order lifecycle manager and the subscription registry
    into one object.

        client = TWSClient(ConnectionSettings(port=7497))
        await client.connect()
        order_id = await client.place_order(client.make_order('BUY', 'GOOG', 100, limit_price=600))
        await client.await_order(order_id, timeout=30)
    """
    def __init__(self, settings: Optional[ConnectionSettings] = None, reconnect_every: int = 0,
                 quotes_buffer_size: int = 1):
        self.settings = settings or ConnectionSettings()
        self.bus = EventBus()
        self.connection_manager = ConnectionManager(self.settings)
        self.correlator = Correlator(self.connection_manager.send, bus=self.bus)
        self.connection_manager.on_event = self.correlator.dispatch
        self.orders = OrderManager(self.correlator)
        self.subscriptions = SubscriptionRegistry(
            self.correlator,
            cycle_session=self.connection_manager.cycle,
            reconnect_every=reconnect_every,
            default_capacity=quotes_buffer_size
        )

        self.connection_manager.add_lost_listener(self.correlator.on_connection_lost)
        self.connection_manager.add_lost_listener(self.subscriptions.on_connection_lost)
        self.connection_manager.add_reconnected_listener(self.subscriptions.resubscribe_all)
        self.connection_manager.add_closed_listener(self.subscriptions.teardown)
        self.bus.add_handler(NextValidId, self._on_next_valid_id)
        self.started_at = datetime.now(timezone.utc)

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()

    def _on_next_valid_id(self, event: NextValidId) -> None:
        self.correlator.reseed(event.order_id)

    # ---------------------------------------------------------------- session

    async def connect(self, host: Optional[str] = None, port: Optional[int] = None,
                      client_id: Optional[int] = None, timeout: Optional[float] = None) -> Connection:
        return await self.connection_manager.connect(host, port, client_id, timeout)

    async def disconnect(self) -> None:
        self.subscriptions.teardown()
        await self.connection_manager.disconnect()

    @property
    def is_connected(self) -> bool:
        return self.connection_manager.is_connected

    @property
    def accounts(self) -> List[str]:
        connection = self.connection_manager.connection
        return list(connection.accounts) if connection else []

    # ---------------------------------------------------------------- orders

    @staticmethod
    def make_order(action: str, symbol: str, quantity, order_type: str = 'LMT',
                   limit_price=None, aux_price=None, sec_type: str = 'STK', exchange: str = 'SMART',
                   currency: str = 'USD', bracket_delta=None, bracket_types: Optional[Sequence[str]] = None,
                   contract: Optional[Contract] = None, **fields) -> Order:
        """
        Build an order from flat logical fields. `bracket_delta` is one
        offset or a (lower, upper) pair; `bracket_types` the matching child types.
        """
        if contract is None:
            contract_fields = {k: fields.pop(k) for k in list(fields)
                               if k in ('expiry', 'strike', 'right', 'multiplier', 'local_symbol',
                                        'con_id', 'primary_exchange', 'trading_class', 'sec_id', 'sec_id_type')}
            contract = Contract(symbol=symbol, sec_type=sec_type, exchange=exchange,
                                currency=currency, **contract_fields)
        bracket = None
        if bracket_delta is not None:
            if isinstance(bracket_delta, (list, tuple)):
                lower, upper = bracket_delta[0], bracket_delta[-1]
            else:
                lower = upper = bracket_delta
            lower_type = upper_type = None
            if bracket_types:
                lower_type, upper_type = bracket_types
            bracket = Bracket(Decimal(str(lower)), Decimal(str(upper)), lower_type, upper_type)
        return Order(
            action=action,
            contract=contract,
            quantity=quantity,
            order_type=order_type,
            limit_price=limit_price,
            aux_price=aux_price,
            bracket=bracket,
            **fields
        )

    async def place_order(self, order: Order, hold: bool = False) -> int:
        return await self.orders.submit(order, hold=hold)

    async def transmit(self, order_id: int) -> int:
        return await self.orders.transmit(order_id)

    async def cancel_order(self, order_id: int) -> Order:
        return await self.orders.cancel(order_id)

    async def modify_order(self, order_id: int, **changes) -> Order:
        return await self.orders.modify(order_id, **changes)

    async def await_order(self, order_id: int, timeout: Optional[float] = None) -> Optional[Event]:
        return await self.orders.await_terminal(order_id, timeout)

    def get_order(self, order_id: int) -> Order:
        return self.orders.get_order(order_id)

    def list_orders(self, state: Optional[OrderState] = None, symbol: Optional[str] = None) -> List[Order]:
        return self.orders.list_orders(state, symbol)

    async def request_open_orders(self, timeout: Optional[float] = None) -> List[OpenOrderEvent]:
        timeout = self.settings.request_timeout if timeout is None else timeout
        _, items = await self.correlator.request_untagged(
            RequestOpenOrders(), OpenOrderEnd, OpenOrderEvent, timeout)
        return items

    async def request_executions(self, timeout: Optional[float] = None, **filters) -> List[ExecDetails]:
        """Today's executions matching the filter fields of RequestExecutions."""
        timeout = self.settings.request_timeout if timeout is None else timeout
        request_id = await self.correlator.submit(
            RequestExecutions(**filters),
            is_terminal=lambda e: isinstance(e, ExecDetailsEnd)
        )
        events = await self.correlator.await_all(request_id, timeout)
        return [e for e in events if isinstance(e, ExecDetails)]

    # ---------------------------------------------------------------- market data

    async def subscribe(self, contract: Union[Contract, str], capacity: Optional[int] = None,
                        reconnect_every: Optional[int] = None, generic_ticks: str = '') -> int:
        return await self.subscriptions.subscribe(contract, capacity, reconnect_every, generic_ticks)

    def pop_quotes(self, request_id: int) -> List[Quote]:
        return self.subscriptions.pop_all(request_id)

    def peek_quote(self, request_id: int) -> Quote:
        return self.subscriptions.peek(request_id)

    async def unsubscribe(self, request_id: int) -> List[Quote]:
        return await self.subscriptions.unsubscribe(request_id)

    async def snapshot_quote(self, contract: Union[Contract, str], timeout: Optional[float] = None) -> Quote:
        timeout = self.settings.request_timeout if timeout is None else timeout
        return await self.subscriptions.snapshot(contract, timeout)

    # ---------------------------------------------------------------- misc

    async def current_time(self, timeout: Optional[float] = None) -> int:
        """Gateway time in epoch seconds."""
        timeout = self.settings.request_timeout if timeout is None else timeout
        event, _ = await self.correlator.request_untagged(RequestCurrentTime(), CurrentTime, timeout=timeout)
        return event.time

    async def request_next_id(self, timeout: Optional[float] = None) -> int:
        timeout = self.settings.request_timeout if timeout is None else timeout
        event, _ = await self.correlator.request_untagged(RequestIds(), NextValidId, timeout=timeout)
        return event.order_id

    def add_handler(self, event_type: Type[Event], handler: Callable) -> None:
        self.bus.add_handler(event_type, handler)

    def remove_handler(self, event_type: Type[Event], handler: Callable) -> bool:
        return self.bus.remove_handler(event_type, handler)

    def get_statistics(self) -> dict:
        return {
            'connection': self.connection_manager.get_statistics(),
            'orders': self.orders.get_statistics(),
            'market_data': self.subscriptions.get_statistics(),
            'pending_requests': self.correlator.pending_count,
            'events_dispatched': self.correlator.total_dispatched,
            'events_discarded': self.correlator.total_discarded,
            'started_at': self.started_at.isoformat()
        }
