"""
Client core for a TWS-style trading gateway
Wire codec, connection, request correlation, order lifecycle and quote streams
"""

from .client import TWSClient
from .codec import NEED_MORE_BYTES, Incoming, Outgoing, WireCodec
from .connection import Connection, ConnectionManager, ConnectionSettings, ConnectionState
from .correlator import Correlator, PendingKind, PendingRequest
from .errors import (
    ConnectError, ConnectFailure, ConnectionLost, EncodingError, OrderStateError, ProtocolError,
    RequestError, RequestTimeout, TWSError, UnknownOrderError, UnknownSubscriptionError
)
from .handlers import EventBus
from .order import Bracket, Contract, Execution, Order, OrderAction, OrderState, OrderType, TimeInForce
from .order_manager import OrderManager
from .quote import Quote
from .subscriptions import Subscription, SubscriptionRegistry

__all__ = [
    'TWSClient',
    'WireCodec',
    'NEED_MORE_BYTES',
    'Incoming',
    'Outgoing',
    'Connection',
    'ConnectionManager',
    'ConnectionSettings',
    'ConnectionState',
    'Correlator',
    'PendingKind',
    'PendingRequest',
    'EventBus',
    'OrderManager',
    'Subscription',
    'SubscriptionRegistry',
    'Order',
    'OrderAction',
    'OrderState',
    'OrderType',
    'TimeInForce',
    'Contract',
    'Bracket',
    'Execution',
    'Quote',
    'TWSError',
    'ConnectError',
    'ConnectFailure',
    'ConnectionLost',
    'EncodingError',
    'OrderStateError',
    'ProtocolError',
    'RequestError',
    'RequestTimeout',
    'UnknownOrderError',
    'UnknownSubscriptionError'
]
