"""
twsconnect
Asyncio client for TWS-style trading gateways, with a FastAPI bridge
"""

# Core client components
from .core import (
    TWSClient,
    ConnectionSettings,
    Contract,
    Order,
    OrderAction,
    OrderState,
    OrderType,
    TimeInForce,
    Bracket,
    Quote,
    TWSError,
    ConnectError,
    ConnectionLost,
    EncodingError,
    OrderStateError,
    RequestTimeout
)

__version__ = "1.0.0"

__all__ = [
    # Core components
    'TWSClient',
    'ConnectionSettings',
    'Contract',
    'Order',
    'OrderAction',
    'OrderState',
    'OrderType',
    'TimeInForce',
    'Bracket',
    'Quote',

    # Errors
    'TWSError',
    'ConnectError',
    'ConnectionLost',
    'EncodingError',
    'OrderStateError',
    'RequestTimeout'
]
