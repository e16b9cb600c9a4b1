"""
API module for the gateway bridge
Handles REST and WebSocket endpoints
"""

from .rest_api import create_rest_api, ModifyOrderRequest, OrderRequest, OrderResponse, QuoteResponse, SubscribeRequest
from .websocket_api import (
    StreamHub,
    websocket_quotes_endpoint,
    websocket_orders_endpoint
)

__all__ = [
    'create_rest_api',
    'StreamHub',
    'websocket_quotes_endpoint',
    'websocket_orders_endpoint',
    'ModifyOrderRequest',
    'OrderRequest',
    'OrderResponse',
    'QuoteResponse',
    'SubscribeRequest'
]
