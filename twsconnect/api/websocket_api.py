from fastapi import WebSocket, WebSocketDisconnect
from typing import Dict, Set
import json
import logging
from datetime import datetime, timezone

from ..core.client import TWSClient
from ..core.errors import UnknownSubscriptionError

logger = logging.getLogger(__name__)


class StreamHub:
    """Fans quote and order updates out to WebSocket clients."""
    def __init__(self):
        self.quote_connections : Dict[int, Set[WebSocket]] = {}
        self.order_connections : Set[WebSocket] = set()
        self.all_connections : Set[WebSocket] = set()

    def attach(self, client: TWSClient) -> None:
        client.subscriptions.subscribe_to_quotes(self.broadcast_quote)
        client.orders.subscribe_to_order_updates(self.broadcast_order_update)

    async def connect_quotes(self, websocket: WebSocket, request_id: int):
        await websocket.accept()
        self.quote_connections.setdefault(request_id, set()).add(websocket)
        self.all_connections.add(websocket)
        logger.info(f"Client connected to quotes for subscription {request_id}")

    async def connect_orders(self, websocket: WebSocket):
        await websocket.accept()
        self.order_connections.add(websocket)
        self.all_connections.add(websocket)
        logger.info("Client connected to order feed")

    def disconnect(self, websocket: WebSocket):
        self.all_connections.discard(websocket)
        for connections in self.quote_connections.values():
            connections.discard(websocket)
        self.order_connections.discard(websocket)
        logger.info("Client disconnected")

    async def _send_all(self, connections: Set[WebSocket], data: dict):
        disconnected = set()
        for websocket in list(connections):
            try:
                await websocket.send_text(json.dumps(data, default=str))
            except Exception as e:
                logger.error(f"Error sending to websocket: {e}")
                disconnected.add(websocket)

        # Clean up disconnected websockets
        for ws in disconnected:
            self.disconnect(ws)

    async def broadcast_quote(self, request_id: int, quote: dict):
        connections = self.quote_connections.get(request_id)
        if connections:
            await self._send_all(connections, {"type": "quote", **quote})

    async def broadcast_order_update(self, update: dict):
        if self.order_connections:
            await self._send_all(self.order_connections, update)


async def websocket_quotes_endpoint(websocket: WebSocket, request_id: int, hub: StreamHub, client: TWSClient):
    await hub.connect_quotes(websocket, request_id)

    # Send the latest quote so the client starts from a known state
    try:
        quote = client.peek_quote(request_id)
        if quote.tick_type is not None:
            await websocket.send_text(json.dumps({"type": "quote", **quote.to_dict()}, default=str))
    except UnknownSubscriptionError:
        await websocket.send_text(json.dumps({
            "type": "error",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": f"No subscription with id {request_id}"
        }))

    try:
        while True:
            # Keep connection alive and handle any incoming messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(websocket)


async def websocket_orders_endpoint(websocket: WebSocket, hub: StreamHub, client: TWSClient):
    await hub.connect_orders(websocket)

    # Initial snapshot of every tracked order
    await websocket.send_text(json.dumps({
        "type": "orders",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "orders": [o.to_dict() for o in client.list_orders()]
    }, default=str))

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(websocket)
