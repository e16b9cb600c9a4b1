import uvicorn
import logging
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import Config
from twsconnect.api.rest_api import create_rest_api
from twsconnect.api.websocket_api import StreamHub, websocket_quotes_endpoint, websocket_orders_endpoint
from twsconnect.core.client import TWSClient
from twsconnect.core.connection import ConnectionSettings
from twsconnect.core.errors import ConnectError

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(Config.LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


def settings_from_config() -> ConnectionSettings:
    return ConnectionSettings(
        host=Config.TWS_HOST,
        port=Config.TWS_PORT,
        client_id=Config.TWS_CLIENT_ID,
        connect_timeout=Config.CONNECT_TIMEOUT,
        request_timeout=Config.REQUEST_TIMEOUT,
        auto_reconnect=Config.AUTO_RECONNECT,
        max_reconnect_attempts=Config.MAX_RECONNECT_ATTEMPTS,
        reconnect_backoff_base=Config.RECONNECT_BACKOFF_BASE,
        reconnect_backoff_max=Config.RECONNECT_BACKOFF_MAX,
        heartbeat_interval=Config.HEARTBEAT_INTERVAL,
        protocol_error_threshold=Config.PROTOCOL_ERROR_THRESHOLD
    )


client = TWSClient(settings_from_config(), reconnect_every=Config.RECONNECT_EVERY,
                   quotes_buffer_size=Config.QUOTES_BUFFER_SIZE)
hub = StreamHub()
hub.attach(client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    logger.info("Starting TWS gateway bridge...")

    if Config.CONNECT_ON_STARTUP:
        try:
            await client.connect()
            logger.info(f"Gateway session up, accounts: {client.accounts}")
        except ConnectError as e:
            # the bridge still serves held orders and answers 503 for the rest
            logger.error(f"Gateway not reachable at startup: {e}")

    yield

    # Cleanup
    logger.info("Shutting down gateway session...")
    await client.disconnect()
    logger.info("Gateway session closed")

app = FastAPI(
    title="TWS Gateway Bridge",
    description="Order lifecycle and market data bridge for TWS-style trading gateways",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

create_rest_api(app, client)

# WebSocket endpoints
@app.websocket("/ws/quotes/{request_id}")
async def websocket_quotes(websocket: WebSocket, request_id: int):
    """WebSocket endpoint for one subscription's quotes"""
    await websocket_quotes_endpoint(websocket, request_id, hub, client)

@app.websocket("/ws/orders")
async def websocket_orders(websocket: WebSocket):
    """WebSocket endpoint for order updates"""
    await websocket_orders_endpoint(websocket, hub, client)

# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    connection = client.connection_manager.get_statistics()
    return {
        "status": "healthy" if client.is_connected else "degraded",
        "gateway_state": connection['state'],
        "server_version": connection['server_version'],
        "accounts": client.accounts
    }

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=Config.REST_HOST,
        port=Config.REST_PORT,
        reload=Config.DEBUG,
        log_level=Config.LOG_LEVEL.lower()
    )
