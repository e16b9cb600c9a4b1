import asyncio
import inspect
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .codec import NEED_MORE_BYTES, WireCodec, make_handshake
from .errors import ConnectError, ConnectFailure, ConnectionLost, ProtocolError
from .events import ErrorEvent, Event, ManagedAccounts, NextValidId
from .requests import RequestCurrentTime, StartApi

logger = logging.getLogger(__name__)

READ_CHUNK = 65536


@dataclass
class ConnectionSettings:
    host: str = '127.0.0.1'
    port: int = 7496
    client_id: Optional[int] = None
    connect_timeout: float = 5.0
    request_timeout: float = 10.0
    auto_reconnect: bool = True
    max_reconnect_attempts: int = 5
    reconnect_backoff_base: float = 1.0
    reconnect_backoff_max: float = 30.0
    heartbeat_interval: float = 30.0  # 0 disables
    protocol_error_threshold: int = 10
    min_version: int = 100
    max_version: int = 151
    optional_capabilities: str = ''

    def __post_init__(self):
        if self.client_id is None:
            # a random id avoids clashing with another session on the same gateway
            self.client_id = random.randint(1, 2 ** 31 - 1)
        if self.min_version > self.max_version:
            raise ValueError("min_version must not exceed max_version")

    def backoff(self, attempt: int) -> float:
        """Delay before reconnect attempt `attempt` (1-based)."""
        return min(self.reconnect_backoff_base * 2 ** (attempt - 1), self.reconnect_backoff_max)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class Connection:
    """One TCP session to a (host, port, client_id) triple."""
    host: str
    port: int
    client_id: int
    server_version: int
    connection_time: str
    reader: asyncio.StreamReader = field(repr=False)
    writer: asyncio.StreamWriter = field(repr=False)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_received_at: float = 0.0
    last_heartbeat_at: float = 0.0
    next_valid_id: Optional[int] = None
    accounts: Tuple[str, ...] = ()

    @property
    def endpoint(self) -> Tuple[str, int, int]:
        return (self.host, self.port, self.client_id)


class ConnectionManager:
    """
    Owns the single session to the gateway: handshake, the background reader,
    heartbeats and reconnection. Decoded events go to `on_event`.
    """
    def __init__(self, settings: Optional[ConnectionSettings] = None,
                 on_event: Optional[Callable[[Event], None]] = None):
        self.settings = settings or ConnectionSettings()
        self.on_event = on_event
        self.codec = WireCodec()
        self.state = ConnectionState.DISCONNECTED
        self.connection: Optional[Connection] = None

        self._write_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Event] = None

        self._lost_listeners: List[Callable] = []
        self._reconnected_listeners: List[Callable] = []
        self._closed_listeners: List[Callable] = []

        # metrics
        self.protocol_errors = 0
        self.reconnect_count = 0
        self.frames_received = 0
        self.last_error: Optional[BaseException] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def add_lost_listener(self, listener: Callable) -> None:
        """listener(exc) runs when the session drops; one-shot waiters are failed here."""
        self._lost_listeners.append(listener)

    def add_reconnected_listener(self, listener: Callable) -> None:
        """listener(connection) runs after a successful reconnect, before callers can send."""
        self._reconnected_listeners.append(listener)

    def add_closed_listener(self, listener: Callable) -> None:
        """listener(exc) runs when the session is gone for good and will not be re-established."""
        self._closed_listeners.append(listener)

    # ---------------------------------------------------------------- connect

    async def connect(self, host: Optional[str] = None, port: Optional[int] = None,
                      client_id: Optional[int] = None, timeout: Optional[float] = None) -> Connection:
        host = host or self.settings.host
        port = port or self.settings.port
        client_id = self.settings.client_id if client_id is None else client_id
        timeout = self.settings.connect_timeout if timeout is None else timeout

        if self.state == ConnectionState.CONNECTED:
            if self.connection.endpoint == (host, port, client_id):
                return self.connection
            raise ConnectError(ConnectFailure.REFUSED,
                               f"Already connected to {self.connection.endpoint}; disconnect first")

        self.state = ConnectionState.CONNECTING
        try:
            connection = await self._open(host, port, client_id, timeout)
        except ConnectError as e:
            self.state = ConnectionState.DISCONNECTED
            self.last_error = e
            logger.error(f"Connect to {host}:{port} (client {client_id}) failed: {e}")
            raise
        self.settings.host, self.settings.port, self.settings.client_id = host, port, client_id
        logger.info(f"Connected to {host}:{port} as client {client_id} "
                    f"(server version {connection.server_version})")
        return connection

    async def _open(self, host: str, port: int, client_id: int, timeout: float) -> Connection:
        """Handshake, start the reader and wait for the first next-valid-id."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            connection = await asyncio.wait_for(self._handshake(host, port, client_id), timeout)
        except asyncio.TimeoutError:
            raise ConnectError(ConnectFailure.TIMEOUT, f"Handshake with {host}:{port} timed out after {timeout}s")
        except OSError as e:
            raise ConnectError(ConnectFailure.REFUSED, f"Cannot reach {host}:{port}: {e}")

        self._activate(connection)
        try:
            await asyncio.wait_for(self._ready.wait(), max(deadline - loop.time(), 0.001))
        except asyncio.TimeoutError:
            await self._teardown()
            raise ConnectError(ConnectFailure.TIMEOUT, f"No next valid id from {host}:{port} within {timeout}s")
        if self.connection is not connection:
            raise ConnectError(ConnectFailure.REFUSED, f"Session with {host}:{port} dropped during startup")
        return connection

    async def _handshake(self, host: str, port: int, client_id: int) -> Connection:
        reader, writer = await asyncio.open_connection(host, port)
        try:
            self.codec.reset()
            writer.write(make_handshake(self.settings.min_version, self.settings.max_version))
            await writer.drain()

            fields = self.codec.next_raw_frame()
            while fields is None:
                data = await reader.read(READ_CHUNK)
                if not data:
                    raise ConnectError(ConnectFailure.REFUSED, "Gateway closed the socket during handshake")
                fields = self.codec.next_raw_frame(data)

            try:
                server_version = int(fields[0])
            except (IndexError, ValueError):
                raise ConnectError(ConnectFailure.VERSION_MISMATCH, f"Malformed handshake reply {fields!r}")
            if not self.settings.min_version <= server_version <= self.settings.max_version:
                raise ConnectError(
                    ConnectFailure.VERSION_MISMATCH,
                    f"Server version {server_version} outside "
                    f"{self.settings.min_version}..{self.settings.max_version}"
                )
            connection_time = fields[1] if len(fields) > 1 else ''

            writer.write(self.codec.encode(StartApi(client_id, self.settings.optional_capabilities)))
            await writer.drain()
        except ProtocolError as e:
            writer.close()
            raise ConnectError(ConnectFailure.VERSION_MISMATCH, f"Bad handshake frame: {e}")
        except BaseException:
            writer.close()
            raise

        now = asyncio.get_running_loop().time()
        return Connection(
            host=host, port=port, client_id=client_id,
            server_version=server_version, connection_time=connection_time,
            reader=reader, writer=writer,
            last_received_at=now, last_heartbeat_at=now
        )

    def _activate(self, connection: Connection) -> None:
        self.connection = connection
        self.protocol_errors = 0
        self._ready = asyncio.Event()
        self.state = ConnectionState.CONNECTED
        self._reader_task = asyncio.create_task(self._read_loop(connection))
        if self.settings.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(connection))

    # ---------------------------------------------------------------- io

    async def send(self, data: bytes) -> None:
        if self.state != ConnectionState.CONNECTED or self.connection is None:
            raise ConnectionLost(f"Cannot send while {self.state.value}")
        connection = self.connection
        async with self._write_lock:
            try:
                connection.writer.write(data)
                await connection.writer.drain()
            except (ConnectionError, OSError) as e:
                lost = ConnectionLost(f"Send failed: {e}")
                self._connection_lost(lost, connection)
                raise lost from e

    async def _read_loop(self, connection: Connection) -> None:
        loop = asyncio.get_running_loop()
        try:
            # frames that arrived together with the handshake reply
            self._decode_available(connection, b'')
            while True:
                data = await connection.reader.read(READ_CHUNK)
                if not data:
                    raise ConnectionLost("Gateway closed the connection")
                connection.last_received_at = loop.time()
                self._decode_available(connection, data)
        except asyncio.CancelledError:
            raise
        except ConnectionLost as e:
            self._connection_lost(e, connection)
        except (ConnectionError, OSError) as e:
            self._connection_lost(ConnectionLost(f"Read failed: {e}"), connection)

    def _decode_available(self, connection: Connection, data: bytes) -> None:
        self.codec.frames.feed(data)
        while True:
            try:
                event = self.codec.decode()
            except ProtocolError as e:
                self.protocol_errors += 1
                logger.warning(f"Skipping bad frame ({self.protocol_errors}): {e}")
                if not e.recoverable:
                    raise ConnectionLost(f"Framing lost: {e}")
                if self.protocol_errors >= self.settings.protocol_error_threshold:
                    raise ConnectionLost(f"{self.protocol_errors} protocol errors, dropping session")
                continue
            if event is NEED_MORE_BYTES:
                return
            self.frames_received += 1
            self._observe(connection, event)
            if self.on_event is not None:
                try:
                    self.on_event(event)
                except Exception as e:
                    logger.error(f"Error dispatching {type(event).__name__}: {e}", exc_info=True)

    def _observe(self, connection: Connection, event: Event) -> None:
        if isinstance(event, NextValidId):
            connection.next_valid_id = event.order_id
            if self._ready is not None:
                self._ready.set()
        elif isinstance(event, ManagedAccounts):
            connection.accounts = event.accounts
        elif isinstance(event, ErrorEvent) and event.code == 1100:
            logger.error(f"Gateway lost its upstream connectivity: {event.message}")
        elif isinstance(event, ErrorEvent) and event.code in (1101, 1102):
            logger.info(f"Gateway connectivity restored: {event.message}")

    async def _heartbeat_loop(self, connection: Connection) -> None:
        interval = self.settings.heartbeat_interval
        loop = asyncio.get_running_loop()
        ping = self.codec.encode(RequestCurrentTime())
        while self.connection is connection:
            await asyncio.sleep(interval)
            if loop.time() - connection.last_received_at > interval * 2:
                self._connection_lost(ConnectionLost("Heartbeat timed out"), connection)
                return
            try:
                await self.send(ping)
            except ConnectionLost:
                return
            connection.last_heartbeat_at = loop.time()

    # ---------------------------------------------------------------- loss and reconnection

    def _connection_lost(self, exc: ConnectionLost, connection: Optional[Connection] = None,
                         force_reconnect: bool = False) -> None:
        if connection is not None and connection is not self.connection:
            return
        if self.state not in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return
        logger.error(f"Connection lost: {exc}")
        self.last_error = exc
        starting = self._ready is not None and not self._ready.is_set()
        self._stop_tasks()
        self._close_writer()
        self.connection = None
        self.codec.reset()
        if starting:
            # _open is still waiting for the first next valid id and reports the failure
            self.state = ConnectionState.DISCONNECTED
            self._ready.set()
            return
        reconnect = force_reconnect or self.settings.auto_reconnect
        self.state = ConnectionState.RECONNECTING if reconnect else ConnectionState.DISCONNECTED
        self._notify_lost(exc)
        if reconnect:
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect(immediate=force_reconnect))
        else:
            self._notify_closed(exc)

    def _notify_lost(self, exc: BaseException) -> None:
        for listener in self._lost_listeners:
            try:
                listener(exc)
            except Exception as e:
                logger.error(f"Error in connection-lost listener: {e}", exc_info=True)

    def _notify_closed(self, exc: BaseException) -> None:
        for listener in self._closed_listeners:
            try:
                listener(exc)
            except Exception as e:
                logger.error(f"Error in connection-closed listener: {e}", exc_info=True)

    async def _reconnect(self, immediate: bool = False) -> bool:
        host, port, client_id = self.settings.host, self.settings.port, self.settings.client_id
        for attempt in range(1, self.settings.max_reconnect_attempts + 1):
            delay = 0 if immediate and attempt == 1 else self.settings.backoff(attempt)
            if delay:
                logger.info(f"Reconnect attempt {attempt} in {delay:.2f}s")
                await asyncio.sleep(delay)
            if self.state != ConnectionState.RECONNECTING:
                return False
            try:
                connection = await self._open(host, port, client_id, self.settings.connect_timeout)
            except ConnectError as e:
                self.state = ConnectionState.RECONNECTING
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                continue
            self.reconnect_count += 1
            logger.info(f"Reconnected to {host}:{port} after {attempt} attempt(s)")
            for listener in self._reconnected_listeners:
                try:
                    result = listener(connection)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Error in reconnect listener: {e}", exc_info=True)
            return True

        self.state = ConnectionState.DISCONNECTED
        logger.error(f"Giving up after {self.settings.max_reconnect_attempts} reconnect attempts")
        self._notify_closed(self.last_error or ConnectionLost("Reconnection gave up"))
        return False

    async def wait_reconnected(self, timeout: Optional[float] = None) -> bool:
        task = self._reconnect_task
        if task is None:
            return self.is_connected
        return await asyncio.wait_for(asyncio.shield(task), timeout)

    async def cycle(self) -> bool:
        """Drop and re-establish the session, then wait for the reconnect to finish."""
        if self.state != ConnectionState.CONNECTED:
            raise ConnectionLost(f"Cannot cycle while {self.state.value}")
        logger.info("Cycling the gateway session")
        self._connection_lost(ConnectionLost("Session cycled"), self.connection, force_reconnect=True)
        return await self.wait_reconnected()

    def _stop_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._reader_task, self._heartbeat_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reader_task = None
        self._heartbeat_task = None

    def _close_writer(self) -> None:
        if self.connection is not None:
            self.connection.writer.close()

    async def _teardown(self) -> None:
        connection = self.connection
        self._stop_tasks()
        self._close_writer()
        self.connection = None
        self.codec.reset()
        if connection is not None:
            try:
                await connection.writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def disconnect(self) -> None:
        """Close the session for good; one-shot waiters fail with ConnectionLost."""
        was = self.state
        self.state = ConnectionState.DISCONNECTED
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        await self._teardown()
        if was != ConnectionState.DISCONNECTED:
            logger.info("Disconnected from gateway")
            closed = ConnectionLost("Disconnected by client")
            self._notify_lost(closed)
            self._notify_closed(closed)

    def get_statistics(self) -> dict:
        connection = self.connection
        return {
            'state': self.state.value,
            'host': self.settings.host,
            'port': self.settings.port,
            'client_id': self.settings.client_id,
            'server_version': connection.server_version if connection else None,
            'accounts': list(connection.accounts) if connection else [],
            'frames_received': self.frames_received,
            'protocol_errors': self.protocol_errors,
            'reconnect_count': self.reconnect_count
        }
