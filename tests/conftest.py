import asyncio
import struct
from decimal import Decimal
from typing import Callable, List, Optional

import pytest
import pytest_asyncio

from twsconnect.core.codec import FrameDecoder, WireCodec, make_msg
from twsconnect.core.connection import ConnectionSettings
from twsconnect.core.correlator import Correlator
from twsconnect.core.errors import ConnectionLost
from twsconnect.core.order_manager import OrderManager
from twsconnect.core.subscriptions import SubscriptionRegistry


# ---------------------------------------------------------------- inbound frame builders

def order_status_frame(order_id, status, filled=0, remaining=0, avg_price=0, perm_id=0,
                       parent_id=0, last_fill_price=0, why_held=''):
    return make_msg([3, 1, order_id, status, filled, remaining, avg_price, perm_id,
                     parent_id, last_fill_price, 0, why_held, 0])


def error_frame(request_id, code, message='error'):
    return make_msg([4, 2, request_id, code, message])


def tick_price_frame(request_id, tick_type, price, size=''):
    return make_msg([1, 6, request_id, tick_type, price, size, 0])


def tick_size_frame(request_id, tick_type, size):
    return make_msg([2, 1, request_id, tick_type, size])


def tick_string_frame(request_id, tick_type, value):
    return make_msg([46, 1, request_id, tick_type, value])


def snapshot_end_frame(request_id):
    return make_msg([57, 1, request_id])


def next_valid_id_frame(order_id):
    return make_msg([9, 1, order_id])


def managed_accounts_frame(accounts):
    return make_msg([15, 1, accounts])


def current_time_frame(epoch):
    return make_msg([49, 1, epoch])


def execution_frame(request_id, order_id, exec_id, side, shares, price, symbol='GOOG',
                    cum_qty=0, avg_price=0):
    return make_msg([11, 10, request_id, order_id,
                     0, symbol, 'STK', '', 0, '', '', 'SMART', 'USD', symbol, '',
                     exec_id, '20261015 10:00:00', 'DU123', 'NASDAQ', side, shares, price,
                     0, 0, 0, cum_qty, avg_price, ''])


def execution_end_frame(request_id):
    return make_msg([55, 1, request_id])


def commission_frame(exec_id, commission, currency='USD'):
    return make_msg([59, 1, exec_id, commission, currency, '', '', ''])


def open_order_frame(order_id, symbol, action, quantity, order_type, limit_price, status):
    return make_msg([5, 1, order_id,
                     0, symbol, 'STK', '', 0, '', '', 'SMART', 'USD', symbol, '',
                     action, quantity, order_type, limit_price, '', 'GTC', '', 'DU123', 0, 0, status])


def open_order_end_frame():
    return make_msg([53, 1])


def parse_frames(frames: List[bytes]) -> List[tuple]:
    decoder = FrameDecoder()
    out = []
    for frame in frames:
        decoder.feed(frame)
        fields = decoder.next_frame()
        while fields is not None:
            out.append(fields)
            fields = decoder.next_frame()
    return out


def feed(correlator: Correlator, *frames: bytes) -> None:
    """Decode frames as the reader task would and dispatch the events."""
    codec = WireCodec()
    for frame in frames:
        correlator.dispatch(codec.decode(frame))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------- in-memory transport

class RecordingTransport:
    """Stands in for the connection manager's send(); records every frame."""
    def __init__(self):
        self.frames: List[bytes] = []
        self.connected = True

    async def send(self, data: bytes) -> None:
        if not self.connected:
            raise ConnectionLost("not connected")
        self.frames.append(data)

    @property
    def messages(self) -> List[tuple]:
        return parse_frames(self.frames)

    def messages_of(self, msg_id: int) -> List[tuple]:
        return [m for m in self.messages if int(m[0]) == msg_id]


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def correlator(transport):
    return Correlator(transport.send)


@pytest.fixture
def order_manager(correlator):
    return OrderManager(correlator)


@pytest.fixture
def registry(correlator):
    return SubscriptionRegistry(correlator)


# ---------------------------------------------------------------- fake gateway

class GatewaySession:
    def __init__(self, reader, writer):
        self.reader = reader
        self.writer = writer
        self.received: List[tuple] = []

    def send(self, *frames: bytes) -> None:
        for frame in frames:
            self.writer.write(frame)

    def messages_of(self, msg_id: int) -> List[tuple]:
        return [m for m in self.received if int(m[0]) == msg_id]


class FakeGateway:
    """
    Scripted in-process gateway speaking the wire protocol.
    `responder(session, fields)` is called for every client message after START_API.
    """
    def __init__(self, server_version: int = 151, next_valid_id: int = 1, accounts: str = 'DU123',
                 silent: bool = False):
        self.server_version = server_version
        self.next_valid_id = next_valid_id
        self.accounts = accounts
        self.silent = silent
        self.sessions: List[GatewaySession] = []
        self.responder: Optional[Callable] = None
        self.server = None
        self.port = None

    async def start(self):
        self.server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader, writer):
        session = GatewaySession(reader, writer)
        self.sessions.append(session)
        try:
            prefix = await reader.readexactly(4)
            assert prefix == b'API\0'
            (size,) = struct.unpack('>I', await reader.readexactly(4))
            await reader.readexactly(size)
            if self.silent:
                await reader.read()
                return
            writer.write(make_msg([self.server_version, '20261015 10:00:00 EST']))
            await writer.drain()

            decoder = FrameDecoder()
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                decoder.feed(data)
                fields = decoder.next_frame()
                while fields is not None:
                    session.received.append(fields)
                    await self._respond(session, fields)
                    fields = decoder.next_frame()
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    async def _respond(self, session: GatewaySession, fields: tuple):
        msg_id = int(fields[0])
        if msg_id == 71:
            session.send(next_valid_id_frame(self.next_valid_id), managed_accounts_frame(self.accounts))
        elif self.responder is not None:
            result = self.responder(session, fields)
            if asyncio.iscoroutine(result):
                await result

    def drop_all(self):
        for session in self.sessions:
            session.writer.close()

    async def stop(self):
        self.drop_all()
        self.server.close()
        await self.server.wait_closed()


@pytest_asyncio.fixture
async def gateway():
    gw = await FakeGateway().start()
    yield gw
    await gw.stop()


def fast_settings(port: int, **overrides) -> ConnectionSettings:
    values = dict(
        host='127.0.0.1',
        port=port,
        client_id=7,
        connect_timeout=2.0,
        request_timeout=2.0,
        reconnect_backoff_base=0.01,
        reconnect_backoff_max=0.05,
        max_reconnect_attempts=5,
        heartbeat_interval=0,
    )
    values.update(overrides)
    return ConnectionSettings(**values)


D = Decimal
