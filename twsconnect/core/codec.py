"""
Wire codec for the gateway's length-prefixed message protocol.

A frame is a 4-byte big-endian payload length followed by the payload, a
sequence of NUL-terminated ASCII fields. The first field of every message
after the handshake is the message id.
"""
import logging
import struct
from decimal import Decimal, InvalidOperation
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .errors import EncodingError, ProtocolError
from .events import (
    CommissionReport, CurrentTime, ErrorEvent, Event, ExecDetails, ExecDetailsEnd,
    ManagedAccounts, MarketDataType, NextValidId, OpenOrderEnd, OpenOrderEvent,
    OrderStatusEvent, TickGeneric, TickPrice, TickSize, TickSnapshotEnd, TickString
)
from .order import Contract, Order
from .requests import (
    CancelMarketData, CancelOrder, PlaceOrder, Request, RequestCurrentTime,
    RequestExecutions, RequestIds, RequestMarketData, RequestOpenOrders, StartApi
)

logger = logging.getLogger(__name__)

MIN_CLIENT_VERSION = 100
MAX_CLIENT_VERSION = 151
MAX_MSG_LEN = 0xFFFFFF
HEADER = struct.Struct('>I')

# the gateway's "no value" double
UNSET_DOUBLE = Decimal('1.7976931348623157E308')


class Outgoing(IntEnum):
    REQ_MKT_DATA = 1
    CANCEL_MKT_DATA = 2
    PLACE_ORDER = 3
    CANCEL_ORDER = 4
    REQ_OPEN_ORDERS = 5
    REQ_EXECUTIONS = 7
    REQ_IDS = 8
    REQ_CURRENT_TIME = 49
    START_API = 71


class Incoming(IntEnum):
    TICK_PRICE = 1
    TICK_SIZE = 2
    ORDER_STATUS = 3
    ERR_MSG = 4
    OPEN_ORDER = 5
    NEXT_VALID_ID = 9
    EXECUTION_DATA = 11
    MANAGED_ACCTS = 15
    TICK_GENERIC = 45
    TICK_STRING = 46
    CURRENT_TIME = 49
    OPEN_ORDER_END = 53
    EXECUTION_DATA_END = 55
    TICK_SNAPSHOT_END = 57
    MARKET_DATA_TYPE = 58
    COMMISSION_REPORT = 59


class NeedMoreBytes:
    """Returned by decode() while the buffered input holds no complete frame."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return 'NEED_MORE_BYTES'


NEED_MORE_BYTES = NeedMoreBytes()


def make_field(value) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, IntEnum):
        return str(int(value))
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(value.quantize(Decimal(1)))
        return format(value.normalize(), 'f')
    return str(value)


def make_frame(payload: bytes) -> bytes:
    if len(payload) > MAX_MSG_LEN:
        raise EncodingError(f"Message of {len(payload)} bytes exceeds the frame limit")
    return HEADER.pack(len(payload)) + payload


def make_msg(fields: Sequence) -> bytes:
    """Build a complete frame from a list of field values."""
    try:
        payload = ''.join(make_field(f) + '\0' for f in fields).encode('ascii')
    except UnicodeEncodeError as e:
        raise EncodingError(f"Non-ASCII field value: {e}")
    return make_frame(payload)


def make_handshake(min_version: int = MIN_CLIENT_VERSION, max_version: int = MAX_CLIENT_VERSION) -> bytes:
    return b'API\0' + make_frame(f'v{min_version}..{max_version}'.encode('ascii'))


class FrameDecoder:
    """
    Incremental frame splitter. Bytes go in through feed(); complete frames
    come out of next_frame() as tuples of field strings.
    """
    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> None:
        if data:
            self._buffer.extend(data)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def next_frame(self) -> Optional[Tuple[str, ...]]:
        if len(self._buffer) < HEADER.size:
            return None
        (size,) = HEADER.unpack_from(self._buffer)
        if size > MAX_MSG_LEN:
            self._buffer.clear()
            raise ProtocolError(f"Frame length {size} exceeds {MAX_MSG_LEN}", recoverable=False)
        end = HEADER.size + size
        if len(self._buffer) < end:
            return None
        payload = bytes(self._buffer[HEADER.size:end])
        del self._buffer[:end]

        if not payload:
            return ()
        if not payload.endswith(b'\0'):
            raise ProtocolError("Frame payload is not NUL terminated")
        try:
            return tuple(payload[:-1].decode('ascii').split('\0'))
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame payload is not ASCII: {e}")


class FieldReader:
    """Sequential typed access to the fields of one frame."""
    def __init__(self, fields: Sequence[str]):
        self.fields = fields
        self.pos = 0

    def read_str(self) -> str:
        if self.pos >= len(self.fields):
            raise ProtocolError(f"Frame truncated after {len(self.fields)} fields")
        value = self.fields[self.pos]
        self.pos += 1
        return value

    def read_int(self) -> int:
        text = self.read_str()
        if text == '':
            return 0
        try:
            return int(text)
        except ValueError:
            raise ProtocolError(f"Expected integer at field {self.pos}, got {text!r}")

    def read_decimal(self) -> Decimal:
        value = self.read_optional_decimal()
        return value if value is not None else Decimal('0')

    def read_optional_decimal(self) -> Optional[Decimal]:
        text = self.read_str()
        if text == '':
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            raise ProtocolError(f"Expected number at field {self.pos}, got {text!r}")
        if value == UNSET_DOUBLE:
            return None
        return value

    def read_bool(self) -> bool:
        return self.read_int() != 0

    def read_contract(self, with_primary: bool = False) -> Contract:
        con_id = self.read_int()
        symbol = self.read_str()
        sec_type = self.read_str()
        expiry = self.read_str()
        strike = self.read_decimal()
        right = self.read_str()
        multiplier = self.read_str()
        exchange = self.read_str()
        primary = self.read_str() if with_primary else ''
        currency = self.read_str()
        local_symbol = self.read_str()
        trading_class = self.read_str()
        try:
            return Contract(
                symbol=symbol, sec_type=sec_type, exchange=exchange, currency=currency,
                expiry=expiry, strike=strike, right=right, multiplier=multiplier,
                local_symbol=local_symbol, con_id=con_id, primary_exchange=primary,
                trading_class=trading_class
            )
        except EncodingError as e:
            raise ProtocolError(f"Bad contract in frame: {e}")


# ---------------------------------------------------------------- encoding

def _contract_fields(contract: Contract, with_primary: bool = True) -> list:
    fields = [
        contract.con_id,
        contract.symbol,
        contract.sec_type,
        contract.expiry,
        contract.strike,
        contract.right,
        contract.multiplier,
        contract.exchange,
    ]
    if with_primary:
        fields.append(contract.primary_exchange)
    fields += [contract.currency, contract.local_symbol, contract.trading_class]
    return fields


def _mkt_data_fields(request: RequestMarketData) -> list:
    if request.request_id is None:
        raise EncodingError("Market data request has no request id")
    return [request.request_id] + _contract_fields(request.contract) + [
        False,                  # combo legs
        False,                  # delta neutral contract
        request.generic_ticks,
        request.snapshot,
        request.regulatory_snapshot,
        '',                     # mkt data options
    ]


def _place_order_fields(request: PlaceOrder) -> list:
    order: Order = request.order
    if order.order_id is None:
        raise EncodingError("Order has no order id")
    order.validate()
    contract = order.contract
    return [order.order_id] + _contract_fields(contract) + [
        contract.sec_id_type,
        contract.sec_id,
        order.action.value,
        order.quantity,
        order.order_type.value,
        order.limit_price,
        order.aux_price,
        order.tif.value,
        order.oca_group,
        order.account,
        order.order_ref,
        order.transmit,
        order.parent_id,
        order.outside_rth,
        order.good_after_time,
        order.good_till_date,
        order.oca_type,
        order.trail_stop_price,
        order.trailing_percent,
        order.what_if,
    ]


def _executions_fields(request: RequestExecutions) -> list:
    if request.request_id is None:
        raise EncodingError("Executions request has no request id")
    return [
        request.request_id,
        request.client_id,
        request.account,
        request.time,
        request.symbol,
        request.sec_type,
        request.exchange,
        request.side.upper(),
    ]


# request class -> (message id, message version, field builder)
OUTGOING_LAYOUTS: Dict[type, Tuple[Outgoing, int, Callable[[Request], list]]] = {
    StartApi: (Outgoing.START_API, 2, lambda r: [r.client_id, r.optional_capabilities]),
    RequestMarketData: (Outgoing.REQ_MKT_DATA, 11, _mkt_data_fields),
    CancelMarketData: (Outgoing.CANCEL_MKT_DATA, 2, lambda r: [r.request_id]),
    PlaceOrder: (Outgoing.PLACE_ORDER, 45, _place_order_fields),
    CancelOrder: (Outgoing.CANCEL_ORDER, 1, lambda r: [r.order_id]),
    RequestOpenOrders: (Outgoing.REQ_OPEN_ORDERS, 1, lambda r: []),
    RequestExecutions: (Outgoing.REQ_EXECUTIONS, 3, _executions_fields),
    RequestIds: (Outgoing.REQ_IDS, 1, lambda r: [r.num_ids]),
    RequestCurrentTime: (Outgoing.REQ_CURRENT_TIME, 1, lambda r: []),
}


# ---------------------------------------------------------------- decoding

def _tick_price(r: FieldReader) -> Event:
    r.read_int()
    return TickPrice(
        request_id=r.read_int(),
        tick_type=r.read_int(),
        price=r.read_decimal(),
        size=r.read_optional_decimal(),
        attributes=r.read_int()
    )


def _tick_size(r: FieldReader) -> Event:
    r.read_int()
    return TickSize(request_id=r.read_int(), tick_type=r.read_int(), size=r.read_decimal())


def _tick_generic(r: FieldReader) -> Event:
    r.read_int()
    return TickGeneric(request_id=r.read_int(), tick_type=r.read_int(), value=r.read_decimal())


def _tick_string(r: FieldReader) -> Event:
    r.read_int()
    return TickString(request_id=r.read_int(), tick_type=r.read_int(), value=r.read_str())


def _order_status(r: FieldReader) -> Event:
    r.read_int()
    return OrderStatusEvent(
        order_id=r.read_int(),
        status=r.read_str(),
        filled=r.read_decimal(),
        remaining=r.read_decimal(),
        avg_fill_price=r.read_decimal(),
        perm_id=r.read_int(),
        parent_id=r.read_int(),
        last_fill_price=r.read_decimal(),
        client_id=r.read_int(),
        why_held=r.read_str(),
        mkt_cap_price=r.read_decimal()
    )


def _err_msg(r: FieldReader) -> Event:
    r.read_int()
    request_id = r.read_int()
    return ErrorEvent(
        request_id=request_id if request_id >= 0 else None,
        code=r.read_int(),
        message=r.read_str()
    )


def _open_order(r: FieldReader) -> Event:
    r.read_int()
    order_id = r.read_int()
    contract = r.read_contract()
    return OpenOrderEvent(
        order_id=order_id,
        contract=contract,
        action=r.read_str(),
        quantity=r.read_decimal(),
        order_type=r.read_str(),
        limit_price=r.read_optional_decimal(),
        aux_price=r.read_optional_decimal(),
        tif=r.read_str(),
        oca_group=r.read_str(),
        account=r.read_str(),
        parent_id=r.read_int(),
        perm_id=r.read_int(),
        status=r.read_str()
    )


def _execution_data(r: FieldReader) -> Event:
    r.read_int()
    request_id = r.read_int()
    order_id = r.read_int()
    contract = r.read_contract()
    exec_id = r.read_str()
    time = r.read_str()
    account = r.read_str()
    exchange = r.read_str()
    side = r.read_str()
    shares = r.read_decimal()
    price = r.read_decimal()
    perm_id = r.read_int()
    client_id = r.read_int()
    r.read_int()  # liquidation
    return ExecDetails(
        request_id=request_id if request_id >= 0 else None,
        order_id=order_id,
        contract=contract,
        exec_id=exec_id,
        time=time,
        account=account,
        exchange=exchange,
        side=side,
        shares=shares,
        price=price,
        perm_id=perm_id,
        client_id=client_id,
        cumulative_quantity=r.read_decimal(),
        average_price=r.read_decimal(),
        order_ref=r.read_str()
    )


def _commission_report(r: FieldReader) -> Event:
    r.read_int()
    return CommissionReport(
        exec_id=r.read_str(),
        commission=r.read_decimal(),
        currency=r.read_str(),
        realized_pnl=r.read_optional_decimal()
    )


def _managed_accounts(r: FieldReader) -> Event:
    r.read_int()
    accounts = tuple(a for a in r.read_str().split(',') if a)
    return ManagedAccounts(accounts=accounts)


def _versioned(factory):
    def parse(r: FieldReader) -> Event:
        r.read_int()
        return factory(r)
    return parse


INCOMING_PARSERS: Dict[int, Callable[[FieldReader], Event]] = {
    Incoming.TICK_PRICE: _tick_price,
    Incoming.TICK_SIZE: _tick_size,
    Incoming.ORDER_STATUS: _order_status,
    Incoming.ERR_MSG: _err_msg,
    Incoming.OPEN_ORDER: _open_order,
    Incoming.NEXT_VALID_ID: _versioned(lambda r: NextValidId(order_id=r.read_int())),
    Incoming.EXECUTION_DATA: _execution_data,
    Incoming.MANAGED_ACCTS: _managed_accounts,
    Incoming.TICK_GENERIC: _tick_generic,
    Incoming.TICK_STRING: _tick_string,
    Incoming.CURRENT_TIME: _versioned(lambda r: CurrentTime(time=r.read_int())),
    Incoming.OPEN_ORDER_END: _versioned(lambda r: OpenOrderEnd()),
    Incoming.EXECUTION_DATA_END: _versioned(lambda r: ExecDetailsEnd(request_id=r.read_int())),
    Incoming.TICK_SNAPSHOT_END: _versioned(lambda r: TickSnapshotEnd(request_id=r.read_int())),
    Incoming.MARKET_DATA_TYPE: _versioned(
        lambda r: MarketDataType(request_id=r.read_int(), market_data_type=r.read_int())),
    Incoming.COMMISSION_REPORT: _commission_report,
}


class WireCodec:
    """
    Encodes typed requests into frames and decodes inbound bytes into events.
    The only state is the partial-input buffer.
    """
    def __init__(self):
        self.frames = FrameDecoder()

    def encode(self, request: Request) -> bytes:
        layout = OUTGOING_LAYOUTS.get(type(request))
        if layout is None:
            raise EncodingError(f"No wire layout for {type(request).__name__}")
        msg_id, version, build = layout
        return make_msg([msg_id, version] + build(request))

    def decode(self, data: bytes = b'') -> Union[Event, NeedMoreBytes]:
        """
        Buffer `data` and return the next complete event, or NEED_MORE_BYTES.
        Call again with no data to drain further frames already buffered.
        """
        self.frames.feed(data)
        fields = self.frames.next_frame()
        if fields is None:
            return NEED_MORE_BYTES
        return self.decode_fields(fields)

    def decode_fields(self, fields: Sequence[str]) -> Event:
        if not fields:
            raise ProtocolError("Empty frame")
        reader = FieldReader(fields)
        msg_id = reader.read_int()
        parser = INCOMING_PARSERS.get(msg_id)
        if parser is None:
            raise ProtocolError(f"Unknown message id {msg_id}")
        return parser(reader)

    def next_raw_frame(self, data: bytes = b'') -> Optional[Tuple[str, ...]]:
        """Frame-level access used for the handshake reply, which has no message id."""
        self.frames.feed(data)
        return self.frames.next_frame()

    def reset(self) -> None:
        self.frames.reset()


def encode_fields(msg_id: int, version: int, fields: List) -> bytes:
    """Build an inbound-style frame; used by tooling that plays the gateway side."""
    return make_msg([msg_id, version] + list(fields))
