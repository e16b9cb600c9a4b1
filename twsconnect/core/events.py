"""
Typed inbound events decoded from gateway frames.

Every event exposes `request_id`: the id the correlator routes on, or None
for untagged messages (server time, managed accounts, live executions...).
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Tuple

from .order import Contract

# gateway notices that carry no failure (market data farm status etc.)
INFORMATIONAL_CODES = range(2100, 2200)

# cancel request refused: the order keeps working
CANCEL_REJECT_CODES = {161, 10147, 10148}

# connectivity notices: 1100 lost, 1101/1102 restored
CONNECTIVITY_CODES = {1100, 1101, 1102, 1300, 2110}


class Event:
    """Base class of all inbound events; handlers registered for it see every event."""


class UntaggedEvent(Event):
    """Event the gateway sends without a request id."""

    @property
    def request_id(self) -> None:
        return None


@dataclass(frozen=True)
class TickPrice(Event):
    request_id: int
    tick_type: int
    price: Decimal
    size: Optional[Decimal] = None
    attributes: int = 0


@dataclass(frozen=True)
class TickSize(Event):
    request_id: int
    tick_type: int
    size: Decimal


@dataclass(frozen=True)
class TickString(Event):
    request_id: int
    tick_type: int
    value: str


@dataclass(frozen=True)
class TickGeneric(Event):
    request_id: int
    tick_type: int
    value: Decimal


@dataclass(frozen=True)
class TickSnapshotEnd(Event):
    request_id: int


@dataclass(frozen=True)
class MarketDataType(Event):
    request_id: int
    market_data_type: int


@dataclass(frozen=True)
class OrderStatusEvent(Event):
    order_id: int
    status: str
    filled: Decimal
    remaining: Decimal
    avg_fill_price: Decimal
    perm_id: int = 0
    parent_id: int = 0
    last_fill_price: Decimal = Decimal('0')
    client_id: int = 0
    why_held: str = ''
    mkt_cap_price: Decimal = Decimal('0')

    @property
    def request_id(self) -> int:
        return self.order_id


@dataclass(frozen=True)
class ErrorEvent(Event):
    request_id: Optional[int]
    code: int
    message: str

    @property
    def is_informational(self) -> bool:
        return self.code in INFORMATIONAL_CODES

    @property
    def is_cancel_reject(self) -> bool:
        return self.code in CANCEL_REJECT_CODES


@dataclass(frozen=True)
class OpenOrderEvent(UntaggedEvent):
    order_id: int
    contract: Contract
    action: str
    quantity: Decimal
    order_type: str
    limit_price: Optional[Decimal]
    aux_price: Optional[Decimal]
    tif: str
    parent_id: int
    oca_group: str
    account: str
    status: str
    perm_id: int = 0


@dataclass(frozen=True)
class OpenOrderEnd(UntaggedEvent):
    pass


@dataclass(frozen=True)
class ExecDetails(Event):
    request_id: Optional[int]
    order_id: int
    contract: Contract
    exec_id: str
    time: str
    account: str
    exchange: str
    side: str
    shares: Decimal
    price: Decimal
    perm_id: int = 0
    client_id: int = 0
    cumulative_quantity: Decimal = Decimal('0')
    average_price: Decimal = Decimal('0')
    order_ref: str = ''


@dataclass(frozen=True)
class ExecDetailsEnd(Event):
    request_id: int


@dataclass(frozen=True)
class CommissionReport(UntaggedEvent):
    exec_id: str
    commission: Decimal
    currency: str
    realized_pnl: Optional[Decimal] = None


@dataclass(frozen=True)
class NextValidId(UntaggedEvent):
    order_id: int


@dataclass(frozen=True)
class ManagedAccounts(UntaggedEvent):
    accounts: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CurrentTime(UntaggedEvent):
    time: int
