"""
Typed outbound requests, one class per gateway action.
Field checks run at construction so a bad request never reaches the codec.
"""
from dataclasses import dataclass
from typing import Optional

from .errors import EncodingError
from .order import Contract, Order


class Request:
    """Base class for outbound requests. A `request_id` of None means 'assign one'."""


class UntaggedRequest(Request):
    """Request whose replies carry no request id."""

    @property
    def request_id(self) -> None:
        return None


@dataclass(frozen=True)
class StartApi(UntaggedRequest):
    client_id: int
    optional_capabilities: str = ''

    def __post_init__(self):
        if self.client_id < 0:
            raise EncodingError("clientId must be non-negative")


@dataclass(frozen=True)
class PlaceOrder(Request):
    order: Order

    def __post_init__(self):
        self.order.validate()

    @property
    def request_id(self) -> Optional[int]:
        return self.order.order_id


@dataclass(frozen=True)
class CancelOrder(Request):
    order_id: int

    def __post_init__(self):
        if self.order_id is None or self.order_id < 0:
            raise EncodingError("Cancel needs a valid order id")

    @property
    def request_id(self) -> int:
        return self.order_id


@dataclass(frozen=True)
class RequestMarketData(Request):
    contract: Contract
    request_id: Optional[int] = None
    generic_ticks: str = ''
    snapshot: bool = False
    regulatory_snapshot: bool = False

    def __post_init__(self):
        self.contract.validate()
        if self.snapshot and self.generic_ticks:
            raise EncodingError("Snapshot requests cannot carry generic tick types")


@dataclass(frozen=True)
class CancelMarketData(Request):
    request_id: int


@dataclass(frozen=True)
class RequestExecutions(Request):
    request_id: Optional[int] = None
    client_id: int = 0
    account: str = ''
    time: str = ''
    symbol: str = ''
    sec_type: str = ''
    exchange: str = ''
    side: str = ''

    def __post_init__(self):
        if self.side and self.side.upper() not in ('BUY', 'SELL'):
            raise EncodingError(f"Invalid execution filter side: {self.side}")


@dataclass(frozen=True)
class RequestOpenOrders(UntaggedRequest):
    pass


@dataclass(frozen=True)
class RequestIds(UntaggedRequest):
    num_ids: int = 1

    def __post_init__(self):
        if self.num_ids < 1:
            raise EncodingError("num_ids must be at least 1")


@dataclass(frozen=True)
class RequestCurrentTime(UntaggedRequest):
    pass
