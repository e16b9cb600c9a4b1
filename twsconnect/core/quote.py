from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

# tick type ids reported by TICK_PRICE / TICK_SIZE / TICK_STRING
BID_SIZE = 0
BID = 1
ASK = 2
ASK_SIZE = 3
LAST = 4
LAST_SIZE = 5
HIGH = 6
LOW = 7
VOLUME = 8
CLOSE = 9
OPEN = 14
LAST_TIMESTAMP = 45

PRICE_FIELDS = {
    BID: 'bid_price',
    ASK: 'ask_price',
    LAST: 'last_price',
    HIGH: 'high',
    LOW: 'low',
    CLOSE: 'close',
    OPEN: 'open',
}

SIZE_FIELDS = {
    BID_SIZE: 'bid_size',
    ASK_SIZE: 'ask_size',
    LAST_SIZE: 'last_size',
    VOLUME: 'volume',
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Quote:
    """
    Immutable top-of-book snapshot for one subscription.
    Every tick produces a new Quote carrying forward the previous values.
    """
    symbol: str
    request_id: int
    bid_price: Optional[Decimal] = None
    bid_size: Optional[Decimal] = None
    ask_price: Optional[Decimal] = None
    ask_size: Optional[Decimal] = None
    last_price: Optional[Decimal] = None
    last_size: Optional[Decimal] = None
    open: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    close: Optional[Decimal] = None
    volume: Optional[Decimal] = None
    tick_type: Optional[int] = None
    arrival_time: datetime = field(default_factory=_now)
    event_time: Optional[datetime] = None

    def with_price(self, tick_type: int, price: Decimal, size: Optional[Decimal] = None) -> "Quote":
        """Return a new quote with a price tick (and its bundled size) applied."""
        changes = {'tick_type': tick_type, 'arrival_time': _now()}
        name = PRICE_FIELDS.get(tick_type)
        if name is not None:
            changes[name] = price
        if size is not None:
            size_name = {BID: 'bid_size', ASK: 'ask_size', LAST: 'last_size'}.get(tick_type)
            if size_name is not None:
                changes[size_name] = size
        return replace(self, **changes)

    def with_size(self, tick_type: int, size: Decimal) -> "Quote":
        changes = {'tick_type': tick_type, 'arrival_time': _now()}
        name = SIZE_FIELDS.get(tick_type)
        if name is not None:
            changes[name] = size
        return replace(self, **changes)

    def with_string(self, tick_type: int, value: str) -> "Quote":
        changes = {'tick_type': tick_type, 'arrival_time': _now()}
        if tick_type == LAST_TIMESTAMP and value:
            try:
                changes['event_time'] = datetime.fromtimestamp(int(value), tz=timezone.utc)
            except ValueError:
                pass
        return replace(self, **changes)

    @property
    def spread(self) -> Optional[Decimal]:
        if self.bid_price is None or self.ask_price is None:
            return None
        return self.ask_price - self.bid_price

    def to_dict(self) -> dict:
        """Convert quote to dictionary for API responses and WebSocket streaming."""
        def fmt(value):
            return str(value) if value is not None else None

        return {
            'symbol': self.symbol,
            'request_id': self.request_id,
            'bid_price': fmt(self.bid_price),
            'bid_size': fmt(self.bid_size),
            'ask_price': fmt(self.ask_price),
            'ask_size': fmt(self.ask_size),
            'last_price': fmt(self.last_price),
            'last_size': fmt(self.last_size),
            'open': fmt(self.open),
            'high': fmt(self.high),
            'low': fmt(self.low),
            'close': fmt(self.close),
            'volume': fmt(self.volume),
            'tick_type': self.tick_type,
            'arrival_time': self.arrival_time.isoformat(),
            'event_time': self.event_time.isoformat() if self.event_time else None
        }

    def __str__(self) -> str:
        return f"Quote: {self.symbol} {self.bid_price}/{self.ask_price} last {self.last_price}"
