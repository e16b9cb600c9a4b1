import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

from .correlator import Correlator, PendingKind
from .errors import ConnectionLost, UnknownSubscriptionError
from .events import (
    ErrorEvent, Event, MarketDataType, TickGeneric, TickPrice, TickSize, TickSnapshotEnd, TickString
)
from .order import Contract
from .quote import Quote
from .requests import CancelMarketData, RequestMarketData

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """A live quote stream with a fixed-capacity FIFO buffer."""
    request_id: int
    contract: Contract
    capacity: int
    request: RequestMarketData
    buffer: Deque[Quote] = field(default=None)
    latest: Optional[Quote] = None
    received_count: int = 0
    market_data_type: int = 1
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.buffer is None:
            self.buffer = deque(maxlen=self.capacity)
        if self.latest is None:
            self.latest = Quote(symbol=self.contract.symbol, request_id=self.request_id)

    @property
    def symbol(self) -> str:
        return self.contract.symbol

    def to_dict(self) -> dict:
        return {
            'request_id': self.request_id,
            'symbol': self.symbol,
            'capacity': self.capacity,
            'buffered': len(self.buffer),
            'received_count': self.received_count,
            'market_data_type': self.market_data_type,
            'last_error': self.last_error,
            'latest': self.latest.to_dict() if self.latest.tick_type is not None else None
        }


def fold_tick(quote: Quote, event: Event) -> Optional[Quote]:
    """Apply one tick event to a quote; None when the event carries no quote field."""
    if isinstance(event, TickPrice):
        return quote.with_price(event.tick_type, event.price, event.size)
    if isinstance(event, TickSize):
        return quote.with_size(event.tick_type, event.size)
    if isinstance(event, TickString):
        return quote.with_string(event.tick_type, event.value)
    return None


class SubscriptionRegistry:
    """
    Live quote subscriptions. Quotes go into per-subscription ring buffers
    (oldest evicted first). A registry-wide quote counter triggers a session
    cycle every `reconnect_every` quotes; 0 disables that.
    """
    def __init__(self, correlator: Correlator,
                 cycle_session: Optional[Callable[[], Awaitable]] = None,
                 reconnect_every: int = 0, default_capacity: int = 1):
        if default_capacity < 1:
            raise ValueError("Buffer capacity must be at least 1")
        self.correlator = correlator
        self.default_capacity = default_capacity
        self.cycle_session = cycle_session
        self.reconnect_every = reconnect_every
        self.subscriptions: Dict[int, Subscription] = {}
        self.quote_counter = 0
        self.total_quotes = 0
        self.cycles = 0
        self.quote_callbacks: List[Callable] = []
        self._cycle_task: Optional[asyncio.Task] = None
        # streams live when the session dropped; only these are re-sent on reconnect
        self._dropped: Set[int] = set()
        self._tasks = set()

    async def subscribe(self, contract: Union[Contract, str], capacity: Optional[int] = None,
                        reconnect_every: Optional[int] = None, generic_ticks: str = '') -> int:
        """Open a quote stream keeping the newest `capacity` quotes (`default_capacity` when None)."""
        if capacity is None:
            capacity = self.default_capacity
        if capacity < 1:
            raise ValueError("Buffer capacity must be at least 1")
        if reconnect_every is not None:
            if reconnect_every < 0:
                raise ValueError("reconnect_every must be >= 0")
            self.reconnect_every = reconnect_every
        if isinstance(contract, str):
            contract = Contract(symbol=contract)

        request = RequestMarketData(contract, request_id=self.correlator.next_id(), generic_ticks=generic_ticks)
        sub = Subscription(request.request_id, contract, capacity, request)
        self.subscriptions[sub.request_id] = sub
        try:
            await self.correlator.submit(
                request,
                kind=PendingKind.STREAMING,
                raise_errors=False,
                sink=partial(self._on_event, sub),
                collect=False
            )
        except BaseException:
            self.subscriptions.pop(sub.request_id, None)
            raise
        logger.info(f"Subscribed to {contract.symbol} as request {sub.request_id} (capacity {capacity})")
        return sub.request_id

    def _on_event(self, sub: Subscription, event: Event) -> None:
        quote = fold_tick(sub.latest, event)
        if quote is not None:
            self._push(sub, quote)
        elif isinstance(event, MarketDataType):
            sub.market_data_type = event.market_data_type
        elif isinstance(event, ErrorEvent) and not event.is_informational:
            sub.last_error = f"{event.code}: {event.message}"
            logger.warning(f"Market data error on {sub.symbol} ({sub.request_id}): {sub.last_error}")
        elif isinstance(event, TickGeneric):
            logger.debug(f"Generic tick {event.tick_type}={event.value} on {sub.symbol}")

    def _push(self, sub: Subscription, quote: Quote) -> None:
        sub.latest = quote
        sub.buffer.append(quote)
        sub.received_count += 1
        self.total_quotes += 1
        self.quote_counter += 1
        self._notify_quote(sub, quote)

        if self.reconnect_every and self.quote_counter >= self.reconnect_every:
            self.quote_counter = 0
            if self.cycle_session is not None and (self._cycle_task is None or self._cycle_task.done()):
                logger.info(f"{self.reconnect_every} quotes received, cycling the session")
                self._cycle_task = asyncio.get_running_loop().create_task(self._cycle())

    async def _cycle(self) -> None:
        try:
            await self.cycle_session()
            self.cycles += 1
        except ConnectionLost as e:
            logger.error(f"Session cycle failed: {e}")

    def pop_all(self, request_id: int) -> List[Quote]:
        """Drain buffered quotes in arrival order without waiting."""
        sub = self.get(request_id)
        quotes = list(sub.buffer)
        sub.buffer.clear()
        return quotes

    def peek(self, request_id: int) -> Quote:
        return self.get(request_id).latest

    async def unsubscribe(self, request_id: int) -> List[Quote]:
        """Cancel the stream and return the quotes that were never popped."""
        sub = self.subscriptions.pop(request_id, None)
        if sub is None:
            raise UnknownSubscriptionError(f"No subscription with id {request_id}")
        self.correlator.retire(request_id)
        try:
            await self.correlator.send(CancelMarketData(request_id))
        except ConnectionLost:
            logger.info(f"Not connected; subscription {request_id} ended with the session")
        logger.info(f"Unsubscribed {sub.symbol} ({request_id}), {len(sub.buffer)} unread quotes")
        return list(sub.buffer)

    def on_connection_lost(self, exc: Optional[BaseException] = None) -> None:
        self._dropped = set(self.subscriptions)

    async def resubscribe_all(self, connection=None) -> int:
        """
        Re-send the original request of every stream that was live when the
        session dropped, under its original id. Streams opened since then
        already went out on the new session.
        """
        dropped, self._dropped = self._dropped, set()
        count = 0
        for sub in list(self.subscriptions.values()):
            if sub.request_id not in dropped:
                continue
            await self.correlator.send(sub.request)
            count += 1
        if count:
            logger.info(f"Resubscribed {count} quote streams")
        return count

    async def snapshot(self, contract: Union[Contract, str], timeout: Optional[float] = None) -> Quote:
        """One-shot quote: ticks up to TICK_SNAPSHOT_END folded into a single Quote."""
        if isinstance(contract, str):
            contract = Contract(symbol=contract)
        request = RequestMarketData(contract, request_id=self.correlator.next_id(), snapshot=True)
        holder = [Quote(symbol=contract.symbol, request_id=request.request_id)]

        def collect(event: Event) -> None:
            quote = fold_tick(holder[0], event)
            if quote is not None:
                holder[0] = quote

        request_id = await self.correlator.submit(
            request,
            is_terminal=lambda e: isinstance(e, TickSnapshotEnd),
            sink=collect,
            collect=False
        )
        await self.correlator.await_once(request_id, timeout)
        return holder[0]

    def get(self, request_id: int) -> Subscription:
        sub = self.subscriptions.get(request_id)
        if sub is None:
            raise UnknownSubscriptionError(f"No subscription with id {request_id}")
        return sub

    def teardown(self, exc: Optional[BaseException] = None) -> None:
        """Drop every subscription locally (the session is gone for good)."""
        if self.subscriptions:
            logger.info(f"Dropping {len(self.subscriptions)} quote streams with the session")
        for request_id in list(self.subscriptions):
            self.correlator.retire(request_id)
        self.subscriptions.clear()
        self._dropped.clear()
        self.quote_counter = 0
        if self._cycle_task is not None and not self._cycle_task.done():
            self._cycle_task.cancel()

    def subscribe_to_quotes(self, callback: Callable):
        """callback(request_id, quote_dict) for every new quote."""
        self.quote_callbacks.append(callback)

    def _notify_quote(self, sub: Subscription, quote: Quote) -> None:
        for callback in self.quote_callbacks:
            try:
                result = callback(sub.request_id, quote.to_dict())
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as e:
                logger.error(f"Error in quote callback: {e}")

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Error in quote callback: {task.exception()}")

    def get_statistics(self) -> dict:
        return {
            'active_subscriptions': len(self.subscriptions),
            'total_quotes': self.total_quotes,
            'quote_counter': self.quote_counter,
            'reconnect_every': self.reconnect_every,
            'session_cycles': self.cycles,
            'subscriptions': [s.to_dict() for s in self.subscriptions.values()]
        }
