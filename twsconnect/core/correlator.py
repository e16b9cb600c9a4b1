import asyncio
import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Type

from .codec import WireCodec
from .errors import ConnectionLost, RequestError, RequestTimeout
from .events import ErrorEvent, Event
from .handlers import EventBus
from .requests import Request

logger = logging.getLogger(__name__)


class PendingKind(Enum):
    ONESHOT = "oneshot"
    STREAMING = "streaming"


def _never(event: Event) -> bool:
    return False


def _always(event: Event) -> bool:
    return True


@dataclass
class PendingRequest:
    request_id: int
    kind: PendingKind
    future: asyncio.Future
    is_terminal: Callable[[Event], bool] = _always
    raise_errors: bool = True
    sink: Optional[Callable[[Event], None]] = None
    collect: bool = True
    events: List[Event] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class UntaggedWaiter:
    """Waiter for responses that carry no request id, served first-in first-out."""
    end_type: Tuple[Type[Event], ...]
    collect_types: Tuple[Type[Event], ...]
    future: asyncio.Future
    items: List[Event] = field(default_factory=list)


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class Correlator:
    """
    Assigns request ids, tracks outstanding requests and routes inbound events.

    Tagged events go to the PendingRequest registered under their id: its
    sink sees every event, its future resolves once on the first terminal
    event. Untagged events go to FIFO waiters by event type. Every event is
    first offered to the handler bus.
    """
    def __init__(self, send: Callable[[bytes], Awaitable[None]], codec: Optional[WireCodec] = None,
                 bus: Optional[EventBus] = None, first_id: int = 1,
                 closed_capacity: int = 10000, completed_capacity: int = 1000):
        self._send = send
        self.codec = codec or WireCodec()
        self.bus = bus or EventBus()

        # the id counter is touched from caller threads too
        self._id_lock = threading.Lock()
        self._next_id = first_id

        self._pending: Dict[int, PendingRequest] = {}
        self._untagged: Deque[UntaggedWaiter] = deque()

        # ids retired by cancel, timeout or resolution; their stragglers are dropped quietly
        self._closed: "OrderedDict[int, None]" = OrderedDict()
        self._closed_capacity = closed_capacity
        self._completed: "OrderedDict[int, Tuple[Optional[Event], Optional[BaseException], List[Event]]]" = OrderedDict()
        self._completed_capacity = completed_capacity

        # metrics
        self.total_dispatched = 0
        self.total_discarded = 0

    # ---------------------------------------------------------------- ids

    def next_id(self) -> int:
        with self._id_lock:
            request_id = self._next_id
            self._next_id += 1
            return request_id

    def peek_next_id(self) -> int:
        with self._id_lock:
            return self._next_id

    def reseed(self, next_valid_id: int) -> None:
        """Move the counter forward to the gateway's next valid id. Never moves back."""
        with self._id_lock:
            if next_valid_id > self._next_id:
                logger.debug(f"Request id counter advanced {self._next_id} -> {next_valid_id}")
                self._next_id = next_valid_id

    def reserve(self, request_id: int) -> bool:
        """Claim a caller-chosen id. Fails for ids the counter has already handed out."""
        with self._id_lock:
            if request_id < self._next_id:
                return False
            self._next_id = request_id + 1
            return True

    # ---------------------------------------------------------------- registration

    def register(self, request_id: int, kind: PendingKind = PendingKind.ONESHOT,
                 is_terminal: Optional[Callable[[Event], bool]] = None, raise_errors: bool = True,
                 sink: Optional[Callable[[Event], None]] = None,
                 collect: Optional[bool] = None) -> PendingRequest:
        if request_id in self._pending:
            raise ValueError(f"Request id {request_id} is already in use")
        if is_terminal is None:
            is_terminal = _always if kind == PendingKind.ONESHOT else _never
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        pending = PendingRequest(
            request_id=request_id,
            kind=kind,
            future=future,
            is_terminal=is_terminal,
            raise_errors=raise_errors,
            sink=sink,
            collect=(kind == PendingKind.ONESHOT) if collect is None else collect
        )
        self._pending[request_id] = pending
        self._closed.pop(request_id, None)
        self._completed.pop(request_id, None)
        return pending

    async def submit(self, request: Request, kind: PendingKind = PendingKind.ONESHOT,
                     is_terminal: Optional[Callable[[Event], bool]] = None, raise_errors: bool = True,
                     sink: Optional[Callable[[Event], None]] = None,
                     collect: Optional[bool] = None) -> int:
        """
        Allocate an id (unless the request carries one), register the waiter,
        encode and send. Encoding errors surface before anything is registered.
        """
        request_id = request.request_id
        if request_id is None:
            request_id = self.next_id()
            request = replace(request, request_id=request_id)
        data = self.codec.encode(request)
        self.register(request_id, kind, is_terminal, raise_errors, sink, collect)
        try:
            await self._send(data)
        except ConnectionLost:
            self._pending.pop(request_id, None)
            raise
        return request_id

    async def send(self, request: Request) -> None:
        """Encode and send a request that expects no correlated reply."""
        await self._send(self.codec.encode(request))

    async def send_raw(self, data: bytes) -> None:
        await self._send(data)

    def get(self, request_id: int) -> Optional[PendingRequest]:
        return self._pending.get(request_id)

    def is_pending(self, request_id: int) -> bool:
        return request_id in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ---------------------------------------------------------------- waiting

    async def await_once(self, request_id: int, timeout: Optional[float] = None) -> Event:
        """
        Wait for the terminal event of a request. On timeout a one-shot
        request is retired and its late events are discarded; a streaming
        registration (orders, subscriptions) stays in place.
        """
        if request_id in self._completed:
            result, exc, _ = self._completed[request_id]
            if exc is not None:
                raise exc
            return result
        pending = self._pending.get(request_id)
        if pending is None:
            raise KeyError(f"No pending request with id {request_id}")
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout)
        except asyncio.TimeoutError:
            if pending.future.done():
                return pending.future.result()
            if pending.kind == PendingKind.ONESHOT:
                self.retire(request_id)
            raise RequestTimeout(request_id, timeout) from None

    async def await_all(self, request_id: int, timeout: Optional[float] = None) -> List[Event]:
        """Wait for the terminal event and return every event collected for the request."""
        await self.await_once(request_id, timeout)
        _, _, events = self._completed.get(request_id, (None, None, []))
        return list(events)

    async def request_untagged(self, request: Request, end_type, collect_types=(),
                               timeout: Optional[float] = None) -> Tuple[Event, List[Event]]:
        """
        Send a request whose reply carries no request id and wait for the
        first `end_type` event, collecting `collect_types` events on the way.
        """
        if not isinstance(end_type, tuple):
            end_type = (end_type,)
        if not isinstance(collect_types, tuple):
            collect_types = (collect_types,)
        data = self.codec.encode(request)
        waiter = UntaggedWaiter(end_type, collect_types, asyncio.get_running_loop().create_future())
        waiter.future.add_done_callback(_consume_exception)
        self._untagged.append(waiter)
        try:
            await self._send(data)
            end = await asyncio.wait_for(asyncio.shield(waiter.future), timeout)
            return end, list(waiter.items)
        except asyncio.TimeoutError:
            raise RequestTimeout(None, timeout) from None
        finally:
            if waiter in self._untagged:
                self._untagged.remove(waiter)

    # ---------------------------------------------------------------- routing

    def dispatch(self, event: Event) -> None:
        """Route one decoded event. Runs on the reader task and never blocks."""
        self.total_dispatched += 1
        self.bus.emit(event)

        request_id = event.request_id
        if request_id is None:
            self._dispatch_untagged(event)
            return

        pending = self._pending.get(request_id)
        if pending is None:
            self.total_discarded += 1
            if request_id in self._closed:
                logger.debug(f"Dropping {type(event).__name__} for retired request {request_id}")
            elif isinstance(event, ErrorEvent):
                logger.warning(f"Error {event.code} for unknown request {request_id}: {event.message}")
            else:
                logger.warning(f"Discarding {type(event).__name__} for unknown request id {request_id}")
            return
        self._deliver(pending, event)

    def _deliver(self, pending: PendingRequest, event: Event) -> None:
        if pending.collect:
            pending.events.append(event)
        if pending.sink is not None:
            try:
                pending.sink(event)
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__} for request {pending.request_id}: {e}",
                             exc_info=True)

        if isinstance(event, ErrorEvent) and not event.is_informational:
            if pending.raise_errors:
                logger.info(f"Request {pending.request_id} failed: {event.code} {event.message}")
                self._resolve(pending, exception=RequestError(pending.request_id, event.code, event.message))
                return
        if pending.is_terminal(event):
            self._resolve(pending, result=event)

    def _dispatch_untagged(self, event: Event) -> None:
        for waiter in self._untagged:
            if waiter.collect_types and isinstance(event, waiter.collect_types):
                waiter.items.append(event)
        for waiter in self._untagged:
            if isinstance(event, waiter.end_type) and not waiter.future.done():
                waiter.future.set_result(event)
                self._untagged.remove(waiter)
                break
        if isinstance(event, ErrorEvent) and not event.is_informational:
            logger.warning(f"Gateway error {event.code}: {event.message}")
        elif isinstance(event, ErrorEvent):
            logger.info(f"Gateway notice {event.code}: {event.message}")

    def _resolve(self, pending: PendingRequest, result: Optional[Event] = None,
                 exception: Optional[BaseException] = None) -> None:
        if pending.future.done():
            return
        if exception is not None:
            pending.future.set_exception(exception)
        else:
            pending.future.set_result(result)
        self._pending.pop(pending.request_id, None)
        self._close(pending.request_id)
        self._completed[pending.request_id] = (result, exception, pending.events)
        while len(self._completed) > self._completed_capacity:
            self._completed.popitem(last=False)

    def _close(self, request_id: int) -> None:
        self._closed[request_id] = None
        self._closed.move_to_end(request_id)
        while len(self._closed) > self._closed_capacity:
            self._closed.popitem(last=False)

    # ---------------------------------------------------------------- teardown

    def retire(self, request_id: int) -> Optional[PendingRequest]:
        """Remove a registration without resolving it; later events for the id are dropped."""
        pending = self._pending.pop(request_id, None)
        self._close(request_id)
        if pending is not None and not pending.future.done():
            pending.future.cancel()
        return pending

    def fail_oneshots(self, exc: BaseException) -> int:
        """Fail every outstanding one-shot request and untagged waiter with `exc`."""
        failed = 0
        for pending in list(self._pending.values()):
            if pending.kind == PendingKind.ONESHOT:
                self._resolve(pending, exception=exc)
                failed += 1
        while self._untagged:
            waiter = self._untagged.popleft()
            if not waiter.future.done():
                waiter.future.set_exception(exc)
                failed += 1
        if failed:
            logger.info(f"Failed {failed} outstanding requests: {exc}")
        return failed

    def on_connection_lost(self, exc: Optional[BaseException] = None) -> None:
        self.fail_oneshots(exc if isinstance(exc, ConnectionLost) else ConnectionLost(str(exc or "connection lost")))
