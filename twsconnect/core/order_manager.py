import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from functools import partial
from typing import Callable, Dict, List, Optional

from .correlator import Correlator, PendingKind
from .errors import ConnectionLost, EncodingError, OrderStateError, UnknownOrderError
from .events import CommissionReport, ErrorEvent, Event, ExecDetails, OpenOrderEvent, OrderStatusEvent
from .order import (
    Bracket, Execution, Order, OrderAction, OrderState, OrderType, TimeInForce
)
from .requests import CancelOrder, PlaceOrder

logger = logging.getLogger(__name__)

ORDER_REJECTED = 201
ORDER_CANCELLED = 202
# order warnings that leave the order working
ORDER_WARNING_CODES = {399, 404, 434}

MODIFIABLE_FIELDS = (
    'quantity', 'limit_price', 'aux_price', 'tif', 'order_type', 'outside_rth',
    'trailing_percent', 'trail_stop_price', 'good_after_time', 'good_till_date',
    'account', 'order_ref', 'oca_group', 'oca_type'
)


class OrderManager:
    """
    Order lifecycle manager: submit, transmit, modify and cancel orders and
    keep their state in step with gateway events. Bracket children share an
    OCA group and a filled or cancelled child takes its sibling down with it.
    """
    def __init__(self, correlator: Correlator):
        self.correlator = correlator

        # order tracking
        self.orders: Dict[int, Order] = {}
        self.last_events: Dict[int, Event] = {}
        self._exec_orders: Dict[str, int] = {}
        self._orphan_commissions: Dict[str, CommissionReport] = {}
        self._cancel_origin: Dict[int, OrderState] = {}
        self._tasks = set()

        # event callbacks for real-time updates
        self.order_callbacks: List[Callable] = []

        # metrics
        self.total_orders_submitted = 0
        self.total_orders_transmitted = 0
        self.total_executions = 0

        bus = correlator.bus
        bus.add_handler(ExecDetails, self.apply_execution)
        bus.add_handler(CommissionReport, self.apply_commission)
        bus.add_handler(OpenOrderEvent, self.reconcile_open_order)

    # ---------------------------------------------------------------- submit / transmit

    async def submit(self, order: Order, hold: bool = False) -> int:
        """
        Register an order (and its bracket children) and send it unless `hold`.
        Returns the order id. A reused id modifies the live order in place.
        """
        if order.order_id is not None and order.order_id in self.orders:
            existing = self.orders[order.order_id]
            if existing.is_terminal:
                raise OrderStateError(f"Order {order.order_id} is {existing.state.value} and cannot be reused")
            logger.info(f"Order id {order.order_id} reused, modifying the working order")
            changes = {name: getattr(order, name) for name in MODIFIABLE_FIELDS}
            await self.modify(order.order_id, **changes)
            return order.order_id

        if order.order_id is None:
            order.order_id = self.correlator.next_id()
        elif not self.correlator.reserve(order.order_id):
            raise OrderStateError(f"Order id {order.order_id} was already used in this session")

        group = [order]
        if order.bracket is not None:
            group += self._build_bracket(order)

        # encode the whole group before anything is registered or sent
        frames = [self.correlator.codec.encode(PlaceOrder(o)) for o in group]

        for o in group:
            self.orders[o.order_id] = o
        self.total_orders_submitted += len(group)

        if hold:
            logger.info(f"Holding order {order.order_id}: {order}"
                        + (f" with children {order.child_ids}" if order.child_ids else ""))
            for o in group:
                self._notify_order_update(o)
            return order.order_id

        await self._transmit_group(group, frames)
        return order.order_id

    def _build_bracket(self, parent: Order) -> List[Order]:
        bracket: Bracket = parent.bracket
        lower_type, upper_type = bracket.child_types(parent.action)
        exit_action = parent.action.opposite
        is_buy = parent.action == OrderAction.BUY
        oca_group = parent.oca_group or f"OCA_{parent.order_id}"

        legs = [
            (lower_type, parent.limit_price - bracket.lower_delta, bracket.lower_delta,
             'stop_loss' if is_buy else 'take_profit'),
            (upper_type, parent.limit_price + bracket.upper_delta, bracket.upper_delta,
             'take_profit' if is_buy else 'stop_loss'),
        ]
        children = []
        for order_type, price, delta, role in legs:
            if price <= 0:
                raise EncodingError(f"Bracket {role} price {price} is not positive")
            kwargs = dict(
                action=exit_action,
                contract=parent.contract,
                quantity=parent.quantity,
                order_type=order_type,
                tif=parent.tif,
                parent_id=parent.order_id,
                oca_group=oca_group,
                oca_type=parent.oca_type,
                transmit=False,
                outside_rth=parent.outside_rth,
                account=parent.account,
                order_ref=parent.order_ref,
            )
            if order_type == OrderType.LIMIT:
                kwargs['limit_price'] = price
            elif order_type in (OrderType.STOP, OrderType.MARKET_IF_TOUCHED):
                kwargs['aux_price'] = price
            elif order_type == OrderType.STOP_LIMIT:
                kwargs['limit_price'] = price
                kwargs['aux_price'] = price
            elif order_type == OrderType.TRAIL:
                kwargs['aux_price'] = delta
            else:
                raise EncodingError(f"Unsupported bracket order type {order_type.value}")
            child = Order(**kwargs)
            child.bracket_role = role
            children.append(child)

        # ids are only drawn once every child validated
        for child in children:
            child.order_id = self.correlator.next_id()
            child.parent_id = parent.order_id
        parent.transmit = False
        children[-1].transmit = True
        parent.child_ids = [c.order_id for c in children]
        return children

    async def transmit(self, order_id: int) -> int:
        """Send a held order. For a held bracket the whole group goes out together."""
        order = self.get_order(order_id)
        if order.parent_id and order.parent_id in self.orders:
            order = self.orders[order.parent_id]
        if order.is_transmitted:
            raise OrderStateError(f"Order {order.order_id} is already {order.state.value}")
        group = [order] + [self.orders[cid] for cid in order.child_ids
                           if cid in self.orders and not self.orders[cid].is_transmitted]
        if order.child_ids:
            # the gateway stages a group until an order with transmit=1 arrives
            for o in group:
                o.transmit = o is group[-1]
            if len(group) == 1:
                logger.info(f"Bracket exits of order {order.order_id} are gone, sending it alone")
        frames =[self.correlator.codec.encode(PlaceOrder(o)) for o in group]
        await self._transmit_group(group, frames)
        return order.order_id

    async def _transmit_group(self, group: List[Order], frames: List[bytes]) -> None:
        for o in group:
            self.correlator.register(
                o.order_id,
                kind=PendingKind.STREAMING,
                is_terminal=partial(self._is_done, o),
                raise_errors=False,
                sink=partial(self._on_order_event, o),
                collect=False
            )
            self._apply_local(o, 'PendingSubmit')

        for i, (o, data) in enumerate(zip(group, frames)):
            try:
                await self.correlator.send_raw(data)
            except ConnectionLost:
                # nothing after this frame reached the gateway
                for unsent in group[i:]:
                    self.correlator.retire(unsent.order_id)
                    unsent.state = OrderState.CREATED
                raise
            logger.info(f"Transmitted order {o.order_id}: {o}")
        self.total_orders_transmitted += len(group)

    @staticmethod
    def _is_done(order: Order, event: Event) -> bool:
        return order.is_terminal

    # ---------------------------------------------------------------- modify / cancel

    async def modify(self, order_id: int, **changes) -> Order:
        """Change a working or held order in place and resend it under the same id."""
        order = self.get_order(order_id)
        if order.is_terminal:
            raise OrderStateError(f"Order {order_id} is {order.state.value} and cannot be modified")
        unknown = set(changes) - set(MODIFIABLE_FIELDS)
        if unknown:
            raise EncodingError(f"Fields cannot be modified: {sorted(unknown)}")

        previous = {name: getattr(order, name) for name in changes}
        try:
            for name, value in changes.items():
                if value is None and name not in ('limit_price', 'aux_price', 'trailing_percent',
                                                  'trail_stop_price'):
                    continue
                if name == 'order_type' and isinstance(value, str):
                    value = OrderType.parse(value)
                elif name == 'tif' and isinstance(value, str):
                    value = TimeInForce(value.upper())
                elif name in ('quantity', 'limit_price', 'aux_price', 'trailing_percent', 'trail_stop_price') \
                        and value is not None:
                    value = Decimal(str(value))
                setattr(order, name, value)
            if order.quantity < order.cumulative_quantity:
                raise OrderStateError(
                    f"Quantity {order.quantity} is below the {order.cumulative_quantity} already filled")
            data = self.correlator.codec.encode(PlaceOrder(order))
        except (EncodingError, OrderStateError):
            for name, value in previous.items():
                setattr(order, name, value)
            raise

        order.remaining_quantity = order.quantity - order.cumulative_quantity
        order.updated_at = datetime.now(timezone.utc)
        if order.is_transmitted:
            await self.correlator.send_raw(data)
            logger.info(f"Modified order {order_id}: {order}")
        else:
            logger.info(f"Modified held order {order_id}: {order}")
        self._notify_order_update(order)
        return order

    async def cancel(self, order_id: int) -> Order:
        """
        Cancel an order. Held orders (and their held children) are cancelled
        locally; transmitted ones move to PendingCancel until the gateway confirms.
        """
        order = self.get_order(order_id)
        if order.is_terminal:
            raise OrderStateError(f"Order {order_id} cannot be cancelled (status: {order.state.value})")
        if not order.is_transmitted:
            self._cancel_local(order)
            return order
        if order.state == OrderState.PENDING_CANCEL:
            return order
        self._begin_cancel(order)
        await self._send_cancel(order)
        return order

    def _cancel_local(self, order: Order) -> None:
        self._apply_local(order, 'Cancelled')
        logger.info(f"Cancelled held order {order.order_id} locally")
        for child_id in order.child_ids:
            child = self.orders.get(child_id)
            if child is not None and not child.is_transmitted and not child.is_terminal:
                self._cancel_local(child)

    def _begin_cancel(self, order: Order) -> None:
        self._cancel_origin[order.order_id] = order.state
        self._apply_local(order, 'PendingCancel')

    async def _send_cancel(self, order: Order) -> None:
        try:
            await self.correlator.send(CancelOrder(order.order_id))
        except ConnectionLost:
            self._revert_cancel(order)
            raise
        logger.info(f"Cancel requested for order {order.order_id}")

    def _revert_cancel(self, order: Order) -> None:
        origin = self._cancel_origin.pop(order.order_id, None)
        if origin is not None and order.state == OrderState.PENDING_CANCEL:
            if origin.rank < OrderState.PARTIALLY_FILLED.rank and order.cumulative_quantity > 0:
                origin = OrderState.PARTIALLY_FILLED
            order.state = origin
            order.updated_at = datetime.now(timezone.utc)
            self._notify_order_update(order)

    def _schedule_cancel(self, order: Order) -> None:
        if order.is_terminal or order.state == OrderState.PENDING_CANCEL:
            return
        if not order.is_transmitted:
            self._cancel_local(order)
            return
        self._begin_cancel(order)
        task = asyncio.get_running_loop().create_task(self._send_cancel(order))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Automatic cancel failed: {task.exception()}")

    async def wait_idle(self) -> None:
        """Wait for automatic (sibling/child) cancels still being sent."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------------------------------------------------------------- event application

    def _on_order_event(self, order: Order, event: Event) -> None:
        if isinstance(event, OrderStatusEvent):
            self.apply_status_event(event)
        elif isinstance(event, ErrorEvent):
            self._apply_error(order, event)

    def _apply_local(self, order: Order, status: str) -> bool:
        return self.apply_status_event(OrderStatusEvent(
            order_id=order.order_id,
            status=status,
            filled=order.cumulative_quantity,
            remaining=order.remaining_quantity,
            avg_fill_price=order.average_fill_price
        ))

    def apply_status_event(self, event: OrderStatusEvent) -> bool:
        """
        The single mutator of order state. Applies equal-or-further progress,
        ignores regressions and duplicates. Returns True if the order changed.
        """
        order = self.orders.get(event.order_id)
        if order is None:
            logger.debug(f"Status for untracked order {event.order_id}: {event.status}")
            return False
        try:
            state = OrderState.from_status(event.status, event.filled, event.remaining)
        except ValueError as e:
            logger.warning(f"Order {event.order_id}: {e}")
            return False

        previous = order.state
        changed = order.apply_status(
            state, event.filled, event.remaining, event.avg_fill_price,
            event.last_fill_price, event.perm_id, event.why_held
        )
        if not changed:
            logger.debug(f"Ignoring {event.status} for order {order.order_id} in state {previous.value}")
            return False

        self.last_events[order.order_id] = event
        if order.state != OrderState.PENDING_CANCEL:
            self._cancel_origin.pop(order.order_id, None)
        logger.info(f"Order {order.order_id} {previous.value} -> {order.state.value} "
                    f"(filled {order.cumulative_quantity}, avg {order.average_fill_price})")
        self._after_transition(order)
        self._notify_order_update(order)
        return True

    def _apply_error(self, order: Order, event: ErrorEvent) -> None:
        if event.is_informational or event.code in ORDER_WARNING_CODES:
            logger.info(f"Order {order.order_id} notice {event.code}: {event.message}")
            return
        if event.is_cancel_reject:
            logger.warning(f"Cancel of order {order.order_id} refused ({event.code}): {event.message}")
            self._revert_cancel(order)
            return
        if event.code == ORDER_CANCELLED:
            self._apply_local(order, 'Cancelled')
            return
        if event.code == ORDER_REJECTED or order.state.rank <= OrderState.PENDING_SUBMIT.rank:
            order.reject_reason = f"{event.code}: {event.message}"
            logger.warning(f"Order {order.order_id} rejected: {order.reject_reason}")
            self._apply_local(order, 'Inactive')
            return
        logger.warning(f"Order {order.order_id} error {event.code}: {event.message}")

    def _after_transition(self, order: Order) -> None:
        if order.state not in (OrderState.FILLED, OrderState.CANCELLED, OrderState.REJECTED):
            return
        # parent gone before filling: its exits have nothing to protect
        if order.child_ids and order.state in (OrderState.CANCELLED, OrderState.REJECTED):
            for child_id in order.child_ids:
                child = self.orders.get(child_id)
                if child is not None:
                    self._schedule_cancel(child)
        # one exit done: cancel the other
        if order.bracket_role is not None and order.state in (OrderState.FILLED, OrderState.CANCELLED):
            parent = self.orders.get(order.parent_id)
            siblings = parent.child_ids if parent is not None else []
            for sibling_id in siblings:
                sibling = self.orders.get(sibling_id)
                if sibling is not None and sibling is not order:
                    logger.info(f"Bracket leg {order.order_id} {order.state.value}, cancelling sibling {sibling_id}")
                    self._schedule_cancel(sibling)

    def apply_execution(self, event: ExecDetails) -> bool:
        order = self.orders.get(event.order_id)
        if order is None:
            logger.debug(f"Execution {event.exec_id} for untracked order {event.order_id}")
            return False
        execution = Execution(
            exec_id=event.exec_id,
            order_id=event.order_id,
            shares=event.shares,
            price=event.price,
            side=event.side,
            symbol=event.contract.symbol,
            perm_id=event.perm_id,
            cumulative_quantity=event.cumulative_quantity,
            average_price=event.average_price,
            time=event.time,
            account=event.account,
            exchange=event.exchange,
            request_id=event.request_id if event.request_id is not None else -1
        )
        if not order.add_execution(execution):
            return False
        self._exec_orders[event.exec_id] = order.order_id
        self.total_executions += 1
        logger.info(f"Execution {event.exec_id}: {event.side} {event.shares} {event.contract.symbol} @ {event.price}")

        orphan = self._orphan_commissions.pop(event.exec_id, None)
        if orphan is not None:
            order.add_commission(orphan.exec_id, orphan.commission)
        self._notify_order_update(order)
        return True

    def apply_commission(self, event: CommissionReport) -> bool:
        order_id = self._exec_orders.get(event.exec_id)
        if order_id is None:
            # reports may overtake their execution
            self._orphan_commissions[event.exec_id] = event
            return False
        order = self.orders[order_id]
        if not order.add_commission(event.exec_id, event.commission):
            return False
        self._notify_order_update(order)
        return True

    def reconcile_open_order(self, event: OpenOrderEvent) -> None:
        """Fold an OPEN_ORDER report into the registry, adopting orders from other sessions."""
        order = self.orders.get(event.order_id)
        if order is None:
            try:
                order = Order(
                    action=event.action,
                    contract=event.contract,
                    quantity=event.quantity,
                    order_type=event.order_type,
                    limit_price=event.limit_price,
                    aux_price=event.aux_price,
                    tif=event.tif or 'DAY',
                    order_id=event.order_id,
                    parent_id=event.parent_id,
                    oca_group=event.oca_group,
                    account=event.account
                )
            except (EncodingError, ValueError) as e:
                logger.warning(f"Cannot adopt open order {event.order_id}: {e}")
                return
            self.orders[order.order_id] = order
            self.correlator.reseed(order.order_id + 1)
            if not self.correlator.is_pending(order.order_id):
                self.correlator.register(
                    order.order_id,
                    kind=PendingKind.STREAMING,
                    is_terminal=partial(self._is_done, order),
                    raise_errors=False,
                    sink=partial(self._on_order_event, order),
                    collect=False
                )
            logger.info(f"Adopted open order {order.order_id}: {order}")
        if event.perm_id:
            order.perm_id = event.perm_id
        if event.status:
            self.apply_status_event(OrderStatusEvent(
                order_id=order.order_id,
                status=event.status,
                filled=order.cumulative_quantity,
                remaining=order.quantity - order.cumulative_quantity,
                avg_fill_price=order.average_fill_price,
                perm_id=event.perm_id
            ))

    # ---------------------------------------------------------------- queries

    async def await_terminal(self, order_id: int, timeout: Optional[float] = None) -> Optional[Event]:
        """Wait until the order reaches Filled, Cancelled or Rejected; returns the terminal event."""
        order = self.get_order(order_id)
        if order.is_terminal:
            return self.last_events.get(order_id)
        if not order.is_transmitted:
            raise OrderStateError(f"Order {order_id} is held and has not been transmitted")
        return await self.correlator.await_once(order_id, timeout)

    def get_order(self, order_id: int) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise UnknownOrderError(f"Order {order_id} not found")
        return order

    def list_orders(self, state: Optional[OrderState] = None, symbol: Optional[str] = None) -> List[Order]:
        orders = list(self.orders.values())
        if state is not None:
            orders = [o for o in orders if o.state == state]
        if symbol is not None:
            orders = [o for o in orders if o.symbol == symbol.upper()]
        return orders

    def get_statistics(self) -> dict:
        by_state: Dict[str, int] = {}
        for order in self.orders.values():
            by_state[order.state.value] = by_state.get(order.state.value, 0) + 1
        return {
            'total_orders_submitted': self.total_orders_submitted,
            'total_orders_transmitted': self.total_orders_transmitted,
            'total_executions': self.total_executions,
            'orders_by_state': by_state
        }

    def subscribe_to_order_updates(self, callback: Callable):
        """Subscribe to order updates (state, fills, commissions)."""
        self.order_callbacks.append(callback)

    def _notify_order_update(self, order: Order) -> None:
        if not self.order_callbacks:
            return
        update = {
            'type': 'order_update',
            **order.to_dict()
        }
        for callback in self.order_callbacks:
            try:
                if asyncio.iscoroutinefunction(callback):
                    task = asyncio.get_running_loop().create_task(callback(update))
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
                else:
                    callback(update)
            except Exception as e:
                logger.error(f"Error in order update callback: {e}")
