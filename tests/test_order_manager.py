import asyncio

import pytest

from twsconnect.core.errors import ConnectionLost, EncodingError, OrderStateError, UnknownOrderError
from twsconnect.core.events import OrderStatusEvent
from twsconnect.core.order import Bracket, Contract, Order, OrderState

from conftest import (
    D, commission_frame, error_frame, execution_frame, feed, open_order_frame, order_status_frame
)

PLACE_ORDER = 3
CANCEL_ORDER = 4

# PLACE_ORDER field positions
ORDER_ID, SYMBOL, ACTION, QUANTITY, ORDER_TYPE, LIMIT, AUX = 2, 4, 17, 18, 19, 20, 21
OCA_GROUP, TRANSMIT, PARENT_ID = 23, 26, 27


def limit_order(action='BUY', quantity=100, price=600, **kwargs):
    return Order(action, Contract(symbol='GOOG'), quantity, limit_price=price, **kwargs)


class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit_sends_place_order(self, order_manager, transport):
        order_id = await order_manager.submit(limit_order())
        assert order_id == 1

        (msg,) = transport.messages_of(PLACE_ORDER)
        assert msg[ORDER_ID] == '1'
        assert msg[SYMBOL] == 'GOOG'
        assert (msg[ACTION], msg[QUANTITY], msg[ORDER_TYPE], msg[LIMIT]) == ('BUY', '100', 'LMT', '600')
        assert msg[TRANSMIT] == '1'
        assert order_manager.get_order(1).state == OrderState.PENDING_SUBMIT

    @pytest.mark.asyncio
    async def test_status_progression(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator,
             order_status_frame(order_id, 'PreSubmitted', 0, 100),
             order_status_frame(order_id, 'Submitted', 0, 100, perm_id=555))
        order = order_manager.get_order(order_id)
        assert order.state == OrderState.SUBMITTED
        assert order.perm_id == 555

        feed(correlator, order_status_frame(order_id, 'Filled', 100, 0, '599.5'))
        assert order.state == OrderState.FILLED
        assert order.average_fill_price == D('599.5')
        event = await order_manager.await_terminal(order_id, timeout=1)
        assert isinstance(event, OrderStatusEvent)
        assert event.status == 'Filled'

    @pytest.mark.asyncio
    async def test_duplicates_and_regressions_ignored(self, order_manager, correlator):
        updates = []
        order_manager.subscribe_to_order_updates(updates.append)
        order_id = await order_manager.submit(limit_order())
        feed(correlator, order_status_frame(order_id, 'Submitted', 40, 60, '10'))
        order = order_manager.get_order(order_id)
        assert order.state == OrderState.PARTIALLY_FILLED
        count = len(updates)

        feed(correlator,
             order_status_frame(order_id, 'Submitted', 40, 60, '10'),
             order_status_frame(order_id, 'PreSubmitted', 0, 100),
             order_status_frame(order_id, 'Submitted', 20, 80, '10'))
        assert order.state == OrderState.PARTIALLY_FILLED
        assert order.cumulative_quantity == D('40')
        assert len(updates) == count

    @pytest.mark.asyncio
    async def test_nothing_after_terminal(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator,
             order_status_frame(order_id, 'Filled', 100, 0, '600'),
             order_status_frame(order_id, 'Cancelled', 100, 0, '600'))
        assert order_manager.get_order(order_id).state == OrderState.FILLED

    @pytest.mark.asyncio
    async def test_executions_build_weighted_average(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order(price=11))
        feed(correlator,
             order_status_frame(order_id, 'Submitted', 0, 100),
             execution_frame(-1, order_id, 'E1', 'BOT', 40, '10'),
             execution_frame(-1, order_id, 'E1', 'BOT', 40, '10'),
             execution_frame(-1, order_id, 'E2', 'BOT', 60, '11'))
        order = order_manager.get_order(order_id)
        assert order.cumulative_quantity == D('100')
        assert order.average_fill_price == D('10.6')
        assert len(order.executions) == 2
        assert order_manager.total_executions == 2

    @pytest.mark.asyncio
    async def test_commission_may_arrive_before_execution(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator,
             commission_frame('E1', '1.25'),
             execution_frame(-1, order_id, 'E1', 'BOT', 100, '600'),
             commission_frame('E1', '1.25'))
        order = order_manager.get_order(order_id)
        assert order.total_commission == D('1.25')
        assert order.executions['E1'].commission == D('1.25')

    @pytest.mark.asyncio
    async def test_invalid_order_never_sent(self, order_manager, transport):
        order = limit_order()
        order.limit_price = None
        with pytest.raises(EncodingError):
            await order_manager.submit(order)
        assert transport.frames == []
        assert order_manager.orders == {}

    @pytest.mark.asyncio
    async def test_transmit_failure_leaves_order_unsent(self, order_manager, transport, correlator):
        transport.connected = False
        order = limit_order()
        with pytest.raises(ConnectionLost):
            await order_manager.submit(order)
        assert order.state == OrderState.CREATED
        assert not correlator.is_pending(order.order_id)

        transport.connected = True
        await order_manager.transmit(order.order_id)
        assert len(transport.messages_of(PLACE_ORDER)) == 1


class TestRejection:

    @pytest.mark.asyncio
    async def test_reject_code_marks_order_rejected(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, error_frame(order_id, 201, 'Order rejected - reason: margin'))
        order = order_manager.get_order(order_id)
        assert order.state == OrderState.REJECTED
        assert order.reject_reason.startswith('201')

    @pytest.mark.asyncio
    async def test_error_before_ack_rejects(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, error_frame(order_id, 110, 'The price does not conform to the minimum tick'))
        assert order_manager.get_order(order_id).state == OrderState.REJECTED

    @pytest.mark.asyncio
    async def test_warnings_leave_order_working(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator,
             order_status_frame(order_id, 'Submitted', 0, 100),
             error_frame(order_id, 399, 'Order will not be placed until market open'),
             error_frame(order_id, 2109, 'Outside regular trading hours'))
        assert order_manager.get_order(order_id).state == OrderState.SUBMITTED


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_goes_pending_then_cancelled(self, order_manager, correlator, transport):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, order_status_frame(order_id, 'Submitted', 0, 100))

        order = await order_manager.cancel(order_id)
        assert order.state == OrderState.PENDING_CANCEL
        assert transport.messages_of(CANCEL_ORDER) == [('4', '1', str(order_id))]

        # a second cancel while pending sends nothing
        await order_manager.cancel(order_id)
        assert len(transport.messages_of(CANCEL_ORDER)) == 1

        feed(correlator, order_status_frame(order_id, 'Cancelled', 0, 100))
        assert order.state == OrderState.CANCELLED
        with pytest.raises(OrderStateError):
            await order_manager.cancel(order_id)

    @pytest.mark.asyncio
    async def test_cancel_reject_restores_state(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, order_status_frame(order_id, 'Submitted', 30, 70, '600'))
        order = await order_manager.cancel(order_id)
        assert order.state == OrderState.PENDING_CANCEL

        feed(correlator, error_frame(order_id, 10148, 'OrderId that needs to be cancelled can not be cancelled'))
        assert order.state == OrderState.PARTIALLY_FILLED

    @pytest.mark.asyncio
    async def test_cancel_confirmed_by_error_202(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, order_status_frame(order_id, 'Submitted', 0, 100))
        await order_manager.cancel(order_id)
        feed(correlator, error_frame(order_id, 202, 'Order Canceled - reason:'))
        assert order_manager.get_order(order_id).state == OrderState.CANCELLED

    @pytest.mark.asyncio
    async def test_fill_during_pending_cancel_keeps_cancel(self, order_manager, correlator, transport):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, order_status_frame(order_id, 'Submitted', 0, 100))
        order = await order_manager.cancel(order_id)

        feed(correlator, order_status_frame(order_id, 'Submitted', 40, 60, '599'))
        assert order.state == OrderState.PENDING_CANCEL
        assert order.cumulative_quantity == D('40')
        assert order.average_fill_price == D('599')

        await order_manager.cancel(order_id)
        assert len(transport.messages_of(CANCEL_ORDER)) == 1

        # a refused cancel falls back to the partially filled state
        feed(correlator, error_frame(order_id, 161, 'Cancel attempted when order is not in a cancellable state'))
        assert order.state == OrderState.PARTIALLY_FILLED

    @pytest.mark.asyncio
    async def test_unknown_order(self, order_manager):
        with pytest.raises(UnknownOrderError):
            await order_manager.cancel(42)


class TestModify:

    @pytest.mark.asyncio
    async def test_modify_resends_same_id(self, order_manager, correlator, transport):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, order_status_frame(order_id, 'Submitted', 0, 100))
        await order_manager.modify(order_id, limit_price=601, quantity=50)

        first, second = transport.messages_of(PLACE_ORDER)
        assert second[ORDER_ID] == first[ORDER_ID]
        assert (second[QUANTITY], second[LIMIT]) == ('50', '601')

    @pytest.mark.asyncio
    async def test_invalid_modify_rolls_back(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, order_status_frame(order_id, 'Submitted', 40, 60, '600'))
        with pytest.raises(OrderStateError):
            await order_manager.modify(order_id, quantity=10)
        with pytest.raises(EncodingError):
            await order_manager.modify(order_id, symbol='AAPL')
        assert order_manager.get_order(order_id).quantity == D('100')

    @pytest.mark.asyncio
    async def test_reused_working_id_modifies(self, order_manager, correlator, transport):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, order_status_frame(order_id, 'Submitted', 0, 100))
        await order_manager.submit(limit_order(price=605, order_id=order_id))

        assert len(order_manager.orders) == 1
        assert order_manager.get_order(order_id).limit_price == D('605')
        assert transport.messages_of(PLACE_ORDER)[-1][LIMIT] == '605'

    @pytest.mark.asyncio
    async def test_reused_terminal_id_rejected(self, order_manager, correlator):
        order_id = await order_manager.submit(limit_order())
        feed(correlator, order_status_frame(order_id, 'Filled', 100, 0, '600'))
        with pytest.raises(OrderStateError):
            await order_manager.submit(limit_order(order_id=order_id))

    @pytest.mark.asyncio
    async def test_stale_caller_id_rejected(self, order_manager, correlator):
        correlator.reseed(10)
        with pytest.raises(OrderStateError):
            await order_manager.submit(limit_order(order_id=3))
        assert await order_manager.submit(limit_order(order_id=20)) == 20
        assert correlator.next_id() == 21


class TestBracket:

    @pytest.mark.asyncio
    async def test_bracket_structure(self, order_manager, transport):
        parent_id = await order_manager.submit(limit_order(bracket=Bracket(5)))
        parent, stop, target = transport.messages_of(PLACE_ORDER)

        assert parent[TRANSMIT] == '0'
        assert stop[TRANSMIT] == '0'
        assert target[TRANSMIT] == '1'

        assert (stop[ACTION], stop[ORDER_TYPE], stop[AUX]) == ('SELL', 'STP', '595')
        assert (target[ACTION], target[ORDER_TYPE], target[LIMIT]) == ('SELL', 'LMT', '605')
        assert stop[PARENT_ID] == target[PARENT_ID] == str(parent_id)
        assert stop[OCA_GROUP] == target[OCA_GROUP] == f'OCA_{parent_id}'

        children = [order_manager.get_order(i) for i in order_manager.get_order(parent_id).child_ids]
        assert [c.bracket_role for c in children] == ['stop_loss', 'take_profit']

    @pytest.mark.asyncio
    async def test_sell_bracket_mirrors_legs(self, order_manager, transport):
        await order_manager.submit(limit_order(action='SELL', bracket=Bracket(5, 10)))
        _, lower, upper = transport.messages_of(PLACE_ORDER)
        assert (lower[ACTION], lower[ORDER_TYPE], lower[LIMIT]) == ('BUY', 'LMT', '595')
        assert (upper[ACTION], upper[ORDER_TYPE], upper[AUX]) == ('BUY', 'STP', '610')

    @pytest.mark.asyncio
    async def test_take_profit_fill_cancels_stop_loss(self, order_manager, correlator, transport):
        parent_id = await order_manager.submit(limit_order(bracket=Bracket(5)))
        stop_id, target_id = order_manager.get_order(parent_id).child_ids
        feed(correlator,
             order_status_frame(parent_id, 'Filled', 100, 0, '600'),
             order_status_frame(stop_id, 'PreSubmitted', 0, 100),
             order_status_frame(target_id, 'Submitted', 0, 100),
             order_status_frame(target_id, 'Filled', 100, 0, '605'))

        stop = order_manager.get_order(stop_id)
        assert stop.state == OrderState.PENDING_CANCEL
        await order_manager.wait_idle()
        assert transport.messages_of(CANCEL_ORDER) == [('4', '1', str(stop_id))]

        feed(correlator, order_status_frame(stop_id, 'Cancelled', 0, 100))
        assert stop.state == OrderState.CANCELLED
        # the filled leg is not touched again
        await order_manager.wait_idle()
        assert len(transport.messages_of(CANCEL_ORDER)) == 1

    @pytest.mark.asyncio
    async def test_rejected_parent_cancels_children(self, order_manager, correlator, transport):
        parent_id = await order_manager.submit(limit_order(bracket=Bracket(5)))
        feed(correlator, error_frame(parent_id, 201, 'Order rejected'))
        await order_manager.wait_idle()

        children = order_manager.get_order(parent_id).child_ids
        assert all(order_manager.get_order(c).state == OrderState.PENDING_CANCEL for c in children)
        assert sorted(int(m[2]) for m in transport.messages_of(CANCEL_ORDER)) == children

    @pytest.mark.asyncio
    async def test_held_bracket_cancelled_locally(self, order_manager, transport):
        parent_id = await order_manager.submit(limit_order(bracket=Bracket(5)), hold=True)
        assert transport.frames == []

        await order_manager.cancel(parent_id)
        group = [parent_id] + order_manager.get_order(parent_id).child_ids
        assert all(order_manager.get_order(i).state == OrderState.CANCELLED for i in group)
        assert transport.frames == []

        with pytest.raises(OrderStateError):
            await order_manager.transmit(parent_id)

    @pytest.mark.asyncio
    async def test_held_parent_sent_alone_after_exits_cancelled(self, order_manager, transport):
        parent_id = await order_manager.submit(limit_order(bracket=Bracket(5)), hold=True)
        stop_id, target_id = order_manager.get_order(parent_id).child_ids

        await order_manager.cancel(stop_id)
        assert order_manager.get_order(stop_id).state == OrderState.CANCELLED
        assert order_manager.get_order(target_id).state == OrderState.CANCELLED
        assert transport.frames == []

        await order_manager.transmit(parent_id)
        (msg,) = transport.messages_of(PLACE_ORDER)
        assert msg[ORDER_ID] == str(parent_id)
        assert msg[TRANSMIT] == '1'
        assert order_manager.get_order(parent_id).state == OrderState.PENDING_SUBMIT

    @pytest.mark.asyncio
    async def test_transmit_held_group(self, order_manager, transport):
        parent_id = await order_manager.submit(limit_order(bracket=Bracket(5)), hold=True)
        child_id = order_manager.get_order(parent_id).child_ids[0]

        # transmitting through a child sends the whole group
        assert await order_manager.transmit(child_id) == parent_id
        sent = [int(m[ORDER_ID]) for m in transport.messages_of(PLACE_ORDER)]
        assert sent == [parent_id] + order_manager.get_order(parent_id).child_ids

        with pytest.raises(OrderStateError):
            await order_manager.transmit(parent_id)

    @pytest.mark.asyncio
    async def test_held_order_cannot_be_awaited(self, order_manager):
        order_id = await order_manager.submit(limit_order(), hold=True)
        with pytest.raises(OrderStateError):
            await order_manager.await_terminal(order_id, timeout=0.1)

    @pytest.mark.asyncio
    async def test_non_positive_child_price(self, order_manager, transport):
        with pytest.raises(EncodingError):
            await order_manager.submit(limit_order(price=3, bracket=Bracket(5)))
        assert transport.frames == []


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_open_order_from_another_session_is_adopted(self, order_manager, correlator):
        feed(correlator, open_order_frame(50, 'AAPL', 'SELL', 10, 'LMT', '190.5', 'Submitted'))
        order = order_manager.get_order(50)
        assert order.state == OrderState.SUBMITTED
        assert order.symbol == 'AAPL'
        assert correlator.peek_next_id() == 51

        feed(correlator, order_status_frame(50, 'Filled', 10, 0, '190.5'))
        assert order.state == OrderState.FILLED
        event = await order_manager.await_terminal(50, timeout=1)
        assert event.status == 'Filled'

    @pytest.mark.asyncio
    async def test_list_orders_filters(self, order_manager, correlator):
        first = await order_manager.submit(limit_order())
        await order_manager.submit(Order('SELL', Contract(symbol='AAPL'), 5, limit_price=190))
        feed(correlator, order_status_frame(first, 'Filled', 100, 0, '600'))

        assert [o.order_id for o in order_manager.list_orders(state=OrderState.FILLED)] == [first]
        assert [o.symbol for o in order_manager.list_orders(symbol='aapl')] == ['AAPL']
        stats = order_manager.get_statistics()
        assert stats['total_orders_submitted'] == 2
        assert stats['orders_by_state'] == {'filled': 1, 'pending_submit': 1}


@pytest.mark.asyncio
async def test_async_order_update_callback(order_manager, correlator):
    seen = []

    async def on_update(update):
        seen.append((update['order_id'], update['state']))

    order_manager.subscribe_to_order_updates(on_update)
    order_id = await order_manager.submit(limit_order())
    feed(correlator, order_status_frame(order_id, 'Submitted', 0, 100))
    await order_manager.wait_idle()
    await asyncio.sleep(0)
    assert (order_id, 'submitted') in seen
