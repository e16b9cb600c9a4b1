import asyncio

import pytest

from twsconnect.core.errors import ConnectionLost, UnknownSubscriptionError
from twsconnect.core.subscriptions import SubscriptionRegistry

from conftest import (
    D, error_frame, feed, snapshot_end_frame, tick_price_frame, tick_size_frame, tick_string_frame,
    wait_until
)

REQ_MKT_DATA = 1
CANCEL_MKT_DATA = 2
BID, ASK, LAST = 1, 2, 4


class TestBuffering:

    @pytest.mark.asyncio
    async def test_ring_buffer_keeps_newest(self, registry, correlator):
        request_id = await registry.subscribe('GOOG', capacity=3)
        feed(correlator, *[tick_price_frame(request_id, BID, str(600 + i)) for i in range(5)])

        quotes = registry.pop_all(request_id)
        assert [q.bid_price for q in quotes] == [D('602'), D('603'), D('604')]
        assert registry.pop_all(request_id) == []
        assert registry.get(request_id).received_count == 5

    @pytest.mark.asyncio
    async def test_quotes_carry_previous_fields(self, registry, correlator):
        request_id = await registry.subscribe('GOOG')
        feed(correlator,
             tick_price_frame(request_id, BID, '599.5', 200),
             tick_price_frame(request_id, ASK, '600.5', 100),
             tick_size_frame(request_id, 5, 10),
             tick_string_frame(request_id, 45, '1760522400'))

        quote = registry.peek(request_id)
        assert (quote.bid_price, quote.bid_size) == (D('599.5'), D('200'))
        assert (quote.ask_price, quote.ask_size) == (D('600.5'), D('100'))
        assert quote.last_size == D('10')
        assert quote.event_time is not None
        assert quote.spread == D('1.0')
        # capacity 1: only the newest stays buffered
        assert len(registry.pop_all(request_id)) == 1

    @pytest.mark.asyncio
    async def test_capacity_must_be_positive(self, registry, transport):
        with pytest.raises(ValueError):
            await registry.subscribe('GOOG', capacity=0)
        with pytest.raises(ValueError):
            await registry.subscribe('GOOG', reconnect_every=-1)
        assert transport.frames == []

    @pytest.mark.asyncio
    async def test_default_capacity_applies_when_unset(self, correlator):
        registry = SubscriptionRegistry(correlator, default_capacity=3)
        request_id = await registry.subscribe('GOOG')
        assert registry.get(request_id).capacity == 3
        assert registry.get(await registry.subscribe('AAPL', capacity=1)).capacity == 1
        with pytest.raises(ValueError):
            SubscriptionRegistry(correlator, default_capacity=0)

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, registry):
        with pytest.raises(UnknownSubscriptionError):
            registry.pop_all(99)
        with pytest.raises(UnknownSubscriptionError):
            await registry.unsubscribe(99)

    @pytest.mark.asyncio
    async def test_error_keeps_stream_open(self, registry, correlator):
        request_id = await registry.subscribe('GOOG')
        feed(correlator,
             error_frame(request_id, 10167, 'Requested market data is not subscribed. Displaying delayed'),
             tick_price_frame(request_id, LAST, '601'))
        sub = registry.get(request_id)
        assert sub.last_error.startswith('10167')
        assert sub.latest.last_price == D('601')

    @pytest.mark.asyncio
    async def test_quote_callbacks(self, registry, correlator):
        seen = []
        registry.subscribe_to_quotes(lambda request_id, quote: seen.append((request_id, quote['bid_price'])))
        request_id = await registry.subscribe('GOOG')
        feed(correlator, tick_price_frame(request_id, BID, '12.5'))
        assert seen == [(request_id, '12.5')]


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_subscribe_sends_request(self, registry, transport):
        request_id = await registry.subscribe('goog')
        (msg,) = transport.messages_of(REQ_MKT_DATA)
        assert msg[2] == str(request_id)
        assert msg[4] == 'GOOG'

    @pytest.mark.asyncio
    async def test_unsubscribe_returns_unread_quotes(self, registry, correlator, transport):
        request_id = await registry.subscribe('GOOG', capacity=10)
        feed(correlator, tick_price_frame(request_id, BID, '1'), tick_price_frame(request_id, BID, '2'))

        unread = await registry.unsubscribe(request_id)
        assert [q.bid_price for q in unread] == [D('1'), D('2')]
        assert transport.messages_of(CANCEL_MKT_DATA) == [('2', '2', str(request_id))]

        # stragglers after the cancel are dropped
        feed(correlator, tick_price_frame(request_id, BID, '3'))
        assert correlator.total_discarded == 1

    @pytest.mark.asyncio
    async def test_failed_subscribe_leaves_nothing_behind(self, registry, transport):
        transport.connected = False
        with pytest.raises(ConnectionLost):
            await registry.subscribe('GOOG')
        assert registry.subscriptions == {}

    @pytest.mark.asyncio
    async def test_unsubscribe_while_disconnected(self, registry, transport):
        request_id = await registry.subscribe('GOOG')
        transport.connected = False
        assert await registry.unsubscribe(request_id) == []
        assert registry.subscriptions == {}

    @pytest.mark.asyncio
    async def test_resubscribe_resends_original_ids(self, registry, transport):
        first = await registry.subscribe('GOOG')
        second = await registry.subscribe('AAPL')
        transport.frames.clear()

        registry.on_connection_lost(ConnectionLost("socket closed"))
        assert await registry.resubscribe_all() == 2
        sent = transport.messages_of(REQ_MKT_DATA)
        assert [int(m[2]) for m in sent] == [first, second]
        assert len(transport.frames) == 2

    @pytest.mark.asyncio
    async def test_stream_opened_after_drop_not_resent(self, registry, transport):
        first = await registry.subscribe('GOOG')
        registry.on_connection_lost(ConnectionLost("socket closed"))

        # opened on the new session before the reconnect listeners ran
        second = await registry.subscribe('AAPL')
        assert await registry.resubscribe_all() == 1

        sent = [int(m[2]) for m in transport.messages_of(REQ_MKT_DATA)]
        assert sent == [first, second, first]
        assert sent.count(second) == 1

        # nothing left to re-send until the next drop
        assert await registry.resubscribe_all() == 0

    @pytest.mark.asyncio
    async def test_snapshot_folds_ticks(self, registry, correlator, transport):
        task = asyncio.create_task(registry.snapshot('GOOG', timeout=1))
        await wait_until(lambda: transport.frames)
        (msg,) = transport.messages_of(REQ_MKT_DATA)
        request_id = int(msg[2])
        # snapshot flag set, no generic ticks
        assert msg[-4:-2] == ('', '1')

        feed(correlator,
             tick_price_frame(request_id, BID, '99'),
             tick_price_frame(request_id, ASK, '101'),
             snapshot_end_frame(request_id))
        quote = await task
        assert (quote.bid_price, quote.ask_price) == (D('99'), D('101'))
        assert registry.subscriptions == {}


class TestSessionCycling:

    @pytest.mark.asyncio
    async def test_cycle_every_n_quotes(self, correlator):
        cycles = []

        async def cycle():
            cycles.append(1)

        registry = SubscriptionRegistry(correlator, cycle_session=cycle, reconnect_every=3)
        request_id = await registry.subscribe('GOOG')

        feed(correlator, *[tick_price_frame(request_id, BID, '1') for _ in range(3)])
        await wait_until(lambda: registry.cycles == 1)
        assert registry.quote_counter == 0

        feed(correlator, *[tick_price_frame(request_id, BID, '1') for _ in range(2)])
        await asyncio.sleep(0.05)
        assert len(cycles) == 1

        feed(correlator, tick_price_frame(request_id, BID, '1'))
        await wait_until(lambda: registry.cycles == 2)

    @pytest.mark.asyncio
    async def test_zero_disables_cycling(self, correlator):
        cycles = []

        async def cycle():
            cycles.append(1)

        registry = SubscriptionRegistry(correlator, cycle_session=cycle, reconnect_every=3)
        request_id = await registry.subscribe('GOOG', reconnect_every=0)
        feed(correlator, *[tick_price_frame(request_id, BID, '1') for _ in range(10)])
        await asyncio.sleep(0.05)
        assert cycles == []
        assert registry.quote_counter == 10

    @pytest.mark.asyncio
    async def test_teardown_drops_everything(self, registry, correlator):
        request_id = await registry.subscribe('GOOG')
        registry.teardown()
        assert registry.subscriptions == {}
        assert not correlator.is_pending(request_id)

    @pytest.mark.asyncio
    async def test_teardown_forgets_dropped_streams(self, registry, transport):
        await registry.subscribe('GOOG')
        registry.on_connection_lost(ConnectionLost("socket closed"))
        registry.teardown(ConnectionLost("gave up"))
        transport.frames.clear()

        assert await registry.resubscribe_all() == 0
        assert transport.frames == []

    @pytest.mark.asyncio
    async def test_coroutine_quote_callback_runs(self, registry, correlator):
        seen = []

        async def on_quote(request_id, quote):
            seen.append(quote['bid_price'])

        registry.subscribe_to_quotes(on_quote)
        request_id = await registry.subscribe('GOOG')
        feed(correlator, tick_price_frame(request_id, BID, '12.5'))
        assert len(registry._tasks) == 1
        await wait_until(lambda: seen == ['12.5'])
        await wait_until(lambda: not registry._tasks)
