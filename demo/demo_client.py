import asyncio
import aiohttp
import websockets
import json
import time


class BridgeDemo:
    def __init__(self, rest_url="http://localhost:8000", ws_url="ws://localhost:8000"):
        self.rest_url = rest_url
        self.ws_url = ws_url
        self.session = None

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()

    async def health(self):
        async with self.session.get(f"{self.rest_url}/health") as response:
            return await response.json()

    async def submit_order(self, order_data):
        """Submit an order via REST API"""
        async with self.session.post(f"{self.rest_url}/orders", json=order_data) as response:
            return response.status, await response.json()

    async def transmit(self, order_id):
        async with self.session.post(f"{self.rest_url}/orders/{order_id}/transmit") as response:
            return response.status, await response.json()

    async def cancel(self, order_id):
        async with self.session.delete(f"{self.rest_url}/orders/{order_id}") as response:
            return response.status, await response.json()

    async def await_order(self, order_id, timeout=30):
        async with self.session.post(f"{self.rest_url}/orders/{order_id}/await",
                                     params={'timeout': timeout}) as response:
            return response.status, await response.json()

    async def subscribe(self, symbol, capacity=10):
        async with self.session.post(f"{self.rest_url}/market-data/subscriptions",
                                     json={'symbol': symbol, 'capacity': capacity}) as response:
            return response.status, await response.json()

    async def pop_quotes(self, request_id):
        async with self.session.get(f"{self.rest_url}/market-data/subscriptions/{request_id}/quotes") as response:
            return await response.json()

    async def unsubscribe(self, request_id):
        async with self.session.delete(f"{self.rest_url}/market-data/subscriptions/{request_id}") as response:
            return await response.json()

    async def listen_to_quotes(self, request_id, duration=15):
        """Listen to one subscription's quotes via WebSocket"""
        uri = f"{self.ws_url}/ws/quotes/{request_id}"

        try:
            async with websockets.connect(uri) as websocket:
                print(f"Listening to subscription {request_id} for {duration} seconds...")
                start_time = time.time()

                while time.time() - start_time < duration:
                    try:
                        message = await asyncio.wait_for(websocket.recv(), timeout=1.0)
                        data = json.loads(message)

                        if data.get('type') == 'quote':
                            print(f"Quote - {data['symbol']}  "
                                  f"bid {data.get('bid_price')} / ask {data.get('ask_price')}  "
                                  f"last {data.get('last_price')}")
                        elif data.get('type') == 'error':
                            print(f"  {data['message']}")
                            return
                    except asyncio.TimeoutError:
                        continue

        except Exception as e:
            print(f"WebSocket error: {e}")

    async def listen_to_orders(self, duration=15):
        """Listen to order updates via WebSocket"""
        uri = f"{self.ws_url}/ws/orders"

        try:
            async with websockets.connect(uri) as websocket:
                print(f"Listening to order updates for {duration} seconds...")
                start_time = time.time()

                while time.time() - start_time < duration:
                    try:
                        message = await asyncio.wait_for(websocket.recv(), timeout=1.0)
                        data = json.loads(message)

                        if data.get('type') == 'orders':
                            print(f"Tracking {len(data['orders'])} orders")
                        elif data.get('type') == 'order_update':
                            print(f"Order {data['order_id']} {data['action']} {data['quantity']} "
                                  f"{data['contract']['symbol']}: {data['state']} "
                                  f"(filled {data['cumulative_quantity']} @ {data['average_fill_price']})")
                    except asyncio.TimeoutError:
                        continue

        except Exception as e:
            print(f"WebSocket error: {e}")


async def demo_held_bracket():
    """Hold a bracket order, inspect it, then cancel it without it ever leaving the bridge"""
    print("=== Held Bracket Demo ===")

    async with BridgeDemo() as demo:
        status, result = await demo.submit_order({
            'action': 'BUY',
            'symbol': 'GOOG',
            'quantity': 100,
            'order_type': 'LMT',
            'limit_price': 600,
            'bracket_delta': [5, 10],
            'hold': True
        })
        if status != 200:
            print(f"  Submit failed ({status}): {result}")
            return
        parent = result['order']
        print(f"  Parent {parent['order_id']}: {parent['action']} {parent['quantity']} @ {parent['limit_price']}")
        for child in result['children']:
            price = child['limit_price'] or child['aux_price']
            print(f"  Child {child['order_id']} ({child['bracket_role']}): {child['type']} {child['action']} @ {price}")

        status, result = await demo.cancel(parent['order_id'])
        print(f"  Cancelled held bracket: {result['order']['state']}")


async def demo_live_order():
    """Send a limit order to the gateway and wait for it to finish"""
    print("\n=== Live Order Demo ===")

    async with BridgeDemo() as demo:
        health = await demo.health()
        if health['status'] != 'healthy':
            print(f"  Gateway not connected ({health['gateway_state']}), skipping")
            return

        status, result = await demo.submit_order({
            'action': 'BUY',
            'symbol': 'GOOG',
            'quantity': 1,
            'order_type': 'LMT',
            'limit_price': 100
        })
        if status != 200:
            print(f"  Submit failed ({status}): {result}")
            return
        order_id = result['order']['order_id']
        print(f"  Order {order_id}: {result['order']['state']}")

        status, result = await demo.await_order(order_id, timeout=5)
        if status == 504:
            print("  Still working after 5s, cancelling")
            status, result = await demo.cancel(order_id)
        print(f"  Order {order_id}: {result['order']['state'] if 'order' in result else result}")


async def demo_market_data():
    """Subscribe to quotes, stream them over WebSocket, then drain the buffer"""
    print("\n=== Market Data Demo ===")

    async with BridgeDemo() as demo:
        status, result = await demo.subscribe('GOOG', capacity=10)
        if status != 200:
            print(f"  Subscribe failed ({status}): {result}")
            return
        request_id = result['request_id']

        await asyncio.gather(
            demo.listen_to_quotes(request_id, 10),
            demo.listen_to_orders(10)
        )

        quotes = await demo.pop_quotes(request_id)
        print(f"  {len(quotes)} quotes buffered")
        unread = await demo.unsubscribe(request_id)
        print(f"  Unsubscribed, {len(unread)} unread")


async def main():
    """Main demo function"""
    print("Starting TWS Gateway Bridge Demo")
    print("=" * 50)

    try:
        await demo_held_bracket()
        await asyncio.sleep(1)

        await demo_live_order()
        await asyncio.sleep(1)

        await demo_market_data()

    except Exception as e:
        print(f"Demo error: {e}")
        import traceback
        traceback.print_exc()

if __name__ == "__main__":
    print("Make sure the bridge is running on:")
    print("  REST API: http://localhost:8000")
    print("  WebSocket: ws://localhost:8000/ws/...")
    print("\nPress Ctrl+C to stop the demo\n")

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nDemo stopped by user")
