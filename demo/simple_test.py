import requests


def test_rest_api():
    """Simple REST API smoke test against a running bridge"""
    base_url = "http://localhost:8000"

    print("Testing REST API...")

    # Held order: registered by the bridge, never sent to the gateway
    order_data = {
        'action': 'BUY',
        'symbol': 'GOOG',
        'quantity': 100,
        'order_type': 'LMT',
        'limit_price': 600,
        'hold': True
    }

    try:
        response = requests.post(f"{base_url}/orders", json=order_data)
        if response.status_code == 200:
            result = response.json()
            order_id = result['order']['order_id']
            print(f"✓ Held order registered: {order_id}")

            # Test order status
            status_response = requests.get(f"{base_url}/orders/{order_id}")
            if status_response.status_code == 200:
                print(f"✓ Order state retrieved: {status_response.json()['order']['state']}")

            cancel_response = requests.delete(f"{base_url}/orders/{order_id}")
            if cancel_response.status_code == 200:
                print(f"✓ Held order cancelled: {cancel_response.json()['order']['state']}")

        else:
            print(f"Order submission failed: {response.status_code} {response.text}")

    except requests.exceptions.ConnectionError:
        print("Cannot connect to REST API. Make sure the server is running on port 8000")
    except Exception as e:
        print(f" Error: {e}")

    # Gateway session health
    try:
        health = requests.get(f"{base_url}/health").json()
        print(f"Gateway state: {health['gateway_state']}, accounts: {health['accounts']}")
    except Exception as e:
        print(f"Health check failed: {e}")

if __name__ == "__main__":
    test_rest_api()
