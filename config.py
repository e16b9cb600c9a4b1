import os


class Config:
    # Gateway Configuration
    TWS_HOST = os.getenv('TWS_HOST', '127.0.0.1')
    TWS_PORT = int(os.getenv('TWS_PORT', 7496))
    # unset: a random client id is drawn per process
    TWS_CLIENT_ID = int(os.getenv('TWS_CLIENT_ID')) if os.getenv('TWS_CLIENT_ID') else None
    CONNECT_ON_STARTUP = os.getenv('CONNECT_ON_STARTUP', 'True').lower() == 'true'

    # Timeouts (seconds)
    CONNECT_TIMEOUT = float(os.getenv('CONNECT_TIMEOUT', 5))
    REQUEST_TIMEOUT = float(os.getenv('REQUEST_TIMEOUT', 10))

    # Reconnection
    AUTO_RECONNECT = os.getenv('AUTO_RECONNECT', 'True').lower() == 'true'
    MAX_RECONNECT_ATTEMPTS = int(os.getenv('MAX_RECONNECT_ATTEMPTS', 5))
    RECONNECT_BACKOFF_BASE = float(os.getenv('RECONNECT_BACKOFF_BASE', 1.0))
    RECONNECT_BACKOFF_MAX = float(os.getenv('RECONNECT_BACKOFF_MAX', 30.0))
    HEARTBEAT_INTERVAL = float(os.getenv('HEARTBEAT_INTERVAL', 30))
    PROTOCOL_ERROR_THRESHOLD = int(os.getenv('PROTOCOL_ERROR_THRESHOLD', 10))

    # Market Data
    QUOTES_BUFFER_SIZE = int(os.getenv('QUOTES_BUFFER_SIZE', 1))
    RECONNECT_EVERY = int(os.getenv('RECONNECT_EVERY', 5000))  # 0 disables

    # API Configuration
    REST_HOST = os.getenv('REST_HOST', '0.0.0.0')
    REST_PORT = int(os.getenv('REST_PORT', 8000))

    # Logging Configuration
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FILE = os.getenv('LOG_FILE', 'twsconnect.log')

    # Development/Testing
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
