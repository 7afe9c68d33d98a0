"""RabbitMQ connector lifecycle states."""
from enum import Enum


class ConnectorState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CHANNEL_OPEN = "CHANNEL_OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
