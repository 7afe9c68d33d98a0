"""Port: an open broker channel. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Protocol

from amqp_tools.app.domain.models import Profile
from amqp_tools.app.ports.incoming_message import IncomingMessage


class Deliveries(Protocol):
    """Pull handle over a registered manual-ack consumer."""

    async def next(self, timeout: float | None = None) -> IncomingMessage | None:
        """Wait for the next delivery; None when ``timeout`` elapses first."""
        ...

    async def cancel(self) -> None:
        """Cancel the consumer and requeue every buffered, unsettled delivery."""
        ...


class BrokerChannel(Protocol):
    async def get(self, queue_name: str) -> IncomingMessage | None:
        """Single basic.get with manual acknowledgement; None if the queue is empty."""
        ...

    async def consume(self, queue_name: str, *, prefetch: int) -> Deliveries: ...

    async def close(self) -> None: ...


class BrokerConnector(Protocol):
    async def connect(self, profile: Profile) -> BrokerChannel:
        """Open a connection and one channel for ``profile``. Raises ConnectError."""
        ...

    async def close(self) -> None:
        """Close channel then connection. Safe to call more than once."""
        ...
