"""Port: persists message bodies to their final destination."""
from __future__ import annotations

from typing import Protocol

from amqp_tools.app.ports.incoming_message import IncomingMessage


class MessageSink(Protocol):
    async def persist(self, message: IncomingMessage) -> str:
        """Durably write the body and return where it went. Raises SinkError."""
        ...
