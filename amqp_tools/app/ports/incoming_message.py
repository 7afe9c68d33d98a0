"""Port: a message delivered by the broker and not yet settled."""
from __future__ import annotations

from typing import Protocol


class IncomingMessage(Protocol):
    """Transport-agnostic delivered message. Settled at most once, by ack or reject."""

    @property
    def body(self) -> bytes: ...

    @property
    def delivery_tag(self) -> int | None: ...

    @property
    def redelivered(self) -> bool: ...

    @property
    def processed(self) -> bool: ...

    async def ack(self) -> None: ...

    async def reject(self, *, requeue: bool = True) -> None: ...
