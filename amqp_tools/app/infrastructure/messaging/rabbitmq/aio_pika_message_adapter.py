"""Adapter: wrap aio_pika.IncomingMessage to implement ports.IncomingMessage."""
from __future__ import annotations

from aio_pika import IncomingMessage as AioPikaIncomingMessage
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from amqp_tools.app.domain.errors import AcquisitionError, AcquisitionFailure


class AioPikaMessageAdapter:
    """Implements amqp_tools.app.ports.incoming_message.IncomingMessage for aio_pika."""

    def __init__(self, message: AioPikaIncomingMessage) -> None:
        self._message = message

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def delivery_tag(self) -> int | None:
        return self._message.delivery_tag

    @property
    def redelivered(self) -> bool:
        return bool(self._message.redelivered)

    @property
    def processed(self) -> bool:
        return bool(self._message.processed)

    async def ack(self) -> None:
        try:
            await self._message.ack()
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as exc:
            raise AcquisitionError(
                AcquisitionFailure.CONNECTION_LOST,
                f"ack of delivery {self.delivery_tag} failed: {exc}",
            ) from exc

    async def reject(self, *, requeue: bool = True) -> None:
        try:
            await self._message.reject(requeue=requeue)
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as exc:
            raise AcquisitionError(
                AcquisitionFailure.CONNECTION_LOST,
                f"reject of delivery {self.delivery_tag} failed: {exc}",
            ) from exc
