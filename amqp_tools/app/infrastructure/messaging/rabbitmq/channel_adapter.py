"""Adapter: expose an aio_pika channel through the BrokerChannel port.

Read mode registers a manual-ack consumer whose deliveries are buffered in an
asyncio.Queue and pulled one at a time by the controller. Cancelling the
consumer requeues whatever is still buffered, so nothing the broker pushed
ahead of the limit is acked or dropped.
"""
from __future__ import annotations

import asyncio
from typing import Any

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError, ChannelNotFoundEntity
from loguru import logger

from amqp_tools.app.core import SERVICE_NAME
from amqp_tools.app.domain.errors import AcquisitionError, AcquisitionFailure
from amqp_tools.app.infrastructure.messaging.rabbitmq.aio_pika_message_adapter import AioPikaMessageAdapter


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class _ConnectionLost:
    def __init__(self, detail: str) -> None:
        self.detail = detail


class ConsumerDeliveries:
    """Deliveries implementation over one aio_pika consumer registration."""

    def __init__(self, queue: AbstractQueue) -> None:
        self._queue = queue
        self._buffer: asyncio.Queue[AioPikaMessageAdapter | _ConnectionLost] = asyncio.Queue()
        self._consumer_tag: str | None = None
        self._lost: _ConnectionLost | None = None

    async def start(self) -> None:
        self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
        _log("consumer_registered", queue=self._queue.name, consumer_tag=self._consumer_tag)

    async def _on_message(self, message: aio_pika.abc.AbstractIncomingMessage) -> None:
        await self._buffer.put(AioPikaMessageAdapter(message))

    def connection_lost(self, detail: str) -> None:
        if self._lost is None:
            self._lost = _ConnectionLost(detail)
            self._buffer.put_nowait(self._lost)

    def _raise_if_lost(self) -> None:
        if self._lost is not None:
            raise AcquisitionError(AcquisitionFailure.CONNECTION_LOST, self._lost.detail)

    async def next(self, timeout: float | None = None) -> AioPikaMessageAdapter | None:
        # buffered deliveries cannot be acked once the connection is gone
        self._raise_if_lost()
        try:
            async with asyncio.timeout(timeout):
                item = await self._buffer.get()
        except TimeoutError:
            return None
        self._raise_if_lost()
        return item

    async def cancel(self) -> None:
        if self._consumer_tag is not None and self._lost is None:
            tag, self._consumer_tag = self._consumer_tag, None
            try:
                await self._queue.cancel(tag)
                _log("consumer_cancelled", queue=self._queue.name, consumer_tag=tag)
            except (AMQPError, ChannelInvalidStateError) as exc:
                logger.warning("consumer cancel failed (broker requeues on close): {}", exc)
        requeued = 0
        while not self._buffer.empty():
            item = self._buffer.get_nowait()
            if isinstance(item, _ConnectionLost) or item.processed:
                continue
            try:
                await item.reject(requeue=True)
                requeued += 1
            except AcquisitionError as exc:
                logger.warning("requeue of buffered delivery failed (broker requeues on close): {}", exc)
        if requeued:
            _log("buffered_deliveries_requeued", count=requeued)


class AioPikaBrokerChannel:
    """BrokerChannel implementation for aio_pika."""

    def __init__(self, channel: AbstractChannel) -> None:
        self._channel = channel
        self._deliveries: list[ConsumerDeliveries] = []
        self._closing = False
        callbacks = getattr(channel, "close_callbacks", None)
        if callbacks is not None and callable(getattr(callbacks, "add", None)):
            callbacks.add(self._on_channel_closed)

    async def _queue(self, queue_name: str) -> AbstractQueue:
        try:
            # passive declare: never creates the queue
            return await self._channel.get_queue(queue_name, ensure=True)
        except ChannelNotFoundEntity as exc:
            raise AcquisitionError(AcquisitionFailure.QUEUE_NOT_FOUND, queue_name) from exc
        except (AMQPError, ChannelInvalidStateError) as exc:
            raise AcquisitionError(AcquisitionFailure.CHANNEL_ERROR, str(exc)) from exc

    async def get(self, queue_name: str) -> AioPikaMessageAdapter | None:
        queue = await self._queue(queue_name)
        try:
            message = await queue.get(no_ack=False, fail=False)
        except ChannelNotFoundEntity as exc:
            raise AcquisitionError(AcquisitionFailure.QUEUE_NOT_FOUND, queue_name) from exc
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as exc:
            raise AcquisitionError(AcquisitionFailure.CONNECTION_LOST, str(exc)) from exc
        if message is None:
            return None
        return AioPikaMessageAdapter(message)

    async def consume(self, queue_name: str, *, prefetch: int) -> ConsumerDeliveries:
        queue = await self._queue(queue_name)
        try:
            await self._channel.set_qos(prefetch_count=prefetch)
            deliveries = ConsumerDeliveries(queue)
            # registered before start so a loss during basic.consume still reaches it
            self._deliveries.append(deliveries)
            await deliveries.start()
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as exc:
            raise AcquisitionError(AcquisitionFailure.CHANNEL_ERROR, str(exc)) from exc
        return deliveries

    def _on_channel_closed(self, *args: Any, **kwargs: Any) -> None:
        if self._closing:
            return
        exc = next((a for a in args if isinstance(a, BaseException)), None)
        self.connection_lost(str(exc) if exc is not None else "channel closed by broker")

    def connection_lost(self, detail: str) -> None:
        for deliveries in self._deliveries:
            deliveries.connection_lost(detail)

    async def close(self) -> None:
        self._closing = True
        if not self._channel.is_closed:
            await self._channel.close()
