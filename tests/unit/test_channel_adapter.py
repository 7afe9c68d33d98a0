"""Unit tests for the aio_pika channel adapter: passive queue lookup, buffered deliveries, requeue on cancel."""
from __future__ import annotations

import pytest
from aio_pika.exceptions import ChannelInvalidStateError, ChannelNotFoundEntity

from amqp_tools.app.application.acquisition_controller import AcquisitionController
from amqp_tools.app.constants import RetrievalMode
from amqp_tools.app.domain.errors import AcquisitionError, AcquisitionFailure
from amqp_tools.app.domain.models import DirectoryTarget, RetrievalRequest
from amqp_tools.app.infrastructure.messaging.rabbitmq.aio_pika_message_adapter import AioPikaMessageAdapter
from amqp_tools.app.infrastructure.messaging.rabbitmq.channel_adapter import AioPikaBrokerChannel
from tests.conftest import FakeSink


class _RawMessage:
    def __init__(self, body: bytes, tag: int) -> None:
        self.body = body
        self.delivery_tag = tag
        self.redelivered = False
        self.processed = False
        self.acked = False
        self.rejected_with: bool | None = None
        self.ack_raises: Exception | None = None

    async def ack(self) -> None:
        if self.ack_raises:
            raise self.ack_raises
        self.acked = True
        self.processed = True

    async def reject(self, requeue: bool = False) -> None:
        self.rejected_with = requeue
        self.processed = True


class _RawQueue:
    def __init__(self, name: str, messages: list[_RawMessage]) -> None:
        self.name = name
        self._messages = messages
        self.callback = None
        self.consume_kwargs: dict = {}
        self.cancelled: list[str] = []
        self.get_kwargs: dict = {}

    async def get(self, **kwargs):
        self.get_kwargs = kwargs
        return self._messages.pop(0) if self._messages else None

    async def consume(self, callback, **kwargs):
        self.callback = callback
        self.consume_kwargs = kwargs
        return "ctag-1"

    async def cancel(self, tag):
        self.cancelled.append(tag)

    async def push(self, message: _RawMessage) -> None:
        await self.callback(message)


class _RawChannel:
    def __init__(self, queues: dict[str, _RawQueue]) -> None:
        self._queues = queues
        self.is_closed = False
        self.qos: dict = {}
        self.get_queue_kwargs: dict = {}

    async def get_queue(self, name, **kwargs):
        self.get_queue_kwargs = kwargs
        if name not in self._queues:
            raise ChannelNotFoundEntity()
        return self._queues[name]

    async def set_qos(self, **kwargs):
        self.qos = kwargs

    async def close(self):
        self.is_closed = True


@pytest.mark.asyncio
async def test_get_uses_manual_ack_and_passive_lookup():
    raw = _RawMessage(b"head", 7)
    queue = _RawQueue("orders", [raw])
    channel = _RawChannel({"orders": queue})
    adapter = AioPikaBrokerChannel(channel)

    message = await adapter.get("orders")

    assert message.body == b"head"
    assert message.delivery_tag == 7
    assert queue.get_kwargs == {"no_ack": False, "fail": False}
    assert channel.get_queue_kwargs == {"ensure": True}


@pytest.mark.asyncio
async def test_get_on_empty_queue_returns_none():
    adapter = AioPikaBrokerChannel(_RawChannel({"orders": _RawQueue("orders", [])}))

    assert await adapter.get("orders") is None


@pytest.mark.asyncio
async def test_missing_queue_maps_to_queue_not_found():
    adapter = AioPikaBrokerChannel(_RawChannel({}))

    with pytest.raises(AcquisitionError) as excinfo:
        await adapter.get("nope")

    assert excinfo.value.reason is AcquisitionFailure.QUEUE_NOT_FOUND


@pytest.mark.asyncio
async def test_consume_sets_qos_and_buffers_deliveries_in_order():
    queue = _RawQueue("orders", [])
    channel = _RawChannel({"orders": queue})
    adapter = AioPikaBrokerChannel(channel)

    deliveries = await adapter.consume("orders", prefetch=3)
    await queue.push(_RawMessage(b"a", 1))
    await queue.push(_RawMessage(b"b", 2))

    assert channel.qos == {"prefetch_count": 3}
    assert queue.consume_kwargs == {"no_ack": False}
    assert (await deliveries.next(0.1)).body == b"a"
    assert (await deliveries.next(0.1)).body == b"b"
    assert await deliveries.next(0.01) is None


@pytest.mark.asyncio
async def test_cancel_requeues_buffered_unsettled_deliveries():
    queue = _RawQueue("orders", [])
    adapter = AioPikaBrokerChannel(_RawChannel({"orders": queue}))
    deliveries = await adapter.consume("orders", prefetch=5)
    first, second, third = _RawMessage(b"1", 1), _RawMessage(b"2", 2), _RawMessage(b"3", 3)
    for raw in (first, second, third):
        await queue.push(raw)

    taken = await deliveries.next(0.1)
    await taken.ack()
    await deliveries.cancel()

    assert queue.cancelled == ["ctag-1"]
    assert first.acked is True
    assert first.rejected_with is None
    assert second.rejected_with is True
    assert third.rejected_with is True


@pytest.mark.asyncio
async def test_connection_loss_wakes_waiting_consumer():
    queue = _RawQueue("orders", [])
    adapter = AioPikaBrokerChannel(_RawChannel({"orders": queue}))
    deliveries = await adapter.consume("orders", prefetch=1)

    adapter.connection_lost("peer reset")

    with pytest.raises(AcquisitionError) as excinfo:
        await deliveries.next(None)
    assert excinfo.value.reason is AcquisitionFailure.CONNECTION_LOST
    assert "peer reset" in str(excinfo.value)


@pytest.mark.asyncio
async def test_failed_ack_maps_to_connection_lost():
    raw = _RawMessage(b"x", 1)
    raw.ack_raises = ChannelInvalidStateError("channel closed")

    with pytest.raises(AcquisitionError) as excinfo:
        await AioPikaMessageAdapter(raw).ack()

    assert excinfo.value.reason is AcquisitionFailure.CONNECTION_LOST


@pytest.mark.asyncio
async def test_close_marks_channel_closed():
    channel = _RawChannel({})
    adapter = AioPikaBrokerChannel(channel)

    await adapter.close()

    assert channel.is_closed is True


@pytest.mark.asyncio
async def test_connection_loss_discards_already_buffered_deliveries():
    queue = _RawQueue("orders", [])
    adapter = AioPikaBrokerChannel(_RawChannel({"orders": queue}))
    deliveries = await adapter.consume("orders", prefetch=5)
    await queue.push(_RawMessage(b"a", 1))
    await queue.push(_RawMessage(b"b", 2))

    adapter.connection_lost("peer reset")

    for _ in range(2):
        with pytest.raises(AcquisitionError) as excinfo:
            await deliveries.next(0.1)
        assert excinfo.value.reason is AcquisitionFailure.CONNECTION_LOST


@pytest.mark.asyncio
async def test_read_after_connection_loss_persists_nothing():
    queue = _RawQueue("orders", [])
    adapter = AioPikaBrokerChannel(_RawChannel({"orders": queue}))
    raws = [_RawMessage(b"a", 1), _RawMessage(b"b", 2)]
    for raw in raws:
        raw.ack_raises = ChannelInvalidStateError("channel closed")

    async def consume(callback, **kwargs):
        queue.callback = callback
        for raw in raws:
            await callback(raw)
        adapter.connection_lost("peer reset")
        return "ctag-1"

    queue.consume = consume
    sink = FakeSink()
    request = RetrievalRequest(queue_name="orders", mode=RetrievalMode.READ, target=DirectoryTarget("out"), limit=5)

    with pytest.raises(AcquisitionError) as excinfo:
        await AcquisitionController(idle_timeout_seconds=0.1).run(adapter, request, sink)

    assert excinfo.value.reason is AcquisitionFailure.CONNECTION_LOST
    assert excinfo.value.acknowledged == 0
    assert sink.persisted == []
    assert sink.calls == 0
