from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest

from amqp_tools.app.config.settings import Settings
from amqp_tools.app.domain.errors import AcquisitionError, AcquisitionFailure, ConnectError, SinkError
from amqp_tools.app.domain.models import Profile


@dataclass
class _Envelope:
    tag: int
    body: bytes
    redelivered: bool = False


class FakeMessage:
    """Implements IncomingMessage over FakeBroker; settles at most once."""

    def __init__(self, broker: "FakeBroker", envelope: _Envelope) -> None:
        self._broker = broker
        self._envelope = envelope
        self.acked = False
        self.rejected = False
        self.reject_requeue: bool | None = None

    @property
    def body(self) -> bytes:
        return self._envelope.body

    @property
    def delivery_tag(self) -> int:
        return self._envelope.tag

    @property
    def redelivered(self) -> bool:
        return self._envelope.redelivered

    @property
    def processed(self) -> bool:
        return self.acked or self.rejected

    async def ack(self) -> None:
        assert not self.processed, "message settled twice"
        if self._broker.lost:
            raise AcquisitionError(AcquisitionFailure.CONNECTION_LOST, "connection reset")
        self.acked = True
        self._broker.settle_ack(self._envelope)

    async def reject(self, *, requeue: bool = True) -> None:
        assert not self.processed, "message settled twice"
        self.rejected = True
        self.reject_requeue = requeue
        self._broker.settle_reject(self._envelope, requeue)


class FakeBroker:
    """Single in-memory queue with manual-ack semantics.

    Unsettled deliveries go back to the queue in their original position when
    rejected with requeue or when the channel closes.
    """

    def __init__(self, bodies: list[bytes] | None = None, *, queue_name: str = "orders") -> None:
        self.queue_name = queue_name
        self._next_tag = 1
        self.ready: list[_Envelope] = []
        self.unacked: dict[int, _Envelope] = {}
        self.acked: list[bytes] = []
        self.events: list[tuple[str, int]] = []
        self.lost = False
        for body in bodies or []:
            self.publish(body)

    def publish(self, body: bytes) -> None:
        self.ready.append(_Envelope(tag=self._next_tag, body=body))
        self._next_tag += 1

    @property
    def message_count(self) -> int:
        return len(self.ready)

    @property
    def head(self) -> bytes | None:
        return self.ready[0].body if self.ready else None

    def deliver(self) -> FakeMessage | None:
        if not self.ready:
            return None
        envelope = self.ready.pop(0)
        self.unacked[envelope.tag] = envelope
        self.events.append(("deliver", envelope.tag))
        return FakeMessage(self, envelope)

    def settle_ack(self, envelope: _Envelope) -> None:
        self.unacked.pop(envelope.tag)
        self.acked.append(envelope.body)
        self.events.append(("ack", envelope.tag))

    def settle_reject(self, envelope: _Envelope, requeue: bool) -> None:
        self.unacked.pop(envelope.tag, None)
        self.events.append(("reject", envelope.tag))
        if requeue:
            self._requeue(envelope)

    def _requeue(self, envelope: _Envelope) -> None:
        envelope.redelivered = True
        self.ready.append(envelope)
        self.ready.sort(key=lambda e: e.tag)

    def close_channel(self) -> None:
        for envelope in list(self.unacked.values()):
            self._requeue(envelope)
        self.unacked.clear()


class FakeDeliveries:
    """Deliveries over FakeBroker honouring the prefetch window."""

    def __init__(self, broker: FakeBroker, prefetch: int) -> None:
        self._broker = broker
        self.prefetch = prefetch
        self.buffer: list[FakeMessage] = []
        self.cancelled = False
        self.max_in_flight = 0
        self.delivered: list[FakeMessage] = []

    def _top_up(self) -> None:
        while len(self._broker.unacked) < self.prefetch:
            message = self._broker.deliver()
            if message is None:
                break
            self.buffer.append(message)
            self.delivered.append(message)
        self.max_in_flight = max(self.max_in_flight, len(self._broker.unacked))

    async def next(self, timeout: float | None = None) -> FakeMessage | None:
        if self._broker.lost:
            raise AcquisitionError(AcquisitionFailure.CONNECTION_LOST, "connection reset")
        self._top_up()
        if self.buffer:
            return self.buffer.pop(0)
        if timeout is None:
            await asyncio.Event().wait()
        await asyncio.sleep(0)
        return None

    async def cancel(self) -> None:
        self.cancelled = True
        for message in self.buffer:
            if not message.processed:
                await message.reject(requeue=True)
        self.buffer.clear()


class FakeChannel:
    """Implements BrokerChannel over FakeBroker."""

    def __init__(self, broker: FakeBroker) -> None:
        self.broker = broker
        self.deliveries: FakeDeliveries | None = None
        self.closed = False
        self.get_calls = 0

    def _check_queue(self, queue_name: str) -> None:
        if queue_name != self.broker.queue_name:
            raise AcquisitionError(AcquisitionFailure.QUEUE_NOT_FOUND, queue_name)

    async def get(self, queue_name: str) -> FakeMessage | None:
        self._check_queue(queue_name)
        self.get_calls += 1
        return self.broker.deliver()

    async def consume(self, queue_name: str, *, prefetch: int) -> FakeDeliveries:
        self._check_queue(queue_name)
        self.deliveries = FakeDeliveries(self.broker, prefetch)
        return self.deliveries

    async def close(self) -> None:
        self.closed = True
        self.broker.close_channel()


class FakeConnector:
    """Implements BrokerConnector; records lifecycle calls."""

    def __init__(self, channel: FakeChannel, *, connect_raises: Exception | None = None) -> None:
        self.channel = channel
        self._connect_raises = connect_raises
        self.connected_profile: Profile | None = None
        self.close_calls = 0

    async def connect(self, profile: Profile) -> FakeChannel:
        if self._connect_raises is not None:
            raise self._connect_raises
        self.connected_profile = profile
        return self.channel

    async def close(self) -> None:
        self.close_calls += 1
        if not self.channel.closed:
            await self.channel.close()


class FakeSink:
    """Implements MessageSink; records bodies, optionally fails on the n-th call (1-based)."""

    def __init__(self, broker: FakeBroker | None = None, *, fail_on: int | None = None, reason: str = "disk full") -> None:
        self._broker = broker
        self._fail_on = fail_on
        self._reason = reason
        self.calls = 0
        self.persisted: list[bytes] = []

    async def persist(self, message: Any) -> str:
        self.calls += 1
        if self._broker is not None:
            self._broker.events.append(("persist", message.delivery_tag))
        if self._fail_on is not None and self.calls == self._fail_on:
            raise SinkError(self._reason)
        self.persisted.append(message.body)
        return f"mem://{self.calls - 1}"


class FakeProfiles:
    def __init__(self, profiles: dict[str, Profile]) -> None:
        self._profiles = profiles

    def resolve(self, name: str) -> Profile:
        from amqp_tools.app.domain.errors import ProfileNotFound

        try:
            return self._profiles[name]
        except KeyError:
            raise ProfileNotFound(name) from None


def make_profile(**overrides: Any) -> Profile:
    data: dict[str, Any] = {
        "username": "guest",
        "password": "guest",
        "host": "localhost",
        "port": 5672,
        "secure": False,
        "vhost": "/",
    }
    data.update(overrides)
    return Profile(**data)


@pytest.fixture()
def profile() -> Profile:
    return make_profile()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        AMQP_TOOLS_CONFIG_DIR=str(tmp_path / "config"),
        AMQP_TOOLS_PREFETCH_WINDOW=10,
        AMQP_TOOLS_CONNECTION_TIMEOUT_SECONDS=1.0,
    )


@pytest.fixture()
def broker() -> FakeBroker:
    return FakeBroker([f"message-{i}".encode() for i in range(5)])


@pytest.fixture()
def unreachable() -> ConnectError:
    return ConnectError("amqp://localhost:5672//", "connection refused")
