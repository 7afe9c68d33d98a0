from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from amqp_tools.app.constants import ControllerState, RetrievalMode
from amqp_tools.app.core import SERVICE_NAME
from amqp_tools.app.domain.errors import AcquisitionError, SinkError
from amqp_tools.app.domain.models import Report, RetrievalRequest
from amqp_tools.app.ports.broker_channel import BrokerChannel, Deliveries
from amqp_tools.app.ports.incoming_message import IncomingMessage
from amqp_tools.app.ports.message_sink import MessageSink

DEFAULT_PREFETCH_WINDOW = 10

_STOPPED = object()


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class AcquisitionController:
    """
    Drives read and peek against an open channel.

    Read: IDLE -> CONSUMING -> DRAINING -> DONE. Messages are pulled one at a
    time from a manual-ack consumer; each is acked only after the sink has
    persisted it, and the next one is not pulled before that. A sink failure
    requeues the failing message and stops. On the way out the consumer is
    cancelled and anything the broker pushed ahead is requeued.

    Peek: IDLE -> FETCHING -> DONE. One basic.get with manual ack, followed by
    reject(requeue=True) whatever the sink does, so the queue is unchanged.

    ``stop`` is checked while waiting for a delivery and between messages; a
    message already handed to the sink is finished (persisted and acked) first.
    """

    def __init__(
        self,
        *,
        prefetch_window: int = DEFAULT_PREFETCH_WINDOW,
        idle_timeout_seconds: float | None = None,
    ) -> None:
        if prefetch_window < 1:
            raise ValueError("prefetch_window must be positive")
        self._prefetch_window = int(prefetch_window)
        self._idle_timeout = idle_timeout_seconds
        self._state = ControllerState.IDLE

    @property
    def state(self) -> ControllerState:
        return self._state

    def _set_state(self, state: ControllerState) -> None:
        self._state = state

    def prefetch_for(self, limit: int | None) -> int:
        if limit is None:
            return self._prefetch_window
        return min(limit, self._prefetch_window)

    async def run(
        self,
        channel: BrokerChannel,
        request: RetrievalRequest,
        sink: MessageSink,
        stop: asyncio.Event | None = None,
    ) -> Report:
        self._set_state(ControllerState.IDLE)
        if request.mode is RetrievalMode.PEEK:
            return await self._peek(channel, request, sink)
        return await self._read(channel, request, sink, stop)

    async def _read(
        self,
        channel: BrokerChannel,
        request: RetrievalRequest,
        sink: MessageSink,
        stop: asyncio.Event | None,
    ) -> Report:
        report = Report(queue_name=request.queue_name, mode=request.mode)
        limit = request.effective_limit
        prefetch = self.prefetch_for(limit)

        try:
            deliveries = await channel.consume(request.queue_name, prefetch=prefetch)
        except AcquisitionError:
            self._set_state(ControllerState.DONE)
            raise
        self._set_state(ControllerState.CONSUMING)
        _log("read_started", queue=request.queue_name, limit=limit, prefetch=prefetch)

        try:
            while limit is None or report.count < limit:
                if stop is not None and stop.is_set():
                    report.interrupted = True
                    break
                try:
                    message = await self._next_delivery(deliveries, stop)
                except AcquisitionError as exc:
                    exc.acknowledged = report.count
                    raise
                if message is _STOPPED:
                    report.interrupted = True
                    break
                if message is None:
                    _log("idle_timeout", queue=request.queue_name, timeout=self._idle_timeout, count=report.count)
                    break
                await self._persist_and_ack(message, sink, report)
        finally:
            self._set_state(ControllerState.DRAINING)
            await self._cancel_quietly(deliveries)
            self._set_state(ControllerState.DONE)

        _log(
            "read_finished",
            queue=request.queue_name,
            count=report.count,
            interrupted=report.interrupted,
        )
        return report

    async def _next_delivery(self, deliveries: Deliveries, stop: asyncio.Event | None) -> Any:
        if stop is None:
            return await deliveries.next(self._idle_timeout)

        next_task = asyncio.ensure_future(deliveries.next(self._idle_timeout))
        stop_task = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({next_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not next_task.done():
                next_task.cancel()
            await asyncio.gather(stop_task, next_task, return_exceptions=True)

        if next_task.cancelled():
            return _STOPPED
        message = next_task.result()
        if stop.is_set() and message is not None:
            # delivered at the same moment as the stop request: leave it for the broker
            await self._requeue(message)
            return _STOPPED
        return message

    async def _persist_and_ack(self, message: IncomingMessage, sink: MessageSink, report: Report) -> None:
        try:
            location = await sink.persist(message)
        except SinkError as exc:
            self._set_state(ControllerState.DRAINING)
            report.failure = exc.reason
            logger.bind(service_name=SERVICE_NAME, event="sink_failed").error(
                "persisting delivery {} failed: {}", message.delivery_tag, exc.reason
            )
            await self._requeue(message)
            raise SinkError(exc.reason, acknowledged=report.count) from exc

        try:
            await message.ack()
        except AcquisitionError as exc:
            logger.bind(service_name=SERVICE_NAME, event="ack_failed").error(
                "message persisted to {} but not acknowledged; the broker may redeliver it", location
            )
            exc.acknowledged = report.count
            raise
        report.count += 1
        report.locations.append(location)
        _log(
            "message_acked",
            delivery_tag=message.delivery_tag,
            redelivered=message.redelivered,
            location=location,
            count=report.count,
        )

    async def _peek(self, channel: BrokerChannel, request: RetrievalRequest, sink: MessageSink) -> Report:
        report = Report(queue_name=request.queue_name, mode=request.mode)
        self._set_state(ControllerState.FETCHING)
        try:
            message = await channel.get(request.queue_name)
            if message is None:
                _log("peek_empty", queue=request.queue_name)
                return report
            try:
                location = await sink.persist(message)
            except SinkError as exc:
                report.failure = exc.reason
                raise SinkError(exc.reason, acknowledged=0) from exc
            finally:
                await self._requeue(message)
            report.count = 1
            report.locations.append(location)
            _log("peeked", queue=request.queue_name, delivery_tag=message.delivery_tag, redelivered=message.redelivered)
            return report
        finally:
            self._set_state(ControllerState.DONE)

    async def _requeue(self, message: IncomingMessage) -> None:
        if message.processed:
            return
        try:
            await message.reject(requeue=True)
        except AcquisitionError as exc:
            # unsettled deliveries go back to the queue when the channel closes
            logger.warning("requeue of delivery {} failed: {}", message.delivery_tag, exc)

    async def _cancel_quietly(self, deliveries: Deliveries) -> None:
        try:
            await deliveries.cancel()
        except AcquisitionError as exc:
            logger.warning("consumer cancel failed: {}", exc)
