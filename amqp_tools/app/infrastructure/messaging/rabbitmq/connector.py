"""
RabbitMQ connector: opens one connection and one channel for a profile.

Lifecycle:
  DISCONNECTED -> CONNECTING -> CONNECTED -> CHANNEL_OPEN -> CLOSING -> CLOSED.
  A failed handshake closes whatever was opened and returns to DISCONNECTED.

There is no reconnection and no retry: a dropped connection while consuming is
reported to the open channel adapter, which surfaces it to the controller as a
lost connection.
"""
from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

import aio_pika
from aio_pika.exceptions import AMQPError
from loguru import logger

from amqp_tools.app.config.settings import Settings
from amqp_tools.app.core import SERVICE_NAME
from amqp_tools.app.domain.errors import ConnectError
from amqp_tools.app.domain.models import Profile
from amqp_tools.app.infrastructure.messaging.rabbitmq.channel_adapter import AioPikaBrokerChannel
from amqp_tools.app.infrastructure.messaging.rabbitmq.constants import ConnectorState


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def build_amqp_url(profile: Profile) -> str:
    scheme = "amqps" if profile.secure else "amqp"
    user = quote(profile.username, safe="")
    password = quote(profile.password.get_secret_value(), safe="")
    vhost = quote(profile.vhost, safe="")
    return f"{scheme}://{user}:{password}@{profile.host}:{profile.port}/{vhost}"


class RabbitMQConnector:
    """Transport connector implementation"""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._state = ConnectorState.DISCONNECTED
        self._connection: aio_pika.abc.AbstractConnection | None = None
        self._channel: AioPikaBrokerChannel | None = None
        self._closing = False

    @property
    def state(self) -> ConnectorState:
        return self._state

    def _set_state(self, state: ConnectorState) -> None:
        self._state = state

    def _register_close_callback(self, connection: aio_pika.abc.AbstractConnection) -> None:
        callbacks = getattr(connection, "close_callbacks", None)
        if callbacks is not None and callable(getattr(callbacks, "add", None)):
            callbacks.add(self._on_connection_closed)
            return
        conn = getattr(connection, "connection", connection)
        if callable(getattr(conn, "add_close_callback", None)):
            conn.add_close_callback(self._on_connection_closed)

    def _on_connection_closed(self, *args: Any, **kwargs: Any) -> None:
        if self._closing:
            return
        exc = next((a for a in args if isinstance(a, BaseException)), None)
        detail = str(exc) if exc is not None else "connection closed by broker"
        _log("broker_disconnect_detected", detail=detail)
        self._set_state(ConnectorState.DISCONNECTED)
        if self._channel is not None:
            self._channel.connection_lost(detail)

    async def connect(self, profile: Profile) -> AioPikaBrokerChannel:
        self._set_state(ConnectorState.CONNECTING)
        _log("rmq_connecting", endpoint=profile.endpoint)
        try:
            self._connection = await aio_pika.connect(
                build_amqp_url(profile),
                timeout=self._settings.connection_timeout_seconds,
            )
            self._register_close_callback(self._connection)
            self._set_state(ConnectorState.CONNECTED)
            _log("rmq_connected", endpoint=profile.endpoint)
            channel = await self._connection.channel()
        except (AMQPError, OSError, asyncio.TimeoutError) as exc:
            _log("rmq_connect_failed", endpoint=profile.endpoint, error=str(exc))
            await self._close_connection()
            self._set_state(ConnectorState.DISCONNECTED)
            raise ConnectError(profile.endpoint, str(exc) or type(exc).__name__) from exc
        self._channel = AioPikaBrokerChannel(channel)
        self._set_state(ConnectorState.CHANNEL_OPEN)
        return self._channel

    async def _close_connection(self) -> None:
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("connection close failed: {}", e)
            self._connection = None

    async def close(self) -> None:
        if self._state is ConnectorState.CLOSED:
            return
        self._closing = True
        self._set_state(ConnectorState.CLOSING)
        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("channel close failed (continuing to close connection): {}", e)
            self._channel = None
        await self._close_connection()
        self._set_state(ConnectorState.CLOSED)
        _log("rmq_closed")
