"""Connector factory: selects the broker implementation from config. Only place that imports concrete connectors."""
from __future__ import annotations

from amqp_tools.app.config.settings import Settings
from amqp_tools.app.domain.errors import ConfigError
from amqp_tools.app.infrastructure.messaging.rabbitmq.connector import RabbitMQConnector
from amqp_tools.app.ports.broker_channel import BrokerConnector


def create_connector(settings: Settings) -> BrokerConnector:
    backend = settings.broker_backend.strip().lower()

    if backend == "rabbitmq":
        return RabbitMQConnector(settings)

    raise ConfigError(f"unsupported broker backend: {backend!r}")
