"""Error taxonomy. Every failure that ends an invocation is one of these."""
from __future__ import annotations

from enum import Enum


class AmqpToolsError(Exception):
    """Base for all tool failures."""


class ConfigError(AmqpToolsError):
    """Profile configuration could not be used."""


class ProfileNotFound(ConfigError):
    def __init__(self, name: str, path: object | None = None) -> None:
        self.name = name
        self.path = path
        where = f" in {path}" if path is not None else ""
        super().__init__(f"profile {name!r} not found{where}")


class ConfigParseError(ConfigError):
    """Config file is not valid TOML or a profile is malformed."""


class ConnectError(AmqpToolsError):
    """Handshake, authentication or network failure while opening the channel."""

    def __init__(self, endpoint: str, reason: str) -> None:
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"cannot connect to {endpoint}: {reason}")


class AcquisitionFailure(str, Enum):
    QUEUE_NOT_FOUND = "queue_not_found"
    CONNECTION_LOST = "connection_lost"
    CHANNEL_ERROR = "channel_error"


class AcquisitionError(AmqpToolsError):
    """Broker-side failure after the channel was opened.

    ``acknowledged`` is the number of messages persisted and acknowledged
    before the failure; those remain valid.
    """

    def __init__(self, reason: AcquisitionFailure, detail: str = "", *, acknowledged: int = 0) -> None:
        self.reason = reason
        self.detail = detail
        self.acknowledged = acknowledged
        message = reason.value.replace("_", " ")
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class SinkError(AmqpToolsError):
    """Writing a message body to its destination failed."""

    def __init__(self, reason: str, *, acknowledged: int = 0) -> None:
        self.reason = reason
        self.acknowledged = acknowledged
        super().__init__(reason)
