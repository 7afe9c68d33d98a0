"""Tool-level constants shared across modules."""
from __future__ import annotations

from enum import Enum, IntEnum


class RetrievalMode(str, Enum):
    READ = "read"
    PEEK = "peek"


class ControllerState(str, Enum):
    IDLE = "IDLE"
    CONSUMING = "CONSUMING"
    DRAINING = "DRAINING"
    FETCHING = "FETCHING"
    DONE = "DONE"


class ExitCode(IntEnum):
    """Process exit codes. Documented in README.md."""

    OK = 0
    USAGE = 2
    CONFIG_ERROR = 3
    CONNECT_ERROR = 4
    ACQUISITION_ERROR = 5
    SINK_ERROR = 6
    INTERRUPTED = 130


CONFIG_APP_DIR = "amqp-tools"
CONFIG_FILE_NAME = "config.toml"
MESSAGE_FILE_PREFIX = "message_"
