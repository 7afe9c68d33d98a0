"""Loguru setup for the CLI.

Modules log structured events with ``logger.bind(service_name=..., event=...)``.
Everything goes to stderr because stdout carries message bodies.
"""
from __future__ import annotations

import sys
from typing import Any

from loguru import logger

from amqp_tools.app.core import SERVICE_NAME

_RESERVED_EXTRA = ("service_name", "event", "fields")


def _format(record: Any) -> str:
    extra = record["extra"]
    extra["fields"] = " ".join(
        f"{key}={value!r}" for key, value in extra.items() if key not in _RESERVED_EXTRA
    )
    line = "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {extra[service_name]}"
    if extra.get("event"):
        line += " {extra[event]}"
    if record["message"]:
        line += " {message}"
    if extra["fields"]:
        line += " {extra[fields]}"
    line += "\n"
    if record["exception"]:
        line += "{exception}"
    return line


def configure_logging(level: str = "WARNING") -> None:
    logger.remove()
    logger.configure(extra={"service_name": SERVICE_NAME, "event": ""})
    logger.add(sys.stderr, level=level.upper(), format=_format, backtrace=False, diagnose=False)
