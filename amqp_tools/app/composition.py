"""Composition root: build a Session from settings.

Composition may: import concrete classes, call factories, store interface types.
"""
from __future__ import annotations

from typing import TextIO

from amqp_tools.app.application.acquisition_controller import AcquisitionController
from amqp_tools.app.application.session import Session
from amqp_tools.app.config.profiles import ProfileStore
from amqp_tools.app.config.settings import Settings
from amqp_tools.app.infrastructure.messaging.factory import create_connector
from amqp_tools.app.infrastructure.sinks.factory import create_sink


def create_session(
    settings: Settings | None = None,
    *,
    prefetch_window: int | None = None,
    idle_timeout_seconds: float | None = None,
    stderr: TextIO | None = None,
) -> Session:
    """Wire a Session; explicit arguments override the matching settings."""
    settings = settings or Settings()
    controller = AcquisitionController(
        prefetch_window=prefetch_window or settings.prefetch_window,
        idle_timeout_seconds=idle_timeout_seconds if idle_timeout_seconds is not None else settings.idle_timeout_seconds,
    )
    return Session(
        settings,
        profiles=ProfileStore(settings.config_dir),
        connector_factory=create_connector,
        sink_factory=create_sink,
        controller=controller,
        stderr=stderr,
    )
