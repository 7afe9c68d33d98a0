"""Session orchestration: one profile, one connection, one retrieval run."""
from __future__ import annotations

import asyncio
import sys
from typing import Any, Callable, Protocol, TextIO

from loguru import logger

from amqp_tools.app.application.acquisition_controller import AcquisitionController
from amqp_tools.app.config.settings import Settings
from amqp_tools.app.constants import ExitCode
from amqp_tools.app.core import SERVICE_NAME
from amqp_tools.app.domain.errors import AcquisitionError, ConfigError, ConnectError, SinkError
from amqp_tools.app.domain.models import OutputTarget, Profile, Report, RetrievalRequest
from amqp_tools.app.ports.broker_channel import BrokerConnector
from amqp_tools.app.ports.message_sink import MessageSink


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ProfileResolver(Protocol):
    """Turns a profile name into a Profile (see config.profiles.ProfileStore)."""

    def resolve(self, name: str) -> Profile: ...


class Session:
    """
    Runs one invocation end to end and maps the outcome to an exit code.

    The connector is closed on every path out of ``execute``: success,
    zero messages, any error, and cancellation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        profiles: ProfileResolver | None,
        connector_factory: Callable[[Settings], BrokerConnector],
        sink_factory: Callable[[OutputTarget], MessageSink],
        controller: AcquisitionController | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self._settings = settings
        self._profiles = profiles
        self._connector_factory = connector_factory
        self._sink_factory = sink_factory
        self._controller = controller or AcquisitionController(
            prefetch_window=settings.prefetch_window,
            idle_timeout_seconds=settings.idle_timeout_seconds,
        )
        self._stderr = stderr
        self.report: Report | None = None

    def _say(self, text: str) -> None:
        print(text, file=self._stderr if self._stderr is not None else sys.stderr)

    def _resolve(self, profile: Profile | str) -> Profile:
        if isinstance(profile, Profile):
            return profile
        if self._profiles is None:
            raise ConfigError("no profile store configured")
        return self._profiles.resolve(profile)

    async def execute(
        self,
        request: RetrievalRequest,
        profile: Profile | str,
        stop: asyncio.Event | None = None,
    ) -> ExitCode:
        self.report = None
        try:
            resolved = self._resolve(profile)
            sink = self._sink_factory(request.target)
            self.report = await self._run(resolved, request, sink, stop)
        except ConfigError as exc:
            self._say(f"configuration error: {exc}")
            return ExitCode.CONFIG_ERROR
        except ConnectError as exc:
            self._say(f"connection error: {exc}")
            return ExitCode.CONNECT_ERROR
        except AcquisitionError as exc:
            self._say(f"error reading {request.queue_name}: {exc}")
            self._say(f"{exc.acknowledged} message(s) were persisted and acknowledged before the failure")
            return ExitCode.ACQUISITION_ERROR
        except SinkError as exc:
            self._say(f"output error: {exc}")
            self._say(f"{exc.acknowledged} message(s) were persisted and acknowledged before the failure")
            return ExitCode.SINK_ERROR

        self._say(self.report.summary())
        if self.report.interrupted:
            return ExitCode.INTERRUPTED
        return ExitCode.OK

    async def _run(
        self,
        profile: Profile,
        request: RetrievalRequest,
        sink: MessageSink,
        stop: asyncio.Event | None,
    ) -> Report:
        connector = self._connector_factory(self._settings)
        _log("session_started", queue=request.queue_name, mode=request.mode.value, endpoint=profile.endpoint)
        try:
            channel = await connector.connect(profile)
            return await self._controller.run(channel, request, sink, stop)
        finally:
            await connector.close()
            _log("session_closed", queue=request.queue_name)
