"""Sink factory: maps an OutputTarget to its MessageSink implementation."""
from __future__ import annotations

from amqp_tools.app.domain.models import DirectoryTarget, OutputTarget, StdoutTarget
from amqp_tools.app.infrastructure.sinks.directory_sink import DirectorySink
from amqp_tools.app.infrastructure.sinks.stdout_sink import StdoutSink
from amqp_tools.app.ports.message_sink import MessageSink


def create_sink(target: OutputTarget) -> MessageSink:
    if isinstance(target, DirectoryTarget):
        sink = DirectorySink(target.path)
        sink.prepare()
        return sink
    if isinstance(target, StdoutTarget):
        return StdoutSink()
    raise ValueError(f"Unsupported output target: {target!r}")
