"""Stdout sink: writes each body followed by a newline to the binary stdout stream."""
from __future__ import annotations

import asyncio
import sys
from typing import BinaryIO

from amqp_tools.app.domain.errors import SinkError
from amqp_tools.app.ports.incoming_message import IncomingMessage


class StdoutSink:
    def __init__(self, stream: BinaryIO | None = None) -> None:
        self._stream = stream

    def _target(self) -> BinaryIO:
        return self._stream if self._stream is not None else sys.stdout.buffer

    async def persist(self, message: IncomingMessage) -> str:
        await asyncio.to_thread(self._write, message.body)
        return "<stdout>"

    def _write(self, body: bytes) -> None:
        stream = self._target()
        try:
            stream.write(body)
            stream.write(b"\n")
            stream.flush()
        except BrokenPipeError as exc:
            raise SinkError("broken pipe") from exc
        except ValueError as exc:
            # writing to a closed file object
            raise SinkError(f"output stream closed: {exc}") from exc
        except OSError as exc:
            raise SinkError(f"cannot write to stdout: {exc}") from exc
