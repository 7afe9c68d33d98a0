"""Directory sink: one file per message, written atomically.

The body goes to a temporary file in the target directory, is fsynced, and is
then hard-linked to the first free ``message_<index>`` name. Linking fails
instead of overwriting, so a name is never reused, and a reader never sees a
partially written file under a final name.
"""
from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger

from amqp_tools.app.constants import MESSAGE_FILE_PREFIX
from amqp_tools.app.core import SERVICE_NAME
from amqp_tools.app.domain.errors import SinkError
from amqp_tools.app.ports.incoming_message import IncomingMessage


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).debug("")


def _fsync_directory(path: Path) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class DirectorySink:
    """MessageSink writing each body to a new file inside ``directory``."""

    def __init__(self, directory: Path, *, create: bool = True) -> None:
        self._directory = Path(directory)
        self._create = create
        self._next_index = 0

    @property
    def directory(self) -> Path:
        return self._directory

    def prepare(self) -> None:
        """Make sure the output directory exists. Raises SinkError otherwise."""
        if self._directory.exists() and not self._directory.is_dir():
            raise SinkError(f"output path {self._directory} is not a directory")
        if not self._directory.exists():
            if not self._create:
                raise SinkError(f"output directory {self._directory} does not exist")
            try:
                self._directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise SinkError(f"cannot create output directory {self._directory}: {exc}") from exc
            _log("output_directory_created", path=str(self._directory))

    async def persist(self, message: IncomingMessage) -> str:
        return await asyncio.to_thread(self._write, message.body)

    def _write(self, body: bytes) -> str:
        self.prepare()
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=".partial-", dir=self._directory)
            with os.fdopen(fd, "wb") as fh:
                fh.write(body)
                fh.flush()
                os.fsync(fh.fileno())
            final = self._link_to_free_name(Path(tmp_path))
            _fsync_directory(self._directory)
        except OSError as exc:
            raise SinkError(f"cannot write message to {self._directory}: {exc}") from exc
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    logger.warning("cannot remove temporary file {}: {}", tmp_path, exc)
        _log("message_written", path=str(final), size=len(body))
        return str(final)

    def _link_to_free_name(self, tmp_path: Path) -> Path:
        while True:
            candidate = self._directory / f"{MESSAGE_FILE_PREFIX}{self._next_index}"
            self._next_index += 1
            try:
                os.link(tmp_path, candidate)
            except FileExistsError:
                continue
            return candidate
