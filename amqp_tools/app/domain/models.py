"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from amqp_tools.app.constants import RetrievalMode


class Profile(BaseModel):
    """Named broker endpoint and credentials. Loaded once, never mutated."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    username: str = Field(..., min_length=1)
    password: SecretStr
    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535, strict=True)
    secure: bool = Field(..., strict=True)
    vhost: str = Field(..., min_length=1)

    @property
    def endpoint(self) -> str:
        """Human-readable endpoint for error messages (no credentials)."""
        scheme = "amqps" if self.secure else "amqp"
        return f"{scheme}://{self.host}:{self.port}/{self.vhost}"


@dataclass(frozen=True)
class DirectoryTarget:
    path: Path


@dataclass(frozen=True)
class StdoutTarget:
    pass


OutputTarget = DirectoryTarget | StdoutTarget


@dataclass(frozen=True)
class RetrievalRequest:
    """What to retrieve from which queue. Built once from CLI input."""

    queue_name: str
    mode: RetrievalMode
    target: OutputTarget
    limit: int | None = 1

    def __post_init__(self) -> None:
        if not isinstance(self.queue_name, str) or not self.queue_name.strip():
            raise ValueError("queue name must be a non-empty string")
        if self.limit is not None and (not isinstance(self.limit, int) or self.limit < 1):
            raise ValueError("limit must be a positive integer or None")
        if self.mode is RetrievalMode.PEEK and self.limit not in (None, 1):
            raise ValueError("peek retrieves at most one message")

    @property
    def effective_limit(self) -> int | None:
        if self.mode is RetrievalMode.PEEK:
            return 1
        return self.limit


@dataclass
class Report:
    """Outcome of one retrieval run.

    ``count`` is the number of messages acknowledged (read) or inspected (peek).
    """

    queue_name: str
    mode: RetrievalMode
    count: int = 0
    locations: list[str] = field(default_factory=list)
    interrupted: bool = False
    failure: str | None = None

    def summary(self) -> str:
        noun = "message" if self.count == 1 else "messages"
        verb = "Read" if self.mode is RetrievalMode.READ else "Peeked at"
        text = f"{verb} {self.count} {noun} from {self.queue_name}"
        if self.interrupted:
            text += " (interrupted)"
        if self.failure:
            text += f" (stopped: {self.failure})"
        return text
