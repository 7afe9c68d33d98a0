"""Profile store: locates, creates and parses the TOML profile file."""
from __future__ import annotations

import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from amqp_tools.app.constants import CONFIG_APP_DIR, CONFIG_FILE_NAME
from amqp_tools.app.core import SERVICE_NAME
from amqp_tools.app.domain.errors import ConfigError, ConfigParseError, ProfileNotFound
from amqp_tools.app.domain.models import Profile

_PROFILES = TypeAdapter(dict[str, Profile])


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).debug("")


def default_config_dir() -> Path:
    """Platform config directory (the one desktop apps use for per-user config)."""
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata)
        return Path.home() / "AppData" / "Roaming"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg and Path(xdg).is_absolute():
        return Path(xdg)
    return Path.home() / ".config"


def _describe(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        problems.append(f"{loc}: {err['msg']}")
    return "; ".join(problems)


class ProfileStore:
    """Resolves profiles by name from ``<config_dir>/amqp-tools/config.toml``."""

    def __init__(self, config_dir: Path | None = None) -> None:
        base = config_dir if config_dir is not None else default_config_dir()
        self._path = base / CONFIG_APP_DIR / CONFIG_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def ensure_file_exists(self) -> Path:
        """Create the config directory and an empty config file if missing."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if not self._path.exists():
                self._path.touch()
                _log("config_file_created", path=str(self._path))
        except OSError as exc:
            raise ConfigError(f"cannot create config file {self._path}: {exc}") from exc
        return self._path

    def load(self) -> dict[str, Profile]:
        path = self.ensure_file_exists()
        try:
            with path.open("rb") as fh:
                raw = tomllib.load(fh)
        except OSError as exc:
            raise ConfigError(f"cannot read config file {path}: {exc}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise ConfigParseError(f"{path} is not valid TOML: {exc}") from exc
        return parse_profiles(raw, source=path)

    def resolve(self, name: str) -> Profile:
        profiles = self.load()
        try:
            profile = profiles[name]
        except KeyError:
            raise ProfileNotFound(name, self._path) from None
        _log("profile_resolved", profile=name, endpoint=profile.endpoint)
        return profile


def parse_profiles(raw: dict[str, Any], *, source: object = "<memory>") -> dict[str, Profile]:
    """Validate a decoded TOML document; every top-level table is one profile."""
    stray = [key for key, value in raw.items() if not isinstance(value, dict)]
    if stray:
        raise ConfigParseError(f"{source}: top-level keys must be profile tables: {', '.join(stray)}")
    try:
        return _PROFILES.validate_python(raw)
    except ValidationError as exc:
        raise ConfigParseError(f"{source}: invalid profile: {_describe(exc)}") from exc
