from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Base directory holding amqp-tools/config.toml; platform default when unset.
    config_dir: Path | None = Field(None, validation_alias="AMQP_TOOLS_CONFIG_DIR")

    # Upper bound on unacknowledged deliveries the broker may push ahead in read mode.
    prefetch_window: int = Field(10, ge=1, validation_alias="AMQP_TOOLS_PREFETCH_WINDOW")
    # Read mode stops after this many seconds without a delivery; None waits forever.
    idle_timeout_seconds: float | None = Field(None, gt=0, validation_alias="AMQP_TOOLS_IDLE_TIMEOUT_SECONDS")
    connection_timeout_seconds: float = Field(10.0, gt=0, validation_alias="AMQP_TOOLS_CONNECTION_TIMEOUT_SECONDS")

    log_level: str = Field("WARNING", validation_alias="AMQP_TOOLS_LOG_LEVEL")

    broker_backend: str = Field("rabbitmq", validation_alias="AMQP_TOOLS_BROKER_BACKEND")
