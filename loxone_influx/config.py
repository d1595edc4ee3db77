"""
Loxone → InfluxDB bridge — Configuration

Two layers:
  * Settings: process-level knobs sourced from environment / .env file.
  * BridgeConfig: the config file (JSON or YAML) with the Miniserver
    connection, the InfluxDB target and the UUID mapping table.

Config file layout:

    {
        "loxone":   {"host": "...", "username": "...", "password": "..."},
        "influxdb": {"host": "...", "database": "..."},
        "uuids": {
            "1234abcd-037d-9763-ffffffee1234abcd":
                {"measurement": "temperature", "tags": {"room": "Kitchen"}}
        }
    }

The mapping table is loaded once at startup and is read-only afterwards.
"""

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger("lox.config")


class ConfigError(Exception):
    """Raised when the config file is missing or invalid."""


class Settings(BaseSettings):
    """Process settings sourced from environment / .env file."""

    BRIDGE_CONFIG: str = "config/default.json"
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False  # enables DEBUG lines (ignored events etc.)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# ── Config file sections ─────────────────────────────────────────────────

class LoxoneConfig(BaseModel):
    """Miniserver connection section."""

    host: str                       # hostname or host:port
    username: str
    password: str
    encryption: Literal["AES-256-CBC", "Hash"] = "AES-256-CBC"
    use_tls: bool = False
    connect_timeout: float = 10.0
    keepalive_interval: float = 60.0    # Miniserver drops idle sockets after 5 min
    version_query_delay: float = 5.0
    include_text_events: bool = False

    @property
    def ws_url(self) -> str:
        scheme = "wss" if self.use_tls else "ws"
        return f"{scheme}://{self.host}/ws/rfc6455"

    @property
    def http_url(self) -> str:
        scheme = "https" if self.use_tls else "http"
        return f"{scheme}://{self.host}"


class InfluxConfig(BaseModel):
    """InfluxDB target section. Works against 1.8+ via the v2 compatibility API."""

    host: str
    database: str
    port: int = 8086
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    org: str = "-"
    retention_policy: Optional[str] = None
    use_ssl: bool = False
    timeout_ms: int = 10_000

    @property
    def url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def bucket(self) -> str:
        if self.retention_policy:
            return f"{self.database}/{self.retention_policy}"
        return self.database

    @property
    def auth_token(self) -> str:
        if self.token:
            return self.token
        if self.username:
            return f"{self.username}:{self.password or ''}"
        return ""


class DeviceMapping(BaseModel):
    """Write descriptor for one Miniserver UUID.  Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    measurement: str
    tags: Mapping[str, str] = Field(default_factory=dict, validate_default=True)

    @field_validator("tags", mode="before")
    @classmethod
    def _stringify_tags(cls, value):
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @field_validator("tags")
    @classmethod
    def _freeze_tags(cls, value):
        return MappingProxyType(dict(value))


class BridgeConfig(BaseModel):
    loxone: LoxoneConfig
    influxdb: InfluxConfig
    uuids: dict[str, DeviceMapping] = Field(default_factory=dict)

    @property
    def mapping_table(self) -> Mapping[str, DeviceMapping]:
        """Read-only view of the UUID mapping table."""
        return MappingProxyType(self.uuids)


def load_config(config_path: str | Path) -> BridgeConfig:
    """Load and validate the bridge config file (JSON or YAML)."""
    path = Path(config_path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                raw = json.load(f)
            else:
                raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at top level")

    try:
        config = BridgeConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    logger.info(
        "Loaded config: miniserver=%s influxdb=%s/%s, %d mapped UUIDs",
        config.loxone.host,
        config.influxdb.url,
        config.influxdb.bucket,
        len(config.uuids),
    )
    return config
