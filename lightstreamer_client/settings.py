"""
Layered settings for the command-line client.

Resolution order, later layers overriding earlier ones:
    defaults < TOML file < environment (LIGHTSTREAMER_*) < command-line flags

Only keys that are actually set in a layer override the previous layers.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lightstreamer_client.config import (
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_CONTROL_TIMEOUT_S,
    DEFAULT_POLLING_MILLIS,
    SessionConfig,
)
from lightstreamer_client.errors import ConfigurationError
from lightstreamer_client.types import UNFILTERED, SubscriptionMode

logger = logging.getLogger(__name__)

ENV_PREFIX = "LIGHTSTREAMER_"


class StreamSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Session
    server_url: str = Field(description="Lightstreamer server URL")
    username: Optional[str] = Field(default=None, description="Session username")
    password: Optional[str] = Field(default=None, description="Session password")
    adapter_set: Optional[str] = Field(default=None, description="Adapter set name")
    requested_max_bandwidth: float = Field(default=0.0, ge=0, description="kbps, 0 is unlimited")
    polling: bool = Field(default=False, description="Use polling instead of streaming")
    polling_millis: int = Field(default=DEFAULT_POLLING_MILLIS, gt=0)
    connect_timeout_s: float = Field(default=DEFAULT_CONNECT_TIMEOUT_S, gt=0)
    control_timeout_s: float = Field(default=DEFAULT_CONTROL_TIMEOUT_S, gt=0)

    # Subscription
    data_adapter: Optional[str] = Field(default=None, description="Data adapter name")
    items: list[str] = Field(description="Item names to subscribe to")
    fields: list[str] = Field(description="Field names to subscribe to")
    mode: SubscriptionMode = Field(default=SubscriptionMode.MERGE)
    selector: Optional[str] = Field(default=None)
    maximum_update_frequency: Union[float, str] = Field(
        default=0.0, description=f"Updates per second, 0 for unlimited, or '{UNFILTERED}'"
    )
    snapshot: bool = Field(default=False, description="Request item snapshots")

    @field_validator("items", "fields", mode="before")
    @classmethod
    def _split_names(cls, value: Any) -> Any:
        # Environment variables carry lists as comma or space separated names
        if isinstance(value, str):
            return [name for name in value.replace(",", " ").split() if name]
        return value

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        return value

    @field_validator("maximum_update_frequency", mode="before")
    @classmethod
    def _parse_frequency(cls, value: Any) -> Any:
        if value == UNFILTERED:
            return value
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                raise ValueError(f"must be a number or '{UNFILTERED}'") from None
        if isinstance(value, (int, float)) and value < 0:
            raise ValueError("must be non-negative")
        return value

    def session_config(self) -> SessionConfig:
        """Build the SessionConfig for these settings."""
        return SessionConfig(
            server_url=self.server_url,
            username=self.username,
            password=self.password,
            adapter_set=self.adapter_set,
            requested_max_bandwidth=self.requested_max_bandwidth,
            polling=self.polling,
            polling_millis=self.polling_millis,
            connect_timeout_s=self.connect_timeout_s,
            control_timeout_s=self.control_timeout_s,
        )


def load_file_settings(path: Path) -> dict[str, Any]:
    """Read settings from a TOML file. Keys may sit at the top level or in [lightstreamer]."""
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file: {e}", field="config", value=path) from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML: {e}", field="config", value=path) from e

    section = data.get("lightstreamer", data)
    if not isinstance(section, dict):
        raise ConfigurationError("[lightstreamer] must be a table", field="config", value=path)
    return dict(section)


def env_settings(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Collect LIGHTSTREAMER_* variables for the known settings fields."""
    environ = os.environ if environ is None else environ
    settings: dict[str, Any] = {}
    for name in StreamSettings.model_fields:
        env_var = f"{ENV_PREFIX}{name.upper()}"
        if env_var in environ:
            settings[name] = environ[env_var]
    return settings


def resolve_settings(
    file_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    cli_overrides: Optional[Mapping[str, Any]] = None,
) -> StreamSettings:
    """
    Merge the settings layers and validate the result.

    Raises:
        ConfigurationError: If a layer cannot be read or the merged settings are invalid
    """
    merged: dict[str, Any] = {}
    if file_path is not None:
        merged.update(load_file_settings(file_path))
    merged.update(env_settings(environ))
    merged.update({k: v for k, v in (cli_overrides or {}).items() if v is not None})

    try:
        settings = StreamSettings.model_validate(merged)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        raise ConfigurationError(
            f"Invalid settings: {first['msg']}",
            field=field,
            details={"errors": e.error_count()},
        ) from e

    logger.debug(f"[settings] Resolved settings for {settings.server_url}")
    return settings
