"""
Configuration types for the Lightstreamer client.

Provides the immutable, validated session configuration and the protocol constants
shared by the stream and control connections.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from lightstreamer_client.errors import ConfigurationError

# Client identifier sent on every create_session request
CLIENT_ID = "mgQkwtwdysogQz2BJ4Ji kOj2Bg"

# Endpoints, relative to the server URL or the control address
CREATE_SESSION_PATH = "/lightstreamer/create_session.txt"
BIND_SESSION_PATH = "/lightstreamer/bind_session.txt"
CONTROL_PATH = "/lightstreamer/control.txt"
SEND_MESSAGE_PATH = "/lightstreamer/send_message.txt"

DEFAULT_CONNECT_TIMEOUT_S = 15.0
DEFAULT_CONTROL_TIMEOUT_S = 15.0
DEFAULT_POLLING_MILLIS = 15_000


@dataclass(frozen=True)
class SessionConfig:
    """
    Immutable configuration for a Lightstreamer session.

    Example:
        config = SessionConfig(
            server_url="https://push.lightstreamer.com",
            adapter_set="DEMO",
        )
    """

    server_url: str

    # Credentials and adapter set
    username: Optional[str] = None
    password: Optional[str] = None
    adapter_set: Optional[str] = None

    # Server-side bandwidth constraint in kbps, zero means unlimited
    requested_max_bandwidth: float = 0.0

    # Polling transport instead of a single long-lived stream
    polling: bool = False
    polling_millis: int = DEFAULT_POLLING_MILLIS

    # Timeouts
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    control_timeout_s: float = DEFAULT_CONTROL_TIMEOUT_S

    def __post_init__(self) -> None:
        if not self.server_url:
            raise ConfigurationError("server_url is required", field="server_url")
        scheme = urlsplit(self.server_url).scheme
        if scheme not in ("http", "https"):
            raise ConfigurationError(
                "server_url must be an http or https URL",
                field="server_url",
                value=self.server_url,
            )
        if self.requested_max_bandwidth < 0:
            raise ConfigurationError(
                "requested_max_bandwidth must be non-negative",
                field="requested_max_bandwidth",
                value=self.requested_max_bandwidth,
            )
        if self.polling_millis <= 0:
            raise ConfigurationError(
                "polling_millis must be positive",
                field="polling_millis",
                value=self.polling_millis,
            )
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.control_timeout_s <= 0:
            raise ConfigurationError(
                "control_timeout_s must be positive",
                field="control_timeout_s",
                value=self.control_timeout_s,
            )
