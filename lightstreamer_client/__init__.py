"""
Lightstreamer Client Module.

This module provides an asyncio client for the Lightstreamer text push protocol
(version 2): session creation and rebinding, subscriptions in every mode, and
synchronous or asynchronous messages, over an HTTP transport backed by aiohttp.

Components:
- Session: Top-level orchestration, subscription registry and stream line routing
- StreamConnection: Long-running create/bind request, header parsing, LOOP and END
- ControlClient: Single and bulk control requests and their outcomes
- Subscription: Items, fields and mode, per-item state and callbacks

Usage:
    from lightstreamer_client import Session, SessionConfig

    config = SessionConfig(
        server_url="https://push.lightstreamer.com",
        adapter_set="DEMO",
    )
    session = Session(config)
    await session.connect()

    subscription = session.build_subscription(
        items=["item1"], fields=["stock_name", "last_price"], mode="merge"
    )
    subscription.on_data(lambda sub, item, data, new_values: print(item, data))
    await subscription.start(snapshot=True)
"""

from lightstreamer_client.config import SessionConfig
from lightstreamer_client.errors import (
    ConfigurationError,
    LightstreamerError,
    MetadataAdapterError,
    NotConnectedError,
    ProtocolError,
    RequestError,
    SessionEndError,
    SubscriptionError,
    SyncError,
)
from lightstreamer_client.session import Session
from lightstreamer_client.subscription import Subscription
from lightstreamer_client.types import (
    UNFILTERED,
    SessionState,
    StreamState,
    SubscriptionMode,
)

__all__ = [
    # Main entry point
    "Session",
    "SessionConfig",
    "Subscription",
    # Types
    "SubscriptionMode",
    "SessionState",
    "StreamState",
    "UNFILTERED",
    # Errors
    "LightstreamerError",
    "ProtocolError",
    "MetadataAdapterError",
    "SyncError",
    "SessionEndError",
    "RequestError",
    "ConfigurationError",
    "SubscriptionError",
    "NotConnectedError",
]
