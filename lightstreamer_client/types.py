"""
Shared types, enums, and data structures for the Lightstreamer client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

UNFILTERED = "unfiltered"

# A non-negative number of updates per second, or UNFILTERED
UpdateFrequency = Union[float, str]


class SubscriptionMode(str, Enum):
    """Subscription delivery modes."""

    MERGE = "merge"
    DISTINCT = "distinct"
    COMMAND = "command"
    RAW = "raw"

    @property
    def wire_name(self) -> str:
        """Mode name as sent in LS_mode."""
        return self.value.upper()


class StreamState(str, Enum):
    """State machine for the stream connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    BOUND = "bound"
    REBINDING = "rebinding"
    ENDED = "ended"


class SessionState(str, Enum):
    """State machine for the session facade."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


@dataclass
class StreamStats:
    """Counters for a single stream connection."""

    lines_received: int = 0
    lines_enqueued: int = 0
    probes: int = 0
    rebinds: int = 0
    connected_at: Optional[datetime] = None


@dataclass
class SessionStats:
    """Routing statistics for the session processing loop."""

    lines_processed: int = 0
    lines_claimed: int = 0
    message_outcomes: int = 0
    unprocessed_lines: int = 0
    callback_errors: int = 0
    by_subscription: dict[int, int] = field(default_factory=dict)
