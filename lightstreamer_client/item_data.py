"""
Per-item state for subscriptions, following the semantics of each subscription mode:
- MERGE: a single row; each update is merged into it
- DISTINCT, RAW: a single row; each update replaces it
- COMMAND: a list of rows keyed by their "key" field; the "command" field of each
  update (ADD, UPDATE, DELETE) says how the row list changes
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional, Union, cast

from lightstreamer_client.errors import SubscriptionError
from lightstreamer_client.types import SubscriptionMode

logger = logging.getLogger(__name__)

KEY_FIELD = "key"
COMMAND_FIELD = "command"

Row = dict[str, Optional[str]]
ItemState = Union[Row, list[Row]]


def row_key(row: dict[str, Any]) -> Any:
    """Return the key of a command mode row."""
    if KEY_FIELD not in row:
        raise SubscriptionError("Row does not have a key")
    return row[KEY_FIELD]


def validate_rows(rows: Any) -> None:
    if not isinstance(rows, list):
        raise SubscriptionError("Data must be a list of rows when in command mode")
    if not all(isinstance(row, dict) for row in rows):
        raise SubscriptionError("Each row must be a dict when in command mode")

    keys = [row_key(row) for row in rows]
    if len(set(keys)) != len(keys):
        raise SubscriptionError("Each row must have a unique key")


class SubscriptionItemData:
    """Current state of a single subscription item."""

    def __init__(self, mode: SubscriptionMode) -> None:
        self._mode = mode
        self._data: ItemState = [] if mode == SubscriptionMode.COMMAND else {}

    @property
    def mode(self) -> SubscriptionMode:
        return self._mode

    def snapshot(self) -> ItemState:
        """Return a copy of the current state that is safe to hand out."""
        return copy.deepcopy(self._data)

    def clear(self) -> None:
        self._data = [] if self._mode == SubscriptionMode.COMMAND else {}

    def set_data(self, new_data: Any) -> None:
        """
        Replace the state directly. Only allowed in MERGE and COMMAND modes.

        Raises:
            SubscriptionError: If the mode does not allow it or the data is invalid
        """
        if self._mode == SubscriptionMode.MERGE:
            if not isinstance(new_data, dict):
                raise SubscriptionError("Data must be a dict when in merge mode")
        elif self._mode == SubscriptionMode.COMMAND:
            validate_rows(new_data)
        else:
            raise SubscriptionError(
                f"Data can't be set when mode is {self._mode.value}, "
                "only merge and command modes are supported"
            )

        self._data = copy.deepcopy(new_data)

    def apply(self, values: Row) -> None:
        """Apply the values of an incoming update according to the mode."""
        if self._mode == SubscriptionMode.MERGE:
            cast(Row, self._data).update(values)
        elif self._mode in (SubscriptionMode.DISTINCT, SubscriptionMode.RAW):
            self._data = dict(values)
        elif self._mode == SubscriptionMode.COMMAND:
            self._apply_command(values)

    def _apply_command(self, values: Row) -> None:
        rows = cast(list[Row], self._data)
        row = dict(values)
        command = (row.pop(COMMAND_FIELD, None) or "").upper()
        key = row_key(row)

        if command in ("ADD", "UPDATE"):
            existing = next((r for r in rows if r.get(KEY_FIELD) == key), None)
            if existing is not None:
                existing.update(row)
            else:
                rows.append(row)
        elif command == "DELETE":
            # Deleting an absent key leaves the rows unchanged
            rows[:] = [r for r in rows if r.get(KEY_FIELD) != key]
        else:
            raise SubscriptionError(f"Unknown command: {command!r}")
