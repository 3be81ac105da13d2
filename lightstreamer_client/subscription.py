"""
Subscriptions to items and fields on a Lightstreamer session.

A subscription is built against a session with Session.build_subscription() and is
inert until start() is called. Incoming stream lines are offered to it by the
session's processing loop through process_stream_data(); matching lines update the
item state and are delivered to the registered callbacks.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional, Sequence, Union

from lightstreamer_client.callbacks import Callback, invoke_callbacks
from lightstreamer_client.errors import SubscriptionError
from lightstreamer_client.item_data import COMMAND_FIELD, KEY_FIELD, ItemState, SubscriptionItemData
from lightstreamer_client.messages import EndOfSnapshotMessage, OverflowMessage, UpdateMessage
from lightstreamer_client.types import UNFILTERED, SubscriptionMode, UpdateFrequency

if TYPE_CHECKING:
    from lightstreamer_client.session import Session

logger = logging.getLogger(__name__)


def validate_update_frequency(value: Any) -> UpdateFrequency:
    """Return the frequency as a float, or UNFILTERED. Raises SubscriptionError if invalid."""
    if value == UNFILTERED:
        return UNFILTERED
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise SubscriptionError(
            f"Maximum update frequency must be a non-negative number or '{UNFILTERED}'",
            details={"value": str(value)},
        )
    return float(value)


class Subscription:
    """
    A set of items and fields subscribed to in a given mode.

    State Machine:
        [INERT] --start()--> [ACTIVE] --stop()--> [INERT]
        start(silent=True) leaves the subscription active but silent until unsilence().

    Callbacks (plain functions or coroutine functions) run on the session's
    processing task:
        on_data(subscription, item_name, item_data, new_values)
        on_overflow(subscription, item_name, overflow_size)
        on_end_of_snapshot(subscription, item_name)

    Usage:
        subscription = session.build_subscription(
            items=["item1", "item2"], fields=["bid", "ask"], mode="merge"
        )
        subscription.on_data(print_update)
        await subscription.start(snapshot=True)
    """

    def __init__(
        self,
        session: Session,
        subscription_id: int,
        items: Sequence[str],
        fields: Sequence[str],
        mode: Union[SubscriptionMode, str],
        *,
        data_adapter: Optional[str] = None,
        selector: Optional[str] = None,
        maximum_update_frequency: UpdateFrequency = 0.0,
    ) -> None:
        self._session: Optional[Session] = session
        self._id = subscription_id

        if isinstance(items, str) or isinstance(fields, str):
            raise SubscriptionError("Items and fields must be sequences of names")
        self._items = [str(item) for item in items]
        self._fields = [str(field) for field in fields]
        if not self._items:
            raise SubscriptionError("Items not specified", subscription_id=subscription_id)
        if not self._fields:
            raise SubscriptionError("Fields not specified", subscription_id=subscription_id)

        try:
            self._mode = SubscriptionMode(str(getattr(mode, "value", mode)).lower())
        except ValueError as e:
            raise SubscriptionError(
                f"Unsupported mode: {mode}", subscription_id=subscription_id
            ) from e

        if self._mode == SubscriptionMode.COMMAND and not {KEY_FIELD, COMMAND_FIELD} <= set(
            self._fields
        ):
            raise SubscriptionError(
                f"Command mode requires the '{KEY_FIELD}' and '{COMMAND_FIELD}' fields",
                subscription_id=subscription_id,
            )

        self._data_adapter = data_adapter
        self._selector = selector
        self._maximum_update_frequency = validate_update_frequency(maximum_update_frequency)

        self._active = False
        self._data = [SubscriptionItemData(self._mode) for _ in self._items]

        self._data_callbacks: list[Callback] = []
        self._overflow_callbacks: list[Callback] = []
        self._end_of_snapshot_callbacks: list[Callback] = []

    def __repr__(self) -> str:
        return (
            f"Subscription(id={self._id}, mode={self._mode.value}, "
            f"items={self._items}, active={self._active})"
        )

    @property
    def id(self) -> int:
        """Unique id of this subscription within its session; the table number on the wire."""
        return self._id

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def items(self) -> list[str]:
        return list(self._items)

    @property
    def fields(self) -> list[str]:
        return list(self._fields)

    @property
    def mode(self) -> SubscriptionMode:
        return self._mode

    @property
    def data_adapter(self) -> Optional[str]:
        return self._data_adapter

    @property
    def selector(self) -> Optional[str]:
        return self._selector

    @property
    def maximum_update_frequency(self) -> UpdateFrequency:
        return self._maximum_update_frequency

    @property
    def active(self) -> bool:
        return self._active

    # --- Control requests ---

    def _require_session(self) -> Session:
        if self._session is None:
            raise SubscriptionError(
                "Subscription is not attached to a session", subscription_id=self._id
            )
        return self._session

    def _requested_frequency(self) -> UpdateFrequency:
        # RAW mode is always dispatched unfiltered
        if self._mode == SubscriptionMode.RAW:
            return UNFILTERED
        return self._maximum_update_frequency

    def start_control_request_args(
        self, *, silent: bool = False, snapshot: bool = False
    ) -> tuple[str, dict[str, Any]]:
        """Return the control operation and parameters that start this subscription."""
        operation = "add_silent" if silent else "add"
        params: dict[str, Any] = {
            "LS_table": self._id,
            "LS_mode": self._mode.wire_name,
            "LS_id": self._items,
            "LS_schema": self._fields,
            "LS_selector": self._selector,
            "LS_data_adapter": self._data_adapter,
            "LS_requested_max_frequency": self._requested_frequency(),
            "LS_snapshot": snapshot,
        }
        return operation, params

    def stop_control_request_args(self) -> tuple[str, dict[str, Any]]:
        return "delete", {"LS_table": self._id}

    async def start(self, *, silent: bool = False, snapshot: bool = False) -> None:
        """
        Start streaming this subscription's data. Does nothing if already active.
        Item data is cleared first, since the server resends snapshots on subscribe.

        Args:
            silent: Subscribe without receiving data until unsilence() is called
            snapshot: Ask the server to send the current state of each item first

        Raises:
            NotConnectedError: If the session is not connected
            ProtocolError: If the server rejects the subscription
        """
        if self._active:
            return

        session = self._require_session()
        self.clear_data()
        operation, params = self.start_control_request_args(silent=silent, snapshot=snapshot)
        await session.control_request(operation, params)
        self.after_control_request("add")

    async def unsilence(self) -> None:
        """Start delivery of data for a subscription that was started silently."""
        session = self._require_session()
        await session.control_request("start", {"LS_table": self._id})

    async def stop(self) -> None:
        """Stop streaming this subscription's data. Does nothing if not active."""
        if not self._active:
            return

        session = self._require_session()
        await session.control_request(*self.stop_control_request_args())
        self.after_control_request("delete")

    async def set_maximum_update_frequency(self, value: UpdateFrequency) -> None:
        """
        Change the maximum number of updates per second for each item, or set it to
        'unfiltered'. The local value is always updated; an active subscription is also
        reconfigured on the server, which may refuse, for example when switching between
        filtered and unfiltered.

        Raises:
            SubscriptionError: If the value is invalid
            ProtocolError: If the server refuses the reconfiguration
        """
        frequency = validate_update_frequency(value)
        self._maximum_update_frequency = frequency

        if self._active:
            session = self._require_session()
            await session.control_request(
                "reconf",
                {"LS_table": self._id, "LS_requested_max_frequency": self._requested_frequency()},
            )

    def after_control_request(self, operation: str) -> None:
        """Apply the local state change for a control operation the server accepted."""
        if operation in ("add", "add_silent"):
            self._active = True
        elif operation == "delete":
            self._active = False

    def detach(self) -> None:
        """Mark this subscription inactive and release its session."""
        self._active = False
        self._session = None

    # --- Callbacks ---

    def on_data(self, callback: Callback) -> Callback:
        """Register a callback for new item data. Returns the callback for later removal."""
        self._data_callbacks.append(callback)
        return callback

    def on_overflow(self, callback: Callback) -> Callback:
        """Register a callback for overflows, which only occur when unfiltered."""
        self._overflow_callbacks.append(callback)
        return callback

    def on_end_of_snapshot(self, callback: Callback) -> Callback:
        self._end_of_snapshot_callbacks.append(callback)
        return callback

    def remove_callback(self, callback: Callback) -> None:
        for callbacks in (
            self._data_callbacks,
            self._overflow_callbacks,
            self._end_of_snapshot_callbacks,
        ):
            if callback in callbacks:
                callbacks.remove(callback)

    def remove_all_callbacks(self) -> None:
        self._data_callbacks.clear()
        self._overflow_callbacks.clear()
        self._end_of_snapshot_callbacks.clear()

    # --- Item data ---

    def _item_index(self, item_name: str) -> int:
        try:
            return self._items.index(item_name)
        except ValueError:
            raise SubscriptionError(
                "Unrecognized item name", subscription_id=self._id, item=item_name
            ) from None

    def item_data(self, item_name: str) -> ItemState:
        """
        Return a copy of the current data of an item: a dict of field values, or a
        list of row dicts in command mode.
        """
        return self._data[self._item_index(item_name)].snapshot()

    def set_item_data(self, item_name: str, data: Any) -> None:
        """
        Set the current data of an item directly. Only allowed in merge mode (a dict)
        and command mode (a list of rows, each with a unique 'key').
        """
        self._data[self._item_index(item_name)].set_data(data)

    def clear_data(self) -> None:
        for item_data in self._data:
            item_data.clear()

    def clear_data_for_item(self, item_name: str) -> None:
        self._data[self._item_index(item_name)].clear()

    # --- Stream data ---

    async def process_stream_data(self, line: str) -> bool:
        """
        Process a line of stream data if it belongs to this subscription.

        Returns:
            Whether the line was an update, overflow, or end-of-snapshot message for
            this subscription.
        """
        update = UpdateMessage.parse(line, self._id, self._items, self._fields)
        if update is not None:
            await self._process_update(update)
            return True

        overflow = OverflowMessage.parse(line, self._id, self._items)
        if overflow is not None:
            await invoke_callbacks(
                self._overflow_callbacks,
                self,
                self._items[overflow.item_index],
                overflow.overflow_size,
                name=f"subscription_{self._id}",
            )
            return True

        end_of_snapshot = EndOfSnapshotMessage.parse(line, self._id, self._items)
        if end_of_snapshot is not None:
            await invoke_callbacks(
                self._end_of_snapshot_callbacks,
                self,
                self._items[end_of_snapshot.item_index],
                name=f"subscription_{self._id}",
            )
            return True

        return False

    async def _process_update(self, update: UpdateMessage) -> None:
        item_name = self._items[update.item_index]
        item_data = self._data[update.item_index]

        try:
            item_data.apply(update.values)
        except SubscriptionError as e:
            logger.warning(f"[subscription_{self._id}] Update for {item_name} not applied: {e}")
            return

        await invoke_callbacks(
            self._data_callbacks,
            self,
            item_name,
            item_data.snapshot(),
            dict(update.values),
            name=f"subscription_{self._id}",
        )
