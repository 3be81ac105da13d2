"""
Lightstreamer Session - top-level facade.

Coordinates the client components:
- StreamConnection for the create/bind stream and its body lines
- ControlClient for control requests (subscriptions, constrain, destroy, ...)
- Subscriptions, which claim and apply the stream lines addressed to them
- Message outcome dispatch for asynchronously sent messages
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Union
from urllib.parse import urljoin

from lightstreamer_client.adapters.aiohttp_transport import AiohttpTransport
from lightstreamer_client.callbacks import Callback, invoke_callbacks
from lightstreamer_client.config import SEND_MESSAGE_PATH, SessionConfig
from lightstreamer_client.errors import LightstreamerError, NotConnectedError, SubscriptionError
from lightstreamer_client.messages import SendMessageOutcomeMessage
from lightstreamer_client.ports.transport import HttpTransport
from lightstreamer_client.post_request import ControlClient, control_url, request_body
from lightstreamer_client.stream_connection import StreamConnection
from lightstreamer_client.subscription import Subscription
from lightstreamer_client.types import SessionState, SessionStats, SubscriptionMode, UpdateFrequency

logger = logging.getLogger(__name__)

DISCONNECT_JOIN_TIMEOUT_S = 5.0


class Session:
    """
    A Lightstreamer session and the subscriptions bound to it.

    State Machine:
        [DISCONNECTED] --connect()--> [CONNECTING] --success--> [CONNECTED]
              ^                            |                         |
              +-------- failure -----------+       disconnect() / stream ended
              +----------------------------------------------------+

    Reconnection is never implicit: after the stream ends (error callbacks are
    invoked with the reason) call connect() again.

    Usage:
        session = Session(SessionConfig(server_url="https://push.example.com", adapter_set="DEMO"))
        session.on_error(handle_error)
        await session.connect()

        subscription = session.build_subscription(
            items=["item1"], fields=["last_price"], mode="merge"
        )
        await subscription.start()
        ...
        await session.disconnect()
    """

    def __init__(
        self,
        config: SessionConfig,
        transport: Optional[HttpTransport] = None,
        name: str = "session",
    ) -> None:
        """
        Initialize the session. No network activity happens until connect().

        Args:
            config: Session configuration
            transport: HTTP transport, an AiohttpTransport is created if not given
            name: Name for logging purposes
        """
        self._config = config
        self._owns_transport = transport is None
        self._transport: HttpTransport = transport if transport is not None else AiohttpTransport()
        self._control = ControlClient(self._transport, timeout_s=config.control_timeout_s)
        self._name = name

        # State
        self._state = SessionState.DISCONNECTED
        self._stream_connection: Optional[StreamConnection] = None
        self._processing_task: Optional[asyncio.Task[None]] = None
        self._error: Optional[LightstreamerError] = None
        self._requested_max_bandwidth = config.requested_max_bandwidth
        self._connected_at: Optional[datetime] = None

        # Subscriptions, ids are unique for the lifetime of this session object
        self._subscriptions: list[Subscription] = []
        self._subscriptions_lock = asyncio.Lock()
        self._subscription_ids = itertools.count(1)
        self._connect_lock = asyncio.Lock()

        # Callbacks
        self._message_result_callbacks: list[Callback] = []
        self._error_callbacks: list[Callback] = []
        self._unprocessed_line_callbacks: list[Callback] = []

        self._stats = SessionStats()

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._stream_connection is not None

    @property
    def session_id(self) -> Optional[str]:
        return self._stream_connection.session_id if self._stream_connection else None

    @property
    def error(self) -> Optional[LightstreamerError]:
        """The error that ended the last stream connection, if any."""
        return self._error

    @property
    def requested_maximum_bandwidth(self) -> float:
        return self._requested_max_bandwidth

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    @property
    def stats(self) -> SessionStats:
        return self._stats

    # --- Lifecycle ---

    async def connect(self) -> None:
        """
        Create a new Lightstreamer session and start processing its stream. Does
        nothing if already connected; a call made while another connect() is pending
        waits for it. On failure the session is left disconnected.

        Raises:
            ProtocolError: If the server refuses the session (e.g. AuthenticationError)
            RequestError: If the HTTP request fails
        """
        async with self._connect_lock:
            if self._stream_connection is not None:
                return

            logger.info(f"[{self._name}] Connecting to {self._config.server_url}")
            self._state = SessionState.CONNECTING
            self._error = None

            stream_connection = StreamConnection(
                self._config, self._transport, name=f"{self._name}_stream"
            )
            stream_connection.requested_max_bandwidth = self._requested_max_bandwidth

            try:
                await stream_connection.connect()
            except BaseException:
                self._state = SessionState.DISCONNECTED
                raise

            self._stream_connection = stream_connection
            self._connected_at = datetime.now(timezone.utc)
            self._processing_task = asyncio.create_task(
                self._processing_loop(stream_connection), name=f"{self._name}_processing"
            )
            self._state = SessionState.CONNECTED
            logger.info(
                f"[{self._name}] Connected, session id {stream_connection.session_id}"
            )

    async def disconnect(self) -> None:
        """
        Destroy the session on the server (best effort), stop the stream and the
        processing task, and mark all subscriptions inactive.
        """
        stream_connection = self._stream_connection
        if stream_connection is None:
            await self._close_transport()
            return

        logger.info(f"[{self._name}] Disconnecting session {stream_connection.session_id}")
        self._state = SessionState.DISCONNECTING

        try:
            await self.control_request("destroy")
        except LightstreamerError as e:
            logger.warning(f"[{self._name}] Failed to destroy session on server: {e}")

        await stream_connection.disconnect()
        await self._stop_processing_task()

        self._reset()
        await self._close_transport()
        logger.info(f"[{self._name}] Disconnected")

    async def _stop_processing_task(self) -> None:
        task = self._processing_task
        self._processing_task = None
        if task is None or task is asyncio.current_task() or task.done():
            return

        # The stream has been stopped, so the loop ends once buffered lines are processed
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_JOIN_TIMEOUT_S)
        if not done:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _reset(self) -> None:
        for subscription in self._subscriptions:
            subscription.after_control_request("delete")
        self._stream_connection = None
        self._processing_task = None
        self._connected_at = None
        self._state = SessionState.DISCONNECTED

    async def _close_transport(self) -> None:
        if self._owns_transport:
            await self._transport.close()

    async def force_rebind(self) -> None:
        """
        Ask the server to close the current stream so that it is rebound. The server
        answers with a LOOP on the stream, which the stream connection handles.
        """
        if self._stream_connection is None:
            return
        await self.control_request("force_rebind")

    async def set_requested_maximum_bandwidth(self, bandwidth_kbps: float) -> None:
        """
        Set the server-side bandwidth limit in kbps, zero meaning unlimited. Applied
        to the running session with a constrain request when connected.
        """
        if bandwidth_kbps < 0:
            raise ValueError("Requested maximum bandwidth must be non-negative")

        if self._stream_connection is not None:
            await self.control_request(
                "constrain", {"LS_requested_max_bandwidth": float(bandwidth_kbps)}
            )
            self._stream_connection.requested_max_bandwidth = float(bandwidth_kbps)

        self._requested_max_bandwidth = float(bandwidth_kbps)

    async def control_request(
        self, operation: str, params: Optional[dict[str, Any]] = None
    ) -> None:
        """
        Send a control request for this session.

        Raises:
            NotConnectedError: If the session is not connected
            ProtocolError, SyncError, RequestError: If the request fails
        """
        stream_connection = self._stream_connection
        if stream_connection is None:
            raise NotConnectedError(operation)

        await self._control.execute(
            stream_connection.control_address or self._config.server_url,
            stream_connection.session_id,
            operation,
            params,
        )

    # --- Subscriptions ---

    def build_subscription(
        self,
        items: Sequence[str],
        fields: Sequence[str],
        mode: Union[SubscriptionMode, str],
        *,
        data_adapter: Optional[str] = None,
        selector: Optional[str] = None,
        maximum_update_frequency: UpdateFrequency = 0.0,
    ) -> Subscription:
        """
        Build a new subscription bound to this session. The subscription is not
        started; call Subscription.start() or bulk_subscription_start().

        Raises:
            SubscriptionError: If the options are invalid
        """
        subscription = Subscription(
            self,
            next(self._subscription_ids),
            items,
            fields,
            mode,
            data_adapter=data_adapter,
            selector=selector,
            maximum_update_frequency=maximum_update_frequency,
        )
        self._subscriptions.append(subscription)
        logger.debug(f"[{self._name}] Built {subscription!r}")
        return subscription

    async def remove_subscription(self, subscription: Subscription) -> None:
        """
        Stop a subscription and remove it from this session. To keep the option of
        restarting it, call Subscription.stop() instead.

        Raises:
            SubscriptionError: If the subscription does not belong to this session
            ProtocolError: If the server rejects the stop request
        """
        if subscription.session is not self:
            raise SubscriptionError("Unknown subscription", subscription_id=subscription.id)

        async with self._subscriptions_lock:
            await subscription.stop()
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
            subscription.detach()

    async def bulk_subscription_start(
        self,
        subscriptions: Sequence[Subscription],
        *,
        silent: bool = False,
        snapshot: bool = False,
    ) -> list[Optional[LightstreamerError]]:
        """
        Start several subscriptions with a single control request.

        Returns:
            One entry per subscription: the error the server returned for it, or None.
            Only subscriptions without an error become active.

        Raises:
            NotConnectedError: If the session is not connected
        """
        if subscriptions and self._stream_connection is None:
            raise NotConnectedError("add")

        bodies = []
        for subscription in subscriptions:
            operation, params = subscription.start_control_request_args(
                silent=silent, snapshot=snapshot
            )
            subscription.clear_data()
            bodies.append(self._control_body(operation, params))

        return await self._bulk_control(subscriptions, bodies, "add")

    async def bulk_subscription_stop(
        self, subscriptions: Sequence[Subscription]
    ) -> list[Optional[LightstreamerError]]:
        """
        Stop several subscriptions with a single control request.

        Raises:
            NotConnectedError: If the session is not connected
        """
        bodies = []
        for subscription in subscriptions:
            operation, params = subscription.stop_control_request_args()
            bodies.append(self._control_body(operation, params))

        return await self._bulk_control(subscriptions, bodies, "delete")

    def _control_body(self, operation: str, params: dict[str, Any]) -> str:
        query: dict[str, Any] = {"LS_session": self.session_id, "LS_op": operation}
        query.update(params)
        return request_body(query)

    async def _bulk_control(
        self,
        subscriptions: Sequence[Subscription],
        bodies: list[str],
        operation: str,
    ) -> list[Optional[LightstreamerError]]:
        if not subscriptions:
            return []
        stream_connection = self._stream_connection
        if stream_connection is None:
            raise NotConnectedError(operation)
        if any(s.session is not self for s in subscriptions):
            raise SubscriptionError("Unknown subscription")

        async with self._subscriptions_lock:
            errors = await self._control.execute_multiple(
                control_url(stream_connection.control_address or self._config.server_url),
                bodies,
            )
            for subscription, error in zip(subscriptions, errors):
                if error is None:
                    subscription.after_control_request(operation)
                else:
                    logger.warning(
                        f"[{self._name}] {operation} failed for subscription "
                        f"{subscription.id}: {error}"
                    )

        return errors

    # --- Messages ---

    async def send_message(
        self,
        message: str,
        *,
        asynchronous: bool = False,
        sequence: Optional[str] = None,
        number: Optional[int] = None,
        max_wait: Optional[int] = None,
    ) -> None:
        """
        Send a custom message to the server.

        Synchronous messages raise on failure. Asynchronous messages need a sequence
        name and progressive number; their outcome arrives later through the
        on_message_result callbacks.

        Raises:
            NotConnectedError: If the session is not connected
            ValueError: If an asynchronous message lacks its sequence or number
            ProtocolError: If a synchronous message is rejected
        """
        stream_connection = self._stream_connection
        if stream_connection is None:
            raise NotConnectedError("send_message")

        query: dict[str, Any] = {
            "LS_session": stream_connection.session_id,
            "LS_message": message,
        }
        if asynchronous:
            if sequence is None or number is None:
                raise ValueError("Asynchronous messages require a sequence and a number")
            query["LS_sequence"] = sequence
            query["LS_msg_prog"] = number
        if max_wait is not None:
            query["LS_max_wait"] = max_wait

        control_address = stream_connection.control_address or self._config.server_url
        url = urljoin(control_address, SEND_MESSAGE_PATH)
        await self._control.post(url, query)

    # --- Callbacks ---

    def on_message_result(self, callback: Callback) -> Callback:
        """
        Register a callback for the outcome of asynchronous messages, called as
        callback(sequence, numbers, error) where error is None on success.
        """
        self._message_result_callbacks.append(callback)
        return callback

    def on_error(self, callback: Callback) -> Callback:
        """Register a callback called with the error that ended the stream connection."""
        self._error_callbacks.append(callback)
        return callback

    def on_unprocessed_line(self, callback: Callback) -> Callback:
        """Register a callback for stream lines that no subscription or parser claimed."""
        self._unprocessed_line_callbacks.append(callback)
        return callback

    def remove_callback(self, callback: Callback) -> None:
        for callbacks in (
            self._message_result_callbacks,
            self._error_callbacks,
            self._unprocessed_line_callbacks,
        ):
            if callback in callbacks:
                callbacks.remove(callback)

    # --- Processing loop ---

    async def _processing_loop(self, stream_connection: StreamConnection) -> None:
        """Read lines from the stream until it ends, routing each one."""
        while True:
            line = await stream_connection.read_line()
            if line is None:
                break
            if line:
                await self.process_stream_line(line)

        # The stream has ended, so the session is over unless disconnect() is handling it
        error = stream_connection.error
        if (
            self._stream_connection is stream_connection
            and self._state != SessionState.DISCONNECTING
        ):
            self._error = error
            await stream_connection.disconnect()
            self._reset()
            await self._close_transport()
            logger.info(f"[{self._name}] Stream ended: {error}")

            if error is not None:
                self._stats.callback_errors += await invoke_callbacks(
                    self._error_callbacks, error, name=self._name
                )

    async def process_stream_line(self, line: str) -> bool:
        """
        Route a single stream line: first to the subscriptions, where at most one
        claims it, then to message outcome handling. Lines nobody claims are logged
        and passed to the on_unprocessed_line callbacks.

        Returns:
            Whether the line was claimed.
        """
        self._stats.lines_processed += 1

        for subscription in list(self._subscriptions):
            if await subscription.process_stream_data(line):
                self._stats.lines_claimed += 1
                self._stats.by_subscription[subscription.id] = (
                    self._stats.by_subscription.get(subscription.id, 0) + 1
                )
                return True

        outcome = SendMessageOutcomeMessage.parse(line)
        if outcome is not None:
            self._stats.message_outcomes += 1
            self._stats.callback_errors += await invoke_callbacks(
                self._message_result_callbacks,
                outcome.sequence,
                list(outcome.numbers),
                outcome.error,
                name=self._name,
            )
            return True

        self._stats.unprocessed_lines += 1
        logger.warning(f"[{self._name}] Unprocessed stream data: {line!r}")
        self._stats.callback_errors += await invoke_callbacks(
            self._unprocessed_line_callbacks, line, name=self._name
        )
        return False

    # --- Public methods ---

    def get_stats(self) -> dict[str, Any]:
        """Get statistics summary."""
        stats: dict[str, Any] = {
            "state": self._state.value,
            "session_id": self.session_id,
            "connected_at": self._connected_at.isoformat() if self._connected_at else None,
            "subscriptions": len(self._subscriptions),
            "active_subscriptions": sum(1 for s in self._subscriptions if s.active),
            "lines_processed": self._stats.lines_processed,
            "lines_claimed": self._stats.lines_claimed,
            "message_outcomes": self._stats.message_outcomes,
            "unprocessed_lines": self._stats.unprocessed_lines,
            "callback_errors": self._stats.callback_errors,
        }

        if self._stream_connection is not None:
            stream_stats = self._stream_connection.stats
            stats["stream"] = {
                "state": self._stream_connection.state.value,
                "lines_received": stream_stats.lines_received,
                "lines_enqueued": stream_stats.lines_enqueued,
                "probes": stream_stats.probes,
                "rebinds": stream_stats.rebinds,
            }

        return stats
