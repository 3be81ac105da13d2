"""
Stream connection for a Lightstreamer session.

Owns the long-running create_session/bind_session request, runs it on its own task,
splits the response into header and body lines, and makes body lines available
through read_line(). Handles:
- Connect rendezvous: connect() returns once the session header is parsed or fails
- Rebinding when the server sends LOOP (and on every poll in polling mode)
- Session termination when the server sends END
- Discarding PROBE keepalives and the Preamble line
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urljoin, urlsplit

from lightstreamer_client.config import (
    BIND_SESSION_PATH,
    CLIENT_ID,
    CREATE_SESSION_PATH,
    SessionConfig,
)
from lightstreamer_client.errors import (
    LightstreamerError,
    ProtocolError,
    RequestError,
    SessionEndError,
    build_error,
)
from lightstreamer_client.line_buffer import LineBuffer
from lightstreamer_client.ports.transport import HttpTransport
from lightstreamer_client.post_request import request_body
from lightstreamer_client.types import StreamState, StreamStats

logger = logging.getLogger(__name__)

_LOOP_RE = re.compile(r"^LOOP(?:\s.*)?$")
_END_RE = re.compile(r"^END(?:\s+(.*))?$")
_HEADER_ITEM_RE = re.compile(r"^([^:]*):(.*)$")


class StreamConnectionHeader:
    """
    Parses the header sent at the start of a create_session or bind_session response.

    On success the header is "OK", then "Key:Value" lines, then a blank line. On
    failure it is "ERROR", then the error code, then the error message.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lines: list[str] = []
        self.error: Optional[LightstreamerError] = None

    def process_header_line(self, line: str) -> bool:
        """Process one header line. Returns whether more lines are needed."""
        self._lines.append(line)
        first = self._lines[0]

        if first not in ("OK", "ERROR"):
            self.error = ProtocolError(line, component="StreamConnectionHeader")
            return False

        if first == "OK" and len(self._lines) > 1 and line == "":
            for header_line in self._lines[1:-1]:
                match = _HEADER_ITEM_RE.match(header_line)
                if match:
                    self._data[match.group(1)] = match.group(2)
            return False

        if first == "ERROR" and len(self._lines) == 3:
            self.error = build_error(self._lines[2], self._lines[1])
            return False

        return True

    def get(self, name: str) -> Optional[str]:
        return self._data.get(name)

    def __getitem__(self, name: str) -> Optional[str]:
        return self._data.get(name)


class StreamConnection:
    """
    Manages the stream connection of a single session connect cycle.

    State Machine:
        [IDLE] --connect()--> [CONNECTING] --header OK--> [BOUND] <--> [REBINDING]
                                   |                         |
                              header error              END / failure / disconnect()
                                   |                         |
                                [IDLE]                    [ENDED]

    Usage:
        stream = StreamConnection(config, transport)
        await stream.connect()
        while (line := await stream.read_line()) is not None:
            ...
        await stream.disconnect()
    """

    def __init__(
        self,
        config: SessionConfig,
        transport: HttpTransport,
        name: str = "stream",
    ) -> None:
        self._config = config
        self._transport = transport
        self._name = name

        self.requested_max_bandwidth = config.requested_max_bandwidth
        self._create_url = urljoin(config.server_url, CREATE_SESSION_PATH)

        # State
        self._state = StreamState.IDLE
        self._task: Optional[asyncio.Task[None]] = None
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._connect_result: Optional[asyncio.Future[None]] = None
        self._header: Optional[StreamConnectionHeader] = None
        self._loop_requested = False

        # Session details from the header
        self._session_id: Optional[str] = None
        self._control_address: Optional[str] = None

        self._error: Optional[LightstreamerError] = None
        self._stats = StreamStats()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def control_address(self) -> Optional[str]:
        """Address for control requests, always including a URL scheme."""
        return self._control_address

    @property
    def error(self) -> Optional[LightstreamerError]:
        """The error that ended the stream, if it has ended."""
        return self._error

    @property
    def connected(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stats(self) -> StreamStats:
        return self._stats

    def _set_state(self, new_state: StreamState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")

    def _record_error(self, error: LightstreamerError) -> None:
        # The first error is the one that ended the stream
        if self._error is None:
            self._error = error

    async def connect(self) -> None:
        """
        Create a new session and wait until the server's header has been processed.

        Raises:
            ProtocolError: If the server refuses to create the session
            RequestError: If the HTTP request fails
        """
        if self._task is not None:
            return

        self._reset()
        self._connect_result = asyncio.get_running_loop().create_future()
        self._set_state(StreamState.CONNECTING)
        logger.info(f"[{self._name}] Creating session at {self._create_url}")

        self._task = asyncio.create_task(self._run(), name=f"{self._name}_run")

        # The future carries the header outcome only; an END or close after an OK header
        # is reported through read_line() and error
        try:
            await asyncio.shield(self._connect_result)
        except asyncio.CancelledError:
            self._connect_result.cancel()
            await self.disconnect()
            raise
        except LightstreamerError as e:
            await self.disconnect()
            self._set_state(StreamState.IDLE)
            logger.warning(f"[{self._name}] Session creation failed: {e}")
            raise

        logger.info(f"[{self._name}] Session {self._session_id} bound")

    def _reset(self) -> None:
        self._queue = asyncio.Queue()
        self._header = None
        self._loop_requested = False
        self._session_id = None
        self._control_address = None
        self._error = None
        self._stats = StreamStats()

    async def disconnect(self) -> None:
        """Cancel the stream task, aborting any in-flight request. Safe to call repeatedly."""
        task = self._task
        if task is None:
            return
        self._task = None

        if task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._set_state(StreamState.ENDED)
        logger.debug(f"[{self._name}] Disconnected")

    async def read_line(self) -> Optional[str]:
        """
        Return the next body line, waiting for one if the stream is still running.

        Returns None once the stream has ended and all buffered lines have been read,
        and on every call after that.
        """
        if self._task is None and self._queue.empty():
            return None

        line = await self._queue.get()
        if line is None:
            # Leave the end-of-stream marker in place for later readers
            self._queue.put_nowait(None)
        return line

    # --- Stream task ---

    async def _run(self) -> None:
        try:
            await self._connect_and_process(self._create_url, self._create_params())

            while self._loop_requested and self._error is None:
                self._loop_requested = False
                self._set_state(StreamState.REBINDING)
                self._stats.rebinds += 1
                logger.debug(f"[{self._name}] Rebinding session {self._session_id}")
                await self._connect_and_process(self._bind_url(), self._bind_params())

            if self._error is None:
                self._record_error(
                    RequestError("Stream connection closed by server", component="StreamConnection")
                )

        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Stream task cancelled")
            raise
        except Exception as e:
            logger.error(f"[{self._name}] Stream task error: {e}", exc_info=True)
            self._record_error(LightstreamerError(str(e), component="StreamConnection"))

        finally:
            self._set_state(StreamState.ENDED)
            self._signal_connect_result(
                self._error
                or RequestError(
                    "Stream ended before the session header", component="StreamConnection"
                )
            )
            self._queue.put_nowait(None)
            if self._error is not None:
                logger.info(f"[{self._name}] Stream ended: {self._error}")

    async def _connect_and_process(self, url: str, params: dict[str, Any]) -> None:
        self._header = StreamConnectionHeader()
        buffer = LineBuffer()

        def on_chunk(data: str) -> None:
            for line in buffer.process(data):
                self._process_line(line)

        try:
            response = await self._transport.stream_post(
                url,
                request_body(params),
                on_chunk,
                connect_timeout=self._config.connect_timeout_s,
            )
        except RequestError as e:
            self._record_error(e)
        else:
            if not response.ok:
                self._record_error(
                    RequestError(
                        response.reason or "Unexpected HTTP status",
                        response.status,
                        url=url,
                        component="StreamConnection",
                    )
                )
            elif self._header is not None:
                self._record_error(
                    self._header.error
                    or RequestError(
                        "Connection closed before the session header was complete",
                        url=url,
                        component="StreamConnection",
                    )
                )

        self._signal_connect_result(self._error)

    def _signal_connect_result(self, error: Optional[LightstreamerError] = None) -> None:
        future = self._connect_result
        if future is None or future.done():
            return
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(error)

    def _process_line(self, line: str) -> None:
        self._stats.lines_received += 1
        if self._header is not None:
            self._process_header_line(line)
        else:
            self._process_body_line(line)

    def _process_header_line(self, line: str) -> None:
        header = self._header
        if header is None or header.process_header_line(line):
            return
        self._header = None

        if header.error is not None:
            self._record_error(header.error)
        else:
            self._session_id = header.get("SessionId") or self._session_id
            self._control_address = self._resolve_control_address(header.get("ControlAddress"))
            self._stats.connected_at = datetime.now(timezone.utc)
            self._set_state(StreamState.BOUND)

        self._signal_connect_result(header.error)

    def _process_body_line(self, line: str) -> None:
        if _LOOP_RE.match(line):
            self._loop_requested = True
            return

        end_match = _END_RE.match(line)
        if end_match:
            self._record_error(SessionEndError(_parse_cause_code(end_match.group(1))))
            return

        if line == "PROBE" or line.startswith("Preamble:"):
            self._stats.probes += 1
            return

        if line:
            self._stats.lines_enqueued += 1
            self._queue.put_nowait(line)

    # --- Requests ---

    def _resolve_control_address(self, address: Optional[str]) -> str:
        if not address:
            return self._control_address or self._config.server_url
        if "://" in address:
            return address
        scheme = urlsplit(self._config.server_url).scheme
        return f"{scheme}://{address}"

    def _bind_url(self) -> str:
        return urljoin(self._control_address or self._config.server_url, BIND_SESSION_PATH)

    def _polling_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"LS_requested_max_bandwidth": self.requested_max_bandwidth}
        if self._config.polling:
            params["LS_polling"] = True
            params["LS_polling_millis"] = self._config.polling_millis
        return params

    def _create_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "LS_op2": "create",
            "LS_cid": CLIENT_ID,
            "LS_user": self._config.username,
            "LS_password": self._config.password,
            "LS_adapter_set": self._config.adapter_set,
        }
        params.update(self._polling_params())
        return params

    def _bind_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"LS_session": self._session_id}
        params.update(self._polling_params())
        return params


def _parse_cause_code(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None
