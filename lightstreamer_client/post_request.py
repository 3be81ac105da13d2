"""
Control request client.

Sends single and bulk POST requests to the control endpoints of a Lightstreamer
server and turns the response lines into success or a typed error.

Response framing, one outcome per submitted request body:
    OK
    SYNC ERROR
    ERROR / <code> / <message>     (three lines)
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence
from urllib.parse import urlencode, urljoin

from lightstreamer_client.config import CONTROL_PATH, DEFAULT_CONTROL_TIMEOUT_S
from lightstreamer_client.errors import (
    LightstreamerError,
    ProtocolError,
    RequestError,
    SyncError,
    build_error,
)
from lightstreamer_client.ports.transport import HttpTransport

logger = logging.getLogger(__name__)

BODY_SEPARATOR = "\r\n"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return " ".join(_format_value(v) for v in value)
    return str(value)


def request_body(query: Mapping[str, Any]) -> str:
    """
    Build a form-encoded request body. None values are omitted and list values are
    joined with spaces.
    """
    params = [(key, _format_value(value)) for key, value in query.items() if value is not None]
    return urlencode(params)


def response_lines(body: str) -> list[str]:
    """Split a response body into stripped lines, dropping trailing blank lines."""
    lines = [line.strip() for line in body.split("\n")]
    while lines and lines[-1] == "":
        lines.pop()
    return lines


def parse_outcome(lines: list[str]) -> Optional[LightstreamerError]:
    """
    Consume the next outcome from the front of `lines` and return its error, or None
    if the outcome was OK.
    """
    first_line = lines.pop(0)

    if first_line == "OK":
        return None
    if first_line == "SYNC ERROR":
        return SyncError()
    if first_line == "ERROR":
        code = lines.pop(0) if lines else ""
        message = lines.pop(0) if lines else ""
        return build_error(message, code)
    return ProtocolError(first_line)


def control_url(control_address: str) -> str:
    return urljoin(control_address, CONTROL_PATH)


class ControlClient:
    """
    Sends control requests over an HttpTransport.

    Usage:
        client = ControlClient(transport)
        await client.execute(control_address, session_id, "delete", {"LS_table": 1})
    """

    def __init__(
        self,
        transport: HttpTransport,
        timeout_s: float = DEFAULT_CONTROL_TIMEOUT_S,
    ) -> None:
        self._transport = transport
        self._timeout_s = timeout_s

    async def execute(
        self,
        control_address: str,
        session_id: Optional[str],
        operation: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Execute a control operation against the session.

        Raises:
            ProtocolError: If the server rejects the operation
            SyncError: If the session is no longer valid
            RequestError: If the HTTP request fails
        """
        query: dict[str, Any] = {"LS_session": session_id, "LS_op": operation}
        query.update(params or {})
        logger.debug(f"[control] {operation} {dict(params or {})}")
        await self.post(control_url(control_address), query)

    async def post(self, url: str, query: Mapping[str, Any]) -> None:
        """Send a single request and raise its error, if any."""
        errors = await self.execute_multiple(url, [request_body(query)])
        if errors[0] is not None:
            raise errors[0]

    async def execute_multiple(
        self, url: str, bodies: Sequence[str]
    ) -> list[Optional[LightstreamerError]]:
        """
        Send several request bodies concatenated into one POST request.

        Returns one entry per body: the error the server returned for it, or None.

        Raises:
            ProtocolError: If the number of outcomes does not match the number of bodies
            RequestError: If the HTTP request fails
        """
        response = await self._transport.post(
            url, BODY_SEPARATOR.join(bodies), timeout=self._timeout_s
        )
        if response.status != 200:
            raise RequestError(
                response.reason or "Unexpected HTTP status",
                response.status,
                url=url,
                component="ControlClient",
            )

        lines = response_lines(response.body)
        errors: list[Optional[LightstreamerError]] = []
        while lines:
            errors.append(parse_outcome(lines))

        if len(errors) != len(bodies):
            raise ProtocolError(
                f"Expected {len(bodies)} control outcome(s) but received {len(errors)}",
                component="ControlClient",
            )

        return errors
