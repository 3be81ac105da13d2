"""HttpTransport Port Interface.

Contract: issue form-encoded POST requests against a Lightstreamer server, either as a
short request returning the whole body, or as a long-lived streaming request whose
body is delivered chunk by chunk.

Implementations raise RequestError for transport-level failures (DNS, refused
connection, timeouts, dropped sockets). HTTP status codes are returned, not raised;
callers decide which statuses are acceptable. Cancelling the awaiting task must abort
the in-flight request and release its connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    body: str = ""
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HttpTransport(Protocol):
    async def post(self, url: str, body: str, *, timeout: float) -> HttpResponse:
        """Send a POST request and return the complete response body."""
        ...

    async def stream_post(
        self,
        url: str,
        body: str,
        on_chunk: Callable[[str], None],
        *,
        connect_timeout: float,
    ) -> HttpResponse:
        """
        Send a POST request and pass each decoded chunk of the response body to
        `on_chunk` as it arrives. Returns once the server closes the response; the
        returned body is empty for successful responses.
        """
        ...

    async def close(self) -> None:
        """Release pooled connections."""
        ...
