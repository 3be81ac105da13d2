"""
Shared fixtures for the Lightstreamer client unit tests.

FakeTransport implements the HttpTransport port with scripted responses, so the
stream connection, control client and session can be tested without a server.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import parse_qsl

import pytest

from lightstreamer_client.config import SessionConfig
from lightstreamer_client.ports.transport import HttpResponse

SERVER_URL = "http://push.example.com"


@dataclass
class StreamScript:
    """
    Scripted response to one stream_post call.

    The chunks are delivered in order. With hold=True the response then stays open,
    delivering chunks passed to FakeTransport.push(), until FakeTransport.close_stream().
    """

    chunks: list[str] = field(default_factory=list)
    status: int = 200
    hold: bool = False
    error: Optional[Exception] = None


PostResult = Union[HttpResponse, Exception]


class FakeTransport:
    def __init__(self) -> None:
        self.stream_scripts: list[StreamScript] = []
        self.post_results: list[PostResult] = []
        self.stream_requests: list[tuple[str, str]] = []
        self.posts: list[tuple[str, str]] = []
        self.closed = False
        self._live: asyncio.Queue[Optional[str]] = asyncio.Queue()

    # --- Scripting ---

    def add_stream(self, *chunks: str, status: int = 200, hold: bool = False) -> None:
        self.stream_scripts.append(StreamScript(list(chunks), status=status, hold=hold))

    def add_stream_error(self, error: Exception) -> None:
        self.stream_scripts.append(StreamScript(error=error))

    def add_post(self, body: str = "OK\r\n", status: int = 200) -> None:
        self.post_results.append(HttpResponse(status=status, body=body))

    def add_post_error(self, error: Exception) -> None:
        self.post_results.append(error)

    def push(self, chunk: str) -> None:
        self._live.put_nowait(chunk)

    def close_stream(self) -> None:
        self._live.put_nowait(None)

    # --- Inspection ---

    def stream_params(self, index: int = 0) -> dict[str, str]:
        return dict(parse_qsl(self.stream_requests[index][1], keep_blank_values=True))

    def post_params(self, index: int = -1) -> list[dict[str, str]]:
        """Decoded parameters of each body in a (possibly bulk) control request."""
        body = self.posts[index][1]
        return [dict(parse_qsl(part, keep_blank_values=True)) for part in body.split("\r\n")]

    # --- HttpTransport ---

    async def post(self, url: str, body: str, *, timeout: float) -> HttpResponse:
        self.posts.append((url, body))
        result = self.post_results.pop(0) if self.post_results else HttpResponse(200, "OK\r\n")
        if isinstance(result, Exception):
            raise result
        return result

    async def stream_post(
        self,
        url: str,
        body: str,
        on_chunk: Callable[[str], None],
        *,
        connect_timeout: float,
    ) -> HttpResponse:
        self.stream_requests.append((url, body))
        script = self.stream_scripts.pop(0) if self.stream_scripts else StreamScript()
        if script.error is not None:
            raise script.error
        if script.status != 200:
            return HttpResponse(status=script.status, body="", reason="Server Error")

        for chunk in script.chunks:
            await asyncio.sleep(0)
            on_chunk(chunk)

        while script.hold:
            chunk = await self._live.get()
            if chunk is None:
                break
            on_chunk(chunk)

        return HttpResponse(status=200)

    async def close(self) -> None:
        self.closed = True


def session_header(session_id: str = "S1", control_address: Optional[str] = None) -> str:
    lines = ["OK", f"SessionId:{session_id}"]
    if control_address is not None:
        lines.append(f"ControlAddress:{control_address}")
    lines.extend(["KeepaliveMillis:5000", "MaxBandwidth:0.0", "RequestLimit:50000", ""])
    return "\r\n".join(lines) + "\r\n"


@pytest.fixture
def transport() -> FakeTransport:
    """Create a fake transport with no scripted responses."""
    return FakeTransport()


@pytest.fixture
def config() -> SessionConfig:
    """Create a minimal session config for testing."""
    return SessionConfig(
        server_url=SERVER_URL,
        username="user",
        password="secret",
        adapter_set="DEMO",
    )


@pytest.fixture
def settle() -> Callable[[], Awaitable[None]]:
    """Let scheduled tasks run until they block."""

    async def _settle() -> None:
        for _ in range(20):
            await asyncio.sleep(0)

    return _settle
