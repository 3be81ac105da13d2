"""aiohttp HttpTransport adapter.

Implements the HttpTransport port on top of a shared aiohttp.ClientSession. The
session is created lazily so the transport can be built outside a running loop.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import Callable, Optional

import aiohttp

from lightstreamer_client.errors import RequestError
from lightstreamer_client.ports.transport import HttpResponse

logger = logging.getLogger(__name__)

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


class AiohttpTransport:
    """
    HTTP transport backed by aiohttp.

    Usage:
        transport = AiohttpTransport()
        response = await transport.post(url, "LS_op=destroy", timeout=15.0)
        await transport.close()
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def post(self, url: str, body: str, *, timeout: float) -> HttpResponse:
        session = await self._get_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout, connect=timeout)

        try:
            async with session.post(
                url, data=body, headers=FORM_HEADERS, timeout=client_timeout
            ) as response:
                text = await response.text(errors="replace")
                return HttpResponse(status=response.status, body=text, reason=response.reason or "")
        except asyncio.TimeoutError as e:
            raise RequestError("Request timed out", url=url, component="AiohttpTransport") from e
        except aiohttp.ClientError as e:
            raise RequestError(
                str(e) or type(e).__name__, url=url, component="AiohttpTransport"
            ) from e

    async def stream_post(
        self,
        url: str,
        body: str,
        on_chunk: Callable[[str], None],
        *,
        connect_timeout: float,
    ) -> HttpResponse:
        session = await self._get_session()
        # The stream itself is unbounded; only establishing it is time limited
        client_timeout = aiohttp.ClientTimeout(
            total=None, connect=connect_timeout, sock_connect=connect_timeout
        )
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            async with session.post(
                url, data=body, headers=FORM_HEADERS, timeout=client_timeout
            ) as response:
                if not 200 <= response.status < 300:
                    text = await response.text(errors="replace")
                    return HttpResponse(
                        status=response.status, body=text, reason=response.reason or ""
                    )

                async for chunk in response.content.iter_any():
                    text = decoder.decode(chunk)
                    if text:
                        on_chunk(text)

                tail = decoder.decode(b"", final=True)
                if tail:
                    on_chunk(tail)

                return HttpResponse(status=response.status, reason=response.reason or "")
        except asyncio.TimeoutError as e:
            raise RequestError(
                "Stream connection timed out", url=url, component="AiohttpTransport"
            ) from e
        except aiohttp.ClientError as e:
            raise RequestError(
                str(e) or type(e).__name__, url=url, component="AiohttpTransport"
            ) from e

    async def close(self) -> None:
        if self._session is None or not self._owns_session:
            return
        if not self._session.closed:
            await self._session.close()
            logger.debug("[AiohttpTransport] Client session closed")
        self._session = None
