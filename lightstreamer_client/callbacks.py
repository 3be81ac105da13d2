"""
Invocation of application callbacks.

Callbacks may be plain functions or coroutine functions. They run on the session's
processing task, so they must not assume they run on the caller's original task.
An exception raised by one callback is logged and does not stop the others.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Union

logger = logging.getLogger(__name__)

Callback = Callable[..., Union[None, Awaitable[None]]]


async def invoke_callbacks(callbacks: Iterable[Callback], *args: Any, name: str) -> int:
    """Call each callback with `args` in order. Returns the number that raised."""
    failures = 0
    for callback in list(callbacks):
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            failures += 1
            logger.error(f"[{name}] Callback error: {e}", exc_info=True)
    return failures
