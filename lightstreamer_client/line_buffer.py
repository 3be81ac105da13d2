"""
Line framing for incoming stream data.
"""

from __future__ import annotations

from typing import Iterator


class LineBuffer:
    """
    Accumulates chunks of incoming text and yields the lines that are complete.

    A trailing partial line is held back until a later chunk completes it. Yielded
    lines are stripped, which also removes the CR of a CRLF terminator.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Partial line waiting for its terminator."""
        return self._buffer

    def process(self, data: str) -> Iterator[str]:
        """Append a chunk and return an iterator over every line it completes, in order."""
        self._buffer += data

        lines = self._buffer.split("\n")
        # Last segment is empty when the buffer ended with "\n", otherwise an incomplete line
        self._buffer = lines.pop()

        return (line.strip() for line in lines)
