"""
Parsers for the line formats of the Lightstreamer stream.

Each parser takes a single stream line and returns a message instance, or None when
the line is not of that format (or belongs to another table). Parsers never raise
for non-matching lines.

Formats, where <table> is the subscription id and <item> is a 1-based item number:
- Update:          <table>,<item>|<value1>|<value2>|...
- Overflow:        <table>,<item>,OV<size>
- End of snapshot: <table>,<item>,EOS
- Message outcome: MSG,<sequence>,<number>,DONE
                   MSG,<sequence>,<number>,ERR,<code>,<text>
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Sequence

from lightstreamer_client.errors import MessagesSkippedByTimeoutError, ProtocolError, build_error
from lightstreamer_client.utf16 import parse_field_value

_OUTCOME_RE = re.compile(r"^MSG,([A-Za-z0-9_]+),(\d+),(?:DONE|ERR,(-?\d+),(.*))$")


@lru_cache(maxsize=256)
def _update_regexp(table_id: int, field_count: int) -> re.Pattern[str]:
    return re.compile(rf"^{table_id},(\d+)" + r"\|([^|]*)" * field_count + "$")


@lru_cache(maxsize=256)
def _overflow_regexp(table_id: int) -> re.Pattern[str]:
    return re.compile(rf"^{table_id},(\d+),OV(\d+)$")


@lru_cache(maxsize=256)
def _end_of_snapshot_regexp(table_id: int) -> re.Pattern[str]:
    return re.compile(rf"^{table_id},(\d+),EOS$")


def _item_index(raw_number: str, item_count: int) -> Optional[int]:
    """Convert a 1-based item number to an index, or None if out of range."""
    index = int(raw_number) - 1
    if 0 <= index < item_count:
        return index
    return None


@dataclass(frozen=True, slots=True)
class UpdateMessage:
    """New values for one item of a subscription. Omitted (unchanged) fields are absent."""

    item_index: int
    values: dict[str, Optional[str]]

    @classmethod
    def parse(
        cls,
        line: str,
        table_id: int,
        items: Sequence[str],
        fields: Sequence[str],
    ) -> Optional[UpdateMessage]:
        match = _update_regexp(table_id, len(fields)).match(line)
        if not match:
            return None

        item_index = _item_index(match.group(1), len(items))
        if item_index is None:
            return None

        values: dict[str, Optional[str]] = {}
        for name, raw_value in zip(fields, match.groups()[1:]):
            if raw_value == "":
                continue
            values[name] = parse_field_value(raw_value)

        return cls(item_index=item_index, values=values)


@dataclass(frozen=True, slots=True)
class OverflowMessage:
    """The server dropped updates for an item because of an unfiltered buffer overflow."""

    item_index: int
    overflow_size: int

    @classmethod
    def parse(cls, line: str, table_id: int, items: Sequence[str]) -> Optional[OverflowMessage]:
        match = _overflow_regexp(table_id).match(line)
        if not match:
            return None

        item_index = _item_index(match.group(1), len(items))
        if item_index is None:
            return None

        return cls(item_index=item_index, overflow_size=int(match.group(2)))


@dataclass(frozen=True, slots=True)
class EndOfSnapshotMessage:
    """All snapshot data for an item has been sent."""

    item_index: int

    @classmethod
    def parse(
        cls, line: str, table_id: int, items: Sequence[str]
    ) -> Optional[EndOfSnapshotMessage]:
        match = _end_of_snapshot_regexp(table_id).match(line)
        if not match:
            return None

        item_index = _item_index(match.group(1), len(items))
        if item_index is None:
            return None

        return cls(item_index=item_index)


@dataclass(frozen=True, slots=True)
class SendMessageOutcomeMessage:
    """
    Outcome of an asynchronously sent message.

    `numbers` holds a single progressive number, except when `error` is a
    MessagesSkippedByTimeoutError, where it covers the whole run of skipped messages.
    """

    sequence: str
    numbers: list[int] = field(default_factory=list)
    error: Optional[ProtocolError] = None

    @classmethod
    def parse(cls, line: str) -> Optional[SendMessageOutcomeMessage]:
        match = _OUTCOME_RE.match(line)
        if not match:
            return None

        sequence, raw_number, error_code, error_text = match.groups()
        number = int(raw_number)

        if error_code is None:
            return cls(sequence=sequence, numbers=[number])

        error = build_error(error_text, error_code)
        numbers = [number]
        if isinstance(error, MessagesSkippedByTimeoutError):
            # The text is the count of skipped messages ending at `number`
            try:
                skipped = int(error_text)
            except ValueError:
                skipped = 1
            numbers = list(range(number - max(skipped, 1) + 1, number + 1))

        return cls(sequence=sequence, numbers=numbers, error=error)
