"""
Decoding of UTF-16 escape sequences embedded in field values.

Non-ASCII characters arrive as '\\uXXXX' escapes, with characters outside the basic
multilingual plane sent as a surrogate pair '\\uD8xx\\uDCxx'. Surrogate pairs are
decoded first so that neither half is consumed on its own by the single escape pass.
"""

from __future__ import annotations

import re
from typing import Optional

_SURROGATE_PAIR_RE = re.compile(r"\\u(D[89AB][0-9A-F]{2})\\u(D[C-F][0-9A-F]{2})", re.IGNORECASE)
_ESCAPE_RE = re.compile(r"\\u([0-9A-F]{4})", re.IGNORECASE)


def _decode_surrogate_pair(match: re.Match[str]) -> str:
    high = int(match.group(1), 16)
    low = int(match.group(2), 16)
    return chr(0x10000 + ((high - 0xD800) << 10) + (low - 0xDC00))


def _decode_escape(match: re.Match[str]) -> str:
    codepoint = int(match.group(1), 16)
    # Unpaired surrogates and anything above them are dropped
    return chr(codepoint) if codepoint < 0xD800 else ""


def decode_surrogate_pair_escape_sequences(string: str) -> str:
    """Decode '\\uXXXX\\uYYYY' surrogate pair escapes into single code points."""
    return _SURROGATE_PAIR_RE.sub(_decode_surrogate_pair, string)


def decode_escape_sequences(string: str) -> str:
    """Decode all '\\uXXXX' escapes in the string. Invalid escapes are removed."""
    if "\\" not in string:
        return string
    string = decode_surrogate_pair_escape_sequences(string)
    return _ESCAPE_RE.sub(_decode_escape, string)


def parse_field_value(value: str) -> Optional[str]:
    """
    Decode a raw, non-empty field value from an update line.

    A lone '$' is the empty string and a lone '#' is null. Otherwise a single leading
    '$' or '#' marker is stripped before escape decoding.
    """
    if value == "$":
        return ""
    if value == "#":
        return None
    if value[0] in "$#":
        value = value[1:]
    return decode_escape_sequences(value)
