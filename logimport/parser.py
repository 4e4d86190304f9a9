#!/usr/bin/env python3
"""
Access-log line parser.

Lines follow the common/combined layout::

    ip ident auth [timestamp] "method uri protocol" status size "referrer" "agent"

Fields are mapped by position only. Every line gets a SHA-1 content hash
computed over its raw bytes, which identifies the line in the store whether
or not the rest of it could be parsed.
"""

import hashlib
import re
from typing import List, Optional, Tuple, Union

from .entry import LogEntry
from .timestamps import ts_apache

# Opening delimiter -> closing delimiter. Spaces inside a pair do not split.
DELIMITER_PAIRS = {'"': '"', "[": "]"}

ABSENT = "-"

_DECIMAL = re.compile(r"[0-9]+")


def content_hash(raw: bytes) -> bytes:
    """
    Compute the identity of a raw log line.

    :param raw: Line bytes, without the line terminator.
    :return: 20-byte SHA-1 digest.
    """
    return hashlib.sha1(raw).digest()


def split_words(text: str) -> List[str]:
    """
    Split a line into words on unquoted spaces.

    ``"..."`` and ``[...]`` suspend splitting until their matching closing
    delimiter; closing a pair always emits a word, even an empty one, so
    ``""`` keeps its position. An unterminated pair is flushed as a trimmed
    partial word.

    :param text: Decoded log line.
    :return: Words in left-to-right order.
    """
    words: List[str] = []
    word: List[str] = []
    closing: Optional[str] = None

    for ch in text:
        if closing is not None:
            if ch == closing:
                words.append("".join(word))
                word = []
                closing = None
            else:
                word.append(ch)
        elif ch in DELIMITER_PAIRS:
            closing = DELIMITER_PAIRS[ch]
        elif ch == " ":
            value = "".join(word).strip()
            if value:
                words.append(value)
            word = []
        else:
            word.append(ch)

    value = "".join(word).strip()
    if value:
        words.append(value)

    return words


def parse_request(request: str) -> Tuple[str, str, str, str]:
    """
    Split a request line into method, URI, query parameters and protocol.

    The query string is everything after the first ``?`` of the URI.

    :param request: Request line, e.g. ``GET /x?y=1 HTTP/1.1``.
    :return: ``(method, uri, params, protocol)``.
    :raises ValueError: If the method, URI or protocol is missing.
    """
    words = split_words(request)
    if not words:
        raise ValueError("request method not specified")
    if len(words) < 2:
        raise ValueError("request URI not specified")
    if len(words) < 3:
        raise ValueError("request protocol not specified")

    uri, _, params = words[1].partition("?")
    return words[0], uri, params, words[2]


def parse_decimal(word: str, field: str) -> Optional[int]:
    """
    Parse a status or size token.

    :param word: Raw token.
    :param field: Field name used in the error message.
    :return: Integer value, or ``None`` for ``-``.
    :raises ValueError: If the token is not a plain decimal number.
    """
    if word == ABSENT:
        return None
    if not _DECIMAL.fullmatch(word):
        raise ValueError(f"invalid {field} {word!r}")
    return int(word)


def _populate(entry: LogEntry, words: List[str]) -> None:
    if len(words) >= 1:
        entry.ip_address = words[0]
    if len(words) >= 2:
        entry.client_ident = words[1]
    if len(words) >= 3:
        entry.client_auth = words[2]

    if len(words) < 5:
        raise ValueError(f"expected at least 5 fields, found {len(words)}")

    try:
        entry.timestamp = ts_apache(words[3])
    except ValueError:
        raise ValueError(f"invalid timestamp {words[3]!r}") from None

    (
        entry.request_method,
        entry.request_uri,
        entry.request_params,
        entry.request_protocol,
    ) = parse_request(words[4])

    if len(words) >= 6:
        entry.status = parse_decimal(words[5], "status")
    if len(words) >= 7:
        entry.size = parse_decimal(words[6], "size")
    if len(words) >= 8:
        entry.referrer = words[7]
    if len(words) >= 9:
        entry.client_version = words[8]


def parse_line(raw: Union[bytes, str]) -> LogEntry:
    """
    Parse one access-log line.

    Parsing never raises. A line that cannot be parsed comes back with
    ``error`` set (``is_parse_error`` true); fields before the failing one are
    still populated and ``content_hash`` is always valid.

    :param raw: Line without its terminator; ``str`` input is UTF-8 encoded.
    :return: Parsed entry.
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8")

    entry = LogEntry(content_hash=content_hash(raw))
    words = split_words(raw.decode("utf-8", errors="replace"))

    try:
        _populate(entry, words)
    except ValueError as exc:
        entry.error = str(exc)

    return entry
