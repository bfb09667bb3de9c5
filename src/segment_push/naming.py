"""Segment names and the segment archive naming convention.

Archives are named ``<table>_<type>[__<timestamp13digits>]_<sequence>.tar.gz``.
The timestamp component only appears for consistency-guarded refresh pushes
and keeps two refreshes of identical input from producing the same names.
"""

import re
import threading
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable
from urllib.parse import unquote, urlsplit

from segment_push.errors import InvalidRequestError
from segment_push.spec import TableType

TAR_GZ_FILE_EXT = ".tar.gz"

_SEGMENT_NAME_RE = re.compile(
    r"^(?P<table>.+)_(?P<type>OFFLINE|REALTIME)(?:__(?P<timestamp>\d+))?_(?P<sequence>\d+)$"
)


def is_segment_archive(uri: str) -> bool:
    """Whether a URI or path points at a segment archive."""
    return urlsplit(uri).path.endswith(TAR_GZ_FILE_EXT)


def segment_name_from_uri(uri: str) -> str:
    """Strip directories, query string and archive extension."""
    parts = urlsplit(uri)
    path = unquote(parts.path) if parts.scheme else uri
    file_name = PurePosixPath(path).name
    if not file_name.endswith(TAR_GZ_FILE_EXT):
        raise InvalidRequestError(f"Not a segment archive: {uri}")
    name = file_name[: -len(TAR_GZ_FILE_EXT)]
    if not name:
        raise InvalidRequestError(f"Empty segment name in {uri}")
    return name


@dataclass(frozen=True)
class SegmentName:
    """Parsed form of a conventionally named segment."""

    table: str
    table_type: TableType
    sequence: int
    timestamp_ms: int | None = None

    def __str__(self) -> str:
        if self.timestamp_ms is None:
            return f"{self.table}_{self.table_type.value}_{self.sequence}"
        return f"{self.table}_{self.table_type.value}__{self.timestamp_ms:013d}_{self.sequence}"


def follows_naming_convention(name: str) -> bool:
    return _SEGMENT_NAME_RE.match(name) is not None


def parse_segment_name(name: str) -> SegmentName:
    """Parse a conventional segment name; the timestamp, if present, must be 13 digits."""
    match = _SEGMENT_NAME_RE.match(name)
    if match is None:
        raise InvalidRequestError(f"Segment name does not follow the naming convention: {name}")

    timestamp = match.group("timestamp")
    if timestamp is not None and len(timestamp) != 13:
        raise InvalidRequestError(f"Segment timestamp must be 13 digits, got '{timestamp}' in {name}")

    return SegmentName(
        table=match.group("table"),
        table_type=TableType(match.group("type")),
        sequence=int(match.group("sequence")),
        timestamp_ms=int(timestamp) if timestamp is not None else None,
    )


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class SegmentNameGenerator:
    """
    Produces segment names for one push.

    The segment generation step names its archives with this before they
    land in the output directory; the push side only parses them back, and
    a refresh whose timestamp is already live is rejected when the lineage
    entry is opened.

    With ``consistent_push`` the names embed a millisecond timestamp taken
    when the generator is created.  Timestamps handed out in the same
    process never repeat, even for generators created within the same
    millisecond, and sequence numbers never repeat within a generator.
    """

    _lock = threading.Lock()
    _last_timestamp_ms = 0

    def __init__(
        self,
        table: str,
        table_type: TableType = TableType.OFFLINE,
        consistent_push: bool = False,
        clock: Callable[[], int] = _now_ms,
    ):
        self.table = table
        self.table_type = TableType(table_type)
        self.consistent_push = consistent_push
        self.timestamp_ms = self._reserve_timestamp(clock()) if consistent_push else None
        self._next_sequence = 0

    @classmethod
    def _reserve_timestamp(cls, now_ms: int) -> int:
        with cls._lock:
            timestamp = max(now_ms, cls._last_timestamp_ms + 1)
            cls._last_timestamp_ms = timestamp
        if len(str(timestamp)) != 13:
            raise InvalidRequestError(f"Clock produced a non 13-digit millisecond timestamp: {timestamp}")
        return timestamp

    def next_name(self) -> str:
        """Next name in sequence."""
        name = str(
            SegmentName(
                table=self.table,
                table_type=self.table_type,
                sequence=self._next_sequence,
                timestamp_ms=self.timestamp_ms,
            )
        )
        self._next_sequence += 1
        return name

    def names(self, count: int) -> list[str]:
        return [self.next_name() for _ in range(count)]

    def archive_name(self) -> str:
        return f"{self.next_name()}{TAR_GZ_FILE_EXT}"
