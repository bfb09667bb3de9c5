"""In-process control plane.

Implements the same contract as the HTTP controller for local runs and
tests.  Instances are looked up by name so every component of one process
that connects to ``memory://<name>`` talks to the same state, the way
several clients talk to one controller.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable
from urllib.parse import unquote, urlsplit

import structlog
import ulid

from segment_push.errors import ControllerError, InvalidRequestError
from segment_push.metadata import SegmentMetadata
from segment_push.models import LineageEntry, LineageState
from segment_push.naming import segment_name_from_uri
from segment_push.retry import AttemptResult
from segment_push.spec import TableSpec

logger = structlog.get_logger()


def read_local_uri(uri: str) -> bytes | None:
    """Default fetcher: read ``file`` URIs, leave other schemes unresolved."""
    parts = urlsplit(uri)
    if parts.scheme and parts.scheme.lower() != "file":
        return None
    path = Path(unquote(parts.path)) if parts.scheme else Path(uri)
    return path.read_bytes()


@dataclass
class SegmentRecord:
    """A registered segment."""

    name: str
    upload_type: str
    download_uri: str | None = None
    total_docs: int | None = None
    stored: bool = False


@dataclass
class _LineageRecord:
    entry_id: str
    segments_from: frozenset[str]
    segments_to: frozenset[str]
    state: LineageState
    timestamp_ms: int

    def snapshot(self) -> LineageEntry:
        return LineageEntry(
            entry_id=self.entry_id,
            segments_from=self.segments_from,
            segments_to=self.segments_to,
            state=self.state,
            timestamp_ms=self.timestamp_ms,
        )


@dataclass
class _TableState:
    segments: dict[str, SegmentRecord] = field(default_factory=dict)
    lineage: list[_LineageRecord] = field(default_factory=list)
    config: dict[str, Any] | None = None


def _rejected(reason: str, status_code: int = 400) -> AttemptResult:
    return AttemptResult.fatal(reason, error=ControllerError(reason, status_code=status_code))


class InMemoryControlPlane:
    """
    Thread-safe control plane held in process memory.

    Live segments are every registered segment except the ``segments_to``
    of entries still ``IN_PROGRESS`` or ``ABORTED`` and the
    ``segments_from`` of ``COMPLETED`` entries.  Closing an entry therefore
    swaps the whole set in one step under the lock.
    """

    _instances: dict[str, "InMemoryControlPlane"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, name: str = "default", fetch: Callable[[str], bytes | None] | None = None):
        self.name = name
        self.uri = f"memory://{name}"
        self.fetch = fetch or read_local_uri
        self.deep_store: dict[tuple[str, str], bytes] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.on_upload: Callable[["InMemoryControlPlane", TableSpec, str], None] | None = None
        self._tables: dict[tuple[str, str], _TableState] = defaultdict(_TableState)
        self._failures: dict[str, deque[AttemptResult]] = defaultdict(deque)
        self._lock = threading.RLock()

    @classmethod
    def named(cls, name: str) -> "InMemoryControlPlane":
        """Shared instance for ``memory://<name>``."""
        with cls._instances_lock:
            instance = cls._instances.get(name)
            if instance is None:
                instance = cls(name)
                cls._instances[name] = instance
            return instance

    @classmethod
    def forget(cls, name: str | None = None) -> None:
        """Drop one named instance, or all of them."""
        with cls._instances_lock:
            if name is None:
                cls._instances.clear()
            else:
                cls._instances.pop(name, None)

    # Test hooks

    def fail_next(self, operation: str, *results: AttemptResult) -> None:
        """Queue canned results returned by the next calls to ``operation``."""
        with self._lock:
            self._failures[operation].extend(results)

    def set_table_config(self, table_name: str, config: dict[str, Any], table_type: str = "OFFLINE") -> None:
        raw = TableSpec(table_name=table_name, table_type=table_type).raw_table_name
        with self._lock:
            self._tables[(raw, table_type)].config = config

    def live_segments(self, table: TableSpec) -> set[str]:
        with self._lock:
            return self._live(self._state(table))

    def segment(self, table: TableSpec, name: str) -> SegmentRecord | None:
        with self._lock:
            return self._state(table).segments.get(name)

    def stored_segment_count(self) -> int:
        with self._lock:
            return len(self.deep_store)

    def calls_for(self, operation: str) -> list[tuple[str, str, str]]:
        with self._lock:
            return [call for call in self.calls if call[0] == operation]

    # Internals

    def _state(self, table: TableSpec) -> _TableState:
        return self._tables[(table.raw_table_name, table.table_type.value)]

    @staticmethod
    def _live(state: _TableState) -> set[str]:
        hidden: set[str] = set()
        for entry in state.lineage:
            if entry.state is LineageState.COMPLETED:
                hidden |= entry.segments_from
            else:
                hidden |= entry.segments_to
        return set(state.segments) - hidden

    def _begin(self, operation: str, table: TableSpec, detail: str = "") -> AttemptResult | None:
        self.calls.append((operation, table.raw_table_name, detail))
        queued = self._failures.get(operation)
        if queued:
            return queued.popleft()
        return None

    def _register(self, table: TableSpec, record: SegmentRecord) -> None:
        self._state(table).segments[record.name] = record
        logger.debug(
            "memory_segment_registered",
            controller=self.uri,
            table=table.raw_table_name,
            segment=record.name,
            upload_type=record.upload_type,
        )

    def _after_upload(self, table: TableSpec, segment_name: str) -> None:
        if self.on_upload is not None:
            self.on_upload(self, table, segment_name)

    def _fetch(self, uri: str) -> AttemptResult:
        try:
            return AttemptResult.success(self.fetch(uri))
        except OSError as e:
            return _rejected(f"Cannot fetch segment from {uri}: {e}")

    # ControlPlane

    def upload_segment(
        self, table: TableSpec, segment_name: str, stream: BinaryIO, copy_to_deep_store: bool = True
    ) -> AttemptResult:
        with self._lock:
            canned = self._begin("upload_segment", table, segment_name)
            if canned is not None:
                return canned
            payload = stream.read()
            self.deep_store[(table.raw_table_name, segment_name)] = payload
            self._register(table, SegmentRecord(segment_name, "SEGMENT", stored=True))
        self._after_upload(table, segment_name)
        return AttemptResult.success()

    def send_segment_uri(self, table: TableSpec, segment_uri: str) -> AttemptResult:
        with self._lock:
            canned = self._begin("send_segment_uri", table, segment_uri)
            if canned is not None:
                return canned
            try:
                segment_name = segment_name_from_uri(segment_uri)
            except InvalidRequestError as e:
                return _rejected(e.message)
            fetched = self._fetch(segment_uri)
            if not fetched.ok:
                return fetched
            self._register(table, SegmentRecord(segment_name, "URI", download_uri=segment_uri))
        self._after_upload(table, segment_name)
        return AttemptResult.success()

    def send_segment_uri_and_metadata(
        self,
        table: TableSpec,
        segment_uri: str,
        metadata: SegmentMetadata,
        copy_to_deep_store: bool = False,
    ) -> AttemptResult:
        segment_name = metadata.segment_name
        with self._lock:
            canned = self._begin("send_segment_uri_and_metadata", table, segment_uri)
            if canned is not None:
                return canned
            stored = False
            if copy_to_deep_store:
                fetched = self._fetch(segment_uri)
                if not fetched.ok:
                    return fetched
                if fetched.value is not None:
                    self.deep_store[(table.raw_table_name, segment_name)] = fetched.value
                    stored = True
            self._register(
                table,
                SegmentRecord(
                    segment_name,
                    "METADATA",
                    download_uri=segment_uri,
                    total_docs=metadata.total_docs,
                    stored=stored,
                ),
            )
        self._after_upload(table, segment_name)
        return AttemptResult.success()

    def list_segments(self, table: TableSpec) -> AttemptResult:
        with self._lock:
            canned = self._begin("list_segments", table)
            if canned is not None:
                return canned
            return AttemptResult.success(self._live(self._state(table)))

    def get_table_config(self, table: TableSpec) -> AttemptResult:
        with self._lock:
            canned = self._begin("get_table_config", table)
            if canned is not None:
                return canned
            config = self._state(table).config
            if config is None:
                return _rejected(f"Table {table.raw_table_name}_{table.table_type.value} not found", 404)
            return AttemptResult.success(dict(config))

    def start_replace_segments(
        self, table: TableSpec, segments_from: list[str], segments_to: list[str]
    ) -> AttemptResult:
        with self._lock:
            canned = self._begin("start_replace_segments", table, ",".join(sorted(segments_to)))
            if canned is not None:
                return canned

            state = self._state(table)
            source, target = frozenset(segments_from), frozenset(segments_to)
            if not target:
                return _rejected("segmentsTo must not be empty")
            if source & target:
                return _rejected(f"segmentsFrom and segmentsTo overlap: {sorted(source & target)}")
            live = self._live(state)
            if not source <= live:
                return _rejected(f"segmentsFrom not live: {sorted(source - live)}")
            if target & live:
                return _rejected(f"segmentsTo already live: {sorted(target & live)}")

            entry = _LineageRecord(
                entry_id=str(ulid.new()),
                segments_from=source,
                segments_to=target,
                state=LineageState.IN_PROGRESS,
                timestamp_ms=time.time_ns() // 1_000_000,
            )
            state.lineage.append(entry)
            logger.info(
                "memory_lineage_started",
                controller=self.uri,
                table=table.raw_table_name,
                entry_id=entry.entry_id,
            )
            return AttemptResult.success(entry.entry_id)

    def _entry(self, table: TableSpec, entry_id: str) -> _LineageRecord | None:
        for entry in self._state(table).lineage:
            if entry.entry_id == entry_id:
                return entry
        return None

    def end_replace_segments(self, table: TableSpec, entry_id: str) -> AttemptResult:
        with self._lock:
            canned = self._begin("end_replace_segments", table, entry_id)
            if canned is not None:
                return canned

            entry = self._entry(table, entry_id)
            if entry is None:
                return _rejected(f"Lineage entry {entry_id} not found", 404)
            if entry.state is LineageState.COMPLETED:
                return AttemptResult.success()
            if entry.state is LineageState.ABORTED:
                return _rejected(f"Lineage entry {entry_id} was reverted")

            missing = entry.segments_to - set(self._state(table).segments)
            if missing:
                return _rejected(f"segmentsTo not uploaded: {sorted(missing)}")

            entry.state = LineageState.COMPLETED
            logger.info("memory_lineage_completed", controller=self.uri, entry_id=entry_id)
            return AttemptResult.success()

    def revert_replace_segments(self, table: TableSpec, entry_id: str) -> AttemptResult:
        with self._lock:
            canned = self._begin("revert_replace_segments", table, entry_id)
            if canned is not None:
                return canned

            entry = self._entry(table, entry_id)
            if entry is None:
                return _rejected(f"Lineage entry {entry_id} not found", 404)
            if entry.state is LineageState.COMPLETED:
                return _rejected(f"Lineage entry {entry_id} is already completed")

            entry.state = LineageState.ABORTED
            logger.info("memory_lineage_reverted", controller=self.uri, entry_id=entry_id)
            return AttemptResult.success()

    def list_lineage(self, table: TableSpec) -> AttemptResult:
        with self._lock:
            canned = self._begin("list_lineage", table)
            if canned is not None:
                return canned
            return AttemptResult.success([entry.snapshot() for entry in self._state(table).lineage])

    def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"InMemoryControlPlane({self.uri!r})"
