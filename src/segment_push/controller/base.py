"""Control plane protocol."""

from typing import BinaryIO, Protocol, runtime_checkable

from segment_push.metadata import SegmentMetadata
from segment_push.retry import AttemptResult
from segment_push.spec import TableSpec


@runtime_checkable
class ControlPlane(Protocol):
    """
    The service that stores segments and owns lineage state.

    Every method performs exactly one attempt and reports it as an
    ``AttemptResult``; retrying is the caller's job.
    """

    uri: str

    def upload_segment(
        self, table: TableSpec, segment_name: str, stream: BinaryIO, copy_to_deep_store: bool = True
    ) -> AttemptResult:
        """Stream archive bytes to the control plane."""
        ...

    def send_segment_uri(self, table: TableSpec, segment_uri: str) -> AttemptResult:
        """Register a segment the control plane fetches from ``segment_uri``."""
        ...

    def send_segment_uri_and_metadata(
        self,
        table: TableSpec,
        segment_uri: str,
        metadata: SegmentMetadata,
        copy_to_deep_store: bool = False,
    ) -> AttemptResult:
        """Register a segment by URI plus its extracted metadata."""
        ...

    def list_segments(self, table: TableSpec) -> AttemptResult:
        """Live segment names (value: ``set[str]``)."""
        ...

    def get_table_config(self, table: TableSpec) -> AttemptResult:
        """Table config document (value: ``dict``)."""
        ...

    def start_replace_segments(
        self, table: TableSpec, segments_from: list[str], segments_to: list[str]
    ) -> AttemptResult:
        """Open a lineage entry (value: entry id)."""
        ...

    def end_replace_segments(self, table: TableSpec, entry_id: str) -> AttemptResult:
        """Atomically swap ``segments_from`` for ``segments_to``."""
        ...

    def revert_replace_segments(self, table: TableSpec, entry_id: str) -> AttemptResult:
        """Mark an entry aborted, leaving ``segments_from`` serving."""
        ...

    def list_lineage(self, table: TableSpec) -> AttemptResult:
        """Lineage entries oldest first (value: ``list[LineageEntry]``)."""
        ...

    def close(self) -> None:
        ...
