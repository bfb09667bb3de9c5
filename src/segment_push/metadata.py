"""Segment metadata extraction for metadata push.

A segment archive holds a directory (``<segment>/`` or ``<segment>/v3/``)
with ``metadata.properties`` and ``creation.meta``.  Metadata push sends
only those two files next to the segment URI, so the control plane can
register the segment without downloading the archive.
"""

import io
import struct
import tarfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

import structlog

from segment_push.errors import MetadataError

logger = structlog.get_logger()

METADATA_PROPERTIES = "metadata.properties"
CREATION_META = "creation.meta"

SEGMENT_NAME_KEY = "segment.name"
TOTAL_DOCS_KEY = "segment.total.docs"


def parse_properties(text: str) -> dict[str, str]:
    """Parse ``key = value`` / ``key: value`` properties text."""
    properties: dict[str, str] = {}
    pending = ""
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if pending:
            line = pending + line
            pending = ""
        if not line or line[0] in "#!":
            continue
        if line.endswith("\\") and not line.endswith("\\\\"):
            pending = line[:-1]
            continue

        separator = min(
            (i for i in (line.find("="), line.find(":")) if i >= 0),
            default=-1,
        )
        if separator < 0:
            properties[line] = ""
            continue
        key = line[:separator].strip()
        value = line[separator + 1:].strip()
        properties[key] = value.replace("\\:", ":").replace("\\=", "=")
    return properties


@dataclass
class SegmentMetadata:
    """Schema-independent descriptor of one segment archive."""

    segment_name: str
    total_docs: int
    size_bytes: int
    crc: int | None = None
    creation_time_ms: int | None = None
    columns: dict[str, dict[str, str]] = field(default_factory=dict)
    properties: dict[str, str] = field(default_factory=dict)
    properties_bytes: bytes = b""
    creation_meta_bytes: bytes = b""

    def to_dict(self) -> dict[str, Any]:
        """Summary for logs and JSON payloads."""
        return {
            "segment_name": self.segment_name,
            "total_docs": self.total_docs,
            "size_bytes": self.size_bytes,
            "crc": self.crc,
            "creation_time_ms": self.creation_time_ms,
            "columns": sorted(self.columns),
        }

    def to_archive_bytes(self) -> bytes:
        """Repack the metadata files as a small ``.tar.gz`` for the wire."""
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            for name, payload in (
                (METADATA_PROPERTIES, self.properties_bytes),
                (CREATION_META, self.creation_meta_bytes),
            ):
                if not payload:
                    continue
                info = tarfile.TarInfo(name=name)
                info.size = len(payload)
                tar.addfile(info, io.BytesIO(payload))
        return buffer.getvalue()


def _column_info(properties: dict[str, str]) -> dict[str, dict[str, str]]:
    columns: dict[str, dict[str, str]] = {}
    for key, value in properties.items():
        if not key.startswith("column."):
            continue
        name, _, attribute = key[len("column."):].partition(".")
        if name and attribute:
            columns.setdefault(name, {})[attribute] = value
    return columns


def _parse_creation_meta(payload: bytes) -> tuple[int | None, int | None]:
    """``creation.meta`` holds two big-endian longs: crc and creation time."""
    if len(payload) < 16:
        return None, None
    crc, created = struct.unpack(">qq", payload[:16])
    return crc, created


def extract_segment_metadata(tar_path: str | Path, expected_name: str | None = None) -> SegmentMetadata:
    """
    Read the metadata files out of a segment archive.

    Raises:
        MetadataError: archive unreadable or missing ``metadata.properties``
    """
    tar_path = Path(tar_path)
    properties_bytes = b""
    creation_meta_bytes = b""

    try:
        with tarfile.open(tar_path, mode="r:*") as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                base_name = PurePosixPath(member.name).name
                if base_name not in (METADATA_PROPERTIES, CREATION_META):
                    continue
                extracted = tar.extractfile(member)
                if extracted is None:
                    continue
                with extracted:
                    payload = extracted.read()
                if base_name == METADATA_PROPERTIES and not properties_bytes:
                    properties_bytes = payload
                elif base_name == CREATION_META and not creation_meta_bytes:
                    creation_meta_bytes = payload
    except (tarfile.TarError, OSError) as e:
        raise MetadataError(f"Cannot read segment archive {tar_path}: {e}", cause=e) from e

    if not properties_bytes:
        raise MetadataError(f"{METADATA_PROPERTIES} not found in {tar_path}")

    properties = parse_properties(properties_bytes.decode("utf-8", errors="replace"))
    segment_name = properties.get(SEGMENT_NAME_KEY) or expected_name
    if not segment_name:
        raise MetadataError(f"{SEGMENT_NAME_KEY} missing from {METADATA_PROPERTIES} in {tar_path}")

    try:
        total_docs = int(properties.get(TOTAL_DOCS_KEY, "0"))
    except ValueError as e:
        raise MetadataError(f"Bad {TOTAL_DOCS_KEY} in {tar_path}: {e}", cause=e) from e

    crc, created = _parse_creation_meta(creation_meta_bytes)

    metadata = SegmentMetadata(
        segment_name=segment_name,
        total_docs=total_docs,
        size_bytes=tar_path.stat().st_size,
        crc=crc,
        creation_time_ms=created,
        columns=_column_info(properties),
        properties=properties,
        properties_bytes=properties_bytes,
        creation_meta_bytes=creation_meta_bytes,
    )
    logger.debug("segment_metadata_extracted", segment=segment_name, total_docs=total_docs)
    return metadata
