"""Pytest configuration and fixtures."""

import io
import os
import struct
import tarfile
import uuid
from pathlib import Path

import pytest

# Set test environment variables before importing app modules
os.environ.setdefault("SEGMENT_PUSH_LOG_LEVEL", "WARNING")
os.environ.setdefault("SEGMENT_PUSH_DISPATCH_MAX_WORKERS", "4")
os.environ.setdefault("SEGMENT_PUSH_CELERY_BROKER_URL", "memory://")
os.environ.setdefault("SEGMENT_PUSH_CELERY_RESULT_BACKEND", "cache+memory://")

from segment_push.config import reset_settings  # noqa: E402
from segment_push.controller import InMemoryControlPlane  # noqa: E402
from segment_push.spec import parse_job_spec  # noqa: E402

TABLE = "events"

APPEND_TABLE_CONFIG = {
    "tableName": "events_OFFLINE",
    "ingestionConfig": {"batchIngestionConfig": {"segmentIngestionType": "APPEND"}},
}

REFRESH_TABLE_CONFIG = {
    "tableName": "events_OFFLINE",
    "ingestionConfig": {
        "batchIngestionConfig": {"segmentIngestionType": "REFRESH", "consistentDataPush": True},
    },
}


def build_segment_archive(
    directory: Path,
    segment_name: str,
    total_docs: int = 10,
    crc: int = 12345,
    created_ms: int = 1_700_000_000_000,
) -> Path:
    """Write a minimal segment archive: ``<name>/v3/metadata.properties`` + ``creation.meta``."""
    properties = (
        f"segment.name = {segment_name}\n"
        f"segment.total.docs = {total_docs}\n"
        "segment.table.name = events\n"
        "column.user_id.cardinality = 7\n"
        "column.user_id.hasInvertedIndex = true\n"
        "column.ts.cardinality = 10\n"
    ).encode("utf-8")
    creation_meta = struct.pack(">qq", crc, created_ms)

    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{segment_name}.tar.gz"
    with tarfile.open(path, mode="w:gz") as tar:
        for name, payload in (
            (f"{segment_name}/v3/metadata.properties", properties),
            (f"{segment_name}/v3/creation.meta", creation_meta),
            (f"{segment_name}/v3/columns.psf", b"\x00" * 64),
        ):
            info = tarfile.TarInfo(name=name)
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
    return path


@pytest.fixture(autouse=True)
def clean_state():
    """Fresh settings and no leftover in-memory controllers."""
    reset_settings()
    yield
    InMemoryControlPlane.forget()
    reset_settings()


@pytest.fixture
def controller():
    """A named in-memory controller holding an APPEND table config."""
    cp = InMemoryControlPlane.named(f"test-{uuid.uuid4().hex[:12]}")
    cp.set_table_config(TABLE, APPEND_TABLE_CONFIG)
    return cp


@pytest.fixture
def refresh_controller(controller):
    """Same controller, table configured for consistent REFRESH pushes."""
    controller.set_table_config(TABLE, REFRESH_TABLE_CONFIG)
    return controller


@pytest.fixture
def output_dir(tmp_path):
    path = tmp_path / "output"
    path.mkdir()
    return path


@pytest.fixture
def make_spec(controller, output_dir):
    """Build a job spec against the test controller; keyword args go to ``push``."""

    def _make(controllers=None, execution_framework="standalone", table=None, output_dir_uri=None, **push):
        push.setdefault("retry", {})
        push["retry"] = {"max_attempts": 3, "base_delay_seconds": 0, "jitter": False, **push["retry"]}
        data = {
            "table": table or {"table_name": TABLE},
            "output_dir_uri": output_dir_uri or str(output_dir),
            "execution_framework": execution_framework,
            "clusters": [{"controller_uri": uri} for uri in (controllers or [controller.uri])],
            "push": push,
        }
        return parse_job_spec(data)

    return _make
