"""Tests for the in-memory control plane."""

import io

import pytest

from conftest import TABLE, build_segment_archive
from segment_push.controller import InMemoryControlPlane
from segment_push.metadata import extract_segment_metadata
from segment_push.models import LineageState
from segment_push.retry import AttemptOutcome, AttemptResult
from segment_push.spec import TableSpec

TABLE_SPEC = TableSpec(table_name=TABLE)


def upload(cp: InMemoryControlPlane, *names: str) -> None:
    for name in names:
        assert cp.upload_segment(TABLE_SPEC, name, io.BytesIO(name.encode())).ok


@pytest.fixture
def cp():
    return InMemoryControlPlane("unit")


class TestUploads:
    """Tests for segment registration."""

    def test_upload_segment_stores_bytes(self, cp):
        """Test tar uploads land in the deep store."""
        upload(cp, "events_OFFLINE_0")

        assert cp.live_segments(TABLE_SPEC) == {"events_OFFLINE_0"}
        assert cp.deep_store[("events", "events_OFFLINE_0")] == b"events_OFFLINE_0"
        assert cp.segment(TABLE_SPEC, "events_OFFLINE_0").upload_type == "SEGMENT"

    def test_send_segment_uri_fetches(self, cp, tmp_path):
        """Test URI registration reads the file URI."""
        path = build_segment_archive(tmp_path, "events_OFFLINE_0")

        assert cp.send_segment_uri(TABLE_SPEC, path.as_uri()).ok

        record = cp.segment(TABLE_SPEC, "events_OFFLINE_0")
        assert record.upload_type == "URI"
        assert record.download_uri == path.as_uri()
        assert cp.stored_segment_count() == 0

    def test_send_segment_uri_missing_file(self, cp, tmp_path):
        """Test an unreadable URI is rejected."""
        result = cp.send_segment_uri(TABLE_SPEC, (tmp_path / "events_OFFLINE_0.tar.gz").as_uri())

        assert result.outcome is AttemptOutcome.FATAL
        assert cp.live_segments(TABLE_SPEC) == set()

    def test_metadata_copy_flag(self, cp, tmp_path):
        """Test the deep store copy only happens when requested."""
        first = build_segment_archive(tmp_path, "events_OFFLINE_0")
        second = build_segment_archive(tmp_path, "events_OFFLINE_1")

        cp.send_segment_uri_and_metadata(
            TABLE_SPEC, first.as_uri(), extract_segment_metadata(first), copy_to_deep_store=True
        )
        cp.send_segment_uri_and_metadata(
            TABLE_SPEC, second.as_uri(), extract_segment_metadata(second), copy_to_deep_store=False
        )

        assert cp.stored_segment_count() == 1
        assert cp.segment(TABLE_SPEC, "events_OFFLINE_1").total_docs == 10
        assert cp.live_segments(TABLE_SPEC) == {"events_OFFLINE_0", "events_OFFLINE_1"}

    def test_on_upload_hook(self, cp):
        """Test the hook sees each uploaded segment."""
        seen = []
        cp.on_upload = lambda controller, table, name: seen.append(name)

        upload(cp, "events_OFFLINE_0", "events_OFFLINE_1")

        assert seen == ["events_OFFLINE_0", "events_OFFLINE_1"]


class TestLineage:
    """Tests for the lineage state machine."""

    def test_segments_to_hidden_until_completed(self, cp):
        """Test the replacement set becomes live only on completion."""
        upload(cp, "events_OFFLINE_0")
        entry_id = cp.start_replace_segments(TABLE_SPEC, ["events_OFFLINE_0"], ["events_OFFLINE_1"]).value

        upload(cp, "events_OFFLINE_1")
        assert cp.live_segments(TABLE_SPEC) == {"events_OFFLINE_0"}

        assert cp.end_replace_segments(TABLE_SPEC, entry_id).ok
        assert cp.live_segments(TABLE_SPEC) == {"events_OFFLINE_1"}

        (entry,) = cp.list_lineage(TABLE_SPEC).value
        assert entry.state is LineageState.COMPLETED

    def test_end_is_idempotent(self, cp):
        """Test closing a completed entry again succeeds."""
        entry_id = cp.start_replace_segments(TABLE_SPEC, [], ["events_OFFLINE_0"]).value
        upload(cp, "events_OFFLINE_0")

        assert cp.end_replace_segments(TABLE_SPEC, entry_id).ok
        assert cp.end_replace_segments(TABLE_SPEC, entry_id).ok

    def test_end_requires_uploads(self, cp):
        """Test an entry cannot close before its segments exist."""
        entry_id = cp.start_replace_segments(TABLE_SPEC, [], ["events_OFFLINE_0"]).value

        result = cp.end_replace_segments(TABLE_SPEC, entry_id)

        assert result.outcome is AttemptOutcome.FATAL
        assert "not uploaded" in result.reason

    def test_revert_keeps_old_segments(self, cp):
        """Test a reverted entry leaves segments_from serving."""
        upload(cp, "events_OFFLINE_0")
        entry_id = cp.start_replace_segments(TABLE_SPEC, ["events_OFFLINE_0"], ["events_OFFLINE_1"]).value
        upload(cp, "events_OFFLINE_1")

        assert cp.revert_replace_segments(TABLE_SPEC, entry_id).ok

        assert cp.live_segments(TABLE_SPEC) == {"events_OFFLINE_0"}
        assert cp.end_replace_segments(TABLE_SPEC, entry_id).outcome is AttemptOutcome.FATAL

    def test_revert_completed_rejected(self, cp):
        """Test completed entries cannot be reverted."""
        entry_id = cp.start_replace_segments(TABLE_SPEC, [], ["events_OFFLINE_0"]).value
        upload(cp, "events_OFFLINE_0")
        cp.end_replace_segments(TABLE_SPEC, entry_id)

        assert cp.revert_replace_segments(TABLE_SPEC, entry_id).outcome is AttemptOutcome.FATAL

    @pytest.mark.parametrize(
        "segments_from,segments_to",
        [
            ([], []),
            (["events_OFFLINE_0"], ["events_OFFLINE_0"]),
            (["events_OFFLINE_9"], ["events_OFFLINE_1"]),
            ([], ["events_OFFLINE_0"]),
        ],
    )
    def test_start_rejects(self, cp, segments_from, segments_to):
        """Test empty, overlapping, non-live source and already-live target are rejected."""
        upload(cp, "events_OFFLINE_0")

        result = cp.start_replace_segments(TABLE_SPEC, segments_from, segments_to)

        assert result.outcome is AttemptOutcome.FATAL
        assert cp.list_lineage(TABLE_SPEC).value == []

    def test_unknown_entry(self, cp):
        """Test closing an unknown entry is a 404."""
        result = cp.end_replace_segments(TABLE_SPEC, "nope")
        assert result.error.status_code == 404


class TestHooks:
    """Tests for test-only hooks."""

    def test_fail_next_is_consumed_in_order(self, cp):
        """Test canned results are returned once each."""
        cp.fail_next("list_segments", AttemptResult.retriable("busy"), AttemptResult.fatal("gone"))

        assert cp.list_segments(TABLE_SPEC).outcome is AttemptOutcome.RETRIABLE
        assert cp.list_segments(TABLE_SPEC).outcome is AttemptOutcome.FATAL
        assert cp.list_segments(TABLE_SPEC).ok
        assert len(cp.calls_for("list_segments")) == 3

    def test_table_config(self, cp):
        """Test table configs are stored per raw table name."""
        assert cp.get_table_config(TABLE_SPEC).error.status_code == 404

        cp.set_table_config("events_OFFLINE", {"tableName": "events_OFFLINE"})

        assert cp.get_table_config(TABLE_SPEC).value == {"tableName": "events_OFFLINE"}

    def test_named_instances(self):
        """Test named lookups share state until forgotten."""
        first = InMemoryControlPlane.named("shared")
        assert InMemoryControlPlane.named("shared") is first

        InMemoryControlPlane.forget("shared")
        assert InMemoryControlPlane.named("shared") is not first
