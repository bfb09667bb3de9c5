"""Tests for lineage coordination."""

import io
import json

import pytest

from conftest import REFRESH_TABLE_CONFIG, TABLE
from segment_push.context import PushContext
from segment_push.controller import InMemoryControlPlane
from segment_push.errors import ConfigError, ControllerError, InvalidRequestError, LineageError
from segment_push.lineage import (
    LineageCoordinator,
    check_refresh_names,
    check_replacement,
    segments_to_for_metadata,
    segments_to_for_tar,
    segments_to_for_uri,
)
from segment_push.models import LineageState
from segment_push.naming import SegmentNameGenerator
from segment_push.retry import AttemptResult
from segment_push.spec import TableSpec

TABLE_SPEC = TableSpec(table_name=TABLE)


def upload(cp, *names):
    for name in names:
        cp.upload_segment(TABLE_SPEC, name, io.BytesIO(b"x"))


def states(cp):
    return [entry.state for entry in cp.list_lineage(TABLE_SPEC).value]


class TestSegmentsTo:
    """Tests for per-mode segments_to computation."""

    def test_tar(self):
        """Test names come from the archive file names."""
        assert segments_to_for_tar(["file:///out/a/events_OFFLINE_0.tar.gz"]) == ["events_OFFLINE_0"]

    def test_uri(self):
        """Test names come from rewritten URIs, ignoring query strings."""
        assert segments_to_for_uri(["http://cdn/out/events_OFFLINE_0.tar.gz?tok=1"]) == ["events_OFFLINE_0"]

    def test_metadata(self):
        """Test names come from the segment URI keys."""
        mapping = {"s3://deep/events_OFFLINE_0.tar.gz": "file:///out/events_OFFLINE_0.tar.gz"}
        assert segments_to_for_metadata(mapping) == ["events_OFFLINE_0"]


class TestChecks:
    """Tests for pre-flight replacement checks."""

    def test_empty(self):
        """Test an empty replacement is rejected."""
        with pytest.raises(InvalidRequestError):
            check_replacement(["events_OFFLINE_0"], [])

    def test_duplicates(self):
        """Test duplicate names in one push are rejected."""
        with pytest.raises(InvalidRequestError, match="Duplicate"):
            check_replacement([], ["events_OFFLINE_1", "events_OFFLINE_1"])

    def test_overlap(self):
        """Test reusing a live name is rejected."""
        with pytest.raises(InvalidRequestError, match="already live"):
            check_replacement(["events_OFFLINE_0"], ["events_OFFLINE_0", "events_OFFLINE_1"])

    def test_valid(self):
        """Test a disjoint replacement passes."""
        check_replacement(["events_OFFLINE_0"], ["events_OFFLINE_1"])

    def test_refresh_names_reject_live_timestamp(self):
        """Test a refresh reusing the live segments' timestamp is rejected."""
        live = ["events_OFFLINE__1700000000000_0", "events_OFFLINE__1700000000000_1"]
        with pytest.raises(InvalidRequestError, match="reuses timestamp") as exc_info:
            check_refresh_names(["events_OFFLINE__1700000000000_2"], live)
        assert exc_info.value.context.segment == "events_OFFLINE__1700000000000_2"

    def test_refresh_names_from_generator_pass(self):
        """Test names from consecutive generators never collide with live timestamps."""
        frozen = lambda: 1_700_000_000_000  # noqa: E731
        live = SegmentNameGenerator(TABLE, consistent_push=True, clock=frozen).names(2)
        fresh = SegmentNameGenerator(TABLE, consistent_push=True, clock=frozen).names(2)

        check_refresh_names(fresh, live)
        check_replacement(live, fresh)

    def test_refresh_names_ignore_other_tables(self):
        """Test a shared timestamp on another table is allowed."""
        check_refresh_names(["events_OFFLINE__1700000000000_0"], ["clicks_OFFLINE__1700000000000_0"])

    def test_refresh_names_accept_unconventional(self):
        """Test names outside the convention are not checked."""
        check_refresh_names(["my-segment", "events_OFFLINE_1700000000000_1700000000000_0"])


class TestConsistentPush:
    """Tests for reading the table's ingestion config."""

    def test_append_table(self, make_spec):
        """Test APPEND tables are not guarded."""
        with PushContext.bootstrap(make_spec()) as context:
            assert LineageCoordinator(context).is_consistent_push() is False

    def test_refresh_table(self, refresh_controller, make_spec):
        """Test REFRESH + consistentDataPush is guarded."""
        with PushContext.bootstrap(make_spec()) as context:
            assert LineageCoordinator(context).is_consistent_push() is True

    def test_table_config_uri_json(self, tmp_path, make_spec, controller):
        """Test a table config file overrides the controller."""
        path = tmp_path / "table.json"
        path.write_text(json.dumps(REFRESH_TABLE_CONFIG))
        spec = make_spec(table={"table_name": TABLE, "table_config_uri": str(path)})

        with PushContext.bootstrap(spec) as context:
            assert LineageCoordinator(context).is_consistent_push() is True
        assert controller.calls_for("get_table_config") == []

    def test_table_config_uri_yaml(self, tmp_path, make_spec):
        """Test YAML table configs are read."""
        path = tmp_path / "table.yaml"
        path.write_text(
            "ingestionConfig:\n"
            "  batchIngestionConfig:\n"
            "    segmentIngestionType: REFRESH\n"
            "    consistentDataPush: true\n"
        )
        spec = make_spec(table={"table_name": TABLE, "table_config_uri": path.as_uri()})

        with PushContext.bootstrap(spec) as context:
            assert LineageCoordinator(context).is_consistent_push() is True

    def test_table_config_uri_missing(self, tmp_path, make_spec):
        """Test an unreadable table config is a config error."""
        spec = make_spec(table={"table_name": TABLE, "table_config_uri": str(tmp_path / "none.json")})

        with PushContext.bootstrap(spec) as context:
            with pytest.raises(ConfigError):
                LineageCoordinator(context).is_consistent_push()


class TestHandshake:
    """Tests for start, finish and abort."""

    def test_start_and_finish(self, refresh_controller, make_spec):
        """Test the live set swaps only on finish."""
        upload(refresh_controller, "events_OFFLINE_0")

        with PushContext.bootstrap(make_spec()) as context:
            coordinator = LineageCoordinator(context)
            entry_ids = coordinator.start(["events_OFFLINE_1"])
            upload(refresh_controller, "events_OFFLINE_1")
            assert refresh_controller.live_segments(TABLE_SPEC) == {"events_OFFLINE_0"}

            coordinator.finish(entry_ids)

        assert refresh_controller.live_segments(TABLE_SPEC) == {"events_OFFLINE_1"}
        (entry,) = refresh_controller.list_lineage(TABLE_SPEC).value
        assert entry.entry_id == entry_ids[refresh_controller.uri]
        assert entry.segments_from == frozenset({"events_OFFLINE_0"})

    def test_start_rejects_live_name(self, refresh_controller, make_spec):
        """Test a push reusing a live name never opens an entry."""
        upload(refresh_controller, "events_OFFLINE_0")

        with PushContext.bootstrap(make_spec()) as context:
            with pytest.raises(InvalidRequestError) as exc_info:
                LineageCoordinator(context).start(["events_OFFLINE_0"])

        assert exc_info.value.context.table == TABLE
        assert refresh_controller.calls_for("start_replace_segments") == []

    def test_start_rejects_live_timestamp(self, refresh_controller, make_spec):
        """Test a refresh named with the live segments' timestamp never opens an entry."""
        upload(refresh_controller, "events_OFFLINE__1700000000000_0")

        with PushContext.bootstrap(make_spec()) as context:
            with pytest.raises(InvalidRequestError, match="reuses timestamp"):
                LineageCoordinator(context).start(["events_OFFLINE__1700000000000_1"])

        assert refresh_controller.calls_for("start_replace_segments") == []

    def test_finish_uses_lineage_budget(self, refresh_controller, make_spec):
        """Test closing is retried beyond the upload retry budget."""
        spec = make_spec(retry={"max_attempts": 3})

        with PushContext.bootstrap(spec) as context:
            coordinator = LineageCoordinator(context)
            entry_ids = coordinator.start(["events_OFFLINE_1"])
            upload(refresh_controller, "events_OFFLINE_1")
            refresh_controller.fail_next(
                "end_replace_segments", *[AttemptResult.retriable("controller busy")] * 4
            )

            coordinator.finish(entry_ids)

        assert len(refresh_controller.calls_for("end_replace_segments")) == 5
        assert states(refresh_controller) == [LineageState.COMPLETED]

    def test_finish_failure_leaves_entry_open(self, refresh_controller, make_spec):
        """Test a failed close names the entry and does not revert it."""
        with PushContext.bootstrap(make_spec()) as context:
            coordinator = LineageCoordinator(context)
            entry_ids = coordinator.start(["events_OFFLINE_1"])
            upload(refresh_controller, "events_OFFLINE_1")
            refresh_controller.fail_next(
                "end_replace_segments",
                AttemptResult.fatal("forbidden", error=ControllerError("forbidden", status_code=403)),
            )

            with pytest.raises(LineageError) as exc_info:
                coordinator.finish(entry_ids)

        error = exc_info.value
        assert error.context.entry_id == entry_ids[refresh_controller.uri]
        assert error.context.controller_uri == refresh_controller.uri
        assert error.context.attempts == 1
        assert states(refresh_controller) == [LineageState.IN_PROGRESS]

    def test_abort_reverts(self, refresh_controller, make_spec):
        """Test abort reverts open entries and keeps old segments live."""
        upload(refresh_controller, "events_OFFLINE_0")

        with PushContext.bootstrap(make_spec()) as context:
            coordinator = LineageCoordinator(context)
            entry_ids = coordinator.start(["events_OFFLINE_1"])
            coordinator.abort(entry_ids, RuntimeError("upload failed"))

        assert states(refresh_controller) == [LineageState.ABORTED]
        assert refresh_controller.live_segments(TABLE_SPEC) == {"events_OFFLINE_0"}

    def test_abort_never_raises(self, refresh_controller, make_spec):
        """Test revert failures during abort are swallowed."""
        with PushContext.bootstrap(make_spec()) as context:
            coordinator = LineageCoordinator(context)
            entry_ids = coordinator.start(["events_OFFLINE_1"])
            refresh_controller.fail_next("revert_replace_segments", AttemptResult.fatal("nope"))

            coordinator.abort(entry_ids)

        assert states(refresh_controller) == [LineageState.IN_PROGRESS]

    def test_second_controller_failure_reverts_first(self, refresh_controller, make_spec):
        """Test a start failure on one controller aborts entries already opened."""
        other = InMemoryControlPlane.named(f"{refresh_controller.name}-b")
        other.set_table_config(TABLE, REFRESH_TABLE_CONFIG)
        other.fail_next(
            "start_replace_segments",
            AttemptResult.fatal("rejected", error=ControllerError("rejected", status_code=400)),
        )
        spec = make_spec(controllers=[refresh_controller.uri, other.uri])

        with PushContext.bootstrap(spec) as context:
            with pytest.raises(ControllerError):
                LineageCoordinator(context).start(["events_OFFLINE_1"])

        assert states(refresh_controller) == [LineageState.ABORTED]
        assert states(other) == []


class TestStaleEntries:
    """Tests for entries left in progress by an earlier run."""

    @pytest.fixture
    def stale(self, refresh_controller):
        upload(refresh_controller, "events_OFFLINE_0")
        result = refresh_controller.start_replace_segments(TABLE_SPEC, ["events_OFFLINE_0"], ["events_OFFLINE_1"])
        return result.value

    def test_revert_policy(self, refresh_controller, make_spec, stale):
        """Test stale entries are reverted before a new one opens."""
        with PushContext.bootstrap(make_spec()) as context:
            LineageCoordinator(context).start(["events_OFFLINE_2"])

        entries = refresh_controller.list_lineage(TABLE_SPEC).value
        assert entries[0].entry_id == stale
        assert [e.state for e in entries] == [LineageState.ABORTED, LineageState.IN_PROGRESS]

    def test_fail_policy(self, refresh_controller, make_spec, stale):
        """Test the fail policy refuses to push."""
        with PushContext.bootstrap(make_spec(stale_lineage_policy="fail")) as context:
            with pytest.raises(LineageError) as exc_info:
                LineageCoordinator(context).start(["events_OFFLINE_2"])

        assert exc_info.value.context.entry_id == stale
        assert states(refresh_controller) == [LineageState.IN_PROGRESS]

    def test_ignore_policy(self, refresh_controller, make_spec, stale):
        """Test the ignore policy leaves the stale entry alone."""
        with PushContext.bootstrap(make_spec(stale_lineage_policy="ignore")) as context:
            LineageCoordinator(context).start(["events_OFFLINE_2"])

        assert states(refresh_controller) == [LineageState.IN_PROGRESS, LineageState.IN_PROGRESS]

    def test_recover(self, refresh_controller, make_spec, stale):
        """Test recover reverts every stale entry."""
        with PushContext.bootstrap(make_spec()) as context:
            reverted = LineageCoordinator(context).recover_stale_entries()

        assert [e.entry_id for e in reverted] == [stale]
        assert states(refresh_controller) == [LineageState.ABORTED]
