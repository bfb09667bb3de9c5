"""Tests for segment names."""

import pytest

from segment_push.errors import InvalidRequestError
from segment_push.naming import (
    SegmentNameGenerator,
    follows_naming_convention,
    is_segment_archive,
    parse_segment_name,
    segment_name_from_uri,
)
from segment_push.spec import TableType


class TestSegmentNameFromUri:
    """Tests for segment_name_from_uri."""

    def test_strips_directory_and_extension(self):
        """Test name is the archive file name without .tar.gz."""
        assert segment_name_from_uri("file:///out/2024/events_OFFLINE_0.tar.gz") == "events_OFFLINE_0"
        assert segment_name_from_uri("s3://bucket/out/events_OFFLINE_1.tar.gz") == "events_OFFLINE_1"
        assert segment_name_from_uri("/tmp/out/events_OFFLINE_2.tar.gz") == "events_OFFLINE_2"

    def test_ignores_query_string(self):
        """Test rewritten URIs with a token still parse."""
        assert segment_name_from_uri("http://cdn/a/events_OFFLINE_0.tar.gz?tok=1") == "events_OFFLINE_0"

    def test_rejects_non_archive(self):
        """Test other files are invalid requests."""
        with pytest.raises(InvalidRequestError):
            segment_name_from_uri("file:///out/_SUCCESS")

    def test_is_segment_archive(self):
        """Test archive extension filter."""
        assert is_segment_archive("file:///out/a.tar.gz")
        assert not is_segment_archive("file:///out/a.tar")
        assert not is_segment_archive("file:///out/a.tar.gz.crc")


class TestParseSegmentName:
    """Tests for the naming convention."""

    def test_plain_name(self):
        """Test name without timestamp."""
        parsed = parse_segment_name("events_OFFLINE_3")
        assert parsed.table == "events"
        assert parsed.table_type is TableType.OFFLINE
        assert parsed.sequence == 3
        assert parsed.timestamp_ms is None

    def test_timestamped_name(self):
        """Test refresh name carries a 13-digit timestamp."""
        parsed = parse_segment_name("my_table_OFFLINE__1700000000123_0")
        assert parsed.table == "my_table"
        assert parsed.timestamp_ms == 1700000000123
        assert str(parsed) == "my_table_OFFLINE__1700000000123_0"

    def test_timestamp_must_be_13_digits(self):
        """Test a short timestamp is rejected."""
        with pytest.raises(InvalidRequestError, match="13 digits"):
            parse_segment_name("events_OFFLINE__170000000012_0")

    def test_unconventional_name(self):
        """Test names outside the convention are detected."""
        assert follows_naming_convention("events_OFFLINE_0")
        assert not follows_naming_convention("custom-segment")
        with pytest.raises(InvalidRequestError):
            parse_segment_name("custom-segment")


class TestSegmentNameGenerator:
    """Tests for SegmentNameGenerator."""

    def test_names_unique_within_push(self):
        """Test sequence numbers never repeat."""
        generator = SegmentNameGenerator("events", consistent_push=True)
        names = generator.names(50)
        assert len(set(names)) == 50

    def test_plain_names_have_no_timestamp(self):
        """Test non-refresh names."""
        generator = SegmentNameGenerator("events")
        assert generator.names(2) == ["events_OFFLINE_0", "events_OFFLINE_1"]
        assert generator.archive_name() == "events_OFFLINE_2.tar.gz"

    def test_consecutive_refreshes_are_disjoint(self):
        """Test identical input and a frozen clock still give disjoint name sets."""
        frozen = lambda: 1_700_000_000_000  # noqa: E731
        first = SegmentNameGenerator("events", consistent_push=True, clock=frozen)
        second = SegmentNameGenerator("events", consistent_push=True, clock=frozen)

        first_names = set(first.names(3))
        second_names = set(second.names(3))

        assert first_names.isdisjoint(second_names)
        assert second.timestamp_ms > first.timestamp_ms
        for name in first_names | second_names:
            timestamp = parse_segment_name(name).timestamp_ms
            assert len(str(timestamp)) == 13
