"""Lineage coordination for consistency-guarded refresh pushes.

A guarded push replaces a table's whole segment set atomically:

    1. capture the live segments as ``segments_from``
    2. open a lineage entry ``(segments_from, segments_to)``
    3. upload every segment in ``segments_to``
    4. close the entry, swapping both sets in one step

If an upload fails the entry is reverted and ``segments_from`` keeps
serving.  If the close itself fails the entry is left open and the error
says which entry, since the uploads already landed and re-closing is the
cheapest recovery.
"""

import json
from collections import Counter
from typing import Any, Iterable

import structlog
import yaml

from segment_push.context import PushContext
from segment_push.controller import ControlPlane
from segment_push.errors import ConfigError, InvalidRequestError, LineageError, SegmentPushError
from segment_push.models import LineageEntry, LineageState, TableIngestionConfig
from segment_push.naming import follows_naming_convention, parse_segment_name, segment_name_from_uri
from segment_push.retry import RetryContext
from segment_push.spec import PushMode

logger = structlog.get_logger()


def segments_to_for_tar(tar_uris: Iterable[str]) -> list[str]:
    """Names of the archives themselves."""
    return [segment_name_from_uri(uri) for uri in tar_uris]


def segments_to_for_uri(segment_uris: Iterable[str]) -> list[str]:
    """Names parsed from the rewritten, publicly reachable URIs."""
    return [segment_name_from_uri(uri) for uri in segment_uris]


def segments_to_for_metadata(segment_uri_to_tar: dict[str, str]) -> list[str]:
    """Names parsed from the keys of the segment URI mapping."""
    return [segment_name_from_uri(uri) for uri in segment_uri_to_tar]


SEGMENTS_TO = {
    PushMode.TAR: segments_to_for_tar,
    PushMode.URI: segments_to_for_uri,
    PushMode.METADATA: segments_to_for_metadata,
}


def check_unique_names(segments_to: list[str], archive_uris: list[str]) -> None:
    """Two archives resolving to the same segment name would overwrite each other."""
    seen: dict[str, str] = {}
    for name, uri in zip(segments_to, archive_uris):
        if name in seen:
            raise InvalidRequestError(
                f"Duplicate segment name {name!r}: {seen[name]} and {uri}"
            ).with_context(segment=name, uri=uri)
        seen[name] = uri


def check_replacement(segments_from: Iterable[str], segments_to: list[str]) -> None:
    """Validate a replacement before it is sent to the controller."""
    if not segments_to:
        raise InvalidRequestError("A consistent push needs at least one segment")

    duplicates = sorted(name for name, count in Counter(segments_to).items() if count > 1)
    if duplicates:
        raise InvalidRequestError(f"Duplicate segment names in push: {duplicates}")

    overlap = sorted(set(segments_from) & set(segments_to))
    if overlap:
        raise InvalidRequestError(
            f"Segments {overlap} are already live; a refresh must use new segment names"
        )


def check_refresh_names(segments_to: Iterable[str], segments_from: Iterable[str] = ()) -> None:
    """
    Conventionally named refresh segments must carry a 13-digit timestamp
    that no live segment of the same table already uses.

    SegmentNameGenerator reserves a fresh timestamp for every refresh it
    names.  Names outside the naming convention are left alone.
    """
    live_timestamps = set()
    for name in segments_from:
        if not follows_naming_convention(name):
            continue
        try:
            live = parse_segment_name(name)
        except InvalidRequestError:
            continue
        if live.timestamp_ms is not None:
            live_timestamps.add((live.table, live.table_type, live.timestamp_ms))

    for name in segments_to:
        if not follows_naming_convention(name):
            continue
        parsed = parse_segment_name(name)
        if parsed.timestamp_ms is None:
            logger.warning("refresh_segment_without_timestamp", segment=name)
            continue
        if (parsed.table, parsed.table_type, parsed.timestamp_ms) in live_timestamps:
            raise InvalidRequestError(
                f"Refresh segment {name} reuses timestamp {parsed.timestamp_ms} of the live segments"
            ).with_context(segment=name)


class LineageCoordinator:
    """Drives the lineage handshake against every configured controller."""

    def __init__(self, context: PushContext):
        self.context = context
        self.spec = context.spec
        self.table = context.spec.table

    # Consistency

    def _read_table_config(self) -> dict[str, Any]:
        uri = self.table.table_config_uri
        if uri:
            fs = self.context.filesystems.for_uri(uri)
            try:
                text = fs.read_bytes(uri).decode("utf-8")
            except OSError as e:
                raise ConfigError(f"Cannot read table config {uri}: {e}", cause=e) from e
            try:
                config = json.loads(text) if uri.endswith(".json") else yaml.safe_load(text)
            except (json.JSONDecodeError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot parse table config {uri}: {e}", cause=e) from e
            if not isinstance(config, dict):
                raise ConfigError(f"Table config {uri} must be a mapping")
            return config

        controller = self.context.controllers[0]
        retry = RetryContext(self.context.retry_policy, description=f"get table config from {controller.uri}")
        return retry.run(lambda: controller.get_table_config(self.table))

    def is_consistent_push(self) -> bool:
        """REFRESH ingestion with ``consistentDataPush`` enabled."""
        ingestion = TableIngestionConfig.from_table_config(self._read_table_config())
        logger.debug(
            "table_ingestion_config",
            table=self.table.table_name,
            segment_ingestion_type=ingestion.segment_ingestion_type,
            consistent_data_push=ingestion.consistent_data_push,
        )
        return ingestion.requires_consistent_push

    # Controller calls

    def _run(self, controller: ControlPlane, description: str, operation, lineage: bool = False):
        policy = self.context.lineage_retry_policy if lineage else self.context.retry_policy
        retry = RetryContext(policy, description=f"{description} on {controller.uri}")
        return retry.run(operation)

    def live_segments(self, controller: ControlPlane) -> set[str]:
        return set(self._run(controller, "list segments", lambda: controller.list_segments(self.table)))

    def lineage_entries(self, controller: ControlPlane) -> list[LineageEntry]:
        return list(self._run(controller, "list lineage", lambda: controller.list_lineage(self.table)))

    def list_entries(self) -> dict[str, list[LineageEntry]]:
        """Lineage entries per controller, oldest first."""
        return {controller.uri: self.lineage_entries(controller) for controller in self.context.controllers}

    # Stale entries

    def _stale_entries(self, controller: ControlPlane) -> list[LineageEntry]:
        return [e for e in self.lineage_entries(controller) if e.state is LineageState.IN_PROGRESS]

    def _revert(self, controller: ControlPlane, entry_id: str) -> None:
        self._run(
            controller,
            f"revert lineage entry {entry_id}",
            lambda: controller.revert_replace_segments(self.table, entry_id),
            lineage=True,
        )

    def _revert_stale(self, controller: ControlPlane, entries: list[LineageEntry]) -> None:
        for entry in entries:
            self._revert(controller, entry.entry_id)
            logger.warning(
                "stale_lineage_reverted",
                controller=controller.uri,
                table=self.table.table_name,
                entry_id=entry.entry_id,
                segments_to=sorted(entry.segments_to),
            )

    def recover_stale_entries(self) -> list[LineageEntry]:
        """Revert every ``IN_PROGRESS`` entry left behind by an earlier run."""
        reverted = []
        for controller in self.context.controllers:
            stale = self._stale_entries(controller)
            self._revert_stale(controller, stale)
            reverted.extend(stale)
        return reverted

    def _handle_stale_entries(self, controller: ControlPlane) -> None:
        policy = self.spec.push.stale_lineage_policy
        if policy == "ignore":
            return

        stale = self._stale_entries(controller)
        if not stale:
            return

        if policy == "fail":
            raise LineageError(
                f"{len(stale)} lineage entries still in progress on {controller.uri}",
            ).with_context(
                table=self.table.table_name,
                controller_uri=controller.uri,
                entry_id=stale[0].entry_id,
            )

        self._revert_stale(controller, stale)

    # Handshake

    def start(self, segments_to: list[str]) -> dict[str, str]:
        """
        Open a lineage entry on every controller.

        Returns:
            controller URI -> entry id
        """
        entry_ids: dict[str, str] = {}
        try:
            for controller in self.context.controllers:
                self._handle_stale_entries(controller)
                segments_from = sorted(self.live_segments(controller))
                check_refresh_names(segments_to, segments_from)
                check_replacement(segments_from, segments_to)

                entry_id = self._run(
                    controller,
                    "start replace segments",
                    lambda: controller.start_replace_segments(self.table, segments_from, list(segments_to)),
                )
                entry_ids[controller.uri] = entry_id
                logger.info(
                    "lineage_started",
                    controller=controller.uri,
                    table=self.table.table_name,
                    entry_id=entry_id,
                    segments_from=len(segments_from),
                    segments_to=len(segments_to),
                )
        except SegmentPushError as e:
            if entry_ids:
                self.abort(entry_ids, e)
            raise e.with_context(table=self.table.table_name)
        return entry_ids

    def finish(self, entry_ids: dict[str, str]) -> None:
        """
        Close every entry, making ``segments_to`` live.

        Raises:
            LineageError: an entry could not be closed; it stays open
        """
        for controller in self.context.controllers:
            entry_id = entry_ids[controller.uri]
            try:
                self._run(
                    controller,
                    f"end lineage entry {entry_id}",
                    lambda: controller.end_replace_segments(self.table, entry_id),
                    lineage=True,
                )
            except SegmentPushError as e:
                logger.error(
                    "lineage_close_failed",
                    controller=controller.uri,
                    table=self.table.table_name,
                    entry_id=entry_id,
                    error=e.message,
                )
                raise LineageError(
                    f"Segments uploaded but lineage entry {entry_id} could not be closed: {e.message}",
                    cause=e,
                ).with_context(
                    table=self.table.table_name,
                    controller_uri=controller.uri,
                    entry_id=entry_id,
                    attempts=e.context.attempts,
                ) from e
            logger.info("lineage_completed", controller=controller.uri, entry_id=entry_id)

    def abort(self, entry_ids: dict[str, str], cause: BaseException | None = None) -> None:
        """
        Revert every open entry so ``segments_from`` keeps serving.

        Revert failures are logged, never raised, so the caller can raise
        the error that caused the abort.
        """
        for controller in self.context.controllers:
            entry_id = entry_ids.get(controller.uri)
            if entry_id is None:
                continue
            try:
                self._revert(controller, entry_id)
            except SegmentPushError as e:
                logger.error(
                    "lineage_revert_failed",
                    controller=controller.uri,
                    entry_id=entry_id,
                    error=e.message,
                    cause=str(cause) if cause else None,
                )
                continue
            logger.warning(
                "lineage_aborted",
                controller=controller.uri,
                entry_id=entry_id,
                cause=str(cause) if cause else None,
            )
