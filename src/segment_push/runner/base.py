"""Base class for push job runners."""

import time
from abc import ABC, abstractmethod
from typing import Any

import structlog

from segment_push.context import PushContext
from segment_push.dispatch import PartitionMapper, dispatch
from segment_push.errors import DiscoveryError, FileSystemError, SegmentPushError
from segment_push.lineage import SEGMENTS_TO, LineageCoordinator, check_unique_names
from segment_push.logging import LogContext
from segment_push.models import PushResult
from segment_push.naming import is_segment_archive
from segment_push.spec import JobSpec, PushMode
from segment_push.uris import normalize_dir_uri

logger = structlog.get_logger()


class PushJobRunner(ABC):
    """
    Template for one push run.

    ``run()`` discovers the segment archives under the output directory,
    routes them for the push mode, opens a lineage entry when the table
    needs a consistent push, uploads, and closes or reverts the entry.

    Subclasses define:
    - push_mode
    - compute_routing(): work items for the upload step
    """

    push_mode: PushMode

    def __init__(self, mapper: PartitionMapper | None = None):
        self.mapper = mapper
        self.spec: JobSpec | None = None
        self.context: PushContext | None = None
        self.output_dir_uri: str = ""
        self.candidates: list[str] = []
        self._owns_context = False

    def init(self, spec: JobSpec, context: PushContext | None = None) -> "PushJobRunner":
        """Bind the job spec, bootstrapping registries unless a context is given."""
        self.spec = spec
        if context is None:
            context = PushContext.bootstrap(spec)
            self._owns_context = True
        self.context = context
        self.output_dir_uri = normalize_dir_uri(spec.output_dir_uri)
        return self

    def close(self) -> None:
        if self._owns_context and self.context is not None:
            self.context.close()

    def discover_segments(self) -> list[str]:
        """List segment archives under the output directory."""
        fs = self.context.filesystems.for_uri(self.output_dir_uri)
        try:
            files = fs.list(self.output_dir_uri)
        except (OSError, FileSystemError) as e:
            raise DiscoveryError(
                f"Cannot list output directory {self.output_dir_uri}: {e}",
                cause=e,
            ).with_context(uri=self.output_dir_uri, push_mode=self.push_mode.value) from e

        self.candidates = [uri for uri in files if is_segment_archive(uri)]
        logger.info(
            "segments_discovered",
            output_dir=self.output_dir_uri,
            files=len(files),
            segments=len(self.candidates),
        )
        return self.candidates

    @abstractmethod
    def compute_routing(self) -> Any:
        """Mode-specific routing of the discovered archives."""
        pass

    def work_items(self, routing: Any) -> list:
        """Serializable items handed to the upload step."""
        return list(routing)

    def segments_to(self, routing: Any) -> list[str]:
        return SEGMENTS_TO[self.push_mode](routing)

    def upload(self, routing: Any) -> tuple[list[str], int]:
        return dispatch(self.context, self.push_mode, self.work_items(routing), mapper=self.mapper)

    def run(self) -> PushResult:
        """Discover, route, upload and publish."""
        if self.context is None:
            raise SegmentPushError("Runner used before init()")

        start = time.monotonic()
        table = self.spec.table.table_name
        with LogContext(table=table, push_mode=self.push_mode.value):
            logger.info("push_started", output_dir=self.output_dir_uri)

            self.discover_segments()
            if not self.candidates:
                logger.warning("no_segments_found", output_dir=self.output_dir_uri)
                return PushResult(push_mode=self.push_mode, table=table)

            routing = self.compute_routing()
            segments_to = self.segments_to(routing)
            check_unique_names(segments_to, self.candidates)

            coordinator = LineageCoordinator(self.context)
            consistent = coordinator.is_consistent_push()
            entry_ids = coordinator.start(segments_to) if consistent else {}

            try:
                pushed, partitions = self.upload(routing)
            except Exception as e:
                if entry_ids:
                    coordinator.abort(entry_ids, e)
                logger.error("push_failed", error=str(e), consistent_push=consistent)
                if isinstance(e, SegmentPushError):
                    raise e.with_context(table=table, push_mode=self.push_mode.value)
                raise

            if entry_ids:
                coordinator.finish(entry_ids)

            result = PushResult(
                push_mode=self.push_mode,
                table=table,
                segments=pushed,
                consistent_push=consistent,
                lineage_entry_ids=entry_ids,
                partitions=partitions,
                duration_ms=(time.monotonic() - start) * 1000,
            )
            logger.info(
                "push_completed",
                segments=len(pushed),
                partitions=partitions,
                consistent_push=consistent,
                duration_ms=round(result.duration_ms, 1),
            )
            return result
